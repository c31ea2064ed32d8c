import os
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL, tz_aware=True)
    db = _client[DATABASE_NAME]


def _resolve(database: Optional[Database]) -> Database:
    if database is not None:
        return database
    if db is None:
        raise RuntimeError("Database not configured")
    return db


def create_document(collection_name: str, data: Union[BaseModel, dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert one document stamped with created_at/updated_at and return its id."""
    target = _resolve(database)
    if isinstance(data, BaseModel):
        data = data.model_dump()
    now = datetime.now(timezone.utc)
    result = target[collection_name].insert_one({**data, "created_at": now, "updated_at": now})
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[dict[str, Any]] = None,
    limit: int = 100,
    database: Optional[Database] = None,
) -> list[dict[str, Any]]:
    target = _resolve(database)
    return list(target[collection_name].find(filter_dict or {}).limit(limit))
