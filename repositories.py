"""
MongoDB-backed repositories used by the pricing, coupon and cart layers.
"""
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from bson.errors import InvalidId
from bson.objectid import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from pricing import ProductSnapshot, cart_total
from schemas import Cart, Order


def to_object_id(value) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    # convert datetimes
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


def snapshot_from_doc(doc) -> ProductSnapshot:
    return ProductSnapshot(
        id=str(doc["_id"]),
        title=doc.get("title", ""),
        price=float(doc.get("price", 0)),
        stock=int(doc.get("stock", 0)),
        images=list(doc.get("images") or []),
        category=str(doc["category"]) if doc.get("category") else None,
        brand=str(doc["brand"]) if doc.get("brand") else None,
        is_active=bool(doc.get("is_active", True)),
    )


class MongoProductRepository:
    def __init__(self, database: Database):
        self.col = database["product"]

    def find_active_by_ids(self, ids: List[str]) -> List[ProductSnapshot]:
        oids = [o for o in (to_object_id(i) for i in ids) if o is not None]
        if not oids:
            return []
        return [snapshot_from_doc(d) for d in self.col.find({"_id": {"$in": oids}, "is_active": True})]

    def find_by_id(self, product_id: str) -> Optional[ProductSnapshot]:
        oid = to_object_id(product_id)
        doc = self.col.find_one({"_id": oid}) if oid else None
        return snapshot_from_doc(doc) if doc else None


class MongoCouponRepository:
    # usage_limit null (or missing) means unlimited
    UNDER_LIMIT = {"$or": [{"usage_limit": None}, {"$expr": {"$lt": ["$used_count", "$usage_limit"]}}]}

    def __init__(self, database: Database):
        self.col = database["coupon"]

    def find_by_code(self, code: str) -> Optional[dict]:
        return serialize_doc(self.col.find_one({"code": code}))

    def increment_usage(self, coupon_id: str) -> bool:
        doc = self.col.find_one_and_update(
            {"_id": to_object_id(coupon_id), **self.UNDER_LIMIT},
            {"$inc": {"used_count": 1}, "$set": {"updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        return doc is not None

    def release_usage(self, coupon_id: str) -> None:
        self.col.update_one(
            {"_id": to_object_id(coupon_id), "used_count": {"$gt": 0}},
            {"$inc": {"used_count": -1}},
        )


class MongoOrderRepository:
    def __init__(self, database: Database):
        self.col = database["order"]

    def insert(self, order: Order) -> dict:
        now = datetime.now(timezone.utc)
        doc = {**order.model_dump(), "created_at": now, "updated_at": now}
        result = self.col.insert_one(doc)
        doc["_id"] = result.inserted_id
        return serialize_doc(doc)

    def count_with_coupon(self, user_id: str, coupon_id: str) -> int:
        return self.col.count_documents({
            "user": user_id,
            "applied_coupon": coupon_id,
            "status": {"$nin": ["cancelled", "rejected"]},
        })

    def get(self, order_id: str) -> Optional[dict]:
        oid = to_object_id(order_id)
        return serialize_doc(self.col.find_one({"_id": oid})) if oid else None

    def list_for_user(self, user_id: str) -> List[dict]:
        return [serialize_doc(d) for d in self.col.find({"user": user_id}).sort("created_at", DESCENDING)]

    def list(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> Tuple[List[dict], int]:
        filt = {"status": status} if status else {}
        total = self.col.count_documents(filt)
        cursor = self.col.find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
        return [serialize_doc(d) for d in cursor], total

    def update_status(self, order_id: str, status: str) -> Optional[dict]:
        oid = to_object_id(order_id)
        if oid is None:
            return None
        doc = self.col.find_one_and_update(
            {"_id": oid},
            {"$set": {"status": status, "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize_doc(doc)


class MongoCartRepository:
    def __init__(self, database: Database):
        self.col = database["cart"]

    def get(self, user_id: str) -> Optional[Cart]:
        doc = self.col.find_one({"user_id": user_id})
        return Cart.model_validate(doc) if doc else None

    def save(self, cart: Cart) -> Cart:
        cart.total = cart_total(cart.items)
        now = datetime.now(timezone.utc)
        self.col.update_one(
            {"user_id": cart.user_id},
            {"$set": {**cart.model_dump(), "updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )
        return cart

    def clear(self, user_id: str) -> None:
        self.col.update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "total": 0, "updated_at": datetime.now(timezone.utc)}},
        )
