import logging
import os
import re
from datetime import datetime, timedelta, timezone
from hashlib import sha256
from typing import List, Literal, Optional

import jwt
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field, ValidationError, field_validator
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from cart import CartService
from database import create_document, db, get_documents
from errors import Conflict, InvalidInput, NotFound, StoreError
from pricing import CartLineRequest, CouponValidator, OrderPricingCalculator, round_half_up, utcnow
from repositories import (
    MongoCartRepository,
    MongoCouponRepository,
    MongoOrderRepository,
    MongoProductRepository,
    serialize_doc,
    to_object_id,
)
from schemas import (
    COUPON_CODE_RE,
    Address,
    Brand as BrandSchema,
    Category as CategorySchema,
    Coupon as CouponSchema,
    CouponType,
    OrderStatus,
    Product as ProductSchema,
    Review as ReviewSchema,
    ShippingAddress,
    User as UserSchema,
    normalize_coupon_code,
    slugify,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ----------------------- Utils -----------------------
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", 7))
security = HTTPBearer()


def hash_password(password: str) -> str:
    return sha256((password + os.getenv("AUTH_SALT", "storefront")).encode()).hexdigest()


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=JWT_EXPIRES_DAYS)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def public_user(user: dict) -> dict:
    return {
        "id": user["id"],
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "role": user.get("role", "user"),
    }


def get_database():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    database=Depends(get_database),
):
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = database["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return public_user(serialize_doc(user))


def require_admin(user=Depends(get_current_user)):
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def get_products(database=Depends(get_database)):
    return MongoProductRepository(database)


def get_coupons(database=Depends(get_database)):
    return MongoCouponRepository(database)


def get_orders(database=Depends(get_database)):
    return MongoOrderRepository(database)


def get_carts(database=Depends(get_database)):
    return MongoCartRepository(database)


def get_clock():
    return utcnow


def get_coupon_validator(coupons=Depends(get_coupons), orders=Depends(get_orders), clock=Depends(get_clock)):
    return CouponValidator(coupons, orders, clock=clock)


def get_calculator(
    products=Depends(get_products),
    coupons=Depends(get_coupons),
    orders=Depends(get_orders),
    validator=Depends(get_coupon_validator),
):
    return OrderPricingCalculator(products, coupons, orders, validator=validator)


def get_cart_service(products=Depends(get_products), carts=Depends(get_carts)):
    return CartService(products, carts)


# ----------------------- Models -----------------------
class SignupBody(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    password: str = Field(..., min_length=6)


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class ProductCreateBody(ProductSchema):
    pass


class ProductUpdateBody(BaseModel):
    title: Optional[str] = None
    slug: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    images: Optional[List[str]] = None
    price: Optional[float] = Field(None, ge=0)
    mrp: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class CartAddBody(BaseModel):
    product_id: str
    qty: int = 1


class CartItemBody(BaseModel):
    product_id: str
    qty: int = 0


class CartRemoveBody(BaseModel):
    product_id: str


class CouponApplyBody(BaseModel):
    code: str = Field(..., min_length=1)
    cart_items: List[CartLineRequest] = Field(..., min_length=1)


class CouponCreateBody(CouponSchema):
    pass


class CouponUpdateBody(BaseModel):
    code: Optional[str] = None
    type: Optional[CouponType] = None
    value: Optional[float] = Field(None, ge=1)
    applicable_products: Optional[List[str]] = None
    applicable_categories: Optional[List[str]] = None
    applicable_brands: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    per_user_limit: Optional[int] = Field(None, ge=0)
    active: Optional[bool] = None

    @field_validator("code")
    @classmethod
    def check_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        code = normalize_coupon_code(v)
        if not COUPON_CODE_RE.match(code):
            raise ValueError("Code must be 3-20 letters, numbers, hyphens or underscores")
        return code


class OrderCreateBody(BaseModel):
    items: List[CartLineRequest]
    address: ShippingAddress
    payment_method: str = "COD"
    coupon_code: Optional[str] = None


class OrderStatusBody(BaseModel):
    status: OrderStatus


class TaxonomyUpdateBody(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    logo: Optional[str] = None
    image: Optional[str] = None
    is_active: Optional[bool] = None


class AddressUpdateBody(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    pincode: Optional[str] = None
    is_default: Optional[bool] = None


class WishlistBody(BaseModel):
    product_id: str


REVIEWS_PER_PAGE = 3


ToggleAction = Literal["enable", "disable"]


NULLABLE_COUPON_FIELDS = {"usage_limit", "per_user_limit"}


def check_percentage(coupon_type: Optional[str], value: Optional[float]):
    if coupon_type == "percentage" and value is not None and not 1 <= value <= 100:
        raise InvalidInput("Percentage value must be between 1 and 100")


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/auth/signup")
def signup(body: SignupBody, database=Depends(get_database)):
    if database["user"].find_one({"email": body.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(
        name=body.name,
        email=body.email,
        phone=body.phone,
        password_hash=hash_password(body.password),
    )
    user_id = create_document("user", user, database=database)
    token = create_token({"id": user_id, "email": body.email, "role": "user"})
    return {"token": token, "user": {"id": user_id, "name": body.name, "email": body.email, "phone": body.phone, "role": "user"}}


@app.post("/auth/login")
def login(body: LoginBody, database=Depends(get_database)):
    user = database["user"].find_one({"email": body.email})
    if not user or user.get("password_hash") != hash_password(body.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    suser = public_user(serialize_doc(user))
    token = create_token({"id": suser["id"], "email": suser["email"], "role": suser["role"]})
    return {"token": token, "user": suser}


@app.get("/auth/me")
def me(user=Depends(get_current_user)):
    return user


# ----------------------- Users -----------------------
def load_user_doc(user: dict, database) -> dict:
    doc = database["user"].find_one({"_id": to_object_id(user["id"])})
    if not doc:
        raise NotFound("User not found")
    return doc


def save_addresses(user_id: str, addresses: List[dict], database) -> List[dict]:
    database["user"].update_one(
        {"_id": to_object_id(user_id)},
        {"$set": {"addresses": addresses, "updated_at": datetime.now(timezone.utc)}},
    )
    return addresses


def place_address(addresses: List[dict], index: int, address: Address) -> List[dict]:
    """Put ``address`` at ``index`` (append when index == len); a default address unsets the others."""
    addresses = list(addresses)
    if address.is_default:
        addresses = [{**a, "is_default": False} for a in addresses]
    if index == len(addresses):
        addresses.append(address.model_dump())
    else:
        addresses[index] = address.model_dump()
    return addresses


@app.get("/users/addresses")
def list_addresses(user=Depends(get_current_user), database=Depends(get_database)):
    return load_user_doc(user, database).get("addresses", [])


@app.post("/users/addresses", status_code=201)
def add_address(body: Address, user=Depends(get_current_user), database=Depends(get_database)):
    addresses = load_user_doc(user, database).get("addresses", [])
    return save_addresses(user["id"], place_address(addresses, len(addresses), body), database)


@app.put("/users/addresses/{index}")
def update_address(index: int, body: AddressUpdateBody, user=Depends(get_current_user), database=Depends(get_database)):
    addresses = load_user_doc(user, database).get("addresses", [])
    if not 0 <= index < len(addresses):
        raise NotFound("Address not found")
    try:
        address = Address.model_validate({**addresses[index], **body.model_dump(exclude_none=True)})
    except ValidationError as e:
        raise InvalidInput(f"Invalid address: {e.errors()[0]['msg']}")
    return save_addresses(user["id"], place_address(addresses, index, address), database)


@app.delete("/users/addresses/{index}")
def delete_address(index: int, user=Depends(get_current_user), database=Depends(get_database)):
    addresses = load_user_doc(user, database).get("addresses", [])
    if not 0 <= index < len(addresses):
        raise NotFound("Address not found")
    return save_addresses(user["id"], addresses[:index] + addresses[index + 1:], database)


@app.post("/users/wishlist/toggle")
def toggle_wishlist(body: WishlistBody, user=Depends(get_current_user), database=Depends(get_database)):
    oid = to_object_id(body.product_id)
    if not oid or not database["product"].find_one({"_id": oid}):
        raise NotFound("Product not found")
    wishlist = load_user_doc(user, database).get("wishlist", [])
    if body.product_id in wishlist:
        wishlist = [p for p in wishlist if p != body.product_id]
    else:
        wishlist = wishlist + [body.product_id]
    database["user"].update_one({"_id": to_object_id(user["id"])}, {"$set": {"wishlist": wishlist}})
    products = database["product"].find({"_id": {"$in": [to_object_id(p) for p in wishlist]}})
    return {"wishlist": [serialize_doc(p) for p in products]}


# ----------------------- Catalog -----------------------
@app.get("/products")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    brand: Optional[str] = None,
    limit: int = 100,
    database=Depends(get_database),
):
    filt = {"is_active": True}
    if q:
        filt["title"] = {"$regex": re.escape(q), "$options": "i"}
    if category:
        filt["category"] = category
    if brand:
        filt["brand"] = brand
    items = database["product"].find(filt).limit(min(limit, 200))
    return [serialize_doc(i) for i in items]


@app.get("/products/{product_id}")
def get_product(product_id: str, database=Depends(get_database)):
    oid = to_object_id(product_id)
    item = database["product"].find_one({"_id": oid, "is_active": True}) if oid else None
    if not item:
        raise NotFound("Product not found")
    return serialize_doc(item)


@app.get("/products/{product_id}/similar")
def similar_products(product_id: str, limit: int = 4, database=Depends(get_database)):
    """Active products from the same category first, topped up from the same brand."""
    oid = to_object_id(product_id)
    product = database["product"].find_one({"_id": oid}) if oid else None
    if not product:
        raise NotFound("Product not found")
    limit = min(max(limit, 1), 20)
    found = list(database["product"].find(
        {"_id": {"$ne": oid}, "is_active": True, "category": product["category"]}
    ).limit(limit))
    if len(found) < limit:
        seen = [oid] + [p["_id"] for p in found]
        found += list(database["product"].find(
            {"_id": {"$nin": seen}, "is_active": True, "brand": product["brand"]}
        ).limit(limit - len(found)))
    return [serialize_doc(p) for p in found]


@app.get("/products/{product_id}/reviews")
def product_reviews(product_id: str, page: int = 1, database=Depends(get_database)):
    page = max(page, 1)
    total = database["review"].count_documents({"product": product_id})
    cursor = (
        database["review"].find({"product": product_id})
        .sort("created_at", -1)
        .skip((page - 1) * REVIEWS_PER_PAGE)
        .limit(REVIEWS_PER_PAGE)
    )
    total_pages = -(-total // REVIEWS_PER_PAGE)
    return {
        "reviews": [serialize_doc(r) for r in cursor],
        "total_reviews": total,
        "current_page": page,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
    }


@app.post("/reviews", status_code=201)
def create_review(body: ReviewSchema, database=Depends(get_database)):
    oid = to_object_id(body.product)
    if not oid or not database["product"].find_one({"_id": oid}):
        raise NotFound("Product not found")
    review_id = create_document("review", body, database=database)

    stats = list(database["review"].aggregate([
        {"$match": {"product": body.product}},
        {"$group": {"_id": None, "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]))
    rating_avg = round_half_up(stats[0]["avg"], 1) if stats else 0
    rating_count = stats[0]["count"] if stats else 0
    database["product"].update_one({"_id": oid}, {"$set": {"rating_avg": rating_avg, "rating_count": rating_count}})
    return {"id": review_id, "rating_avg": rating_avg, "rating_count": rating_count}


@app.post("/admin/products", status_code=201)
def create_product(body: ProductCreateBody, user=Depends(require_admin), database=Depends(get_database)):
    doc = body.model_dump()
    doc["slug"] = body.slug or slugify(body.title)
    if database["product"].find_one({"slug": doc["slug"]}):
        raise Conflict("Product slug already exists")
    return {"id": create_document("product", doc, database=database)}


@app.put("/admin/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, user=Depends(require_admin), database=Depends(get_database)):
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = datetime.now(timezone.utc)
    res = database["product"].update_one({"_id": to_object_id(product_id)}, {"$set": update})
    if res.matched_count == 0:
        raise NotFound("Product not found")
    return {"ok": True}


@app.delete("/admin/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_admin), database=Depends(get_database)):
    res = database["product"].delete_one({"_id": to_object_id(product_id)})
    if res.deleted_count == 0:
        raise NotFound("Product not found")
    return {"ok": True}


@app.get("/brands")
def list_brands(database=Depends(get_database)):
    return [serialize_doc(b) for b in get_documents("brand", {"is_active": True}, limit=500, database=database)]


@app.post("/admin/brands", status_code=201)
def create_brand(body: BrandSchema, user=Depends(require_admin), database=Depends(get_database)):
    doc = {**body.model_dump(), "slug": body.slug or slugify(body.name)}
    if database["brand"].find_one({"slug": doc["slug"]}):
        raise Conflict("Brand already exists")
    return {"id": create_document("brand", doc, database=database)}


@app.get("/categories")
def list_categories(database=Depends(get_database)):
    return [serialize_doc(c) for c in get_documents("category", {"is_active": True}, limit=500, database=database)]


@app.post("/admin/categories", status_code=201)
def create_category(body: CategorySchema, user=Depends(require_admin), database=Depends(get_database)):
    doc = {**body.model_dump(), "slug": body.slug or slugify(body.name)}
    if database["category"].find_one({"slug": doc["slug"]}):
        raise Conflict("Category already exists")
    return {"id": create_document("category", doc, database=database)}


CATALOG_LABELS = {"product": "Product", "brand": "Brand", "category": "Category"}


def update_taxonomy(collection: str, item_id: str, body: TaxonomyUpdateBody, database):
    label = CATALOG_LABELS[collection]
    oid = to_object_id(item_id)
    current = database[collection].find_one({"_id": oid}) if oid else None
    if not current:
        raise NotFound(f"{label} not found")
    update = body.model_dump(exclude_none=True)
    if "name" in update and "slug" not in update:
        update["slug"] = slugify(update["name"])
    if "slug" in update and database[collection].find_one({"slug": update["slug"], "_id": {"$ne": oid}}):
        raise Conflict(f"{label} already exists")
    update["updated_at"] = datetime.now(timezone.utc)
    doc = database[collection].find_one_and_update({"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER)
    return serialize_doc(doc)


def delete_taxonomy(collection: str, item_id: str, database):
    label = CATALOG_LABELS[collection]
    oid = to_object_id(item_id)
    if oid and database["product"].count_documents({collection: item_id}) > 0:
        raise Conflict(f"{label} is used by existing products")
    res = database[collection].delete_one({"_id": oid})
    if res.deleted_count == 0:
        raise NotFound(f"{label} not found")
    return {"ok": True}


@app.put("/admin/brands/{brand_id}")
def update_brand(brand_id: str, body: TaxonomyUpdateBody, user=Depends(require_admin), database=Depends(get_database)):
    return update_taxonomy("brand", brand_id, body, database)


@app.delete("/admin/brands/{brand_id}")
def delete_brand(brand_id: str, user=Depends(require_admin), database=Depends(get_database)):
    return delete_taxonomy("brand", brand_id, database)


@app.put("/admin/categories/{category_id}")
def update_category(category_id: str, body: TaxonomyUpdateBody, user=Depends(require_admin), database=Depends(get_database)):
    return update_taxonomy("category", category_id, body, database)


@app.delete("/admin/categories/{category_id}")
def delete_category(category_id: str, user=Depends(require_admin), database=Depends(get_database)):
    return delete_taxonomy("category", category_id, database)


def set_active(collection: str, item_id: str, active: bool, user: dict, database):
    """Enable or disable a catalog document without deleting it."""
    label = CATALOG_LABELS[collection]
    oid = to_object_id(item_id)
    doc = database[collection].find_one_and_update(
        {"_id": oid},
        {"$set": {"is_active": active, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    ) if oid else None
    if not doc:
        raise NotFound(f"{label} not found")
    logger.info("%s %s %s by %s", label, item_id, "enabled" if active else "disabled", user["id"])
    return serialize_doc(doc)


@app.patch("/admin/products/{product_id}/{action}")
def toggle_product(product_id: str, action: ToggleAction, user=Depends(require_admin), database=Depends(get_database)):
    return set_active("product", product_id, action == "enable", user, database)


@app.patch("/admin/brands/{brand_id}/{action}")
def toggle_brand(brand_id: str, action: ToggleAction, user=Depends(require_admin), database=Depends(get_database)):
    return set_active("brand", brand_id, action == "enable", user, database)


@app.patch("/admin/categories/{category_id}/{action}")
def toggle_category(category_id: str, action: ToggleAction, user=Depends(require_admin), database=Depends(get_database)):
    return set_active("category", category_id, action == "enable", user, database)


# ----------------------- Cart -----------------------
@app.get("/cart")
def get_cart(user=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return carts.get(user["id"])


@app.post("/cart")
def add_to_cart(body: CartAddBody, user=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return carts.add(user["id"], body.product_id, body.qty)


@app.patch("/cart/item")
def update_cart_item(body: CartItemBody, user=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return carts.update(user["id"], body.product_id, body.qty)


@app.delete("/cart/item")
def remove_cart_item(body: CartRemoveBody, user=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return carts.remove(user["id"], body.product_id)


@app.post("/cart/clear")
def clear_cart(user=Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return carts.clear(user["id"])


# ----------------------- Coupons -----------------------
@app.post("/coupons/apply")
def apply_coupon(
    body: CouponApplyBody,
    calculator: OrderPricingCalculator = Depends(get_calculator),
):
    lines = calculator.price_lines(body.cart_items, check_stock=False)
    result = calculator.validator.validate(body.code, lines)
    return {
        "discount_amount": result.discount_amount,
        "currency": "INR",
        "message": f"Coupon {result.code} applied successfully",
        "coupon": {
            "id": result.coupon_id,
            "code": result.code,
            "type": result.type,
            "value": result.value,
            "applicable_total": result.applicable_total,
        },
    }


@app.get("/admin/coupons")
def list_coupons(
    active: Optional[bool] = None,
    expired: Optional[bool] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    user=Depends(require_admin),
    database=Depends(get_database),
):
    filt = {}
    if active is not None:
        filt["active"] = active
    if expired is True:
        filt["expiry_date"] = {"$lt": datetime.now(timezone.utc)}
    elif expired is False:
        filt["expiry_date"] = {"$gte": datetime.now(timezone.utc)}
    if search:
        filt["code"] = {"$regex": re.escape(search.strip().upper()), "$options": "i"}
    page, limit = max(page, 1), max(limit, 1)
    total = database["coupon"].count_documents(filt)
    cursor = database["coupon"].find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "coupons": [serialize_doc(c) for c in cursor],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)},
    }


@app.get("/admin/coupons/{coupon_id}")
def get_coupon(coupon_id: str, user=Depends(require_admin), database=Depends(get_database)):
    coupon = database["coupon"].find_one({"_id": to_object_id(coupon_id)})
    if not coupon:
        raise NotFound("Coupon not found")
    return serialize_doc(coupon)


@app.post("/admin/coupons", status_code=201)
def create_coupon(body: CouponCreateBody, user=Depends(require_admin), database=Depends(get_database)):
    check_percentage(body.type, body.value)
    if database["coupon"].find_one({"code": body.code}):
        raise Conflict("Coupon code already exists")
    expiry = body.expiry_date if body.expiry_date.tzinfo else body.expiry_date.replace(tzinfo=timezone.utc)
    if expiry <= datetime.now(timezone.utc):
        raise InvalidInput("Expiry date must be in the future")

    now = datetime.now(timezone.utc)
    doc = {**body.model_dump(), "used_count": 0, "created_by": user["id"], "created_at": now, "updated_at": now}
    try:
        doc["_id"] = database["coupon"].insert_one(doc).inserted_id
    except DuplicateKeyError:
        raise Conflict("Coupon code already exists")
    logger.info("Coupon %s created by %s", body.code, user["id"])
    return serialize_doc(doc)


@app.put("/admin/coupons/{coupon_id}")
def update_coupon(coupon_id: str, body: CouponUpdateBody, user=Depends(require_admin), database=Depends(get_database)):
    oid = to_object_id(coupon_id)
    coupon = database["coupon"].find_one({"_id": oid}) if oid else None
    if not coupon:
        raise NotFound("Coupon not found")

    update = body.model_dump(exclude_unset=True)
    # null clears the optional limits; anywhere else it means "leave as is"
    update = {k: v for k, v in update.items() if v is not None or k in NULLABLE_COUPON_FIELDS}
    if update.get("code") and update["code"] != coupon["code"]:
        if database["coupon"].find_one({"code": update["code"], "_id": {"$ne": oid}}):
            raise Conflict("Coupon code already exists")
    merged = {k: v for k, v in {**coupon, **update}.items() if k != "_id"}
    check_percentage(merged.get("type"), merged.get("value"))
    try:
        CouponSchema.model_validate(merged)
    except ValidationError as e:
        raise InvalidInput(f"Invalid coupon: {e.errors()[0]['msg']}")

    update["updated_at"] = datetime.now(timezone.utc)
    doc = database["coupon"].find_one_and_update({"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER)
    return serialize_doc(doc)


@app.delete("/admin/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, user=Depends(require_admin), database=Depends(get_database)):
    res = database["coupon"].delete_one({"_id": to_object_id(coupon_id)})
    if res.deleted_count == 0:
        raise NotFound("Coupon not found")
    return {"ok": True}


# ----------------------- Orders -----------------------
@app.post("/orders", status_code=201)
def create_order(
    body: OrderCreateBody,
    user=Depends(get_current_user),
    calculator: OrderPricingCalculator = Depends(get_calculator),
    carts=Depends(get_carts),
):
    order = calculator.create_order(
        user["id"],
        body.items,
        body.address,
        payment_method=body.payment_method,
        coupon_code=body.coupon_code,
    )
    try:
        carts.clear(user["id"])
    except Exception:
        logger.warning("Could not clear cart for user %s after order %s", user["id"], order.get("id"), exc_info=True)
    return {"order": order}


@app.get("/orders/me")
def my_orders(user=Depends(get_current_user), orders=Depends(get_orders)):
    return orders.list_for_user(user["id"])


@app.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), orders=Depends(get_orders)):
    order = orders.get(order_id)
    if not order or (order["user"] != user["id"] and user.get("role") != "admin"):
        raise NotFound("Order not found")
    return order


# ----------------------- Admin -----------------------
@app.get("/admin/orders")
def admin_list_orders(
    status: Optional[OrderStatus] = None,
    page: int = 1,
    limit: int = 20,
    user=Depends(require_admin),
    orders=Depends(get_orders),
):
    page, limit = max(page, 1), max(limit, 1)
    docs, total = orders.list(status=status, page=page, limit=limit)
    return {"orders": docs, "meta": {"page": page, "limit": limit, "total": total, "total_pages": -(-total // limit)}}


@app.patch("/admin/orders/{order_id}/status")
def admin_update_order_status(order_id: str, body: OrderStatusBody, user=Depends(require_admin), orders=Depends(get_orders)):
    order = orders.update_status(order_id, body.status)
    if not order:
        raise NotFound("Order not found")
    logger.info("Order %s moved to %s by %s", order_id, body.status, user["id"])
    return order


@app.get("/admin/stats")
def admin_stats(user=Depends(require_admin), database=Depends(get_database)):
    return {
        "users": database["user"].count_documents({}),
        "products": database["product"].count_documents({}),
        "orders": database["order"].count_documents({}),
        "coupons": database["coupon"].count_documents({}),
    }


# ----------------------- Seed Demo Data -----------------------
DEMO_BRANDS = ["Google", "Apple", "Lenovo", "Sony"]
DEMO_CATEGORIES = ["Mobiles", "Laptops", "Accessories"]

DEMO_PRODUCTS = [
    {
        "title": "Pixel 7A",
        "brand": "Google",
        "category": "Mobiles",
        "description": "Powerful camera and smooth Android experience.",
        "price": 34999,
        "mrp": 39999,
        "images": ["https://images.unsplash.com/photo-1511707171634-5f897ff02aa9"],
        "stock": 25,
    },
    {
        "title": "iPhone 14",
        "brand": "Apple",
        "category": "Mobiles",
        "description": "A15 Bionic with stunning display.",
        "price": 69999,
        "mrp": 79999,
        "images": ["https://images.unsplash.com/photo-1603899123335-4a9d94dfbd89"],
        "stock": 15,
    },
    {
        "title": "ThinkPad X1",
        "brand": "Lenovo",
        "category": "Laptops",
        "description": "Business-class laptop with legendary keyboard.",
        "price": 119999,
        "mrp": 134999,
        "images": ["https://images.unsplash.com/photo-1517336714731-489689fd1ca8"],
        "stock": 10,
    },
    {
        "title": "Noise Cancelling Headphones",
        "brand": "Sony",
        "category": "Accessories",
        "description": "Immerse in music with ANC.",
        "price": 19999,
        "mrp": 24999,
        "images": ["https://images.unsplash.com/photo-1518443248587-30bdc8f94f04"],
        "stock": 40,
    },
    {
        "title": "USB-C Cable",
        "brand": "Google",
        "category": "Accessories",
        "description": "1m braided charging cable.",
        "price": 499,
        "mrp": 799,
        "images": [],
        "stock": 100,
    },
]


@app.post("/seed")
def seed(database=Depends(get_database)):
    if database["product"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    now = datetime.now(timezone.utc)
    brand_ids = {
        name: create_document("brand", BrandSchema(name=name, slug=slugify(name)), database=database)
        for name in DEMO_BRANDS
    }
    category_ids = {
        name: create_document("category", CategorySchema(name=name, slug=slugify(name)), database=database)
        for name in DEMO_CATEGORIES
    }
    for p in DEMO_PRODUCTS:
        prod = ProductSchema(**{**p, "brand": brand_ids[p["brand"]], "category": category_ids[p["category"]], "slug": slugify(p["title"])})
        create_document("product", prod, database=database)
    if database["user"].count_documents({"role": "admin"}) == 0:
        admin = UserSchema(name="Admin", email="admin@shop.com", password_hash=hash_password("admin123"), role="admin")
        create_document("user", admin, database=database)
    if database["coupon"].count_documents({}) == 0:
        welcome = CouponSchema(code="WELCOME10", type="percentage", value=10, expiry_date=now + timedelta(days=365))
        create_document("coupon", welcome, database=database)
    return {"seeded": True, "products": database["product"].count_documents({})}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
