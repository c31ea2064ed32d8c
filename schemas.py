"""
Database Schemas for the Storefront API

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.

References between documents (product -> brand, order -> user, ...) are
stored as ObjectId strings.
"""
import re
from datetime import datetime, timezone
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr, field_validator

OrderStatus = Literal[
    "pending",
    "accepted",
    "processing",
    "packed",
    "shipped",
    "delivered",
    "cancelled",
    "rejected",
    "replace",
]
CouponType = Literal["percentage", "flat"]

COUPON_CODE_RE = re.compile(r"^[A-Z0-9_-]{3,20}$")


def slugify(text: str) -> str:
    slug = re.sub(r"\s+", "-", (text or "").strip().lower())
    slug = re.sub(r"[^\w-]+", "", slug)
    return re.sub(r"--+", "-", slug)


def normalize_coupon_code(code: str) -> str:
    return (code or "").strip().upper()


class Address(BaseModel):
    name: str = Field(..., min_length=2, max_length=80)
    phone: str = Field(..., pattern=r"^\d{10}$")
    line1: str = Field(..., min_length=1)
    line2: str = ""
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    country: str = Field("India", min_length=1)
    pincode: str = Field(..., pattern=r"^\d{6}$")
    is_default: bool = False


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    phone: Optional[str] = None
    password_hash: str = Field(..., description="Hashed password")
    role: Literal["user", "admin"] = "user"
    addresses: List[Address] = []
    wishlist: List[str] = Field(default_factory=list, description="Product ids")


class Brand(BaseModel):
    name: str
    slug: str = ""
    logo: Optional[str] = None
    is_active: bool = True


class Category(BaseModel):
    name: str
    slug: str = ""
    image: Optional[str] = None
    is_active: bool = True


class Product(BaseModel):
    title: str
    slug: str = ""
    brand: str = Field(..., description="Brand id")
    category: str = Field(..., description="Category id")
    description: Optional[str] = None
    images: List[str] = []
    price: float = Field(..., ge=0)
    mrp: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    is_active: bool = True
    rating_avg: float = Field(0, ge=0, le=5)
    rating_count: int = Field(0, ge=0)


class Review(BaseModel):
    """
    Product reviews
    Collection: "review"
    """
    product: str = Field(..., description="Product id")
    user: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100)
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1, max_length=1000)


class Coupon(BaseModel):
    """
    Coupons collection schema
    Collection: "coupon"

    With all three applicable_* lists empty the coupon is global.
    """
    code: str
    type: CouponType
    value: float = Field(..., ge=1)
    applicable_products: List[str] = []
    applicable_categories: List[str] = []
    applicable_brands: List[str] = []
    start_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expiry_date: datetime
    usage_limit: Optional[int] = Field(None, ge=0)
    per_user_limit: Optional[int] = Field(None, ge=0)
    used_count: int = Field(0, ge=0)
    active: bool = True
    created_by: Optional[str] = None

    @field_validator("code")
    @classmethod
    def check_code(cls, v: str) -> str:
        code = normalize_coupon_code(v)
        if not COUPON_CODE_RE.match(code):
            raise ValueError("Code must be 3-20 letters, numbers, hyphens or underscores")
        return code


class CartItem(BaseModel):
    product_id: str
    qty: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Price snapshot at add time")
    title: str
    image: str = ""


class Cart(BaseModel):
    """
    Carts collection schema
    Collection: "cart" (one per user)
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total: float = Field(0, ge=0)


class OrderItem(BaseModel):
    product: str = Field(..., description="Product id")
    title: str
    price: float = Field(..., description="Price snapshot, never repriced")
    qty: int
    image: str = ""


class ShippingAddress(BaseModel):
    name: str = ""
    phone: str = ""
    line1: str
    line2: str = ""
    city: str
    state: str = ""
    country: str = "India"
    pincode: str


class Payment(BaseModel):
    method: str = "COD"
    txn_id: Optional[str] = None
    status: str = "init"


class Order(BaseModel):
    """
    Orders collection schema
    Collection: "order"

    ``total`` and ``final_total`` are the same amount: original_total minus
    discount_amount.
    """
    user: str
    items: List[OrderItem]
    subtotal: float
    shipping: float
    tax: float
    original_total: float
    discount_amount: float = 0
    total: float
    final_total: float
    coupon_code: Optional[str] = None
    applied_coupon: Optional[str] = None
    shipping_address: ShippingAddress
    payment: Payment = Field(default_factory=Payment)
    status: OrderStatus = "pending"
