"""
Order pricing and coupon discount computation.

The calculator reads product snapshots and coupons through repository
objects and writes one order through the order repository:

- ``products.find_active_by_ids(ids) -> list[ProductSnapshot]``
- ``coupons.find_by_code(code) -> dict | None``
- ``coupons.increment_usage(coupon_id) -> bool`` (conditional on the usage limit)
- ``coupons.release_usage(coupon_id) -> None``
- ``orders.insert(order) -> dict``
- ``orders.count_with_coupon(user_id, coupon_id) -> int``
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError

from errors import InvalidCoupon, InvalidInput, InsufficientStock, ProductNotFoundOrInactive
from schemas import Coupon, Order, OrderItem, Payment, ShippingAddress, normalize_coupon_code

logger = logging.getLogger(__name__)

FREE_SHIPPING_THRESHOLD = 999
SHIPPING_FEE = 49
TAX_RATE = 0.18


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes unless the client is tz aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CartLineRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)


@dataclass(frozen=True)
class ProductSnapshot:
    id: str
    title: str
    price: float
    stock: int
    images: List[str] = field(default_factory=list)
    category: Optional[str] = None
    brand: Optional[str] = None
    is_active: bool = True

    @property
    def image(self) -> str:
        return self.images[0] if self.images else ""


@dataclass
class PricedLine:
    product_id: str
    quantity: int
    price: float
    product: ProductSnapshot

    @property
    def amount(self) -> float:
        return self.price * self.quantity


@dataclass
class CouponResult:
    coupon_id: str
    code: str
    type: str
    value: float
    applicable_total: float
    discount_amount: float


@dataclass
class OrderTotals:
    subtotal: float
    shipping: float
    tax: float
    original_total: float
    discount_amount: float = 0
    final_total: float = 0


def compute_totals(subtotal: float, discount_amount: float = 0) -> OrderTotals:
    shipping = 0 if subtotal > FREE_SHIPPING_THRESHOLD else SHIPPING_FEE
    tax = round_half_up(subtotal * TAX_RATE)
    original_total = subtotal + shipping + tax
    discount_amount = min(discount_amount, original_total)
    return OrderTotals(
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        original_total=original_total,
        discount_amount=discount_amount,
        final_total=original_total - discount_amount,
    )


def cart_total(items: Iterable) -> float:
    """Displayed cart total: sum of price x qty rounded to 2 decimals."""
    return round_half_up(sum(item.price * item.qty for item in items), 2)


class CouponValidator:
    """
    Decides whether a coupon applies to a priced line list and how much it
    takes off. Shared by the apply preview and by order creation.
    """

    def __init__(self, coupons, orders=None, clock: Callable[[], datetime] = utcnow):
        self.coupons = coupons
        self.orders = orders
        self.clock = clock

    def validate(self, code: str, lines: List[PricedLine], user_id: Optional[str] = None) -> CouponResult:
        doc = self.coupons.find_by_code(normalize_coupon_code(code))
        if not doc:
            raise InvalidCoupon("Invalid coupon code")
        try:
            coupon = Coupon.model_validate(doc)
        except ValidationError:
            logger.warning("Stored coupon %s failed validation", doc.get("id"), exc_info=True)
            raise InvalidCoupon("Error validating coupon")
        coupon_id = str(doc["id"])

        now = self.clock()
        if not coupon.active:
            raise InvalidCoupon("Coupon is not active")
        if now >= as_utc(coupon.expiry_date):
            raise InvalidCoupon("Coupon has expired")
        if now < as_utc(coupon.start_date):
            raise InvalidCoupon("Coupon is not yet active")
        if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
            raise InvalidCoupon("Coupon usage limit exceeded")
        if coupon.per_user_limit and user_id and self.orders is not None:
            if self.orders.count_with_coupon(user_id, coupon_id) >= coupon.per_user_limit:
                raise InvalidCoupon("Coupon usage limit exceeded for this user")

        applicable_total = self.applicable_total(coupon, lines)
        if applicable_total == 0:
            raise InvalidCoupon("Coupon not applicable to cart items")

        if coupon.type == "percentage":
            discount = applicable_total * (coupon.value / 100)
        else:
            discount = min(coupon.value, applicable_total)

        return CouponResult(
            coupon_id=coupon_id,
            code=coupon.code,
            type=coupon.type,
            value=coupon.value,
            applicable_total=applicable_total,
            discount_amount=round_half_up(discount, 2),
        )

    @staticmethod
    def applicable_total(coupon: Coupon, lines: List[PricedLine]) -> float:
        products = set(coupon.applicable_products)
        categories = set(coupon.applicable_categories)
        brands = set(coupon.applicable_brands)
        if not (products or categories or brands):
            return sum(line.amount for line in lines)

        total = 0
        for line in lines:
            if (
                line.product_id in products
                or (line.product.category and line.product.category in categories)
                or (line.product.brand and line.product.brand in brands)
            ):
                total += line.amount
        return total


class OrderPricingCalculator:
    def __init__(self, products, coupons, orders, validator: Optional[CouponValidator] = None):
        self.products = products
        self.coupons = coupons
        self.orders = orders
        self.validator = validator or CouponValidator(coupons, orders)

    def price_lines(self, items: List[CartLineRequest], check_stock: bool = True) -> List[PricedLine]:
        """Resolve requested lines against active catalog products.

        The whole request fails if any product is missing or inactive, or
        (with ``check_stock``) if any line asks for more than is in stock.
        """
        if not items:
            raise InvalidInput("No items provided")

        ids = list(dict.fromkeys(item.product_id for item in items))
        by_id = {p.id: p for p in self.products.find_active_by_ids(ids)}
        if len(by_id) < len(ids):
            raise ProductNotFoundOrInactive("One or more products not found or inactive")

        lines = []
        for item in items:
            product = by_id[item.product_id]
            if check_stock and product.stock < item.quantity:
                raise InsufficientStock(product.title, product.stock)
            lines.append(PricedLine(item.product_id, item.quantity, product.price, product))
        return lines

    def create_order(
        self,
        user_id: str,
        items: List[CartLineRequest],
        address,
        payment_method: str = "COD",
        coupon_code: Optional[str] = None,
    ) -> dict:
        lines = self.price_lines(items)
        subtotal = sum(line.amount for line in lines)
        order_items = [
            OrderItem(
                product=line.product_id,
                title=line.product.title,
                price=line.price,
                qty=line.quantity,
                image=line.product.image,
            )
            for line in lines
        ]

        applied = None
        if coupon_code:
            try:
                applied = self.validator.validate(coupon_code, lines, user_id=user_id)
            except InvalidCoupon as e:
                logger.info("Coupon %s rejected for user %s: %s", coupon_code, user_id, e.reason)
                raise

        totals = compute_totals(subtotal, applied.discount_amount if applied else 0)
        order = Order(
            user=user_id,
            items=order_items,
            subtotal=totals.subtotal,
            shipping=totals.shipping,
            tax=totals.tax,
            original_total=totals.original_total,
            discount_amount=totals.discount_amount,
            total=totals.final_total,
            final_total=totals.final_total,
            coupon_code=applied.code if applied else None,
            applied_coupon=applied.coupon_id if applied else None,
            shipping_address=ShippingAddress.model_validate(address),
            payment=Payment(method=payment_method or "COD"),
        )

        if applied and not self.coupons.increment_usage(applied.coupon_id):
            # another checkout took the last redemption since validation
            raise InvalidCoupon("Coupon usage limit exceeded")
        try:
            saved = self.orders.insert(order)
        except Exception:
            if applied:
                self.coupons.release_usage(applied.coupon_id)
            raise

        logger.info("Order %s created for user %s, total %.2f", saved.get("id"), user_id, totals.final_total)
        return saved
