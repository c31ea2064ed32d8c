import copy
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from cart import CartService
from pricing import CouponValidator, OrderPricingCalculator, ProductSnapshot, cart_total
from repositories import serialize_doc

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class InMemoryProducts:
    def __init__(self):
        self.items = {}

    def add(self, id, price, stock=10, title=None, brand="brand-1", category="cat-1", is_active=True, images=None):
        self.items[id] = ProductSnapshot(
            id=id,
            title=title or f"Product {id}",
            price=price,
            stock=stock,
            images=images if images is not None else [f"https://img.example/{id}.png"],
            category=category,
            brand=brand,
            is_active=is_active,
        )
        return self.items[id]

    def find_active_by_ids(self, ids):
        return [self.items[i] for i in ids if i in self.items and self.items[i].is_active]

    def find_by_id(self, product_id):
        return self.items.get(product_id)


class InMemoryCoupons:
    def __init__(self):
        self.docs = {}
        self.increments = 0
        self.releases = 0

    def add(self, code, type="percentage", value=10, **kwargs):
        coupon_id = f"coupon-{len(self.docs) + 1}"
        doc = {
            "id": coupon_id,
            "code": code,
            "type": type,
            "value": value,
            "applicable_products": [],
            "applicable_categories": [],
            "applicable_brands": [],
            "start_date": NOW - timedelta(days=1),
            "expiry_date": NOW + timedelta(days=30),
            "usage_limit": None,
            "per_user_limit": None,
            "used_count": 0,
            "active": True,
        }
        doc.update(kwargs)
        self.docs[coupon_id] = doc
        return doc

    def find_by_code(self, code):
        doc = next((d for d in self.docs.values() if d["code"] == code), None)
        return copy.deepcopy(doc) if doc else None

    def increment_usage(self, coupon_id):
        doc = self.docs[coupon_id]
        if doc["usage_limit"] is not None and doc["used_count"] >= doc["usage_limit"]:
            return False
        doc["used_count"] += 1
        self.increments += 1
        return True

    def release_usage(self, coupon_id):
        doc = self.docs[coupon_id]
        if doc["used_count"] > 0:
            doc["used_count"] -= 1
        self.releases += 1


class InMemoryOrders:
    def __init__(self):
        self.docs = []
        self.fail_insert = False

    def insert(self, order):
        if self.fail_insert:
            raise RuntimeError("write failed")
        doc = {"id": f"order-{len(self.docs) + 1}", **order.model_dump()}
        self.docs.append(doc)
        return doc

    def count_with_coupon(self, user_id, coupon_id):
        return sum(
            1 for d in self.docs
            if d["user"] == user_id and d["applied_coupon"] == coupon_id and d["status"] not in ("cancelled", "rejected")
        )

    def get(self, order_id):
        return next((d for d in self.docs if d["id"] == order_id), None)

    def list_for_user(self, user_id):
        return [d for d in reversed(self.docs) if d["user"] == user_id]

    def list(self, status=None, page=1, limit=20):
        docs = [d for d in reversed(self.docs) if not status or d["status"] == status]
        return docs[(page - 1) * limit: page * limit], len(docs)

    def update_status(self, order_id, status):
        doc = self.get(order_id)
        if doc:
            doc["status"] = status
        return doc


class InMemoryCarts:
    def __init__(self):
        self.carts = {}

    def get(self, user_id):
        cart = self.carts.get(user_id)
        return cart.model_copy(deep=True) if cart else None

    def save(self, cart):
        cart.total = cart_total(cart.items)
        self.carts[cart.user_id] = cart.model_copy(deep=True)
        return cart

    def clear(self, user_id):
        cart = self.carts.get(user_id)
        if cart:
            cart.items = []
            cart.total = 0


@pytest.fixture
def products():
    return InMemoryProducts()


@pytest.fixture
def coupons():
    return InMemoryCoupons()


@pytest.fixture
def orders():
    return InMemoryOrders()


@pytest.fixture
def carts():
    return InMemoryCarts()


@pytest.fixture
def validator(coupons, orders):
    return CouponValidator(coupons, orders, clock=lambda: NOW)


@pytest.fixture
def calculator(products, coupons, orders, validator):
    return OrderPricingCalculator(products, coupons, orders, validator=validator)


@pytest.fixture
def cart_service(products, carts):
    return CartService(products, carts)


@pytest.fixture
def address():
    return {"name": "Asha", "line1": "12 MG Road", "city": "Pune", "pincode": "411001"}


@pytest.fixture
def current_user():
    return {"id": "user-1", "name": "Asha", "email": "asha@example.com", "role": "user"}


@pytest.fixture
def client(products, coupons, orders, carts, current_user):
    main.app.dependency_overrides.update({
        main.get_products: lambda: products,
        main.get_coupons: lambda: coupons,
        main.get_orders: lambda: orders,
        main.get_carts: lambda: carts,
        main.get_clock: lambda: (lambda: NOW),
        main.get_current_user: lambda: current_user,
    })
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["storefront_test"]


def insert_user(database, role):
    doc = {"name": role.title(), "email": f"{role}@shop.com", "password_hash": "x", "role": role}
    doc["_id"] = database["user"].insert_one(doc).inserted_id
    return main.public_user(serialize_doc(doc))


def mongo_client(database, user):
    main.app.dependency_overrides.update({
        main.get_database: lambda: database,
        main.get_current_user: lambda: user,
    })
    return TestClient(main.app)


@pytest.fixture
def admin_client(mongo_db):
    yield mongo_client(mongo_db, insert_user(mongo_db, "admin"))
    main.app.dependency_overrides.clear()


@pytest.fixture
def user_client(mongo_db):
    yield mongo_client(mongo_db, insert_user(mongo_db, "user"))
    main.app.dependency_overrides.clear()
