from datetime import datetime, timedelta, timezone

import pytest


def future(days=30):
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def create_coupon(client, code="SAVE10", **kwargs):
    body = {"code": code, "type": "percentage", "value": 10, "expiry_date": future(), **kwargs}
    return client.post("/admin/coupons", json=body)


@pytest.fixture
def catalog(admin_client):
    brand = admin_client.post("/admin/brands", json={"name": "Acme Tools"}).json()["id"]
    category = admin_client.post("/admin/categories", json={"name": "Hand Tools"}).json()["id"]
    product = admin_client.post("/admin/products", json={
        "title": "Claw Hammer",
        "brand": brand,
        "category": category,
        "price": 1000,
        "mrp": 1200,
        "stock": 5,
    }).json()["id"]
    return {"brand": brand, "category": category, "product": product}


# ---- coupons ----

def test_create_coupon_normalises_code(admin_client):
    res = create_coupon(admin_client, code=" welcome-5 ")
    assert res.status_code == 201
    body = res.json()
    assert body["code"] == "WELCOME-5"
    assert body["used_count"] == 0
    assert body["created_by"]


def test_create_coupon_duplicate_code(admin_client):
    create_coupon(admin_client)
    res = create_coupon(admin_client, code="save10")
    assert res.status_code == 409
    assert res.json() == {"detail": "Coupon code already exists"}


@pytest.mark.parametrize("value", [150, 100.5])
def test_create_coupon_percentage_over_hundred(admin_client, value):
    res = create_coupon(admin_client, value=value)
    assert res.status_code == 400
    assert res.json() == {"detail": "Percentage value must be between 1 and 100"}


def test_create_flat_coupon_may_exceed_hundred(admin_client):
    assert create_coupon(admin_client, type="flat", value=500).status_code == 201


def test_create_coupon_expiry_in_past(admin_client):
    res = create_coupon(admin_client, expiry_date=future(days=-1))
    assert res.status_code == 400
    assert res.json() == {"detail": "Expiry date must be in the future"}


def test_update_coupon_null_expiry_keeps_stored_value(admin_client, catalog):
    coupon = create_coupon(admin_client).json()

    res = admin_client.put(f"/admin/coupons/{coupon['id']}", json={"expiry_date": None, "type": None, "active": True})

    assert res.status_code == 200
    assert res.json()["expiry_date"][:10] == coupon["expiry_date"][:10]
    assert res.json()["type"] == "percentage"
    applied = admin_client.post("/coupons/apply", json={
        "code": "SAVE10",
        "cart_items": [{"product_id": catalog["product"], "quantity": 1}],
    })
    assert applied.status_code == 200
    assert applied.json()["discount_amount"] == 100


def test_update_coupon_null_clears_usage_limit(admin_client):
    coupon = create_coupon(admin_client, usage_limit=5).json()

    res = admin_client.put(f"/admin/coupons/{coupon['id']}", json={"usage_limit": None})

    assert res.status_code == 200
    assert res.json()["usage_limit"] is None


def test_update_coupon_percentage_rule_uses_stored_type(admin_client):
    coupon = create_coupon(admin_client).json()
    res = admin_client.put(f"/admin/coupons/{coupon['id']}", json={"value": 250})
    assert res.status_code == 400


def test_update_coupon_code_conflict(admin_client):
    create_coupon(admin_client, code="FIRST")
    second = create_coupon(admin_client, code="SECOND").json()
    res = admin_client.put(f"/admin/coupons/{second['id']}", json={"code": "first"})
    assert res.status_code == 409


def test_update_corrupt_stored_coupon_is_rejected(admin_client, mongo_db):
    oid = mongo_db["coupon"].insert_one({"code": "BROKEN", "value": 10, "used_count": 0}).inserted_id
    res = admin_client.put(f"/admin/coupons/{oid}", json={"active": False})
    assert res.status_code == 400
    assert res.json()["detail"].startswith("Invalid coupon")


def test_update_missing_coupon(admin_client):
    assert admin_client.put("/admin/coupons/0123456789abcdef01234567", json={}).status_code == 404


def test_list_coupons_search_is_literal(admin_client):
    create_coupon(admin_client, code="SAVE10")
    create_coupon(admin_client, code="SAVE20")
    create_coupon(admin_client, code="FEST")

    assert admin_client.get("/admin/coupons", params={"search": "save"}).json()["pagination"]["total"] == 2
    assert admin_client.get("/admin/coupons", params={"search": "."}).json()["pagination"]["total"] == 0
    res = admin_client.get("/admin/coupons", params={"search": "(["})
    assert res.status_code == 200
    assert res.json()["coupons"] == []


def test_list_coupons_paginates(admin_client):
    for i in range(3):
        create_coupon(admin_client, code=f"CODE{i}")
    body = admin_client.get("/admin/coupons", params={"page": 2, "limit": 2}).json()
    assert len(body["coupons"]) == 1
    assert body["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}


def test_delete_coupon(admin_client):
    coupon = create_coupon(admin_client).json()
    assert admin_client.delete(f"/admin/coupons/{coupon['id']}").json() == {"ok": True}
    assert admin_client.get(f"/admin/coupons/{coupon['id']}").status_code == 404


# ---- catalog ----

def test_catalog_create_and_list(admin_client, catalog):
    brands = admin_client.get("/brands").json()
    assert [b["slug"] for b in brands] == ["acme-tools"]
    product = admin_client.get(f"/products/{catalog['product']}").json()
    assert product["slug"] == "claw-hammer"
    assert product["rating_count"] == 0


def test_duplicate_brand(admin_client, catalog):
    assert admin_client.post("/admin/brands", json={"name": "Acme Tools"}).status_code == 409


def test_update_brand_renames_slug(admin_client, catalog):
    res = admin_client.put(f"/admin/brands/{catalog['brand']}", json={"name": "Acme Pro"})
    assert res.status_code == 200
    assert res.json()["slug"] == "acme-pro"


def test_update_category_slug_conflict(admin_client, catalog):
    admin_client.post("/admin/categories", json={"name": "Power Tools"})
    res = admin_client.put(f"/admin/categories/{catalog['category']}", json={"name": "Power Tools"})
    assert res.status_code == 409


def test_delete_brand_in_use(admin_client, catalog):
    res = admin_client.delete(f"/admin/brands/{catalog['brand']}")
    assert res.status_code == 409
    assert res.json() == {"detail": "Brand is used by existing products"}


def test_delete_unused_category(admin_client):
    category = admin_client.post("/admin/categories", json={"name": "Garden"}).json()["id"]
    assert admin_client.delete(f"/admin/categories/{category}").json() == {"ok": True}
    assert admin_client.delete(f"/admin/categories/{category}").status_code == 404


def test_disable_and_enable_product(admin_client, catalog):
    product_id = catalog["product"]

    res = admin_client.patch(f"/admin/products/{product_id}/disable")
    assert res.status_code == 200
    assert res.json()["is_active"] is False
    assert admin_client.get(f"/products/{product_id}").status_code == 404

    admin_client.patch(f"/admin/products/{product_id}/enable")
    assert admin_client.get(f"/products/{product_id}").status_code == 200


def test_disabled_brand_hidden_from_listing(admin_client, catalog):
    admin_client.patch(f"/admin/brands/{catalog['brand']}/disable")
    assert admin_client.get("/brands").json() == []


def test_toggle_rejects_unknown_action(admin_client, catalog):
    assert admin_client.patch(f"/admin/categories/{catalog['category']}/archive").status_code == 422


def test_order_status_route_not_shadowed(admin_client):
    res = admin_client.patch("/admin/orders/0123456789abcdef01234567/status", json={"status": "accepted"})
    assert res.status_code == 404
    assert res.json() == {"detail": "Order not found"}


def test_product_search_is_literal(admin_client, catalog):
    assert len(admin_client.get("/products", params={"q": "hammer"}).json()) == 1
    assert admin_client.get("/products", params={"q": "*"}).json() == []


def test_stats_and_seed(admin_client):
    assert admin_client.post("/seed").json() == {"seeded": True, "products": 5}
    assert admin_client.post("/seed").json()["seeded"] is False
    stats = admin_client.get("/admin/stats").json()
    assert stats["products"] == 5
    assert stats["coupons"] == 1
    assert stats["users"] == 1
