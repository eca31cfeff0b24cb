"""
test_main.py
============
API tests for the Discount Resolution service.

Covers:
- CRUD operations for deals, promotions and coupons
- Payload validation
- Admin listing filters and pagination
- Storefront deal resolution and the deals listing
- Checkout quote, coupon validation and order confirmation
- Error cases: not found, duplicate codes, exhausted coupons, lost races
"""

import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import main
from config import Settings
from database import Base
from main import app, get_db
from redemption import UsageLimitExceeded

# ── SQLite file for tests ──
TEST_DATABASE_URL = "sqlite:///./test_discounts.db"

test_engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def setup_db(monkeypatch):
    """Create fresh tables before each test and drop them after."""
    Base.metadata.create_all(bind=test_engine)
    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(Settings, "SHIPPING_FLAT_AMOUNT", 0.0)
    monkeypatch.setattr(Settings, "SHIPPING_FREE_ABOVE", None)
    monkeypatch.setattr(Settings, "TAX_RATE_PERCENT", 0.0)
    monkeypatch.setattr(Settings, "CURRENCY_CODE", "PKR")
    yield
    Base.metadata.drop_all(bind=test_engine)
    app.dependency_overrides.clear()


client = TestClient(app)

NOW = "2026-06-01T12:00:00Z"
OPEN_FROM = "2020-01-01T00:00:00Z"
OPEN_UNTIL = "2099-01-01T00:00:00Z"


# ══════════════════════════════════════════════
#  Helper functions
# ══════════════════════════════════════════════

def create_deal(product_ids=("1",), kind="percent", value=30, priority=0, **kw):
    body = {
        "name": kw.pop("name", "Summer deal"),
        "kind": kind,
        "value": value,
        "priority": priority,
        "valid_from": kw.pop("valid_from", OPEN_FROM),
        "valid_until": kw.pop("valid_until", OPEN_UNTIL),
        "product_ids": list(product_ids),
    }
    body.update(kw)
    return client.post("/deals", json=body)


def create_promotion(kind="percent", value=10, min_order_amount=0, max_discount_amount=None, **kw):
    body = {
        "name": kw.pop("name", "Store-wide"),
        "kind": kind,
        "value": value,
        "min_order_amount": min_order_amount,
        "max_discount_amount": max_discount_amount,
        "valid_from": kw.pop("valid_from", OPEN_FROM),
        "valid_until": kw.pop("valid_until", OPEN_UNTIL),
    }
    body.update(kw)
    return client.post("/promotions", json=body)


def create_coupon(code="FIXED50", kind="fixed", value=50, **kw):
    body = {"code": code, "kind": kind, "value": value}
    body.update(kw)
    return client.post("/coupons", json=body)


def post_raw(url, payload):
    """Post with stdlib json so NaN and Infinity literals reach the server."""
    return client.post(url, content=json.dumps(payload), headers={"Content-Type": "application/json"})


def cart(customer_id=None):
    """Subtotal 1000: 2 x 300 (category 10) + 1 x 400 (category 20)."""
    return {
        "lines": [
            {"product_id": "1", "category_id": "10", "quantity": 2, "unit_price_original": 300},
            {"product_id": "2", "category_id": "20", "quantity": 1, "unit_price_original": 400},
        ],
        "customer_id": customer_id,
    }


def quote(coupon_code=None, customer_id=None):
    return client.post("/checkout/quote", json={"cart": cart(customer_id), "coupon_code": coupon_code, "now": NOW})


def confirm(coupon_code=None, customer_id=None, order_ref="order-1"):
    return client.post("/checkout/confirm", json={
        "cart": cart(customer_id), "coupon_code": coupon_code, "now": NOW, "order_ref": order_ref,
    })


# ══════════════════════════════════════════════
#  CRUD Tests
# ══════════════════════════════════════════════

class TestDealCRUD:

    def test_create_deal(self):
        resp = create_deal(product_ids=[1, 2])
        assert resp.status_code == 201
        body = resp.json()
        assert body["kind"] == "percent"
        assert body["product_ids"] == ["1", "2"]
        assert body["is_active"] is True
        assert body["is_started"] is True
        assert body["is_expired"] is False

    def test_update_deal(self):
        created = create_deal().json()
        resp = client.put(f"/deals/{created['id']}", json={"priority": 7, "is_active": False})
        assert resp.status_code == 200
        assert resp.json()["priority"] == 7
        assert resp.json()["is_active"] is False

    def test_update_deal_rejects_reversed_window(self):
        created = create_deal().json()
        resp = client.put(f"/deals/{created['id']}", json={"valid_until": "2019-01-01T00:00:00Z"})
        assert resp.status_code == 422

    def test_delete_deal(self):
        created = create_deal().json()
        assert client.delete(f"/deals/{created['id']}").status_code == 204
        assert client.get(f"/deals/{created['id']}").status_code == 404

    def test_get_deal_not_found(self):
        assert client.get("/deals/9999").status_code == 404


class TestPromotionCRUD:

    def test_create_promotion(self):
        resp = create_promotion(scope="categories", category_ids=[10])
        assert resp.status_code == 201
        body = resp.json()
        assert body["scope"] == "categories"
        assert body["category_ids"] == ["10"]
        assert body["min_order_amount"] == 0

    def test_clear_max_discount(self):
        created = create_promotion(max_discount_amount=80).json()
        resp = client.put(f"/promotions/{created['id']}", json={"max_discount_amount": None})
        assert resp.status_code == 200
        assert resp.json()["max_discount_amount"] is None

    def test_delete_promotion_not_found(self):
        assert client.delete("/promotions/9999").status_code == 404


class TestCouponCRUD:

    def test_create_coupon_normalizes_code(self):
        resp = create_coupon(code="  summer10 ", kind="percent", value=10)
        assert resp.status_code == 201
        body = resp.json()
        assert body["code"] == "SUMMER10"
        assert body["used_count"] == 0
        assert body["usage_limit"] is None

    def test_duplicate_code_conflicts(self):
        create_coupon(code="SUMMER10")
        resp = create_coupon(code="summer10")
        assert resp.status_code == 409

    def test_rename_to_existing_code_conflicts(self):
        create_coupon(code="ONE1")
        second = create_coupon(code="TWO2").json()
        resp = client.put(f"/coupons/{second['id']}", json={"code": "one1"})
        assert resp.status_code == 409

    def test_used_count_not_editable(self):
        created = create_coupon().json()
        resp = client.put(f"/coupons/{created['id']}", json={"used_count": 99, "is_active": False})
        assert resp.status_code == 200
        assert resp.json()["used_count"] == 0
        assert resp.json()["is_active"] is False

    def test_usage_limit_not_below_used_count(self):
        created = create_coupon(usage_limit=5).json()
        confirm(coupon_code="FIXED50")
        confirm(coupon_code="FIXED50", order_ref="order-2")
        resp = client.put(f"/coupons/{created['id']}", json={"usage_limit": 1})
        assert resp.status_code == 422

    def test_coupon_name_searchable(self):
        resp = create_coupon(code="EID25", name="Eid sale")
        assert resp.status_code == 201
        assert resp.json()["name"] == "Eid sale"
        create_coupon(code="OTHER")
        items = client.get("/coupons", params={"q": "eid sale"}).json()["items"]
        assert [c["code"] for c in items] == ["EID25"]

    def test_delete_coupon(self):
        created = create_coupon().json()
        assert client.delete(f"/coupons/{created['id']}").status_code == 204
        assert client.get(f"/coupons/{created['id']}").status_code == 404


# ══════════════════════════════════════════════
#  Validation Tests
# ══════════════════════════════════════════════

class TestValidation:

    def test_invalid_kind(self):
        assert create_coupon(kind="bogo").status_code == 422

    def test_negative_value(self):
        assert create_deal(value=-5).status_code == 422

    def test_deal_requires_window(self):
        resp = client.post("/deals", json={"name": "x", "kind": "fixed", "value": 5, "valid_from": OPEN_FROM})
        assert resp.status_code == 422

    def test_deal_window_must_be_ordered(self):
        assert create_deal(valid_from=OPEN_UNTIL, valid_until=OPEN_FROM).status_code == 422

    def test_priority_bounded(self):
        assert create_promotion(priority=100001).status_code == 422

    def test_coupon_limit_positive(self):
        assert create_coupon(usage_limit=0).status_code == 422

    def test_non_finite_price_rejected(self):
        body = cart()
        body["lines"][0]["unit_price_original"] = float("nan")
        assert post_raw("/checkout/quote", {"cart": body}).status_code == 422
        body["lines"][0]["unit_price_original"] = float("inf")
        assert post_raw("/checkout/quote", {"cart": body}).status_code == 422

    def test_non_finite_rule_value_rejected(self):
        deal = {"name": "x", "kind": "fixed", "value": float("nan"), "valid_from": OPEN_FROM, "valid_until": OPEN_UNTIL}
        assert post_raw("/deals", deal).status_code == 422
        promotion = {"name": "x", "kind": "fixed", "value": 5, "max_discount_amount": float("inf"),
                     "valid_from": OPEN_FROM, "valid_until": OPEN_UNTIL}
        assert post_raw("/promotions", promotion).status_code == 422
        assert post_raw("/coupons", {"code": "NANNY", "kind": "fixed", "value": float("nan")}).status_code == 422
        assert client.get("/deals").json()["pagination"]["total"] == 0

    def test_blank_code_rejected_on_update(self):
        created = create_coupon().json()
        resp = client.put(f"/coupons/{created['id']}", json={"code": "   "})
        assert resp.status_code == 422
        assert client.get(f"/coupons/{created['id']}").json()["code"] == "FIXED50"

    def test_cart_quantity_positive(self):
        body = cart()
        body["lines"][0]["quantity"] = 0
        resp = client.post("/checkout/quote", json={"cart": body})
        assert resp.status_code == 422


# ══════════════════════════════════════════════
#  Listing Tests
# ══════════════════════════════════════════════

class TestListing:

    def test_status_filters(self):
        create_coupon(code="LIVE")
        create_coupon(code="OFF", is_active=False)
        create_coupon(code="OLD", valid_from="2020-01-01T00:00:00Z", valid_until="2021-01-01T00:00:00Z")

        def codes(status):
            return sorted(c["code"] for c in client.get("/coupons", params={"status": status}).json()["items"])

        assert codes("all") == ["LIVE", "OFF", "OLD"]
        assert codes("active") == ["LIVE"]
        assert codes("inactive") == ["OFF"]
        assert codes("expired") == ["OLD"]

        old = next(c for c in client.get("/coupons").json()["items"] if c["code"] == "OLD")
        assert old["is_expired"] is True

    def test_search_and_pagination(self):
        for i in range(5):
            create_promotion(name=f"Weekend {i}")
        create_promotion(name="Clearance")

        resp = client.get("/promotions", params={"q": "weekend", "limit": 2, "page": 2})
        body = resp.json()
        assert resp.status_code == 200
        assert len(body["items"]) == 2
        assert body["pagination"] == {"page": 2, "limit": 2, "total": 5, "pages": 3}

    def test_priority_sort(self):
        create_deal(name="low", priority=1)
        create_deal(name="high", priority=9)
        names = [d["name"] for d in client.get("/deals").json()["items"]]
        assert names == ["high", "low"]

    def test_limit_bounded(self):
        assert client.get("/coupons", params={"limit": 51}).status_code == 422


# ══════════════════════════════════════════════
#  Storefront Tests
# ══════════════════════════════════════════════

class TestStorefront:

    def test_resolve_best_deal(self):
        create_deal(product_ids=["1"], value=10, priority=5, name="small")
        create_deal(product_ids=["1"], value=30, priority=10, name="big")
        resp = client.post("/deals/resolve", json={
            "product": {"id": 1, "base_price": 100, "category_id": 10}, "now": NOW,
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["price"] == 70.0
        assert body["deal"]["name"] == "big"
        assert body["deal"]["label"] == "30% OFF"

    def test_resolve_without_deal(self):
        resp = client.post("/deals/resolve", json={"product": {"id": "5", "base_price": 42.5}, "now": NOW})
        assert resp.json()["price"] == 42.5
        assert resp.json()["deal"] is None

    def test_deal_not_started_yet(self):
        create_deal(valid_from="2026-06-01T12:00:01Z")
        resp = client.post("/deals/resolve", json={"product": {"id": "1", "base_price": 100}, "now": NOW})
        assert resp.json()["deal"] is None

    def test_super_deals(self):
        create_deal(product_ids=["1", "3"], kind="fixed", value=25)
        resp = client.post("/deals/super", json={
            "products": [
                {"id": "1", "base_price": 100, "category_id": "10"},
                {"id": "2", "base_price": 80, "category_id": "10"},
                {"id": "3", "base_price": 60, "category_id": "20", "is_active": False},
            ],
            "now": NOW,
        })
        items = resp.json()["items"]
        assert [i["product_id"] for i in items] == ["1"]
        assert items[0]["deal_price"] == 75.0
        assert items[0]["deal"]["label"] == "PKR 25 OFF"


# ══════════════════════════════════════════════
#  Checkout Tests
# ══════════════════════════════════════════════

class TestCheckout:

    def test_quote_without_rules(self):
        resp = quote()
        assert resp.status_code == 200
        totals = resp.json()["totals"]
        assert totals["items_subtotal"] == 1000.0
        assert totals["discount_amount"] == 0.0
        assert totals["total_amount"] == 1000.0

    def test_quote_promotion_and_coupon(self):
        """10% promotion capped at 80 plus FIXED50: 1000 - 130 = 870"""
        create_promotion(value=10, min_order_amount=500, max_discount_amount=80)
        create_coupon(code="FIXED50", value=50)
        body = quote(coupon_code="fixed50").json()
        totals = body["totals"]
        assert totals["promotion_discount_amount"] == 80.0
        assert totals["coupon_discount_amount"] == 50.0
        assert totals["discount_amount"] == 130.0
        assert totals["total_amount"] == 870.0
        assert body["promotion"]["name"] == "Store-wide"
        assert body["coupon"] == {"code": "FIXED50", "ok": True, "error": None, "message": None}

    def test_quote_applies_deals_before_cart_discounts(self):
        create_deal(product_ids=["2"], kind="fixed", value=100)
        create_promotion(value=10)
        body = quote().json()
        line = next(l for l in body["lines"] if l["product_id"] == "2")
        assert line["unit_price_after_deal"] == 300.0
        assert line["deal_label"] == "PKR 100 OFF"
        assert body["totals"]["items_subtotal"] == 900.0
        assert body["totals"]["promotion_discount_amount"] == 90.0

    def test_scoped_coupon_discounts_only_its_lines(self):
        """50% off product 2 (400) takes 200, not half the 1000 cart."""
        create_coupon(code="HALF2", kind="percent", value=50, scope="products", product_ids=["2"])
        totals = quote(coupon_code="HALF2").json()["totals"]
        assert totals["coupon_discount_amount"] == 200.0
        assert totals["total_amount"] == 800.0

    def test_quote_reports_invalid_coupon(self):
        body = quote(coupon_code="NOPE").json()
        assert body["coupon"]["ok"] is False
        assert body["coupon"]["error"] == "not_found"
        assert body["totals"]["coupon_discount_amount"] == 0.0

    def test_quote_adds_shipping_and_tax(self, monkeypatch):
        monkeypatch.setattr(Settings, "SHIPPING_FLAT_AMOUNT", 150.0)
        monkeypatch.setattr(Settings, "TAX_RATE_PERCENT", 10.0)
        create_coupon(code="FIXED50", value=50)
        totals = quote(coupon_code="FIXED50").json()["totals"]
        assert totals["shipping_amount"] == 150.0
        assert totals["tax_amount"] == 95.0
        assert totals["total_amount"] == 1195.0

    def test_validate_coupon(self):
        create_coupon(code="FIXED50", value=50)
        resp = client.post("/coupons/validate", json={"code": "fixed50", "cart": cart(), "now": NOW})
        assert resp.status_code == 200
        assert resp.json()["discount"] == 50.0

    def test_validate_coupon_below_min_order(self):
        create_coupon(code="BIG", min_order_amount=5000)
        resp = client.post("/coupons/validate", json={"code": "BIG", "cart": cart(), "now": NOW})
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "below_min_order"
        assert resp.json()["detail"]["message"] == "Min order 5000.00"

    def test_validate_expired_coupon(self):
        create_coupon(code="OLD", valid_from="2020-01-01T00:00:00Z", valid_until="2021-01-01T00:00:00Z")
        resp = client.post("/coupons/validate", json={"code": "OLD", "cart": cart(), "now": NOW})
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "expired"

    def test_validation_does_not_consume_budget(self):
        created = create_coupon(usage_limit=1).json()
        for _ in range(3):
            client.post("/coupons/validate", json={"code": "FIXED50", "cart": cart(), "now": NOW})
            quote(coupon_code="FIXED50")
        assert client.get(f"/coupons/{created['id']}").json()["used_count"] == 0


class TestConfirm:

    def test_confirm_redeems_coupon(self):
        created = create_coupon(usage_limit=2).json()
        resp = confirm(coupon_code="FIXED50")
        assert resp.status_code == 200
        body = resp.json()
        assert body["coupon_used_count"] == 1
        assert body["order_ref"] == "order-1"
        assert body["totals"]["total_amount"] == 950.0
        assert client.get(f"/coupons/{created['id']}").json()["used_count"] == 1

    def test_confirm_without_coupon(self):
        resp = confirm()
        assert resp.status_code == 200
        assert resp.json()["coupon_used_count"] is None

    def test_exhausted_coupon_rejected_on_confirm(self):
        create_coupon(usage_limit=1)
        assert confirm(coupon_code="FIXED50").status_code == 200
        resp = confirm(coupon_code="FIXED50", order_ref="order-2")
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "usage_limit_exceeded"

    def test_per_customer_limit(self):
        create_coupon(usage_limit_per_customer=1)
        assert confirm(coupon_code="FIXED50", customer_id="a@example.com").status_code == 200
        resp = confirm(coupon_code="FIXED50", customer_id="A@example.com", order_ref="order-2")
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "per_customer_limit_exceeded"
        other = confirm(coupon_code="FIXED50", customer_id="b@example.com", order_ref="order-3")
        assert other.status_code == 200

    def test_per_customer_limit_needs_customer(self):
        create_coupon(usage_limit_per_customer=1)
        resp = confirm(coupon_code="FIXED50")
        assert resp.status_code == 400
        assert resp.json()["detail"]["message"] == "Enter email to apply this coupon"

    def test_lost_race_is_conflict(self, monkeypatch):
        create_coupon(usage_limit=1)

        def exhausted(db, coupon_id, customer_id=None, order_ref=None):
            raise UsageLimitExceeded(coupon_id)

        monkeypatch.setattr(main, "commit_redemption", exhausted)
        resp = confirm(coupon_code="FIXED50")
        assert resp.status_code == 409
        assert resp.json()["detail"]["error"] == "usage_limit_exceeded"


class TestHealth:

    def test_root(self):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
