"""Tests for courier and coupon administration, seeding and statistics."""

from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from conftest import ADDRESS, PASSWORD


def coupon_body(**fields):
    body = {
        "code": "welcome",
        "description": "Welcome offer",
        "value": 15,
        "ends_at": (datetime.utcnow() + timedelta(days=30)).isoformat(),
    }
    body.update(fields)
    return body


class TestCouriers:
    def test_create_and_login(self, client, admin_headers):
        response = client.post("/admin/couriers", headers=admin_headers, json={
            "name": "Carl", "email": "carl@shop.com", "password": "secret6", "phone": "555-0199",
        })
        assert response.status_code == 201
        assert response.json()["data"]["role"] == "courier"
        login = client.post("/auth/login", json={"email": "carl@shop.com", "password": "secret6"})
        assert login.status_code == 200

    def test_duplicate_email(self, client, admin_headers, customer):
        response = client.post("/admin/couriers", headers=admin_headers, json={
            "name": "Carl", "email": "jane@shop.com", "password": "secret6", "phone": "555",
        })
        assert response.status_code == 400

    def test_list_and_get(self, client, admin_headers, courier, customer):
        couriers = client.get("/admin/couriers", headers=admin_headers).json()["data"]
        assert [c["email"] for c in couriers] == ["bob@shop.com"]
        detail = client.get(f"/admin/couriers/{courier['_id']}", headers=admin_headers).json()["data"]
        assert detail["orders"] == []

    def test_get_non_courier(self, client, admin_headers, customer):
        assert client.get(f"/admin/couriers/{customer['_id']}", headers=admin_headers).status_code == 400

    def test_update(self, client, admin_headers, courier):
        response = client.put(f"/admin/couriers/{courier['_id']}", headers=admin_headers,
                              json={"phone": "555-0000", "is_active": False})
        data = response.json()["data"]
        assert data["phone"] == "555-0000"
        assert data["is_active"] is False

    def test_reset_password(self, client, admin_headers, courier):
        response = client.put(f"/admin/couriers/{courier['_id']}/reset-password", headers=admin_headers,
                              json={"password": "fresh-one"})
        assert response.status_code == 200
        assert client.post("/auth/login", json={"email": "bob@shop.com", "password": "fresh-one"}).status_code == 200
        assert client.post("/auth/login", json={"email": "bob@shop.com", "password": PASSWORD}).status_code == 400

    def test_delete_refused_with_open_orders(self, client, db, admin_headers, courier):
        db["order"].insert_one({"courier_id": str(courier["_id"]), "status": "shipped"})
        response = client.delete(f"/admin/couriers/{courier['_id']}", headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["assigned_orders"] == 1

    def test_delete_detaches_past_orders(self, client, db, admin_headers, courier):
        oid = db["order"].insert_one({"courier_id": str(courier["_id"]), "status": "delivered"}).inserted_id
        assert client.delete(f"/admin/couriers/{courier['_id']}", headers=admin_headers).status_code == 200
        assert db["order"].find_one({"_id": oid})["courier_id"] is None
        assert db["user"].find_one({"_id": courier["_id"]}) is None

    def test_requires_admin(self, client, courier_headers):
        assert client.get("/admin/couriers", headers=courier_headers).status_code == 403

    def test_delivery_stats(self, client, db, admin_headers, courier):
        for total in (10, 15.5):
            db["order"].insert_one({"courier_id": str(courier["_id"]), "status": "delivered", "total": total})
        data = client.get("/admin/delivery-stats", headers=admin_headers).json()["data"]
        assert data["total_couriers"] == 1
        assert data["active_couriers"] == 1
        assert data["top_couriers"] == [{
            "courier_id": str(courier["_id"]), "name": "Bob", "total_deliveries": 2, "total_amount": 25.5,
        }]


class TestCoupons:
    def test_create_uppercases_code(self, client, admin_headers):
        response = client.post("/admin/coupons", headers=admin_headers, json=coupon_body())
        assert response.status_code == 201
        assert response.json()["data"]["code"] == "WELCOME"
        assert response.json()["data"]["used_count"] == 0

    def test_duplicate_code(self, client, admin_headers, make_coupon):
        make_coupon(code="WELCOME")
        assert client.post("/admin/coupons", headers=admin_headers, json=coupon_body()).status_code == 400

    def test_percentage_bounds(self, client, admin_headers):
        response = client.post("/admin/coupons", headers=admin_headers, json=coupon_body(value=101))
        assert response.status_code == 400

    def test_end_before_start(self, client, admin_headers):
        body = coupon_body(ends_at=(datetime.utcnow() - timedelta(days=1)).isoformat())
        assert client.post("/admin/coupons", headers=admin_headers, json=body).status_code == 400

    def test_update_keeps_usage(self, client, db, admin_headers, make_coupon):
        coupon = make_coupon(code="KEEP", used_count=4)
        response = client.put(f"/admin/coupons/{coupon['_id']}", headers=admin_headers,
                              json={"value": 25, "max_uses": 10})
        data = response.json()["data"]
        assert data["value"] == 25
        assert data["max_uses"] == 10
        assert data["used_count"] == 4

    def test_list_get_delete(self, client, db, admin_headers, make_coupon):
        coupon = make_coupon()
        assert len(client.get("/admin/coupons", headers=admin_headers).json()["data"]) == 1
        assert client.get(f"/admin/coupons/{coupon['_id']}", headers=admin_headers).json()["data"]["code"] == "SAVE10"
        assert client.delete(f"/admin/coupons/{coupon['_id']}", headers=admin_headers).status_code == 200
        assert client.get(f"/admin/coupons/{coupon['_id']}", headers=admin_headers).status_code == 404

    def test_unknown_coupon(self, client, admin_headers):
        assert client.get(f"/admin/coupons/{ObjectId()}", headers=admin_headers).status_code == 404


class TestSeed:
    def test_seed_empty_catalog(self, client, db, admin_headers):
        data = client.post("/admin/seed", headers=admin_headers).json()["data"]
        assert data["seeded"] is True
        assert db["product"].count_documents({}) == data["products"]
        assert db["promotion"].count_documents({"promo_code": "SUN3"}) == 1

    def test_seed_skips_existing_catalog(self, client, db, admin_headers, product):
        response = client.post("/admin/seed", headers=admin_headers)
        assert response.json()["data"]["seeded"] is False
        assert db["product"].count_documents({}) == 1


class TestStatistics:
    @pytest.fixture
    def sales(self, db, customer, make_user, make_product, category):
        aspirin = make_product(name="Aspirin", price=5)
        other = make_user("tom@shop.com")
        rows = [
            (customer, "delivered", datetime(2026, 1, 15), [(aspirin, 4)]),
            (customer, "shipped", datetime(2026, 3, 2), [(aspirin, 1)]),
            (other, "delivered", datetime(2026, 3, 20), [(aspirin, 2)]),
            (other, "cancelled", datetime(2026, 3, 21), [(aspirin, 9)]),
            (other, "pending", datetime(2025, 12, 31), [(aspirin, 1)]),
        ]
        for user, status, created, lines in rows:
            items = [{"product_id": str(p["_id"]), "name": p["name"], "quantity": q, "unit_price": p["price"],
                      "line_total": p["price"] * q} for p, q in lines]
            total = sum(it["line_total"] for it in items)
            db["order"].insert_one({
                "user_id": str(user["_id"]), "status": status, "items": items, "subtotal": total,
                "total": total, "shipping_address": ADDRESS, "created_at": created,
            })
        return aspirin

    def test_general(self, client, admin_headers, sales):
        data = client.get("/statistics/general", headers=admin_headers).json()["data"]
        assert data["total_orders"] == 5
        assert data["delivered_orders"] == 2
        assert data["revenue"] == 30
        assert data["unique_customers"] == 2
        assert data["orders_by_status"]["cancelled"] == 1
        assert data["conversion_rate"] == 40

    def test_best_sellers(self, client, admin_headers, sales):
        data = client.get("/statistics/best-sellers?limit=3", headers=admin_headers).json()["data"]
        assert data == [{"product_id": str(sales["_id"]), "name": "Aspirin", "quantity": 7, "revenue": 35}]

    def test_best_sellers_limit_bounds(self, client, admin_headers):
        assert client.get("/statistics/best-sellers?limit=0", headers=admin_headers).status_code == 400
        assert client.get("/statistics/best-sellers?limit=51", headers=admin_headers).status_code == 400

    def test_sales_by_category(self, client, admin_headers, category, sales):
        data = client.get("/statistics/sales-by-category", headers=admin_headers).json()["data"]
        assert data == [{"category_id": str(category["_id"]), "name": "Pain Relief", "quantity": 7,
                         "revenue": 35, "share": 100}]

    def test_monthly_sales(self, client, admin_headers, sales):
        data = client.get("/statistics/monthly-sales?year=2026", headers=admin_headers).json()["data"]
        assert len(data["months"]) == 12
        assert data["months"][0] == {"month": 1, "orders": 1, "revenue": 20}
        assert data["months"][2] == {"month": 3, "orders": 2, "revenue": 15}

    def test_bad_year(self, client, admin_headers):
        response = client.get("/statistics/monthly-sales?year=abc", headers=admin_headers)
        assert response.status_code == 400

    def test_requires_statistics_capability(self, client, customer_headers):
        assert client.get("/statistics/general", headers=customer_headers).status_code == 403
