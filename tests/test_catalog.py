"""Tests for categories, products, reviews and the stock endpoints."""

from bson import ObjectId

from conftest import auth_headers


def new_product(category, **fields):
    body = {
        "name": "Ibuprofen",
        "description": "400mg coated tablets",
        "price": 6.5,
        "images": ["ibuprofen.jpg"],
        "stock": 20,
        "category_id": str(category["_id"]),
    }
    body.update(fields)
    return body


class TestCategories:
    def test_create_derives_slug(self, client, admin_headers):
        response = client.post("/categories", headers=admin_headers, json={"name": "  Baby & Mother Care "})
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["name"] == "Baby & Mother Care"
        assert data["slug"] == "baby-mother-care"
        assert data["parent"] is None

    def test_duplicate_name(self, client, admin_headers, category):
        response = client.post("/categories", headers=admin_headers, json={"name": "Pain Relief"})
        assert response.status_code == 400

    def test_customer_cannot_create(self, client, customer_headers):
        assert client.post("/categories", headers=customer_headers, json={"name": "X"}).status_code == 403

    def test_parent_enrichment(self, client, admin_headers, category):
        child = client.post("/categories", headers=admin_headers, json={
            "name": "Headache", "parent_id": str(category["_id"]),
        }).json()["data"]
        fetched = client.get(f"/categories/{child['id']}").json()["data"]
        assert fetched["parent"] == {"id": str(category["_id"]), "name": "Pain Relief", "slug": "pain-relief"}

    def test_unknown_parent(self, client, admin_headers):
        response = client.post("/categories", headers=admin_headers, json={
            "name": "Orphan", "parent_id": str(ObjectId()),
        })
        assert response.status_code == 404

    def test_rename_updates_slug(self, client, admin_headers, category):
        response = client.put(f"/categories/{category['_id']}", headers=admin_headers, json={"name": "Pain Killers"})
        assert response.json()["data"]["slug"] == "pain-killers"

    def test_delete_refused_with_children(self, client, admin_headers, category):
        client.post("/categories", headers=admin_headers, json={"name": "Child", "parent_id": str(category["_id"])})
        response = client.delete(f"/categories/{category['_id']}", headers=admin_headers)
        assert response.status_code == 400

    def test_delete(self, client, db, admin_headers, category):
        assert client.delete(f"/categories/{category['_id']}", headers=admin_headers).status_code == 200
        assert db["category"].count_documents({}) == 0

    def test_invalid_id(self, client):
        response = client.get("/categories/not-an-id")
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid id format"


class TestProductListing:
    def test_only_active_products(self, client, make_product):
        make_product(name="Visible")
        make_product(name="Hidden", is_active=False, deactivation_reason="admin")
        data = client.get("/products").json()["data"]
        assert [p["name"] for p in data["items"]] == ["Visible"]
        assert data["total"] == 1
        assert data["pages"] == 1

    def test_filters_and_sort(self, client, make_product):
        make_product(name="Cheap", price=2)
        make_product(name="Mid", price=10)
        make_product(name="Dear", price=30)
        data = client.get("/products?min_price=5&sort=price_desc").json()["data"]
        assert [p["name"] for p in data["items"]] == ["Dear", "Mid"]

    def test_on_sale(self, client, make_product):
        make_product(name="Regular")
        make_product(name="Discounted", promo_price=40)
        data = client.get("/products?on_sale=true").json()["data"]
        assert [p["name"] for p in data["items"]] == ["Discounted"]

    def test_pagination(self, client, make_product):
        for i in range(5):
            make_product(name=f"P{i}", price=i + 1)
        data = client.get("/products?sort=price_asc&page=2&limit=2").json()["data"]
        assert [p["name"] for p in data["items"]] == ["P2", "P3"]
        assert data["pages"] == 3

    def test_unknown_sort(self, client):
        assert client.get("/products?sort=random").status_code == 400

    def test_search_escapes_input(self, client, make_product):
        make_product(name="Vitamin C (1000mg)")
        make_product(name="Vitamin D")
        data = client.get("/products/search", params={"q": "c (1000"}).json()["data"]
        assert [p["name"] for p in data] == ["Vitamin C (1000mg)"]

    def test_search_requires_term(self, client):
        assert client.get("/products/search?q=").status_code == 400

    def test_detail_includes_category_and_price(self, client, product):
        data = client.get(f"/products/{product['_id']}").json()["data"]
        assert data["category"]["slug"] == "pain-relief"
        assert data["current_price"] == 50.0
        assert "stock_movements" not in data

    def test_unknown_product(self, client):
        response = client.get(f"/products/{ObjectId()}")
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Product not found"}


class TestProductAdmin:
    def test_create(self, client, db, admin_headers, category):
        response = client.post("/products", headers=admin_headers, json=new_product(category))
        assert response.status_code == 201
        stored = db["product"].find_one({"name": "Ibuprofen"})
        assert stored["stock"] == 20
        assert stored["stock_movements"][0]["type"] == "entry"

    def test_create_without_stock_is_inactive(self, client, db, admin_headers, category):
        client.post("/products", headers=admin_headers, json=new_product(category, stock=0))
        stored = db["product"].find_one({"name": "Ibuprofen"})
        assert stored["is_active"] is False
        assert stored["deactivation_reason"] == "out_of_stock"

    def test_create_unknown_category(self, client, admin_headers, category):
        body = new_product(category, category_id=str(ObjectId()))
        assert client.post("/products", headers=admin_headers, json=body).status_code == 404

    def test_create_negative_price(self, client, admin_headers, category):
        response = client.post("/products", headers=admin_headers, json=new_product(category, price=-1))
        assert response.status_code == 400

    def test_admin_deactivation_reason(self, client, db, admin_headers, product):
        client.put(f"/products/{product['_id']}", headers=admin_headers, json={"is_active": False})
        stored = db["product"].find_one({"_id": product["_id"]})
        assert stored["is_active"] is False
        assert stored["deactivation_reason"] == "admin"

    def test_update_stock_records_adjustment(self, client, db, admin_headers, product):
        client.put(f"/products/{product['_id']}", headers=admin_headers, json={"stock": 3, "price": 45})
        stored = db["product"].find_one({"_id": product["_id"]})
        assert stored["price"] == 45
        assert stored["stock"] == 3
        assert stored["stock_movements"][-1]["type"] == "adjustment"


class TestReviews:
    def test_review_updates_rating(self, client, make_user, product, customer_headers):
        client.post(f"/products/{product['_id']}/reviews", headers=customer_headers,
                    json={"rating": 5, "comment": "Works fast"})
        other = auth_headers(make_user("tom@shop.com", name="Tom"))
        response = client.post(f"/products/{product['_id']}/reviews", headers=other,
                               json={"rating": 2, "comment": "Meh"})
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["rating"] == 3.5
        assert data["rating_count"] == 2

    def test_one_review_per_user(self, client, product, customer_headers):
        body = {"rating": 4, "comment": "Good"}
        client.post(f"/products/{product['_id']}/reviews", headers=customer_headers, json=body)
        response = client.post(f"/products/{product['_id']}/reviews", headers=customer_headers, json=body)
        assert response.status_code == 400

    def test_rating_range(self, client, product, customer_headers):
        response = client.post(f"/products/{product['_id']}/reviews", headers=customer_headers,
                               json={"rating": 6, "comment": "!"})
        assert response.status_code == 400


class TestStockEndpoints:
    def test_restock_and_history(self, client, admin_headers, product):
        response = client.post(f"/products/{product['_id']}/restock", headers=admin_headers,
                               json={"quantity": 5, "reference": "PO-17"})
        assert response.json()["data"]["stock"] == 15
        history = client.get(f"/products/{product['_id']}/stock-history", headers=admin_headers).json()["data"]
        assert history["movements"][0]["reference"] == "PO-17"
        assert history["is_low_stock"] is False

    def test_adjust_to_zero_deactivates(self, client, db, admin_headers, product):
        client.put(f"/products/{product['_id']}/adjust-stock", headers=admin_headers,
                   json={"stock": 0, "reason": "expired batch"})
        assert db["product"].find_one({"_id": product["_id"]})["is_active"] is False

    def test_low_stock(self, client, admin_headers, make_product):
        make_product(name="Plenty", stock=50)
        low = make_product(name="Scarce", stock=8)
        client.put(f"/products/{low['_id']}/stock-settings", headers=admin_headers,
                   json={"low_stock_threshold": 10})
        data = client.get("/products/low-stock", headers=admin_headers).json()["data"]
        assert [p["name"] for p in data] == ["Scarce"]

    def test_reserve(self, client, customer_headers, product):
        response = client.post(f"/products/{product['_id']}/reserve", headers=customer_headers,
                               json={"quantity": 4})
        assert response.json()["data"]["stock"] == 6

    def test_reserve_more_than_stock(self, client, customer_headers, product):
        response = client.post(f"/products/{product['_id']}/reserve", headers=customer_headers,
                               json={"quantity": 11})
        assert response.status_code == 400
        assert response.json()["available"] == 10

    def test_stock_endpoints_require_admin(self, client, customer_headers, product):
        response = client.post(f"/products/{product['_id']}/restock", headers=customer_headers,
                               json={"quantity": 5})
        assert response.status_code == 403
