"""Tests for the health endpoints, error envelopes and rate limiting."""

from fastapi.testclient import TestClient

from main import app, status_for
from errors import CouponError, InsufficientStockError, NotFoundError, RateLimitError
from rate_limit import FixedWindowLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestHealth:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "running" in response.json()["message"]

    def test_database_status_without_connection(self):
        data = TestClient(app).get("/test").json()
        assert data["backend"] == "running"
        assert data["connection_status"] == "Not Connected"

    def test_data_endpoints_need_a_database(self):
        response = TestClient(app).get("/products")
        assert response.status_code == 503
        assert response.json() == {"success": False, "message": "Database not configured"}


class TestErrorEnvelope:
    def test_validation_errors_listed_per_field(self, client):
        response = client.post("/auth/register", json={"name": "Jane", "email": "not-an-email"})
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        fields = {err["field"] for err in body["errors"]}
        assert {"email", "password"} <= fields

    def test_unknown_route(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_invalid_id(self, client):
        response = client.get("/products/not-an-id")
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid id format"

    def test_subclasses_inherit_status(self):
        assert status_for(InsufficientStockError("Aspirin", 2)) == 400
        assert status_for(CouponError("Coupon expired")) == 400
        assert status_for(NotFoundError("Order")) == 404
        assert status_for(RateLimitError("cart", 5)) == 429


class TestRateLimit:
    def test_payments_ceiling(self, client):
        for _ in range(20):
            assert client.post("/payments", json={}).status_code == 401
        response = client.post("/payments", json={})
        assert response.status_code == 429
        assert response.json()["retry_after"] > 0

    def test_groups_are_counted_separately(self, client):
        for _ in range(20):
            client.post("/payments", json={})
        assert client.post("/auth/login", json={"email": "a@b.com", "password": "x"}).status_code == 400


class TestFixedWindowLimiter:
    def test_blocks_after_limit(self):
        clock = FakeClock()
        limiter = FixedWindowLimiter(60, clock=clock)
        assert limiter.hit("cart", "ip:1", 2) is None
        assert limiter.hit("cart", "ip:1", 2) is None
        clock.now += 15
        assert limiter.hit("cart", "ip:1", 2) == 45

    def test_window_resets(self):
        clock = FakeClock()
        limiter = FixedWindowLimiter(60, clock=clock)
        limiter.hit("cart", "ip:1", 1)
        assert limiter.hit("cart", "ip:1", 1) is not None
        clock.now += 60
        assert limiter.hit("cart", "ip:1", 1) is None

    def test_keys_are_independent(self):
        limiter = FixedWindowLimiter(60, clock=FakeClock())
        limiter.hit("cart", "ip:1", 1)
        assert limiter.hit("cart", "ip:2", 1) is None
        assert limiter.hit("orders", "ip:1", 1) is None

    def test_expired_windows_are_dropped(self):
        clock = FakeClock()
        limiter = FixedWindowLimiter(60, clock=clock)
        for n in range(1000):
            limiter.hit("cart", f"ip:{n}", 5)
        assert len(limiter) == 1000
        clock.now += 60
        limiter.hit("cart", "ip:new", 5)
        assert len(limiter) == 1

    def test_live_windows_survive_a_sweep(self):
        clock = FakeClock()
        limiter = FixedWindowLimiter(60, clock=clock)
        limiter.hit("cart", "ip:old", 1)
        clock.now += 30
        limiter.hit("cart", "ip:recent", 1)
        clock.now += 30
        limiter.hit("cart", "ip:new", 1)
        assert len(limiter) == 2
        assert limiter.hit("cart", "ip:recent", 1) == 30
