"""Pytest fixtures for the storefront API tests."""

import os

os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_ENABLED"] = "true"
os.environ.pop("DATABASE_URL", None)

from datetime import datetime, timedelta  # noqa: E402

import mongomock  # noqa: E402
import pytest  # noqa: E402
from bson import ObjectId  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from database import create_document, get_db  # noqa: E402
from main import app  # noqa: E402
from rate_limit import limiter  # noqa: E402
from schemas import Category, Coupon, Product, Role, User  # noqa: E402
from security import create_token, hash_password  # noqa: E402

PASSWORD = "Secret1!"

ADDRESS = {
    "full_name": "Jane Customer",
    "line1": "12 Market Street",
    "city": "Springfield",
    "postal_code": "12345",
    "country": "US",
}


@pytest.fixture
def db():
    """In-memory MongoDB database."""
    return mongomock.MongoClient()["pharmacy_test"]


@pytest.fixture
def client(db):
    """Test client bound to the in-memory database."""
    app.dependency_overrides[get_db] = lambda: db
    limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()
    limiter.reset()


@pytest.fixture
def make_user(db):
    def _make(email, role=Role.customer, name="Test User", password=PASSWORD, **fields):
        user = User(name=name, email=email, hashed_password=hash_password(password), role=role, **fields)
        uid = create_document(db, "user", user)
        return db["user"].find_one({"_id": ObjectId(uid)})

    return _make


def auth_headers(user):
    return {"Authorization": f"Bearer {create_token(user)}"}


@pytest.fixture
def admin(make_user):
    return make_user("admin@shop.com", role=Role.admin, name="Admin")


@pytest.fixture
def customer(make_user):
    return make_user("jane@shop.com", name="Jane")


@pytest.fixture
def courier(make_user):
    return make_user("bob@shop.com", role=Role.courier, name="Bob", phone="555-0101")


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture
def customer_headers(customer):
    return auth_headers(customer)


@pytest.fixture
def courier_headers(courier):
    return auth_headers(courier)


@pytest.fixture
def category(db):
    cid = create_document(db, "category", Category(name="Pain Relief", slug="pain-relief"))
    return db["category"].find_one({"_id": ObjectId(cid)})


@pytest.fixture
def make_product(db, category):
    def _make(name="Paracetamol", price=50.0, stock=10, **fields):
        fields.setdefault("category_id", str(category["_id"]))
        product = Product(name=name, description=f"{name} tablets", price=price, stock=stock, **fields)
        pid = create_document(db, "product", product)
        return db["product"].find_one({"_id": ObjectId(pid)})

    return _make


@pytest.fixture
def product(make_product):
    return make_product()


@pytest.fixture
def make_coupon(db):
    def _make(code="SAVE10", value=10, **fields):
        now = datetime.utcnow()
        fields.setdefault("starts_at", now - timedelta(days=1))
        fields.setdefault("ends_at", now + timedelta(days=30))
        coupon = Coupon(code=code, description=f"{code} coupon", value=value, **fields)
        cid = create_document(db, "coupon", coupon)
        return db["coupon"].find_one({"_id": ObjectId(cid)})

    return _make
