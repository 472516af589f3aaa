"""Pytest fixtures for storefront tests."""

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
from schemas import UserOut


@pytest.fixture
def db():
    """In-memory MongoDB with the production indexes."""
    client = mongomock.MongoClient()
    mock_db = client["storefront_test"]
    database.ensure_indexes(mock_db)
    yield mock_db
    client.close()


def _insert_user(db, name, email, role):
    user_id = db["user"].insert_one(
        {"name": name, "email": email, "role": role, "password_hash": "", "is_active": True}
    ).inserted_id
    return UserOut(id=str(user_id), name=name, email=email, role=role)


@pytest.fixture
def customer(db):
    return _insert_user(db, "Asha Rao", "asha@example.com", "user")


@pytest.fixture
def other_customer(db):
    return _insert_user(db, "Ben Cole", "ben@example.com", "user")


@pytest.fixture
def admin(db):
    return _insert_user(db, "Store Admin", "admin@example.com", "admin")


@pytest.fixture
def make_product(db):
    """Insert a product document and return its id as a string."""

    def _make(name="Desk Lamp", price=100.0, stock=10, discount_price=None, category="Home", **extra):
        doc = {
            "name": name,
            "description": f"{name} description",
            "price": price,
            "discount_price": discount_price,
            "image": "https://via.placeholder.com/300",
            "category": category,
            "stock": stock,
            "rating": 0,
            "num_reviews": 0,
            "reviews": [],
            "is_active": True,
            "created_at": database.now_utc(),
            **extra,
        }
        return str(db["product"].insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def stock_of(db):
    def _stock(product_id):
        return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]

    return _stock


@pytest.fixture
def address():
    return {
        "name": "Asha Rao",
        "phone": "9876543210",
        "street": "12 Park Street",
        "city": "Pune",
        "state": "MH",
        "zip_code": "411001",
        "country": "India",
    }


@pytest.fixture
def client(db):
    from main import app, get_db

    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    from main import create_access_token

    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token({'sub': user.id})}"}

    return _headers
