import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import ensure_indexes, get_db


@pytest.fixture
def db():
    database = mongomock.MongoClient()["shop_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db, tmp_path, monkeypatch):
    monkeypatch.setattr(main, "UPLOAD_DIR", str(tmp_path))
    main.app.dependency_overrides[get_db] = lambda: db
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def admin(db):
    uid = db["user"].insert_one({
        "name": "Admin",
        "email": "admin@shop.com",
        "password_hash": main.hash_password("admin123"),
        "phone": "555-0100",
        "is_admin": True,
    }).inserted_id
    return uid


@pytest.fixture
def auth(admin):
    token = main.create_token({"id": str(admin), "is_admin": True})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer(db):
    return db["user"].insert_one({
        "name": "Jane",
        "email": "jane@example.com",
        "password_hash": main.hash_password("secret"),
        "phone": "555-0101",
        "is_admin": False,
    }).inserted_id


@pytest.fixture
def category(db):
    return db["category"].insert_one({"name": "Mobiles", "icon": "phone", "color": "#fff"}).inserted_id


@pytest.fixture
def make_product(db, category):
    def _make(price, name="Item", **extra):
        doc = {
            "name": name,
            "description": f"{name} description",
            "price": price,
            "category": category,
            "count_in_stock": 10,
            "is_featured": False,
        }
        doc.update(extra)
        return db["product"].insert_one(doc).inserted_id
    return _make


SHIPPING = {
    "shipping_address1": "1 Main St",
    "shipping_address2": "Flat 2",
    "city": "Springfield",
    "zip": "12345",
    "country": "US",
    "phone": "555-0199",
}
