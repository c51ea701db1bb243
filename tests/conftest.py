import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main


@pytest.fixture
def mongo(monkeypatch):
    mock_db = mongomock.MongoClient()["eris_cafe_test"]
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(main, "db", mock_db)
    return mock_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


def make_user(mongo, name, email, role="customer"):
    user_id = str(mongo["user"].insert_one({
        "name": name,
        "email": email,
        "role": role,
        "cart": [],
        "is_active": True,
    }).inserted_id)
    token = main.create_token({"id": user_id, "email": email, "name": name, "role": role})
    return {"id": user_id, "headers": {"Authorization": f"Bearer {token}"}}


@pytest.fixture
def customer(mongo):
    return make_user(mongo, "Ana Cruz", "ana@mail.com")


@pytest.fixture
def other_customer(mongo):
    return make_user(mongo, "Ben Reyes", "ben@mail.com")


@pytest.fixture
def admin(mongo):
    return make_user(mongo, "Eris Admin", "admin@mail.com", role="admin")


@pytest.fixture
def latte(client, admin):
    res = client.post("/api/products", json={
        "name": "Latte",
        "price": 120.0,
        "description": "Espresso with steamed milk",
        "category": "Coffee",
    }, headers=admin["headers"])
    return res.json()["data"]


@pytest.fixture
def croissant(client, admin):
    res = client.post("/api/products", json={
        "name": "Croissant",
        "price": 85.5,
        "description": "Butter croissant",
        "category": "Pastry",
    }, headers=admin["headers"])
    return res.json()["data"]
