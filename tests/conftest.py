"""
Shared fixtures: an in-memory Mongo per test, an API client and factories
for the documents most tests need.
"""
from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import database
import main
import referrals
from schemas import Admin, Affiliate, ApplicationData, Product, User


@pytest.fixture
def db(monkeypatch):
    test_db = mongomock.MongoClient()["shop_test"]
    # modules bind the handle at import time
    for module in (database, auth, referrals, main):
        monkeypatch.setattr(module, "db", test_db)
    main.rate_store.clear()
    return test_db


@pytest.fixture
def client(db):
    return TestClient(main.app)


def auth_header(token: str) -> dict:
    return {"token": token}


@pytest.fixture
def make_user(db):
    def _make(email="buyer@example.com", name="Buyer", password="password123"):
        user = User(name=name, email=email, password_hash=auth.hash_password(password),
                    date=datetime.now(timezone.utc))
        user_id = database.create_document("user", user)
        return user_id, auth.create_user_token(user_id)
    return _make


@pytest.fixture
def user(make_user):
    """(user_id, headers) for a registered shopper."""
    user_id, token = make_user()
    return user_id, auth_header(token)


@pytest.fixture
def make_admin(db):
    def _make(role="super_admin", email=None, username=None, password="adminpass"):
        admin = Admin(
            username=username or role,
            email=email or f"{role}@example.com",
            password_hash=auth.hash_password(password),
            role=role,
            permissions=auth.permissions_for_role(role),
        )
        admin_id = database.create_document("admin", admin)
        token = auth.create_admin_token(admin_id, role, auth.permissions_for_role(role))
        return admin_id, auth_header(token)
    return _make


@pytest.fixture
def super_admin(make_admin):
    return make_admin("super_admin")


@pytest.fixture
def assistant(make_admin):
    return make_admin("assistant_admin")


def product_doc(**overrides) -> dict:
    data = {
        "name": "Linen Shirt",
        "description": "Breathable linen shirt",
        "price": 10000,
        "image": ["https://img.example/shirt.jpg"],
        "category": "Men",
        "colors": [
            {
                "color_name": "Black",
                "color_hex": "#000000",
                "sizes": [{"size": "M", "quantity": 5}, {"size": "L", "quantity": 0}],
            },
            {
                "color_name": "White",
                "color_hex": "#ffffff",
                "sizes": [{"size": "M", "quantity": 2}],
            },
        ],
        "weight": 0.5,
        "country_of_origin": "China",
    }
    data.update(overrides)
    return Product(**data).model_dump()


@pytest.fixture
def make_product(db):
    def _make(**overrides):
        return database.create_document("product", product_doc(**overrides))
    return _make


@pytest.fixture
def make_affiliate(db):
    def _make(code="ABC123", status="approved", user_id="affiliate-user", **fields):
        affiliate = Affiliate(
            user_id=user_id,
            affiliate_code=code,
            status=status,
            application_data=ApplicationData(
                full_name="Ada Lovelace",
                email="ada@example.com",
                reason="I run a fashion blog",
                traffic_source="instagram",
            ),
            **fields,
        )
        return database.create_document("affiliate", affiliate)
    return _make
