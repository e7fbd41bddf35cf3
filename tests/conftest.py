import mongomock
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError

import database
from main import app
from security import create_access_token, get_password_hash

PASSWORD = "secret123"
SHIPPING = {
    "name": "Ava Stone",
    "address": "12 Market Street",
    "city": "Pune",
    "state": "MH",
    "postalCode": "411001",
    "country": "IN",
}


class FlakyCollection:
    """Collection wrapper raising PyMongoError from selected methods.

    ``failures`` maps a method name to how many calls should fail, -1 for all.
    """

    def __init__(self, collection, failures):
        self._collection = collection
        self._failures = failures

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if name not in self._failures:
            return attr

        def wrapper(*args, **kwargs):
            left = self._failures[name]
            if left != 0:
                if left > 0:
                    self._failures[name] = left - 1
                raise PyMongoError(f"injected {name} failure")
            return attr(*args, **kwargs)

        return wrapper


class FlakyDatabase:
    """``methods`` fails database-level calls, keyword arguments fail per collection."""

    def __init__(self, db, methods=None, **failures):
        self._db = db
        self._methods = FlakyCollection(db, methods or {})
        self._failures = failures

    def __getattr__(self, name):
        return getattr(self._methods, name)

    def __getitem__(self, name):
        collection = self._db[name]
        if name in self._failures:
            return FlakyCollection(collection, self._failures[name])
        return collection


class HookedCollection:
    """Runs ``hook`` once right before the first call to ``method``."""

    def __init__(self, collection, method, hook):
        self._collection = collection
        self._method = method
        self._hook = hook

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if name != self._method:
            return attr

        def wrapper(*args, **kwargs):
            self._hook()
            return attr(*args, **kwargs)

        return wrapper


@pytest.fixture
def db():
    mock_db = mongomock.MongoClient()["fashionhub_test"]
    database.ensure_indexes(mock_db)
    return mock_db


@pytest.fixture
def client(db):
    app.dependency_overrides[database.get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(email="ava@fashionhub.io", name="Ava", is_admin=False, points=0):
        doc = {
            "name": name,
            "email": email,
            "password_hash": get_password_hash(PASSWORD),
            "is_admin": is_admin,
            "addresses": [],
            "wishlist": [],
            "orders": [],
            "points": points,
        }
        return str(db["user"].insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def make_product(db):
    def _make(name="Linen Shirt", price=500, **fields):
        doc = {
            "name": name,
            "brand": fields.pop("brand", "Northwind"),
            "category": fields.pop("category", "tops"),
            "price": price,
            "description": None,
            "images": [],
            "sizes": fields.pop("sizes", ["S", "M"]),
            "colors": fields.pop("colors", ["white"]),
            "tags": [],
            "reviews": [],
            "in_stock": fields.pop("in_stock", True),
        }
        doc.update(fields)
        return str(db["product"].insert_one(doc).inserted_id)

    return _make


def auth_headers(user_id, is_admin=False):
    token = create_access_token({"sub": user_id, "is_admin": is_admin})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_id(make_user):
    return make_user()


@pytest.fixture
def user_headers(user_id):
    return auth_headers(user_id)


@pytest.fixture
def admin_headers(make_user):
    return auth_headers(make_user(email="admin@fashionhub.io", name="Admin", is_admin=True), is_admin=True)
