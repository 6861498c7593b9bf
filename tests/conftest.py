from datetime import timezone

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import IdentityProvider, create_access_token, get_identity_provider
from catalog import get_product_lookup
from database import create_document, ensure_indexes, get_db
from main import app
from schemas import ProductDescription

EXTERNAL_SECRET = "external-provider-test-secret"


class StubLookup:
    """Deterministic product lookup that records the codes it was asked for."""

    def __init__(self, found=True, price=19.99):
        self.found = found
        self.price = price
        self.calls = []

    def search_by_code(self, code):
        self.calls.append(code)
        if not self.found:
            return None
        return ProductDescription(
            title=f"Stub {code}",
            price=self.price,
            original_price=29.99,
            images=["https://example.com/a.jpg", "https://example.com/b.jpg"],
            description="stub",
            sizes=["S", "M"],
            colors=["Black"],
            rating=4.2,
            rating_count=12,
            available=True,
        )


def as_utc(dt):
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


@pytest.fixture
def db():
    database = mongomock.MongoClient(tz_aware=True)["shop_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def lookup():
    return StubLookup()


@pytest.fixture
def provider():
    return IdentityProvider(public_key=EXTERNAL_SECRET, algorithms=("HS256",))


@pytest.fixture
def client(db, lookup, provider):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_product_lookup] = lambda: lookup
    app.dependency_overrides[get_identity_provider] = lambda: provider
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def _make(**overrides):
        data = {
            "code": f"SW{str(ObjectId())[-8:]}".upper(),
            "name": "Test Tee",
            "price": 10.0,
            "image": "https://example.com/tee.jpg",
            "images": [],
            "sizes": ["M"],
            "colors": ["Black"],
            "rating": 4.0,
            "reviews": 3,
            "in_stock": True,
        }
        data.update(overrides)
        return create_document(db, "product", data)
    return _make


@pytest.fixture
def make_user(db):
    def _make(**overrides):
        data = {
            "uid": f"uid-{ObjectId()}",
            "display_name": "Shopper",
            "addresses": [],
            "preferences": {
                "notifications": {"order_updates": True, "promotions": True, "recommendations": True},
                "language": "en",
                "currency": "USD",
            },
            "loyalty_points": 0,
            "version": 0,
        }
        data.update(overrides)
        user_id = create_document(db, "user", data)
        return db["user"].find_one({"_id": ObjectId(user_id)})
    return _make


@pytest.fixture
def user(make_user):
    return make_user(email="shopper@example.com")


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user['_id'])})}"}


@pytest.fixture
def address():
    return {
        "full_name": "Jamie Doe",
        "street": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "zip_code": "62701",
        "phone": "+1 (555) 123-4567",
    }
