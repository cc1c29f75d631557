import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import create_access_token, get_db
from database import create_document, ensure_indexes


@pytest.fixture
def db():
    client = mongomock.MongoClient(tz_aware=True)
    database = client["books_marketplace_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def make_listing(db):
    """Create a listing (with its book and edition) and return the listing id."""

    def _make(seller_id="seller-1", type="sale", price=10.0, quantity=5, daily_fee=2.0,
              max_days=None, is_active=True, title="Ficciones"):
        book_id = create_document("book", {"title": title, "authors": ["Jorge Luis Borges"]}, database=db)
        edition_id = create_document("edition", {"book_id": book_id, "format": "paperback"}, database=db)
        return create_document("listing", {
            "seller_id": seller_id,
            "edition_id": edition_id,
            "type": type,
            "price": price if type == "sale" else None,
            "daily_fee": daily_fee if type == "loan" else None,
            "max_days": max_days,
            "quantity": quantity,
            "is_active": is_active,
            "inactive_reason": None,
        }, database=db)

    return _make


@pytest.fixture
def listing_doc(db):
    def _get(listing_id):
        return db["listing"].find_one({"_id": ObjectId(listing_id)})

    return _get


@pytest.fixture
def make_user(db):
    """Insert a user and return its id, email and bearer headers."""

    def _make(name="reader", role="customer"):
        email = f"{name}-{ObjectId()}@bookswap.io"
        user_id = create_document("user", {
            "name": name.capitalize(),
            "email": email,
            "hashed_password": "!",
            "role": role,
            "is_active": True,
        }, database=db)
        token = create_access_token({"sub": email})
        return {"id": user_id, "email": email, "headers": {"Authorization": f"Bearer {token}"}}

    return _make


@pytest.fixture
def client(db):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()
