from datetime import datetime, timedelta, timezone

import jwt
import mongomock
import pytest
from fastapi.testclient import TestClient

import config
import main
from database import get_db, utcnow
from pricing import generate_slug


def make_token(uid, email=None, expires_in=timedelta(hours=1)):
    payload = {"sub": uid, "exp": datetime.now(timezone.utc) + expires_in}
    if email:
        payload["email"] = email
    if config.JWT_AUDIENCE:
        payload["aud"] = config.JWT_AUDIENCE
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


@pytest.fixture
def db():
    return mongomock.MongoClient().get_database("storefront_test")


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    main.reset_sessions()
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
    main.reset_sessions()


@pytest.fixture
def make_user(db):
    def _make(uid, email=None, account_status="active", role="customer", display_name="Corner Card Shop"):
        doc = {
            "_id": uid,
            "email": email or f"{uid}@acme-cards.com",
            "display_name": display_name,
            "role": role,
            "account_status": account_status,
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        db["users"].insert_one(doc)
        return doc
    return _make


@pytest.fixture
def auth_headers():
    def _headers(uid, email=None):
        return {"Authorization": f"Bearer {make_token(uid, email or f'{uid}@acme-cards.com')}"}
    return _headers


@pytest.fixture
def make_product(db):
    def _make(product_id, name, category="Birthday", status="active", **fields):
        now = utcnow()
        doc = {
            "_id": product_id,
            "name": name,
            "slug": generate_slug(name),
            "category": category,
            "status": status,
            "sku": "",
            "description": "",
            "images": [],
            "tags": [],
            "wholesale_price": 300,
            "retail_price": 600,
            "has_box_option": False,
            "inventory": 100,
            "minimum_order_quantity": 6,
            "featured": False,
            "sales_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        doc.update(fields)
        db["products"].insert_one(doc)
        return doc
    return _make


@pytest.fixture
def address():
    return {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "company": "Corner Card Shop",
        "street1": "12 Hive Lane",
        "city": "Portland",
        "state": "OR",
        "postal_code": "97201",
        "country": "US",
    }


@pytest.fixture
def token():
    return make_token
