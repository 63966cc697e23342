import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import hash_password, token_for_user
from database import ensure_indexes, get_db, now_utc
from main import app

PASSWORD = "secret123"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def _make(name="Oxford Shirt", price=100.0, stock=None, **fields):
        now = now_utc()
        doc = {
            "name": name,
            "price": price,
            "original_price": None,
            "stock_by_size": {"S": 5, "M": 5, "L": 5} if stock is None else stock,
            "images": [
                {"url": f"/img/{name.lower().replace(' ', '-')}-back.jpg", "alt": "", "is_primary": False},
                {"url": f"/img/{name.lower().replace(' ', '-')}.jpg", "alt": name, "is_primary": True},
            ],
            "category": "shirts",
            "section": "men",
            "sku": None,
            "description": None,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        doc.update(fields)
        db["product"].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def make_user(db):
    def _make(email="asha@shop.io", name="Asha Rao", role="user", is_active=True):
        now = now_utc()
        doc = {
            "name": name,
            "email": email,
            "password_hash": hash_password(PASSWORD),
            "role": role,
            "is_active": is_active,
            "total_orders": 0,
            "total_spent": 0,
            "cart": [],
            "last_login": None,
            "created_at": now,
            "updated_at": now,
        }
        db["user"].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def customer(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@shop.io", name="Store Admin", role="admin")


def bearer(user):
    return {"Authorization": f"Bearer {token_for_user(user)}"}


@pytest.fixture
def headers_for():
    return bearer


@pytest.fixture
def customer_headers(customer):
    return bearer(customer)


@pytest.fixture
def admin_headers(admin):
    return bearer(admin)


def build_payload(*lines, **overrides):
    """Checkout body for ``(product, size, quantity)`` lines with consistent totals."""
    items = [
        {
            "product": str(product["_id"]),
            "name": product["name"],
            "price": product["price"],
            "quantity": quantity,
            "size": size,
            "color": "Blue",
        }
        for product, size, quantity in lines
    ]
    subtotal = round(sum(i["price"] * i["quantity"] for i in items), 2)
    body = {
        "customerInfo": {"name": "Asha Rao", "email": "asha@shop.io", "phone": "9876543210"},
        "items": items,
        "shippingAddress": {
            "fullName": "Asha Rao",
            "address": "12 MG Road",
            "city": "Bengaluru",
            "state": "KA",
            "zipCode": "560001",
            "phone": "9876543210",
        },
        "paymentMethod": "cod",
        "subtotal": subtotal,
        "shipping": 0,
        "tax": 0,
        "discount": 0,
        "total": subtotal,
    }
    body.update(overrides)
    return body


@pytest.fixture
def checkout_payload():
    return build_payload


@pytest.fixture
def place(client, checkout_payload):
    """Place an order over HTTP and return the response."""
    def _place(*lines, headers=None, **overrides):
        return client.post("/orders", json=checkout_payload(*lines, **overrides), headers=headers or {})

    return _place
