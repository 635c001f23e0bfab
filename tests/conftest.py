"""Pytest fixtures for the ecommerce API tests."""

import os
import uuid

# Must be set before config is imported
os.environ["DATABASE_URL"] = ""
os.environ["JWT_SECRET"] = "test-access-secret"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "test-gateway-secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["BCRYPT_ROUNDS"] = "4"

import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import products


class FakeGateway:
    """Records calls instead of talking to Razorpay."""

    def __init__(self):
        self.orders = []
        self.refunds = []
        self.fail_refund = False

    def create_order(self, amount, currency, receipt, notes):
        order = {
            "id": f"order_{len(self.orders) + 1:04d}",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
        }
        self.orders.append(order)
        return order

    def refund(self, payment_id, amount, notes):
        if self.fail_refund:
            raise RuntimeError("gateway unavailable")
        refund = {"id": f"rfnd_{len(self.refunds) + 1:04d}", "payment_id": payment_id, "amount": amount}
        self.refunds.append(refund)
        return refund


@pytest.fixture
def db():
    """A fresh in-memory database."""
    client = mongomock.MongoClient()
    yield client[f"test_{uuid.uuid4().hex[:8]}"]
    client.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    from database import get_db
    from main import app
    from payments import get_gateway

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Create a user; returns (user document, access token)."""

    def _make(email=None, password="secret123", role="user", name="Test User"):
        email = email or f"user-{uuid.uuid4().hex[:6]}@example.com"
        user, tokens = auth.register(db, name, email, password)
        if role != "user":
            db["user"].update_one({"_id": user["_id"]}, {"$set": {"role": role}})
            user = db["user"].find_one({"_id": user["_id"]})
        return user, tokens["access_token"]

    return _make


@pytest.fixture
def customer(make_user):
    return make_user(email="customer@example.com")


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", role="admin", name="Admin")


@pytest.fixture
def make_product(db, admin):
    def _make(name="Widget", price=100.0, stock=5, category="electronics", **extra):
        data = {
            "name": name,
            "description": f"A {name.lower()} for testing purposes",
            "price": price,
            "category": category,
            "stock": stock,
            "images": [{"url": f"https://img.example.com/{name.lower()}.png"}],
            **extra,
        }
        return products.create_product(db, admin[0], data)

    return _make


@pytest.fixture
def shipping_address():
    return {
        "full_name": "Asha Rao",
        "address": "12 MG Road, Indiranagar",
        "city": "Bengaluru",
        "state": "Karnataka",
        "postal_code": "560038",
        "country": "India",
        "phone": "+91 98450 12345",
    }