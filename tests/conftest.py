"""Pytest fixtures for the storefront tests."""

import json
import time

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import b64url, sign as sign_token
from config import JWT_SECRET
from errors import UpstreamFailureError
from gateway import RazorpayClient, compute_signature

GATEWAY_SECRET = "test_secret"


class FakeGateway(RazorpayClient):
    """Razorpay client whose HTTP calls are answered in memory."""

    def __init__(self):
        super().__init__("rzp_test_key", GATEWAY_SECRET, base_url="https://gateway.invalid/v1")
        self.created = []
        self.fetched = []
        self.down = False

    def create_order(self, amount, currency, receipt):
        if self.down:
            raise UpstreamFailureError("Payment gateway request failed", {"path": "/orders"})
        order = {"id": f"order_{len(self.created) + 1}", "amount": amount, "currency": currency, "receipt": receipt}
        self.created.append(order)
        return order

    def fetch_payment(self, payment_id):
        if self.down:
            raise UpstreamFailureError("Payment gateway request failed", {"path": f"/payments/{payment_id}"})
        self.fetched.append(payment_id)
        return {"id": payment_id, "method": "upi", "status": "captured"}


def sign(gateway_order_id, payment_id):
    return compute_signature(GATEWAY_SECRET, gateway_order_id, payment_id)


@pytest.fixture
def db():
    return mongomock.MongoClient()["shop_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_product(db):
    """Insert a product and return its id as a string."""

    def _make(name="Classic Tee", price=499.0, variants=None, images=None):
        if variants is None:
            variants = [{"size": "M", "color_name": "Black", "color_hex": "#000000", "stock": 3}]
        doc = {
            "name": name,
            "description": "Cotton tee",
            "price": price,
            "category_id": None,
            "images": ["https://img.example/tee.jpg"] if images is None else images,
            "variants": variants,
        }
        return str(db["product"].insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def stock_of(db):
    """Read the current stock of one variant (None when it does not exist)."""

    def _stock(product_id, size="M", color_name="Black"):
        product = db["product"].find_one({"_id": ObjectId(product_id)})
        if not product:
            return None
        for v in product["variants"]:
            if v["size"] == size and v["color_name"] == color_name:
                return v["stock"]
        return None

    return _stock


@pytest.fixture
def users(db):
    docs = {
        "buyer": {"name": "Buyer", "email": "buyer@example.com", "is_admin": False},
        "other": {"name": "Other", "email": "other@example.com", "is_admin": False},
        "admin": {"name": "Admin", "email": "admin@example.com", "is_admin": True},
    }
    for doc in docs.values():
        db["user"].insert_one(doc)
    return docs


@pytest.fixture
def shipping():
    return {
        "full_name": "Asha Rao",
        "address": "12 MG Road",
        "city": "Bengaluru",
        "state": "KA",
        "postal_code": "560001",
        "country": "India",
        "phone": "9876543210",
    }


def make_token(claims, secret=JWT_SECRET, alg="HS256"):
    """Mint a token the way the account service does."""
    header = b64url(json.dumps({"alg": alg, "typ": "JWT"}).encode())
    payload = b64url(json.dumps(claims).encode())
    return f"{header}.{payload}.{sign_token(f'{header}.{payload}', secret)}"


def auth_header(user):
    token = make_token({"sub": str(user["_id"]), "exp": int(time.time()) + 3600})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db, gateway):
    from database import get_db
    from gateway import get_gateway
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()
