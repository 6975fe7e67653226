"""Pytest fixtures for the storefront tests."""

import json

import pytest
import stripe
from fastapi.testclient import TestClient

import payments
from database import MemoryStore, get_store
from errors import PaymentProcessorError
from inventory import derive_in_stock
from notifications import get_notifier
from schemas import Coupon, Product

ADDRESS = {
    "full_name": "Alice Example",
    "phone_number": "+966500000000",
    "country": "SA",
    "state": "Riyadh",
    "city": "Riyadh",
    "street_address": "1 King Fahd Rd",
    "postal_code": "12211",
    "label": "home",
}


class FakeGateway:
    """Records payment intents instead of calling Stripe."""

    def __init__(self):
        self.created = []
        self.cancelled = []
        self.fail_with = None

    def create_intent(self, amount, shipping, metadata=None):
        if self.fail_with:
            raise PaymentProcessorError(self.fail_with)
        n = len(self.created) + 1
        intent = payments.PaymentIntent(id=f"pi_test_{n}", client_secret=f"pi_test_{n}_secret")
        self.created.append(
            {
                "id": intent.id,
                "amount": payments.to_minor_units(amount),
                "shipping": shipping,
                "metadata": metadata,
            }
        )
        return intent

    def cancel_intent(self, intent_id):
        self.cancelled.append(intent_id)

    def construct_event(self, payload, signature):
        if signature != "valid-signature":
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", signature)
        return json.loads(payload)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def order_confirmation(self, user, order):
        self.sent.append((user["email"], order["order_number"]))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_user(store):
    def _make(username="alice", role="customer"):
        user_id = store.insert_user(
            {
                "username": username,
                "email": f"{username}@example.com",
                "password_hash": "not-a-real-hash",
                "role": role,
                "addresses": [],
            }
        )
        store.add_address(user_id, dict(ADDRESS))
        return store.get_user(user_id)

    return _make


@pytest.fixture
def customer(make_user):
    return make_user("alice")


@pytest.fixture
def admin(make_user):
    return make_user("root", role="admin")


@pytest.fixture
def make_product(store):
    def _make(**overrides):
        fields = {"name": "Widget", "price": 100, "quantity": 5}
        fields.update(overrides)
        doc = Product(**fields).model_dump()
        doc["in_stock"] = derive_in_stock(doc)
        return store.get_product(store.insert_product(doc))

    return _make


@pytest.fixture
def make_coupon(store):
    def _make(**overrides):
        fields = {"code": "FLAT10", "discount_type": "fixed", "discount_value": 10, "min_cart_value": 50}
        fields.update(overrides)
        return store.get_coupon(store.insert_coupon(Coupon(**fields).model_dump()))

    return _make


@pytest.fixture
def client(store, gateway, notifier):
    from main import app

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[payments.get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    from main import create_access_token

    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token({'sub': user['id']})}"}

    return _headers
