"""
Pytest fixtures for roastery backend tests.

Provides an in-memory database, test client, users per role, a fake Stripe
gateway, and helpers that sign webhook payloads the way Stripe does.
"""

import copy
import hashlib
import hmac
import itertools
import json
import time
import uuid

import pytest

from roastery import create_app
from roastery.extensions import db
from roastery.models import User, ROLE_ADMIN, ROLE_MANAGER, ROLE_TEAM, ROLE_CUSTOMER
from roastery.services import stripe_gateway
from roastery.services.auth_service import hash_password
from roastery.services.session_service import encode_token
from roastery.services.stripe_gateway import UpstreamFailure


TEST_PASSWORD = "Password123"
WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'JWT_SECRET': 'test-jwt-secret',
        'STRIPE_SECRET_KEY': 'sk_test_dummy',
        'STRIPE_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'DEFAULT_CURRENCY': 'aed',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def client(app, db_session):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='session')
def password_hash():
    """bcrypt is deliberately slow; hash the shared test password once."""
    return hash_password(TEST_PASSWORD)


def make_user(role: str, email: str, password_hash: str, is_active: bool = True) -> User:
    user = User(
        email=email,
        name=email.split("@")[0],
        password_hash=password_hash,
        role=role,
        is_active=is_active,
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session, password_hash):
    return make_user(ROLE_ADMIN, "admin@roastery.test", password_hash)


@pytest.fixture(scope='function')
def manager_user(db_session, password_hash):
    return make_user(ROLE_MANAGER, "manager@roastery.test", password_hash)


@pytest.fixture(scope='function')
def team_user(db_session, password_hash):
    return make_user(ROLE_TEAM, "team@roastery.test", password_hash)


@pytest.fixture(scope='function')
def customer_user(db_session, password_hash):
    return make_user(ROLE_CUSTOMER, "customer@example.com", password_hash)


def auth_headers(user: User) -> dict:
    """Helper to create Authorization headers for a user."""
    return {'Authorization': f'Bearer {encode_token(user)}'}


# =============================================================================
# FAKE STRIPE
# =============================================================================


class FakeStripe:
    """
    In-memory stand-in for the Stripe API, patched over stripe_gateway.

    Intents are stored as the plain dicts stripe_gateway returns.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.intents = {}
        self.charges = {}
        self.refunds = []
        self.calls = []
        self.fail = False

    def _check(self, name):
        self.calls.append(name)
        if self.fail:
            raise UpstreamFailure(f"Stripe {name} failed")

    def create_payment_intent(self, *, amount, currency, metadata, receipt_email=None):
        self._check("create_payment_intent")
        n = next(self._ids)
        intent_id = f"pi_test_{n:04d}"
        intent = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount,
            "amount_received": 0,
            "currency": currency,
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret_{uuid.uuid4().hex[:8]}",
            "metadata": dict(metadata),
            "receipt_email": receipt_email,
            "created": int(time.time()),
            "latest_charge": None,
        }
        self.intents[intent_id] = intent
        return copy.deepcopy(intent)

    def succeed(self, intent_id, *, brand="visa", last4="4242"):
        """Simulate the customer completing payment in the browser."""
        intent = self.intents[intent_id]
        charge_id = intent_id.replace("pi_", "ch_")
        charge = {
            "id": charge_id,
            "object": "charge",
            "payment_intent": intent_id,
            "amount": intent["amount"],
            "amount_refunded": 0,
            "receipt_url": f"https://pay.stripe.com/receipts/{charge_id}",
            "payment_method_details": {
                "type": "card",
                "card": {"brand": brand, "last4": last4},
            },
        }
        self.charges[charge_id] = charge
        intent["status"] = "succeeded"
        intent["amount_received"] = intent["amount"]
        intent["latest_charge"] = charge
        return copy.deepcopy(intent)

    def retrieve_payment_intent(self, intent_id):
        self._check("retrieve_payment_intent")
        if intent_id not in self.intents:
            raise UpstreamFailure("Stripe payment intent retrieve failed")
        return copy.deepcopy(self.intents[intent_id])

    def list_payment_intents(self, *, created_gte, max_results=100):
        self._check("list_payment_intents")
        found = [i for i in self.intents.values() if i["created"] >= created_gte]
        return copy.deepcopy(found[:max_results])

    def retrieve_charge(self, charge_id):
        self._check("retrieve_charge")
        if charge_id not in self.charges:
            raise UpstreamFailure("Stripe charge retrieve failed")
        return copy.deepcopy(self.charges[charge_id])

    def create_refund(self, *, payment_intent_id, amount, reason="requested_by_customer"):
        self._check("create_refund")
        refund = {
            "id": f"re_test_{len(self.refunds) + 1:04d}",
            "payment_intent": payment_intent_id,
            "amount": amount,
            "status": "succeeded",
        }
        self.refunds.append(refund)
        return dict(refund)


@pytest.fixture(scope='function')
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    for name in (
        "create_payment_intent",
        "retrieve_payment_intent",
        "list_payment_intents",
        "retrieve_charge",
        "create_refund",
    ):
        monkeypatch.setattr(stripe_gateway, name, getattr(fake, name))
    return fake


# =============================================================================
# WEBHOOK HELPERS
# =============================================================================


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header: t=<ts>,v1=HMAC_SHA256(secret, "<ts>.<payload>")."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }


def post_webhook(client, event: dict, *, secret: str = WEBHOOK_SECRET, signature: str | None = None):
    payload = json.dumps(event)
    header = signature if signature is not None else sign_payload(payload, secret)
    return client.post(
        "/api/webhooks/stripe",
        data=payload,
        content_type="application/json",
        headers={"Stripe-Signature": header},
    )


def checkout_payload(**overrides) -> dict:
    payload = {
        "amount": 4999,
        "currency": "aed",
        "customerInfo": {
            "fullName": "Layla Haddad",
            "email": "Layla@Example.com",
            "phone": "+971500000000",
        },
        "shippingInfo": {"city": "Dubai", "address": "12 Al Wasl Road"},
        "items": [
            {"productId": "101", "variationId": "250g", "name": "Ethiopia Guji", "price": 2500, "quantity": 1},
            {"productId": "102", "name": "Colombia Huila", "price": 1999, "quantity": 1},
        ],
        "subtotal": 4499,
        "tax": 225,
        "shippingCost": 275,
        "discount": 0,
    }
    payload.update(overrides)
    return payload


@pytest.fixture(scope='function')
def admin_headers(admin_user):
    return auth_headers(admin_user)


@pytest.fixture(scope='function')
def manager_headers(manager_user):
    return auth_headers(manager_user)


@pytest.fixture(scope='function')
def team_headers(team_user):
    return auth_headers(team_user)


@pytest.fixture(scope='function')
def customer_headers(customer_user):
    return auth_headers(customer_user)
