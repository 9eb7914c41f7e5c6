import hashlib
import hmac
import itertools
import json
import time
from datetime import timezone
from types import SimpleNamespace

import pytest
import stripe

from app import create_app
from extensions import db
from auth.services.accounts import create_account
from billing.services.customers import link_customer
from credits.models import CreditWallet, Entitlement
from credits.services.entitlements import lock_entitlement
from credits.services.ledger import lock_wallet

WEBHOOK_SECRET = "whsec_test_secret"

PRICE_PRO = "price_test_pro_monthly"
PRICE_PRO_YEARLY = "price_test_pro_yearly"
PRICE_PROPLUS = "price_test_proplus_monthly"
PRICE_COMMUNITY = "price_test_community"
PRICE_UNMAPPED = "price_test_not_in_catalog"

PERIOD_END = int(time.time()) + 30 * 24 * 3600


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    sig = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def naive(dt):
    """SQLite hands datetimes back without tzinfo."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def subscription(sub_id="sub_1", customer="cus_1", price=PRICE_PRO, status="active",
                 cancel_at_period_end=False, period_end=PERIOD_END):
    prices = price if isinstance(price, (list, tuple)) else [price]
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": period_end,
        "items": {"data": [{"price": {"id": p}} for p in prices]},
    }


def invoice(invoice_id="in_1", sub_id="sub_1", customer="cus_1"):
    return {"id": invoice_id, "object": "invoice", "customer": customer, "subscription": sub_id}


class StripeStub:
    """In-memory stand-in for the few Stripe reads the reconciler makes."""

    def __init__(self):
        self.customers = {}
        self.charges = {}
        self.customer_calls = []

    def add_customer(self, customer_id, email=None, deleted=False):
        self.customers[customer_id] = {"email": email, "deleted": deleted}

    def add_charge(self, charge_id, customer=None, payment_intent=None):
        self.charges[charge_id] = {"customer": customer, "payment_intent": payment_intent}

    def retrieve_customer(self, customer_id, **kwargs):
        self.customer_calls.append(customer_id)
        if customer_id not in self.customers:
            raise stripe.InvalidRequestError(f"No such customer: '{customer_id}'", "id")
        data = self.customers[customer_id]
        if data["deleted"]:
            return SimpleNamespace(id=customer_id, deleted=True)
        return SimpleNamespace(id=customer_id, email=data["email"], deleted=False)

    def retrieve_charge(self, charge_id, **kwargs):
        if charge_id not in self.charges:
            raise stripe.InvalidRequestError(f"No such charge: '{charge_id}'", "id")
        data = self.charges[charge_id]
        return SimpleNamespace(id=charge_id, customer=data["customer"], payment_intent=data["payment_intent"])


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "SECRET_KEY": "test-secret-key",
        "JWT_SECRET_KEY": "test-jwt-secret-key-with-enough-bytes",
        "STRIPE_SECRET_KEY": "sk_test_dummy",
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "BILLING_PRICE_TIERS": {
            "pro": [PRICE_PRO, PRICE_PRO_YEARLY],
            "proplus": [PRICE_PROPLUS],
            "community": [PRICE_COMMUNITY],
        },
        "RATELIMIT_ENABLED": False,
        "MAIL_SUPPRESS_SEND": True,
        "MAIL_DEFAULT_SENDER": "billing@example.com",
        "EXTERNAL_BASE_URL": "https://app.example.com",
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def stripe_stub(monkeypatch):
    stub = StripeStub()
    monkeypatch.setattr(stripe.Customer, "retrieve", stub.retrieve_customer)
    monkeypatch.setattr(stripe.Charge, "retrieve", stub.retrieve_charge)
    return stub


@pytest.fixture
def deliver(client, stripe_stub):
    counter = itertools.count(1)

    def _deliver(event_type, obj, event_id=None):
        event = {
            "id": event_id or f"evt_test_{next(counter)}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
        body = json.dumps(event)
        return client.post(
            "/billing/webhook",
            data=body,
            headers={"Stripe-Signature": sign(body)},
            content_type="application/json",
        )

    return _deliver


@pytest.fixture
def make_user(app):
    def _make_user(email, customer_id=None):
        user = create_account(email, password="Str0ng!Pass", created_via="signup")
        if customer_id:
            link_customer(user.id, customer_id, email)
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def seed_state(app):
    """Put a user straight into a given entitlement / wallet state."""
    def _seed(user_id, *, plan="pro", tier=None, status="active", sub_id="sub_1", customer="cus_1",
              balance=0, allowance=0, **extra):
        ent = lock_entitlement(user_id)
        ent.plan = plan
        ent.tier = tier or plan
        ent.status = status
        ent.stripe_subscription_id = sub_id
        ent.stripe_customer_id = customer
        for key, value in extra.items():
            setattr(ent, key, value)
        wallet = lock_wallet(user_id)
        wallet.credits_balance = balance
        wallet.monthly_allowance = allowance
        db.session.commit()
    return _seed


def get_state(user_id):
    db.session.expire_all()
    return db.session.get(Entitlement, user_id), db.session.get(CreditWallet, user_id)
