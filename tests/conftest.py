"""Shared test fixtures for the subscription reconciliation test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off,
  side effects inline)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: customer (id "u1"), second customer, admin user
- mail: autouse patch of the SMTP transport
- make_subscription / make_payment / make_preapproval / signed_post helpers
"""

import json
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from app.extensions import db as _db
from app.models.subscription import Subscription
from app.models.user import User
from app.services.webhook_service import compute_signature

WEBHOOK_SECRET = "mp_webhook_test_secret"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture(autouse=True)
def mail():
    """Never open an SMTP connection; tests can inspect the calls."""
    with patch("app.services.email_service._send_smtp", return_value=True) as mock:
        yield mock


@pytest.fixture
def seed_data(app, db_session):
    """Seed two customers and an admin.

    Returns a dict with the created objects and their plain ids.
    """
    customer = User(
        id="u1",
        email="ana@example.com",
        password_hash=generate_password_hash("customer123"),
        full_name="Ana Customer",
    )
    other = User(
        id="u2",
        email="luis@example.com",
        password_hash=generate_password_hash("customer456"),
        full_name="Luis Customer",
    )
    admin = User(
        email="admin@subscriptions.local",
        password_hash=generate_password_hash("admin123"),
        full_name="Admin User",
        is_admin=True,
    )
    _db.session.add_all([customer, other, admin])
    _db.session.commit()

    return {
        "customer": customer,
        "customer_id": customer.id,
        "other": other,
        "other_id": other.id,
        "admin": admin,
        "admin_id": admin.id,
    }


# ──────────────────────────────────────────────
# Factories
# ──────────────────────────────────────────────

def make_subscription(user_id="u1", status="pending", product_id="73",
                      reference=None, created_at=None, **fields):
    """Insert a subscription row directly (bypassing the state machine)."""
    now = datetime.now(timezone.utc)
    values = {
        "user_id": user_id,
        "external_reference": reference or f"SUB-{user_id}-p{product_id}-ab12cd34",
        "product_id": product_id,
        "product_name": "Coffee Beans 1kg",
        "quantity": 1,
        "base_price": Decimal("250.00"),
        "discount_percentage": Decimal("0"),
        "total_price": Decimal("250.00"),
        "currency": "MXN",
        "subscription_type": "monthly",
        "frequency": 1,
        "frequency_unit": "months",
        "status": status,
        "customer_snapshot": {"email": "ana@example.com", "name": "Ana Customer"},
        "metadata_": {},
        "created_at": created_at or now,
    }
    if status in ("active", "paused", "cancelled"):
        values.setdefault("start_date", now - timedelta(days=3))
        values.setdefault("last_billing_date", now - timedelta(days=3))
        values.setdefault("next_billing_date", now + timedelta(days=27))
        values.setdefault("end_date", now + timedelta(days=362))
        values.setdefault("charges_made", 1)
    values.update(fields)

    sub = Subscription(**values)
    _db.session.add(sub)
    _db.session.commit()
    return sub


def make_payment(payment_id="pay-1", status="approved", user_id="u1",
                 product_id="73", external_reference=None, date_created=None,
                 **fields):
    """A provider payment object as GET /v1/payments/{id} returns it."""
    created = date_created or datetime.now(timezone.utc)
    payment = {
        "id": payment_id,
        "status": status,
        "external_reference": external_reference,
        "transaction_amount": 250.0,
        "currency_id": "MXN",
        "date_created": created.isoformat(),
        "date_approved": created.isoformat() if status == "approved" else None,
        "payer": {"email": "ana@example.com"},
        "metadata": {"user_id": user_id, "product_id": product_id},
    }
    payment.update(fields)
    return payment


def make_preapproval(preapproval_id="pre-1", status="authorized",
                     external_reference=None, date_created=None, **fields):
    """A provider preapproval object as GET /preapproval/{id} returns it."""
    created = date_created or datetime.now(timezone.utc)
    preapproval = {
        "id": preapproval_id,
        "status": status,
        "external_reference": external_reference,
        "payer_email": "ana@example.com",
        "date_created": created.isoformat(),
        "auto_recurring": {
            "frequency": 1,
            "frequency_type": "months",
            "transaction_amount": 250.0,
            "currency_id": "MXN",
        },
    }
    preapproval.update(fields)
    return preapproval


def notification(topic="payment", resource_id="pay-1", notification_id="evt-1",
                 action=None):
    body = {"type": topic, "data": {"id": resource_id}}
    if notification_id is not None:
        body["id"] = notification_id
    if action:
        body["action"] = action
    return json.dumps(body)


def signed_post(client, body, secret=WEBHOOK_SECRET, ts=None):
    """POST a webhook body with a valid x-signature header, signed now by default."""
    ts = ts or str(int(time.time()))
    signature = compute_signature(secret, ts, body)
    return client.post(
        "/mercadopago/webhooks",
        data=body,
        content_type="application/json",
        headers={"x-signature": f"ts={ts},v1={signature}"},
    )


def login(client, email="ana@example.com", password="customer123"):
    return client.post("/auth/login", json={"email": email, "password": password})


def login_admin(client):
    return login(client, "admin@subscriptions.local", "admin123")
