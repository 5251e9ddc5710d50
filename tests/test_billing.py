"""Tests for billing-period math, Charge normalisation and the ledger.

Covers:
- Calendar month arithmetic with day clamping
- Next billing date per frequency unit
- Total price with quantity and discount
- Payment / preapproval / authorized payment -> Charge
- Ledger append-only guarantee and per-payment uniqueness
- Profile flag recomputation
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models.billing import BillingHistoryEntry
from app.models.user import User
from app.services.billing_service import (
    add_months,
    charge_from_provider,
    compute_next_billing_date,
    compute_total_price,
    has_billing_entry,
    parse_provider_date,
    record_billing_entry,
    sync_profile_flag,
)
from tests.conftest import make_payment, make_preapproval, make_subscription


class TestBillingMath:

    def test_add_months_clamps_day(self):
        jan31 = datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)
        assert add_months(jan31, 1) == datetime(2025, 2, 28, 12, 0, tzinfo=timezone.utc)
        assert add_months(datetime(2024, 1, 31, tzinfo=timezone.utc), 1).day == 29

    def test_add_months_crosses_year(self):
        nov = datetime(2025, 11, 15, tzinfo=timezone.utc)
        assert add_months(nov, 3) == datetime(2026, 2, 15, tzinfo=timezone.utc)

    def test_next_billing_date_units(self):
        start = datetime(2025, 3, 1, tzinfo=timezone.utc)
        assert compute_next_billing_date(start, 1, "months") == datetime(2025, 4, 1, tzinfo=timezone.utc)
        assert compute_next_billing_date(start, 2, "weeks") == datetime(2025, 3, 15, tzinfo=timezone.utc)
        assert compute_next_billing_date(start, 10, "days") == datetime(2025, 3, 11, tzinfo=timezone.utc)

    def test_next_billing_date_naive_input_treated_as_utc(self):
        naive = datetime(2025, 3, 1)
        assert compute_next_billing_date(naive, 1, "months").tzinfo == timezone.utc

    def test_unknown_unit_raises(self):
        with pytest.raises(ValueError):
            compute_next_billing_date(datetime.now(timezone.utc), 1, "years")

    def test_total_price(self):
        assert compute_total_price("250.00", 2, 10) == Decimal("450.00")
        assert compute_total_price(Decimal("99.99"), 1, None) == Decimal("99.99")
        assert compute_total_price("10", 3, Decimal("33.333")) == Decimal("20.00")

    def test_parse_provider_date(self):
        parsed = parse_provider_date("2025-05-01T10:00:00.000-04:00")
        assert parsed.utcoffset() is not None
        assert parse_provider_date("2025-05-01T10:00:00Z").tzinfo is not None
        assert parse_provider_date("not a date") is None
        assert parse_provider_date(None) is None


class TestChargeFromProvider:

    def test_payment(self):
        charge = charge_from_provider(
            make_payment("pay-9", metadata={"preapproval_id": "pre-3"}), "payment"
        )
        assert charge.kind == "payment"
        assert charge.payment_id == "pay-9"
        assert charge.preapproval_id == "pre-3"
        assert charge.amount == Decimal("250.0")
        assert charge.is_approved

    def test_preapproval_has_no_payment_id(self):
        charge = charge_from_provider(make_preapproval("pre-1"), "preapproval")
        assert charge.payment_id is None
        assert charge.preapproval_id == "pre-1"
        assert charge.currency == "MXN"
        assert charge.is_approved  # authorized counts as approved

    def test_authorized_payment_prefers_nested_payment(self):
        obj = {
            "id": 555,
            "preapproval_id": "pre-1",
            "status": "processed",
            "transaction_amount": 250,
            "currency_id": "MXN",
            "debit_date": "2025-06-01T00:00:00Z",
            "payment": {"id": 777, "status": "approved"},
        }
        charge = charge_from_provider(obj, "authorized_payment")
        assert charge.payment_id == "777"
        assert charge.status == "approved"
        assert charge.preapproval_id == "pre-1"

    def test_rejected_payment_not_approved(self):
        charge = charge_from_provider(make_payment(status="rejected"), "payment")
        assert not charge.is_approved


class TestLedger:

    def test_record_entry_falls_back_to_subscription_price(self, app, seed_data):
        sub = make_subscription(status="active")
        entry = record_billing_entry(sub, None, source="manual")
        db.session.commit()

        assert entry.amount == Decimal("250.00")
        assert entry.status == "forced"
        assert entry.provider_payment_id is None
        assert entry.metadata_["source"] == "manual"

    def test_duplicate_payment_id_rejected_by_constraint(self, app, seed_data):
        sub = make_subscription(status="active")
        charge = charge_from_provider(make_payment("pay-1"), "payment")
        record_billing_entry(sub, charge)
        db.session.commit()
        assert has_billing_entry(sub.id, "pay-1")

        with pytest.raises(IntegrityError):
            record_billing_entry(sub, charge)
        db.session.rollback()

    def test_entries_cannot_be_updated(self, app, seed_data):
        sub = make_subscription(status="active")
        entry = record_billing_entry(sub, None)
        db.session.commit()

        entry.amount = Decimal("1.00")
        with pytest.raises(ValueError, match="append-only"):
            db.session.flush()
        db.session.rollback()
        assert BillingHistoryEntry.query.one().amount == Decimal("250.00")


class TestProfileFlag:

    def test_flag_follows_active_subscriptions(self, app, seed_data):
        sub = make_subscription(status="active")
        assert sync_profile_flag("u1") is True
        db.session.commit()
        assert db.session.get(User, "u1").has_active_subscription is True

        sub.status = "cancelled"
        db.session.commit()
        assert sync_profile_flag("u1") is False

    def test_missing_user(self, app, seed_data):
        assert sync_profile_flag("nobody") is None
