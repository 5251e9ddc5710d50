"""Billing service — ledger writes and billing-period math.

Responsible for:
- Normalising provider objects (payment, preapproval, authorized payment)
  into a Charge
- Appending BillingHistoryEntry rows inside the caller's unit of work
- Computing next billing dates and totals
- Recomputing the user's has_active_subscription flag
- Writing subscription audit events

Nothing here commits. The state machine owns the transaction.
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP

from app.extensions import db
from app.models.audit import AuditEvent
from app.models.billing import BillingHistoryEntry
from app.models.subscription import Subscription
from app.models.user import User

logger = logging.getLogger(__name__)

APPROVED_STATUSES = {"approved", "authorized"}


# ──────────────────────────────────────────────
# Time helpers
# ──────────────────────────────────────────────

def utcnow():
    return datetime.now(timezone.utc)


def as_utc(dt):
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_provider_date(value):
    """Parse an ISO-8601 timestamp from the provider. Returns None if bad."""
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        logger.warning(f"Unparseable provider date: {value!r}")
        return None


def add_months(dt, months):
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 -> Feb 28/29)."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def compute_next_billing_date(from_date, frequency, frequency_unit):
    """The only place next_billing_date values come from."""
    from_date = as_utc(from_date)
    if frequency_unit == "months":
        return add_months(from_date, frequency)
    if frequency_unit == "weeks":
        return from_date + timedelta(weeks=frequency)
    if frequency_unit == "days":
        return from_date + timedelta(days=frequency)
    raise ValueError(f"Unknown frequency unit: {frequency_unit}")


def compute_total_price(base_price, quantity, discount_percentage):
    base = Decimal(str(base_price))
    discount = Decimal(str(discount_percentage or 0))
    total = base * int(quantity) * (Decimal("1") - discount / Decimal("100"))
    return total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# ──────────────────────────────────────────────
# Provider charges
# ──────────────────────────────────────────────

@dataclass
class Charge:
    """A provider object reduced to what the ledger and state machine need.

    payment_id is None for preapproval-only evidence (the provider
    authorised the recurring charge but no payment object exists yet).
    """

    kind: str  # payment | preapproval | authorized_payment
    status: str
    payment_id: str = None
    preapproval_id: str = None
    amount: Decimal = None
    currency: str = None
    paid_at: datetime = None
    external_reference: str = None
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def is_approved(self):
        return self.status in APPROVED_STATUSES


def _decimal(value):
    if value is None:
        return None
    return Decimal(str(value))


def charge_from_provider(obj, kind):
    """Build a Charge from a raw provider object."""
    obj = obj or {}
    metadata = obj.get("metadata") or {}

    if kind == "preapproval":
        recurring = obj.get("auto_recurring") or {}
        return Charge(
            kind=kind,
            status=obj.get("status") or "",
            preapproval_id=_str(obj.get("id")),
            amount=_decimal(recurring.get("transaction_amount")),
            currency=recurring.get("currency_id"),
            paid_at=parse_provider_date(obj.get("date_created")),
            external_reference=obj.get("external_reference"),
            raw=obj,
        )

    if kind == "authorized_payment":
        payment = obj.get("payment") or {}
        return Charge(
            kind=kind,
            status=payment.get("status") or obj.get("status") or "",
            payment_id=_str(payment.get("id") or obj.get("id")),
            preapproval_id=_str(obj.get("preapproval_id")),
            amount=_decimal(obj.get("transaction_amount")),
            currency=obj.get("currency_id"),
            paid_at=parse_provider_date(
                obj.get("debit_date") or obj.get("date_created")
            ),
            external_reference=obj.get("external_reference"),
            raw=obj,
        )

    return Charge(
        kind="payment",
        status=obj.get("status") or "",
        payment_id=_str(obj.get("id")),
        preapproval_id=_str(metadata.get("preapproval_id")),
        amount=_decimal(obj.get("transaction_amount")),
        currency=obj.get("currency_id"),
        paid_at=parse_provider_date(
            obj.get("date_approved") or obj.get("date_created")
        ),
        external_reference=obj.get("external_reference"),
        raw=obj,
    )


def _str(value):
    return str(value) if value not in (None, "") else None


# ──────────────────────────────────────────────
# Ledger
# ──────────────────────────────────────────────

def has_billing_entry(subscription_id, provider_payment_id):
    if not provider_payment_id:
        return False
    return (
        BillingHistoryEntry.query.filter_by(
            subscription_id=subscription_id,
            provider_payment_id=provider_payment_id,
        ).first()
        is not None
    )


def record_billing_entry(subscription, charge=None, source="webhook",
                         strategy=None, status=None, billing_date=None):
    """Append one ledger row for a charge. Flushes, never commits.

    charge may be None for forced activations; amount then falls back to
    the subscription's total price.
    """
    amount = subscription.total_price
    currency = subscription.currency
    payment_id = None
    metadata = {"source": source}
    if strategy:
        metadata["matching_strategy"] = strategy

    if charge is not None:
        payment_id = charge.payment_id
        if charge.amount is not None:
            amount = charge.amount
        currency = charge.currency or currency
        if charge.preapproval_id:
            metadata["preapproval_id"] = charge.preapproval_id
        metadata["provider_object"] = charge.kind

    entry = BillingHistoryEntry(
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        provider_payment_id=payment_id,
        amount=amount,
        currency=currency,
        status=status or (charge.status if charge else "forced"),
        billing_date=billing_date or (charge.paid_at if charge else None) or utcnow(),
        metadata_=metadata,
    )
    db.session.add(entry)
    db.session.flush()

    logger.info(
        f"Ledger row for subscription {subscription.id}: "
        f"payment={payment_id} amount={amount} source={source}"
    )
    return entry


# ──────────────────────────────────────────────
# Profile flag & audit
# ──────────────────────────────────────────────

def sync_profile_flag(user_id):
    """Recompute users.has_active_subscription from the subscriptions table."""
    user = db.session.get(User, user_id)
    if not user:
        logger.warning(f"No user {user_id} to sync subscription flag")
        return None

    has_active = (
        Subscription.query.filter_by(user_id=user_id, status="active").first()
        is not None
    )
    if user.has_active_subscription != has_active:
        user.has_active_subscription = has_active
        db.session.flush()
    return has_active


def log_subscription_audit(subscription, action, previous_status=None,
                           actor_user_id=None, metadata=None):
    """Record a transition. actor_user_id is None for system actors."""
    event = AuditEvent(
        subscription_id=subscription.id,
        actor_user_id=actor_user_id,
        action=action,
        previous_status=previous_status,
        new_status=subscription.status,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
    return event
