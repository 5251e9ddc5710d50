"""Subscription model.

One row per checkout. Status changes go through
app.services.subscription_service only; the `version` column makes
concurrent writers fail with StaleDataError instead of silently
overwriting each other.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import validates

from app.extensions import db


def _utcnow():
    return datetime.now(timezone.utc)


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    STATUSES = ["pending", "active", "paused", "cancelled"]

    # subscription_type -> (frequency, frequency_unit)
    TYPES = {
        "weekly": (1, "weeks"),
        "biweekly": (2, "weeks"),
        "monthly": (1, "months"),
        "quarterly": (3, "months"),
        "semiannual": (6, "months"),
        "annual": (12, "months"),
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    external_reference = db.Column(db.String(255), nullable=False, index=True)
    provider_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # MercadoPago preapproval id, write-once
    status = db.Column(
        db.String(20), nullable=False, default="pending", index=True
    )  # pending | active | paused | cancelled

    # --- Product & pricing ---
    product_id = db.Column(db.String(64), nullable=False)
    product_name = db.Column(db.String(255))
    quantity = db.Column(db.Integer, nullable=False, default=1)
    base_price = db.Column(db.Numeric(10, 2), nullable=False)  # unit price
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    total_price = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="MXN")

    # --- Billing cycle ---
    subscription_type = db.Column(db.String(20), nullable=False, default="monthly")
    frequency = db.Column(db.Integer, nullable=False, default=1)
    frequency_unit = db.Column(db.String(10), nullable=False, default="months")
    next_billing_date = db.Column(db.DateTime(timezone=True), nullable=True)
    last_billing_date = db.Column(db.DateTime(timezone=True), nullable=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    charges_made = db.Column(db.Integer, nullable=False, default=0)

    # --- Snapshots ---
    customer_snapshot = db.Column(db.JSON, default=dict)  # {"email", "name"}
    delivery_address = db.Column(db.JSON, nullable=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # activation source, provider ids, sync state

    paused_at = db.Column(db.DateTime(timezone=True), nullable=True)
    pause_reason = db.Column(db.Text, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # --- Relationships ---
    user = db.relationship("User", back_populates="subscriptions")
    billing_entries = db.relationship(
        "BillingHistoryEntry",
        back_populates="subscription",
        lazy="dynamic",
        order_by="BillingHistoryEntry.billing_date",
    )

    @validates("provider_subscription_id")
    def _validate_provider_subscription_id(self, key, value):
        current = self.provider_subscription_id
        if current and value != current:
            raise ValueError(
                f"provider_subscription_id is already set to {current}"
            )
        return value

    @property
    def meta(self):
        return self.metadata_ or {}

    def update_metadata(self, **values):
        """Merge keys into metadata. Reassigns so the JSON change is flushed."""
        merged = dict(self.metadata_ or {})
        merged.update(values)
        self.metadata_ = merged

    @property
    def customer_email(self):
        return (self.customer_snapshot or {}).get("email")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "external_reference": self.external_reference,
            "provider_subscription_id": self.provider_subscription_id,
            "status": self.status,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "base_price": _money(self.base_price),
            "discount_percentage": _money(self.discount_percentage),
            "total_price": _money(self.total_price),
            "currency": self.currency,
            "subscription_type": self.subscription_type,
            "frequency": self.frequency,
            "frequency_unit": self.frequency_unit,
            "next_billing_date": _iso(self.next_billing_date),
            "last_billing_date": _iso(self.last_billing_date),
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "charges_made": self.charges_made,
            "delivery_address": self.delivery_address,
            "paused_at": _iso(self.paused_at),
            "pause_reason": self.pause_reason,
            "cancelled_at": _iso(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "metadata": self.meta,
        }

    def __repr__(self):
        return f"<Subscription {self.external_reference} ({self.status})>"


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return float(value) if value is not None else None
