"""Billing history ledger.

BillingHistoryEntry rows are append-only: one row per charge, unique on
(subscription_id, provider_payment_id). Corrections are new rows, never
updates.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import event

from app.extensions import db


class BillingHistoryEntry(db.Model):
    __tablename__ = "billing_history"
    __table_args__ = (
        db.UniqueConstraint(
            "subscription_id",
            "provider_payment_id",
            name="uq_billing_history_subscription_payment",
        ),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscription_id = db.Column(
        db.String(36),
        db.ForeignKey("subscriptions.id"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    provider_payment_id = db.Column(
        db.String(255), nullable=True
    )  # null for forced / preapproval-only activations
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(
        db.String(50), nullable=False
    )  # provider payment status, or "forced"
    billing_date = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # source, matching_strategy, provider ids
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    subscription = db.relationship(
        "Subscription", back_populates="billing_entries"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "provider_payment_id": self.provider_payment_id,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "status": self.status,
            "billing_date": (
                self.billing_date.isoformat() if self.billing_date else None
            ),
            "metadata": self.metadata_ or {},
        }

    def __repr__(self):
        return f"<BillingHistoryEntry {self.provider_payment_id} ({self.status})>"


@event.listens_for(BillingHistoryEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise ValueError("billing_history rows are append-only")
