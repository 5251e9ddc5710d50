"""Webhook log (idempotency table + evidence trail).

Every inbound provider notification writes rows here. The `receipt` row
carries the provider notification id under a unique constraint; inserting
it is the only deduplication point. Everything that happens afterwards
(duplicate deliveries, the processing outcome, admin replays) is a new
row pointing back at the receipt via parent_id. Rows are never updated.
"""

import uuid

from sqlalchemy import event

from app.extensions import db


class WebhookLog(db.Model):
    __tablename__ = "webhook_logs"

    ENTRY_TYPES = ["receipt", "duplicate", "rejected", "outcome", "replay"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    entry_type = db.Column(db.String(20), nullable=False)
    provider_notification_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # set on receipt rows only
    parent_id = db.Column(
        db.String(36), db.ForeignKey("webhook_logs.id"), nullable=True, index=True
    )
    topic = db.Column(db.String(100), nullable=True)  # e.g. "payment"
    action = db.Column(db.String(100), nullable=True)  # e.g. "payment.created"
    resource_id = db.Column(db.String(255), nullable=True, index=True)
    payload = db.Column(db.JSON, nullable=True)
    outcome = db.Column(
        db.String(50), nullable=True
    )  # activated | renewed | not_found | ambiguous | deferred | error | ...
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=True, index=True
    )
    matching_strategy = db.Column(db.String(50), nullable=True)
    error = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    parent = db.relationship("WebhookLog", remote_side=[id])

    def to_dict(self):
        return {
            "id": self.id,
            "entry_type": self.entry_type,
            "provider_notification_id": self.provider_notification_id,
            "parent_id": self.parent_id,
            "topic": self.topic,
            "action": self.action,
            "resource_id": self.resource_id,
            "outcome": self.outcome,
            "subscription_id": self.subscription_id,
            "matching_strategy": self.matching_strategy,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<WebhookLog {self.entry_type} {self.provider_notification_id}>"


@event.listens_for(WebhookLog, "before_update")
def _reject_log_update(mapper, connection, target):
    raise ValueError("webhook_logs rows are immutable")
