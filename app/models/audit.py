"""Audit event model.

Transition history for subscriptions (activations, renewals, pauses,
admin repairs). actor_user_id is None when the system acted (webhook,
sweeper).
"""

import uuid

from app.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=True, index=True
    )
    actor_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    action = db.Column(
        db.String(255), nullable=False
    )  # e.g. "subscription.activated"
    previous_status = db.Column(db.String(20), nullable=True)
    new_status = db.Column(db.String(20), nullable=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid Python builtin clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    actor = db.relationship("User", back_populates="audit_events")

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "actor_user_id": self.actor_user_id,
            "metadata": self.metadata_ or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
