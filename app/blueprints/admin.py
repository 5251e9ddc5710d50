"""Admin blueprint — /admin/*

Operator tools for the payment pipeline. JSON only.
All routes protected by @admin_required decorator.

Route Map:
  POST /admin/subscriptions/activate        — Reconcile / force-activate
  POST /admin/integrity                     — Integrity report (one user or batch)
  GET  /admin/metrics                       — Subscription + revenue metrics
  GET  /admin/webhooks                      — Recent webhook log rows
  POST /admin/webhooks/<id>/replay          — Re-run a stored notification
"""

import logging
from datetime import datetime

from flask import Blueprint, jsonify, request
from flask_login import current_user

from app.decorators import admin_required
from app.extensions import limiter
from app.models.webhook_log import WebhookLog
from app.services import (
    integrity_service,
    metrics_service,
    reconciliation_service,
    webhook_service,
)

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

# reconcile outcome -> HTTP status
OUTCOME_STATUS = {
    reconciliation_service.ACTIVATED: 200,
    reconciliation_service.ALREADY_ACTIVE: 200,
    reconciliation_service.NOT_FOUND: 404,
    reconciliation_service.NOT_PENDING: 409,
    reconciliation_service.NOT_APPROVED: 409,
    reconciliation_service.AMBIGUOUS: 409,
    reconciliation_service.UNKNOWN: 502,
}


def _body():
    return request.get_json(silent=True) or request.form.to_dict() or {}


def _flag(value):
    if isinstance(value, bool):
        return value
    return str(value or "").lower() in ("1", "true", "yes", "on")


# ══════════════════════════════════════════════
#  ACTIVATION
# ══════════════════════════════════════════════

@admin_bp.route("/subscriptions/activate", methods=["POST"])
@admin_required
@limiter.limit("30 per minute")
def activate_subscription():
    """Reconcile one subscription against the provider, or force it.

    Body: one of external_reference | subscription_id | payment_id |
    user_id, plus optional force (bool) and reason (required with force).
    """
    data = _body()
    force = _flag(data.get("force"))
    try:
        result = reconciliation_service.reconcile(
            external_reference=data.get("external_reference"),
            subscription_id=data.get("subscription_id"),
            payment_id=data.get("payment_id"),
            user_id=data.get("user_id"),
            force=force,
            reason=data.get("reason"),
            source="manual",
            actor_user_id=current_user.id,
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    logger.info(
        f"Admin {current_user.email} activation request: {result.outcome} "
        f"(force={force})"
    )
    return jsonify(result.to_dict()), OUTCOME_STATUS.get(result.outcome, 200)


# ══════════════════════════════════════════════
#  INTEGRITY
# ══════════════════════════════════════════════

@admin_bp.route("/integrity", methods=["POST"])
@admin_required
def integrity():
    """Body: {"user_id", "external_reference"?} or {"user_ids": [...], "limit"?}."""
    data = _body()

    if data.get("user_id"):
        result = integrity_service.check_user(
            data["user_id"], external_reference=data.get("external_reference")
        )
        return jsonify({
            "results": [result.to_dict()],
            "summary": {
                "avg_integrity_score": result.score,
                "status": result.status,
            },
        })

    user_ids = data.get("user_ids")
    if user_ids is not None and not isinstance(user_ids, list):
        return jsonify({"error": "user_ids must be a list"}), 400
    try:
        limit = int(data.get("limit", 50))
    except (TypeError, ValueError):
        return jsonify({"error": "limit must be a number"}), 400

    return jsonify(integrity_service.check_batch(user_ids=user_ids, limit=limit))


# ══════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════

@admin_bp.route("/metrics")
@admin_required
def metrics():
    """Optional ?start_date=YYYY-MM-DD limits the window."""
    start_date = None
    raw = request.args.get("start_date")
    if raw:
        try:
            start_date = datetime.fromisoformat(raw)
        except ValueError:
            return jsonify({"error": "start_date must be ISO-8601"}), 400
    return jsonify(metrics_service.get_subscription_metrics(start_date=start_date))


# ══════════════════════════════════════════════
#  WEBHOOK LOG
# ══════════════════════════════════════════════

@admin_bp.route("/webhooks")
@admin_required
def webhook_logs():
    """Newest first. Filters: ?entry_type=, ?outcome=, ?subscription_id=, ?limit="""
    query = WebhookLog.query
    for key in ("entry_type", "outcome", "subscription_id"):
        value = request.args.get(key)
        if value:
            query = query.filter(getattr(WebhookLog, key) == value)

    limit = min(request.args.get("limit", 100, type=int), 500)
    rows = query.order_by(WebhookLog.created_at.desc()).limit(limit).all()
    return jsonify({"webhooks": [row.to_dict() for row in rows]})


@admin_bp.route("/webhooks/<log_id>/replay", methods=["POST"])
@admin_required
def replay_webhook(log_id):
    try:
        result = webhook_service.replay_webhook(log_id)
    except ValueError as e:
        return jsonify({"error": str(e)}), 404

    logger.info(f"Admin {current_user.email} replayed webhook {log_id}: {result.outcome}")
    return jsonify({
        "outcome": result.outcome,
        "subscription_id": result.subscription_id,
        "matching_strategy": result.strategy,
        "error": result.error,
    })
