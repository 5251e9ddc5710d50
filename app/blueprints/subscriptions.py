"""Subscriptions blueprint — /subscriptions/*

Customer-facing subscription management. JSON in, JSON out.
All routes require login; a user only ever sees their own records.

Route Map:
  POST /subscriptions                          — Create pending record + checkout
  GET  /subscriptions                          — List own subscriptions
  GET  /subscriptions/<id>                     — Detail, history, available actions
  POST /subscriptions/<id>/pause               — active -> paused
  POST /subscriptions/<id>/resume              — paused -> active
  POST /subscriptions/<id>/cancel              — active/paused -> cancelled
  POST /subscriptions/<id>/modify              — type / quantity / address
  GET  /subscriptions/<id>/billing-history     — Ledger rows
"""

import logging

from flask import Blueprint, abort, jsonify, request
from flask_login import current_user, login_required

from app.extensions import db, limiter
from app.models.audit import AuditEvent
from app.models.billing import BillingHistoryEntry
from app.models.subscription import Subscription
from app.services import subscription_service
from app.services.mercadopago_client import ProviderError
from app.services.subscription_service import (
    DuplicateSubscriptionError,
    SubscriptionNotFound,
    TransitionError,
)

logger = logging.getLogger(__name__)

subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/subscriptions")


def _body():
    return request.get_json(silent=True) or request.form.to_dict() or {}


def _get_own_subscription(subscription_id):
    """404 unless the subscription exists and belongs to the caller (or caller is admin)."""
    sub = db.session.get(Subscription, subscription_id)
    if sub is None:
        abort(404)
    if sub.user_id != current_user.id and not current_user.is_admin:
        abort(404)
    return sub


def _detail(sub):
    history = (
        AuditEvent.query.filter_by(subscription_id=sub.id)
        .order_by(AuditEvent.created_at.desc())
        .limit(50)
        .all()
    )
    data = sub.to_dict()
    data["available_actions"] = subscription_service.available_actions(sub)
    data["history"] = [event.to_dict() for event in history]
    return data


def _transition(action, subscription_id, **kwargs):
    sub = _get_own_subscription(subscription_id)
    fn = getattr(subscription_service, action)
    try:
        sub = fn(sub.id, actor_user_id=current_user.id, **kwargs)
    except TransitionError as e:
        return jsonify({
            "error": str(e),
            "current_status": e.current,
            "requested": e.requested,
        }), 409
    except SubscriptionNotFound:
        abort(404)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"subscription": _detail(sub)}), 200


# ──────────────────────────────────────────────
# POST /subscriptions
# ──────────────────────────────────────────────

@subscriptions_bp.route("", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def create():
    """Create a pending subscription and a provider checkout for it.

    Body: {"product": {"id", "name", "price", "currency"?},
           "subscription_type", "quantity"?, "discount_percentage"?,
           "delivery_address"?}
    """
    data = _body()
    try:
        sub = subscription_service.create_pending_subscription(
            current_user,
            data.get("product") or {},
            subscription_type=data.get("subscription_type", "monthly"),
            quantity=data.get("quantity", 1),
            discount_percentage=data.get("discount_percentage", 0),
            delivery_address=data.get("delivery_address"),
        )
    except DuplicateSubscriptionError as e:
        return jsonify({
            "error": str(e),
            "subscription": e.existing.to_dict(),
        }), 409
    except (TypeError, ValueError) as e:
        return jsonify({"error": str(e)}), 400

    try:
        init_point = subscription_service.start_checkout(sub)
    except ProviderError as e:
        logger.error(f"Checkout creation failed for subscription {sub.id}: {e}")
        return jsonify({
            "error": "Payment provider unavailable, please retry.",
            "subscription": sub.to_dict(),
        }), 502

    return jsonify({"subscription": sub.to_dict(), "init_point": init_point}), 201


# ──────────────────────────────────────────────
# GET /subscriptions, GET /subscriptions/<id>
# ──────────────────────────────────────────────

@subscriptions_bp.route("", methods=["GET"])
@login_required
def list_subscriptions():
    subs = (
        Subscription.query.filter_by(user_id=current_user.id)
        .order_by(Subscription.created_at.desc())
        .all()
    )
    return jsonify({"subscriptions": [s.to_dict() for s in subs]})


@subscriptions_bp.route("/<subscription_id>", methods=["GET"])
@login_required
def detail(subscription_id):
    sub = _get_own_subscription(subscription_id)
    return jsonify({"subscription": _detail(sub)})


# ──────────────────────────────────────────────
# Transitions
# ──────────────────────────────────────────────

@subscriptions_bp.route("/<subscription_id>/pause", methods=["POST"])
@login_required
def pause(subscription_id):
    return _transition("pause", subscription_id, reason=_body().get("reason"))


@subscriptions_bp.route("/<subscription_id>/resume", methods=["POST"])
@login_required
def resume(subscription_id):
    return _transition("resume", subscription_id)


@subscriptions_bp.route("/<subscription_id>/cancel", methods=["POST"])
@login_required
def cancel(subscription_id):
    return _transition("cancel", subscription_id, reason=_body().get("reason"))


@subscriptions_bp.route("/<subscription_id>/modify", methods=["POST"])
@login_required
def modify(subscription_id):
    data = _body()
    return _transition(
        "modify",
        subscription_id,
        subscription_type=data.get("subscription_type"),
        quantity=data.get("quantity"),
        delivery_address=data.get("delivery_address"),
    )


# ──────────────────────────────────────────────
# GET /subscriptions/<id>/billing-history
# ──────────────────────────────────────────────

@subscriptions_bp.route("/<subscription_id>/billing-history", methods=["GET"])
@login_required
def billing_history(subscription_id):
    sub = _get_own_subscription(subscription_id)
    entries = (
        BillingHistoryEntry.query.filter_by(subscription_id=sub.id)
        .order_by(BillingHistoryEntry.billing_date.desc())
        .all()
    )
    return jsonify({
        "subscription_id": sub.id,
        "entries": [e.to_dict() for e in entries],
    })
