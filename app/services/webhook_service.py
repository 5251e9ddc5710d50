"""Webhook service — MercadoPago notification ingestion.

Responsible for:
- Verifying the x-signature header (HMAC-SHA256 over "{ts}.{body}")
- Deriving a stable notification id
- Idempotency via the unique receipt row in webhook_logs
- Dispatching by topic to the matcher and the state machine
- Recording the outcome of every attempt

Business failures never escape as exceptions: they are recorded as an
outcome row and the notification is acknowledged, so the provider does
not retry into a storm.
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from app.extensions import db
from app.models.webhook_log import WebhookLog
from app.services import reconciliation_service, subscription_matcher, subscription_service
from app.services.billing_service import utcnow
from app.services.mercadopago_client import ProviderError, ProviderNotFoundError
from app.services.reference_service import parse_external_reference
from app.services.subscription_service import SubscriptionNotFound, TransitionError

logger = logging.getLogger(__name__)

TOPIC_ALIASES = {
    "payment": "payment",
    "subscription_preapproval": "subscription_preapproval",
    "preapproval": "subscription_preapproval",
    "subscription_authorized_payment": "subscription_authorized_payment",
    "authorized_payment": "subscription_authorized_payment",
}

# Rows that record a processing attempt for a receipt
ATTEMPT_ENTRY_TYPES = ("outcome", "replay")
# Attempt outcomes that leave the notification eligible for another try
RETRYABLE_OUTCOMES = ("deferred", "error")


class SignatureError(ValueError):
    pass


class PayloadError(ValueError):
    pass


@dataclass
class ProcessResult:
    outcome: str
    subscription_id: str = None
    strategy: str = None
    error: str = None


# ──────────────────────────────────────────────
# Verification & parsing
# ──────────────────────────────────────────────

def verify_signature(raw_body, signature_header):
    """Check `x-signature: ts=<unix>,v1=<hex>` against the shared secret.

    Raises SignatureError. Returns the signed timestamp.
    """
    secret = current_app.config.get("MERCADOPAGO_WEBHOOK_SECRET")
    if not secret:
        raise SignatureError("Webhook secret not configured")
    if not signature_header:
        raise SignatureError("Missing signature")

    parts = {}
    for part in signature_header.split(","):
        key, sep, value = part.strip().partition("=")
        if sep:
            parts[key] = value
    ts, v1 = parts.get("ts"), parts.get("v1")
    if not ts or not v1:
        raise SignatureError("Invalid signature format")

    expected = compute_signature(secret, ts, raw_body)
    if not hmac.compare_digest(expected, v1):
        raise SignatureError("Invalid signature")

    max_skew = current_app.config.get("WEBHOOK_MAX_SKEW_SECONDS")
    if max_skew:
        try:
            signed_at = int(ts)
        except ValueError:
            raise SignatureError("Invalid signature timestamp")
        if abs(time.time() - signed_at) > max_skew:
            raise SignatureError("Signature timestamp outside the allowed window")
    return ts


def compute_signature(secret, ts, raw_body):
    return hmac.new(
        secret.encode("utf-8"),
        f"{ts}.{raw_body}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def parse_notification(raw_body):
    """Decode and validate `{id?, type, action?, data: {id}}`."""
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        raise PayloadError("Malformed JSON") from e

    if not isinstance(payload, dict):
        raise PayloadError("Notification must be a JSON object")
    topic = payload.get("type") or payload.get("topic")
    data = payload.get("data")
    if not topic:
        raise PayloadError("Missing notification type")
    if not isinstance(data, dict) or data.get("id") in (None, ""):
        raise PayloadError("Missing data.id")
    return payload


def notification_id(payload):
    """Provider id when present, else a key stable across redeliveries."""
    if payload.get("id") not in (None, ""):
        return str(payload["id"])
    topic = payload.get("type") or payload.get("topic")
    key = f"{topic}:{payload.get('action') or ''}:{payload['data']['id']}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


def log_rejected(raw_body, reason, payload=None):
    """Record a notification that failed verification or parsing."""
    entry = WebhookLog(
        entry_type="rejected",
        topic=(payload or {}).get("type"),
        action=(payload or {}).get("action"),
        payload=payload if payload is not None else {"raw": (raw_body or "")[:2000]},
        outcome="rejected",
        error=reason,
    )
    db.session.add(entry)
    db.session.commit()
    return entry


# ──────────────────────────────────────────────
# Ingestion
# ──────────────────────────────────────────────

def handle_notification(payload):
    """Process a verified notification exactly once.

    Returns (status, outcome). status is "already_processed" for a
    redelivery, "processed" otherwise. A redelivery whose earlier attempts
    were all deferred or errored is processed again rather than skipped.
    """
    nid = notification_id(payload)
    topic = payload.get("type") or payload.get("topic")
    resource_id = str(payload["data"]["id"])

    receipt = WebhookLog(
        entry_type="receipt",
        provider_notification_id=nid,
        topic=topic,
        action=payload.get("action"),
        resource_id=resource_id,
        payload=payload,
    )
    db.session.add(receipt)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        original = WebhookLog.query.filter_by(provider_notification_id=nid).first()
        retry = original is not None and needs_retry(original.id)
        db.session.add(
            WebhookLog(
                entry_type="duplicate",
                parent_id=original.id if original else None,
                topic=topic,
                action=payload.get("action"),
                resource_id=resource_id,
                outcome="retried" if retry else "already_processed",
            )
        )
        db.session.commit()
        if not retry:
            logger.info(f"Duplicate webhook {nid}, skipping")
            return "already_processed", "already_processed"

        logger.info(f"Redelivered webhook {nid} was never applied, retrying")
        result = process(original.topic, original.resource_id)
        _log_result(original, result, "replay")
        return "processed", result.outcome

    result = process(topic, resource_id)
    _log_result(receipt, result, "outcome")
    return "processed", result.outcome


def replay_webhook(log_id):
    """Re-run processing for a stored receipt. Returns the ProcessResult."""
    receipt = db.session.get(WebhookLog, log_id)
    if receipt is None or receipt.entry_type != "receipt":
        raise ValueError(f"No webhook receipt with id {log_id}")

    logger.info(f"Replaying webhook {receipt.provider_notification_id}")
    result = process(receipt.topic, receipt.resource_id)
    _log_result(receipt, result, "replay")
    return result


# ──────────────────────────────────────────────
# Retries
# ──────────────────────────────────────────────

def _attempt_outcomes(receipt_id):
    rows = (
        db.session.query(WebhookLog.outcome)
        .filter(
            WebhookLog.parent_id == receipt_id,
            WebhookLog.entry_type.in_(ATTEMPT_ENTRY_TYPES),
        )
        .all()
    )
    return [outcome for (outcome,) in rows]


def needs_retry(receipt_id):
    """True when the receipt was attempted and no attempt got past the provider."""
    outcomes = _attempt_outcomes(receipt_id)
    return bool(outcomes) and all(o in RETRYABLE_OUTCOMES for o in outcomes)


def retry_failed_webhooks(limit=None):
    """Replay receipts whose processing only ever deferred or errored.

    Bounded by WEBHOOK_RETRY_MAX_AGE_HOURS and WEBHOOK_RETRY_MAX_ATTEMPTS.
    Returns (tried, recovered).
    """
    config = current_app.config
    limit = limit or config["SWEEP_BATCH_SIZE"]
    cutoff = utcnow() - timedelta(hours=config["WEBHOOK_RETRY_MAX_AGE_HOURS"])

    attempt = aliased(WebhookLog)
    failed = select(attempt.parent_id).where(
        attempt.entry_type.in_(ATTEMPT_ENTRY_TYPES),
        attempt.outcome.in_(RETRYABLE_OUTCOMES),
    )
    settled = select(attempt.parent_id).where(
        attempt.entry_type.in_(ATTEMPT_ENTRY_TYPES),
        attempt.outcome.notin_(RETRYABLE_OUTCOMES),
    )
    candidates = (
        WebhookLog.query.filter(
            WebhookLog.entry_type == "receipt",
            WebhookLog.created_at >= cutoff,
            WebhookLog.id.in_(failed),
            WebhookLog.id.notin_(settled),
        )
        .order_by(WebhookLog.created_at.asc())
        .limit(limit)
        .all()
    )
    receipt_ids = [
        r.id for r in candidates
        if len(_attempt_outcomes(r.id)) < config["WEBHOOK_RETRY_MAX_ATTEMPTS"]
    ]
    db.session.commit()

    recovered = 0
    for receipt_id in receipt_ids:
        result = replay_webhook(receipt_id)
        if result.outcome not in RETRYABLE_OUTCOMES:
            recovered += 1
    if receipt_ids:
        logger.info(f"Webhook retry: {recovered}/{len(receipt_ids)} recovered")
    return len(receipt_ids), recovered


def _log_result(receipt, result, entry_type):
    db.session.add(
        WebhookLog(
            entry_type=entry_type,
            parent_id=receipt.id,
            topic=receipt.topic,
            action=receipt.action,
            resource_id=receipt.resource_id,
            outcome=result.outcome,
            subscription_id=result.subscription_id,
            matching_strategy=result.strategy,
            error=result.error,
        )
    )
    db.session.commit()


def process(topic, resource_id):
    """Dispatch by topic. Never raises."""
    handlers = {
        "payment": _process_payment,
        "subscription_preapproval": _process_preapproval,
        "subscription_authorized_payment": _process_authorized_payment,
    }
    handler = handlers.get(TOPIC_ALIASES.get(topic))
    if handler is None:
        logger.info(f"Ignoring webhook topic {topic}")
        return ProcessResult(outcome="ignored")

    try:
        return handler(resource_id)
    except ProviderNotFoundError as e:
        db.session.rollback()
        logger.warning(f"{topic} {resource_id} not found at provider: {e}")
        return ProcessResult(outcome="provider_not_found", error=str(e))
    except ProviderError as e:
        db.session.rollback()
        logger.warning(f"Provider unavailable for {topic} {resource_id}: {e}")
        return ProcessResult(outcome="deferred", error=str(e))
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error handling {topic} {resource_id}: {e}", exc_info=True)
        return ProcessResult(outcome="error", error=str(e))


# ──────────────────────────────────────────────
# Topic handlers
# ──────────────────────────────────────────────

def _process_payment(payment_id):
    match = subscription_matcher.match_payment(payment_id)
    return _apply_match(match)


def _process_authorized_payment(authorized_payment_id):
    match = subscription_matcher.match_authorized_payment(authorized_payment_id)
    return _apply_match(match)


def _process_preapproval(preapproval_id):
    match = subscription_matcher.match_preapproval(preapproval_id)
    if not match.matched:
        return _unmatched(match)

    sub = match.subscription
    provider_status = match.charge.status

    if provider_status == "paused" and sub.status == "active":
        subscription_service.pause(
            sub.id, reason="Paused at provider", mirror=False
        )
        return ProcessResult("paused", sub.id, match.strategy)
    if provider_status == "cancelled" and sub.status in ("active", "paused"):
        subscription_service.cancel(
            sub.id, reason="Cancelled at provider", mirror=False
        )
        return ProcessResult("cancelled", sub.id, match.strategy)
    if provider_status == "authorized" and sub.status == "paused":
        subscription_service.resume(sub.id, mirror=False)
        return ProcessResult("resumed", sub.id, match.strategy)

    return _apply_match(match)


def _apply_match(match):
    if not match.matched:
        return _unmatched(match)

    sub = match.subscription
    charge = match.charge
    if not charge.is_approved:
        logger.info(
            f"{match.kind} {charge.payment_id or charge.preapproval_id} for "
            f"subscription {sub.id} is {charge.status}, not activating"
        )
        return ProcessResult(
            outcome=f"status_{charge.status or 'unknown'}",
            subscription_id=sub.id,
            strategy=match.strategy,
        )

    try:
        outcome = subscription_service.apply_charge(
            sub.id, charge, source="webhook", strategy=match.strategy
        )
    except (TransitionError, SubscriptionNotFound) as e:
        logger.warning(f"Webhook could not transition subscription {sub.id}: {e}")
        return ProcessResult(
            outcome="transition_rejected",
            subscription_id=sub.id,
            strategy=match.strategy,
            error=str(e),
        )
    return ProcessResult(outcome, sub.id, match.strategy)


def _unmatched(match):
    if match.outcome == subscription_matcher.AMBIGUOUS:
        return ProcessResult(
            outcome="ambiguous",
            strategy=match.strategy,
            error=f"candidates: {', '.join(match.candidate_ids)}",
        )

    # Backstop: ask the reconciler to check the user's latest pending
    # record directly against the provider.
    identity = _identity(match.provider_object or {})
    if identity:
        result = reconciliation_service.reconcile(user_id=identity, source="webhook_backstop")
        if result.outcome == "activated":
            return ProcessResult(
                outcome="activated",
                subscription_id=result.subscription.id,
                strategy="reconciler_backstop",
            )
    return ProcessResult(outcome="not_found")


def _identity(obj):
    user_id = (obj.get("metadata") or {}).get("user_id")
    if user_id:
        return str(user_id)
    parsed = parse_external_reference(obj.get("external_reference"))
    return parsed["user_id"] if parsed else None
