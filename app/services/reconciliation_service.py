"""Reconciliation service — activate from the provider's truth.

Webhooks get lost, arrive before the checkout row exists, or carry a
reference we cannot match. The reconciler closes that gap: given a weak
identifier it finds the best pending candidate, asks the provider what
it thinks, and drives the same `activate` transition the webhook path
uses. A provider failure or a not-yet-approved status is a normal
"try again later" outcome, never an error.

Entry points: the webhook backstop, POST /admin/subscriptions/activate,
POST /cron/reconcile and the `flask reconcile-pending` /
`flask run-sweeper` commands (both call run_sweep()).
"""

import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, TimeoutError, as_completed
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.orm.exc import StaleDataError

from app.extensions import db
from app.models.subscription import Subscription
from app.services import (
    lease_service,
    mercadopago_client,
    subscription_matcher,
    subscription_service,
)
from app.services.billing_service import charge_from_provider, utcnow
from app.services.mercadopago_client import ProviderError, ProviderNotFoundError
from app.services.subscription_service import (
    PROVIDER_STATUS,
    SubscriptionNotFound,
    TransitionError,
)

logger = logging.getLogger(__name__)

ACTIVATED = "activated"
ALREADY_ACTIVE = "already_active"
NOT_FOUND = "not_found"
NOT_PENDING = "not_pending"
NOT_APPROVED = "not_approved"
UNKNOWN = "unknown"
AMBIGUOUS = "ambiguous"

SWEEP_LEASE = "reconcile_sweep"

_sweep_lock = threading.Lock()


@dataclass
class ReconcileResult:
    outcome: str
    subscription: Subscription = None
    detail: str = None

    def to_dict(self):
        return {
            "outcome": self.outcome,
            "detail": self.detail,
            "subscription": self.subscription.to_dict() if self.subscription else None,
        }


@dataclass
class SweepReport:
    skipped: bool = False
    checked: int = 0
    outcomes: dict = field(default_factory=dict)
    timed_out: bool = False
    webhooks_retried: int = 0
    webhooks_recovered: int = 0
    sync_retried: int = 0
    sync_recovered: int = 0
    divergences: list = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self):
        return {
            "skipped": self.skipped,
            "checked": self.checked,
            "outcomes": dict(self.outcomes),
            "timed_out": self.timed_out,
            "webhooks_retried": self.webhooks_retried,
            "webhooks_recovered": self.webhooks_recovered,
            "sync_retried": self.sync_retried,
            "sync_recovered": self.sync_recovered,
            "divergences": list(self.divergences),
            "duration_seconds": round(self.duration_seconds, 3),
        }


# ──────────────────────────────────────────────
# On-demand reconciliation
# ──────────────────────────────────────────────

def reconcile(external_reference=None, subscription_id=None, payment_id=None,
              user_id=None, force=False, reason=None, source="reconciler",
              actor_user_id=None):
    """Find a candidate, check the provider, activate if approved.

    Exactly one identifier is expected; the first given wins in the order
    subscription_id, external_reference, payment_id, user_id.
    """
    if force and not (reason or "").strip():
        raise ValueError("A reason is required to force an activation.")
    if not any([external_reference, subscription_id, payment_id, user_id]):
        raise ValueError(
            "One of external_reference, subscription_id, payment_id or user_id is required."
        )

    charge = None
    strategy = source
    if subscription_id:
        sub = db.session.get(Subscription, subscription_id)
    elif external_reference:
        sub = _find_by_reference(external_reference)
    elif payment_id:
        try:
            match = subscription_matcher.match_payment(payment_id)
        except ProviderNotFoundError:
            return ReconcileResult(NOT_FOUND, detail=f"Payment {payment_id} not found at provider")
        except ProviderError as e:
            return ReconcileResult(UNKNOWN, detail=str(e))
        if match.outcome == subscription_matcher.AMBIGUOUS:
            return ReconcileResult(
                AMBIGUOUS,
                detail=f"Candidates: {', '.join(match.candidate_ids)}",
            )
        sub = match.subscription
        charge = match.charge
        strategy = match.strategy
    else:
        sub = _find_for_user(user_id)

    if sub is None:
        db.session.commit()
        return ReconcileResult(NOT_FOUND, detail="No matching subscription")

    if sub.status == "active" and not force:
        db.session.commit()
        return ReconcileResult(ALREADY_ACTIVE, sub, "Subscription is already active")
    if sub.status not in ("pending", "active"):
        db.session.commit()
        return ReconcileResult(NOT_PENDING, sub, f"Subscription is {sub.status}")

    sub_id = sub.id
    lookup = _provider_lookup(sub)
    # No open transaction while waiting on the provider.
    db.session.commit()

    if charge is None:
        try:
            charge = _provider_charge(*lookup)
        except ProviderError as e:
            if not force:
                logger.info(f"Provider check for subscription {sub_id} deferred: {e}")
                return ReconcileResult(UNKNOWN, sub, str(e))
            logger.warning(f"Provider check failed for forced activation of {sub_id}: {e}")
            charge = None

    if not force:
        if charge is None:
            return ReconcileResult(NOT_APPROVED, sub, "No provider record found")
        if not charge.is_approved:
            return ReconcileResult(
                NOT_APPROVED, sub, f"Provider status is {charge.status}"
            )

    try:
        sub, changed = subscription_service.activate(
            sub_id,
            charge,
            source=source,
            strategy=strategy,
            force=force,
            reason=reason,
            actor_user_id=actor_user_id,
        )
    except TransitionError as e:
        return ReconcileResult(NOT_PENDING, db.session.get(Subscription, sub_id), str(e))
    except SubscriptionNotFound as e:
        return ReconcileResult(NOT_FOUND, detail=str(e))

    if not changed:
        return ReconcileResult(ALREADY_ACTIVE, sub, "Subscription is already active")
    detail = "Forced by admin" if force else f"Provider status is {charge.status}"
    return ReconcileResult(ACTIVATED, sub, detail)


def _find_by_reference(reference):
    sub = (
        Subscription.query.filter_by(external_reference=reference)
        .order_by(Subscription.created_at.desc())
        .first()
    )
    if sub:
        return sub
    return Subscription.query.filter(
        or_(
            Subscription.metadata_["provider_external_reference"].as_string() == reference,
            Subscription.metadata_["payment_external_reference"].as_string() == reference,
        )
    ).first()


def _find_for_user(user_id):
    """Most recent pending record, else the active one."""
    pending = (
        Subscription.query.filter_by(user_id=user_id, status="pending")
        .order_by(Subscription.created_at.desc())
        .first()
    )
    if pending:
        return pending
    return (
        Subscription.query.filter_by(user_id=user_id, status="active")
        .order_by(Subscription.created_at.desc())
        .first()
    )


def _provider_lookup(sub):
    """(preapproval id, references, checkout preapproval id) for a record."""
    references = [sub.external_reference]
    for key in ("provider_external_reference", "payment_external_reference"):
        ref = sub.meta.get(key)
        if ref and ref not in references:
            references.append(ref)
    return (
        sub.provider_subscription_id,
        references,
        sub.meta.get("checkout_preapproval_id"),
    )


def _provider_charge(preapproval_id, references, checkout_id):
    """The provider's view of a subscription as a Charge, or None.

    Looks up the linked preapproval first, then searches by the
    references we know about. Any authorized result wins.
    """
    if preapproval_id:
        return charge_from_provider(
            mercadopago_client.get_preapproval(preapproval_id), "preapproval"
        )

    found = []
    for ref in references:
        found.extend(mercadopago_client.search_preapprovals(ref))

    if not found and checkout_id:
        try:
            found.append(mercadopago_client.get_preapproval(checkout_id))
        except ProviderNotFoundError:
            pass

    if not found:
        return None

    authorized = [p for p in found if p.get("status") == "authorized"]
    return charge_from_provider((authorized or found)[0], "preapproval")


# ──────────────────────────────────────────────
# Scheduled sweep
# ──────────────────────────────────────────────

def run_sweep():
    """One sweep cycle.

    Skipped while another sweep runs, in this process or in any other
    process sharing the database.
    """
    if not _sweep_lock.acquire(blocking=False):
        logger.info("Sweep already running, skipping")
        return SweepReport(skipped=True)
    try:
        holder = lease_service.acquire(
            SWEEP_LEASE, current_app.config["SWEEP_LEASE_SECONDS"]
        )
        if holder is None:
            logger.info("Sweep lease held by another process, skipping")
            return SweepReport(skipped=True)
        try:
            return _run_sweep()
        except Exception:
            db.session.rollback()
            raise
        finally:
            lease_service.release(SWEEP_LEASE, holder)
    finally:
        _sweep_lock.release()


def _run_sweep():
    config = current_app.config
    started = time.monotonic()
    deadline = started + config["SWEEP_TIME_BUDGET_SECONDS"]
    report = SweepReport()

    cutoff = utcnow() - timedelta(minutes=config["SWEEP_PENDING_AGE_MINUTES"])
    ids = [
        s.id
        for s in Subscription.query.filter(
            Subscription.status == "pending",
            Subscription.created_at <= cutoff,
        )
        .order_by(Subscription.created_at.asc())
        .limit(config["SWEEP_BATCH_SIZE"])
        .all()
    ]
    db.session.commit()
    logger.info(f"Sweep: {len(ids)} pending subscription(s) to check")

    outcomes = Counter()
    workers = max(1, config["SWEEP_MAX_WORKERS"])
    if workers == 1:
        for sub_id in ids:
            if time.monotonic() > deadline:
                report.timed_out = True
                break
            outcomes[_check_pending(sub_id)] += 1
    else:
        app = current_app._get_current_object()
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(_check_in_context, app, sub_id) for sub_id in ids]
            try:
                for future in as_completed(
                    futures, timeout=max(0.0, deadline - time.monotonic())
                ):
                    outcomes[future.result()] += 1
            except TimeoutError:
                report.timed_out = True
                for future in futures:
                    future.cancel()
    report.checked = sum(outcomes.values())
    report.outcomes = dict(outcomes)
    if report.timed_out:
        logger.warning(f"Sweep time budget exhausted after {report.checked} check(s)")

    if time.monotonic() < deadline:
        from app.services.webhook_service import retry_failed_webhooks

        report.webhooks_retried, report.webhooks_recovered = retry_failed_webhooks()
    if time.monotonic() < deadline:
        report.sync_retried, report.sync_recovered = retry_failed_provider_syncs()
    if time.monotonic() < deadline:
        report.divergences = detect_divergence()

    report.duration_seconds = time.monotonic() - started
    logger.info(f"Sweep finished: {report.to_dict()}")
    return report


def _check_in_context(app, sub_id):
    with app.app_context():
        return _check_pending(sub_id)


def _check_pending(sub_id):
    try:
        return reconcile(subscription_id=sub_id, source="sweeper").outcome
    except Exception:
        db.session.rollback()
        logger.error(f"Sweep check failed for subscription {sub_id}", exc_info=True)
        return "error"


def retry_failed_provider_syncs(limit=None):
    """Re-send status mirrors that failed earlier. Returns (tried, recovered)."""
    limit = limit or current_app.config["SWEEP_BATCH_SIZE"]
    subs = (
        Subscription.query.filter(
            Subscription.metadata_["provider_sync_status"].as_string() == "failed",
            Subscription.provider_subscription_id.isnot(None),
        )
        .limit(limit)
        .all()
    )
    pending = [(s.id, s.provider_subscription_id, PROVIDER_STATUS.get(s.status)) for s in subs]
    db.session.commit()

    recovered = 0
    for sub_id, preapproval_id, target in pending:
        if target is None:
            continue
        if subscription_service.mirror_provider_status(sub_id, preapproval_id, target):
            recovered += 1
    if pending:
        logger.info(f"Provider sync retry: {recovered}/{len(pending)} recovered")
    return len(pending), recovered


def detect_divergence(limit=None):
    """Compare active records with their preapproval; flag disagreements.

    Divergence is only recorded in metadata. A provider-side cancellation
    of a locally active subscription is not applied automatically.
    """
    limit = limit or current_app.config["SWEEP_DIVERGENCE_BATCH_SIZE"]
    subs = (
        Subscription.query.filter(
            Subscription.status == "active",
            Subscription.provider_subscription_id.isnot(None),
        )
        .order_by(Subscription.updated_at.asc())
        .limit(limit)
        .all()
    )
    targets = [(s.id, s.provider_subscription_id) for s in subs]
    db.session.commit()

    found = []
    for sub_id, preapproval_id in targets:
        try:
            preapproval = mercadopago_client.get_preapproval(preapproval_id)
        except ProviderError as e:
            logger.info(f"Divergence check skipped for {sub_id}: {e}")
            continue

        provider_status = preapproval.get("status")
        sub = db.session.get(Subscription, sub_id)
        if sub is None or sub.status != "active":
            continue
        flagged = sub.meta.get("provider_divergence")

        if provider_status in ("paused", "cancelled"):
            logger.warning(
                f"Subscription {sub_id} is active locally but {provider_status} "
                f"at the provider"
            )
            sub.update_metadata(
                provider_divergence={
                    "provider_status": provider_status,
                    "local_status": sub.status,
                    "detected_at": utcnow().isoformat(),
                }
            )
            found.append({"subscription_id": sub_id, "provider_status": provider_status})
        elif flagged:
            sub.update_metadata(provider_divergence=None)
        else:
            continue
        try:
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            logger.warning(f"Subscription {sub_id} changed during divergence check")
    return found
