"""Integrity service — score a user's subscription data for consistency.

Purely diagnostic: nothing in here writes to the database. Each check
contributes its weight to a 0–100 score:

    has_active_subscription       25
    profile_flag_consistent       20
    external_reference_linked     15
    subscription_dates_valid      15
    webhook_evidence              10
    billing_history_exists        10
    checkout_record_exists         5

>= 80 is healthy, >= 50 warning, anything lower critical. An active
subscription without a single ledger row is never reported healthy.
"""

import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy import func, or_

from app.extensions import db
from app.models.billing import BillingHistoryEntry
from app.models.subscription import Subscription
from app.models.user import User
from app.models.webhook_log import WebhookLog
from app.services.billing_service import as_utc, utcnow
from app.services.reference_service import parse_external_reference

logger = logging.getLogger(__name__)

WEIGHTS = OrderedDict(
    [
        ("has_active_subscription", 25),
        ("profile_flag_consistent", 20),
        ("external_reference_linked", 15),
        ("subscription_dates_valid", 15),
        ("webhook_evidence", 10),
        ("billing_history_exists", 10),
        ("checkout_record_exists", 5),
    ]
)

RECOMMENDATIONS = {
    "has_active_subscription": "Run reconciliation for the user's pending subscription or activate it manually",
    "profile_flag_consistent": "Resync users.has_active_subscription with the subscriptions table",
    "external_reference_linked": "Verify and correct the external_reference link",
    "subscription_dates_valid": "Correct the subscription start/end dates",
    "webhook_evidence": "Review MercadoPago webhook delivery for this subscription",
    "billing_history_exists": "Create the missing billing history entry (forced activation repair)",
    "checkout_record_exists": "Locate the checkout record for this reference",
}

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"


@dataclass
class IntegrityCheckResult:
    user_id: str
    external_reference: str = None
    checks: dict = field(
        default_factory=lambda: OrderedDict((name, False) for name in WEIGHTS)
    )
    score: int = 0
    status: str = CRITICAL
    issues: list = field(default_factory=list)
    recommendations: list = field(default_factory=list)
    data: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "external_reference": self.external_reference,
            "checks": dict(self.checks),
            "integrity_score": self.score,
            "status": self.status,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
            "data": dict(self.data),
        }


def status_for_score(score):
    if score >= 80:
        return HEALTHY
    if score >= 50:
        return WARNING
    return CRITICAL


# ──────────────────────────────────────────────
# Single user
# ──────────────────────────────────────────────

def check_user(user_id, external_reference=None):
    """Run every check for one user and score the result."""
    result = IntegrityCheckResult(user_id=user_id, external_reference=external_reference)
    now = utcnow()

    user = db.session.get(User, user_id)
    subs = (
        Subscription.query.filter_by(user_id=user_id)
        .order_by(Subscription.created_at.desc())
        .all()
    )
    active = next((s for s in subs if s.status == "active"), None)
    result.data["subscription_ids"] = [s.id for s in subs]
    if active:
        result.data["active_subscription_id"] = active.id

    _check_active(result, active)
    _check_profile(result, user, active)
    _check_reference(result, subs, active)
    _check_dates(result, active, now)
    _check_webhooks(result, subs, active)
    _check_billing(result, active)
    _check_stale_pending(result, subs, now)
    _check_provider_state(result, subs)

    result.score = sum(
        WEIGHTS[name] for name, passed in result.checks.items() if passed
    )
    result.status = status_for_score(result.score)
    if active and not result.checks["billing_history_exists"] and result.status == HEALTHY:
        result.status = WARNING

    failed = sorted(
        (name for name, passed in result.checks.items() if not passed),
        key=lambda name: WEIGHTS[name],
        reverse=True,
    )
    # Nothing to recommend for an active subscription when none exists at all.
    if not subs:
        failed = [name for name in failed if name == "has_active_subscription"]
    result.recommendations = [RECOMMENDATIONS[name] for name in failed] + result.recommendations
    return result


def _check_active(result, active):
    if active:
        result.checks["has_active_subscription"] = True
    else:
        result.issues.append("No active subscription found for the user")


def _check_profile(result, user, active):
    if user is None:
        result.issues.append("User profile not found")
        return
    expected = active is not None
    if bool(user.has_active_subscription) == expected:
        result.checks["profile_flag_consistent"] = True
    elif expected:
        result.issues.append("Profile not updated: has_active_subscription should be true")
    else:
        result.issues.append(
            "Profile inconsistent: has_active_subscription is true but no subscription is active"
        )


def _references(sub):
    refs = {sub.external_reference}
    for key in ("provider_external_reference", "payment_external_reference"):
        if sub.meta.get(key):
            refs.add(sub.meta[key])
    return refs


def _check_reference(result, subs, active):
    target = result.external_reference
    if target:
        owners = [s for s in subs if target in _references(s)]
        if owners:
            result.checks["checkout_record_exists"] = True
        else:
            result.issues.append(f"No subscription found for external_reference {target}")
    elif subs:
        result.checks["checkout_record_exists"] = True

    if not active:
        return
    parsed = parse_external_reference(active.external_reference)
    if parsed is None or parsed["user_id"] != result.user_id:
        result.issues.append(
            f"Active subscription reference {active.external_reference} does not belong to the user"
        )
    elif target and target not in _references(active):
        result.issues.append(
            f"external_reference {target} is not linked to the active subscription"
        )
    else:
        result.checks["external_reference_linked"] = True


def _check_dates(result, active, now):
    if not active:
        return
    start, end = as_utc(active.start_date), as_utc(active.end_date)
    if start and end and start <= now <= end:
        result.checks["subscription_dates_valid"] = True
    else:
        result.issues.append(
            f"Invalid subscription dates: {start.isoformat() if start else None} - "
            f"{end.isoformat() if end else None}"
        )


def _check_webhooks(result, subs, active):
    if not subs:
        return
    focus = [active] if active else subs
    ids = [s.id for s in focus]
    provider_ids = [s.provider_subscription_id for s in focus if s.provider_subscription_id]

    clauses = [WebhookLog.subscription_id.in_(ids)]
    if provider_ids:
        clauses.append(WebhookLog.resource_id.in_(provider_ids))
    count = WebhookLog.query.filter(or_(*clauses)).count()
    result.data["webhook_log_count"] = count
    if count:
        result.checks["webhook_evidence"] = True
    else:
        result.issues.append("No webhook logs found for the subscription")


def _check_billing(result, active):
    if not active:
        return
    count = BillingHistoryEntry.query.filter_by(subscription_id=active.id).count()
    result.data["billing_entries"] = count
    if count:
        result.checks["billing_history_exists"] = True
    else:
        result.issues.append("Active subscription has no billing history")


def _check_stale_pending(result, subs, now):
    cutoff = now - timedelta(hours=current_app.config["STALE_PENDING_HOURS"])
    stale = [
        s for s in subs
        if s.status == "pending" and as_utc(s.created_at) < cutoff
    ]
    for sub in stale:
        hours = int((now - as_utc(sub.created_at)).total_seconds() // 3600)
        result.issues.append(
            f"Subscription {sub.id} has been pending for {hours}h"
        )
    if stale:
        result.data["stale_pending_ids"] = [s.id for s in stale]
        result.recommendations.append(
            f"Reconcile {len(stale)} stale pending subscription(s) against the provider"
        )


def _check_provider_state(result, subs):
    for sub in subs:
        divergence = sub.meta.get("provider_divergence")
        if divergence:
            result.issues.append(
                f"Subscription {sub.id} is {sub.status} locally but "
                f"{divergence.get('provider_status')} at the provider"
            )
            result.recommendations.append(
                f"Confirm the provider state of subscription {sub.id} and cancel or reactivate it"
            )
        if sub.meta.get("provider_sync_status") == "failed":
            result.issues.append(
                f"Status {sub.meta.get('provider_sync_target')} of subscription "
                f"{sub.id} was not mirrored to the provider"
            )


# ──────────────────────────────────────────────
# Batch
# ──────────────────────────────────────────────

def check_batch(user_ids=None, limit=50):
    """Check many users. Defaults to the users with the newest subscriptions."""
    if user_ids is None:
        rows = (
            db.session.query(
                Subscription.user_id, func.max(Subscription.created_at).label("latest")
            )
            .group_by(Subscription.user_id)
            .order_by(func.max(Subscription.created_at).desc())
            .limit(limit)
            .all()
        )
        user_ids = [row.user_id for row in rows]
    else:
        user_ids = list(user_ids)[:limit]

    results = [check_user(uid) for uid in user_ids]
    counts = Counter(r.status for r in results)
    total = len(results)
    avg = round(sum(r.score for r in results) / total, 2) if total else 0

    issue_counts = Counter(issue for r in results for issue in _issue_keys(r))
    common = [
        {"issue": issue, "count": count}
        for issue, count in issue_counts.most_common(10)
    ]

    recommendations = []
    if counts[CRITICAL]:
        recommendations.append(f"Urgently review {counts[CRITICAL]} user(s) in critical state")
    if counts[WARNING]:
        recommendations.append(f"Review {counts[WARNING]} user(s) with warnings")
    if total and avg < 70:
        recommendations.append("Schedule a subscription data cleanup")

    logger.info(
        f"Integrity batch: {total} user(s), healthy={counts[HEALTHY]} "
        f"warning={counts[WARNING]} critical={counts[CRITICAL]} avg={avg}"
    )
    return {
        "total_users": total,
        "healthy_count": counts[HEALTHY],
        "warning_count": counts[WARNING],
        "critical_count": counts[CRITICAL],
        "results": [r.to_dict() for r in results],
        "summary": {
            "avg_integrity_score": avg,
            "common_issues": common,
            "recommendations": recommendations,
        },
    }


def _issue_keys(result):
    """Failed check names, so per-subscription wording groups together."""
    return [name for name, passed in result.checks.items() if not passed]


def render_text_report(result):
    lines = [
        "SUBSCRIPTION INTEGRITY REPORT",
        f"User: {result.user_id}",
    ]
    if result.external_reference:
        lines.append(f"External reference: {result.external_reference}")
    lines.append(f"Score: {result.score}/100")
    lines.append(f"Status: {result.status.upper()}")
    lines.append("")
    lines.append("Checks:")
    for name, passed in result.checks.items():
        lines.append(f"  [{'x' if passed else ' '}] {name.replace('_', ' ')}")
    if result.issues:
        lines.append("")
        lines.append("Issues:")
        lines.extend(f"  {i}. {issue}" for i, issue in enumerate(result.issues, 1))
    if result.recommendations:
        lines.append("")
        lines.append("Recommendations:")
        lines.extend(
            f"  {i}. {rec}" for i, rec in enumerate(result.recommendations, 1)
        )
    return "\n".join(lines) + "\n"
