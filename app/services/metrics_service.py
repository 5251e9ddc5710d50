"""Metrics service — read-only subscription and revenue aggregates.

Feeds GET /admin/metrics. Revenue is taken from approved ledger rows;
MRR normalises every active subscription's price to a monthly amount.
"""

import logging
from collections import OrderedDict
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func

from app.extensions import db
from app.models.billing import BillingHistoryEntry
from app.models.subscription import Subscription
from app.models.webhook_log import WebhookLog
from app.services.billing_service import as_utc, utcnow

logger = logging.getLogger(__name__)

MONTHLY_MULTIPLIERS = {
    "weekly": Decimal("4.33"),
    "biweekly": Decimal("2.17"),
    "monthly": Decimal("1"),
    "quarterly": Decimal("1") / 3,
    "semiannual": Decimal("1") / 6,
    "annual": Decimal("1") / 12,
}

REVENUE_STATUSES = ("approved", "authorized")


def to_monthly(amount, subscription_type):
    return Decimal(str(amount or 0)) * MONTHLY_MULTIPLIERS.get(
        subscription_type, Decimal("1")
    )


def _money(value):
    return float(Decimal(value).quantize(Decimal("0.01")))


def get_subscription_metrics(start_date=None):
    """All dashboard aggregates. start_date limits the created/billed window."""
    now = utcnow()
    start_date = as_utc(start_date) if start_date else None

    subs_query = Subscription.query
    if start_date:
        subs_query = subs_query.filter(Subscription.created_at >= start_date)
    subs = subs_query.all()

    counts = OrderedDict((status, 0) for status in Subscription.STATUSES)
    for sub in subs:
        counts[sub.status] = counts.get(sub.status, 0) + 1

    ledger_query = BillingHistoryEntry.query.filter(
        BillingHistoryEntry.status.in_(REVENUE_STATUSES)
    )
    if start_date:
        ledger_query = ledger_query.filter(BillingHistoryEntry.billing_date >= start_date)
    ledger = ledger_query.all()
    total_revenue = sum((Decimal(str(e.amount)) for e in ledger), Decimal("0"))

    active = Subscription.query.filter_by(status="active").all()
    mrr = sum(
        (to_monthly(s.total_price, s.subscription_type) for s in active), Decimal("0")
    )
    average_value = (
        sum((Decimal(str(s.total_price)) for s in active), Decimal("0")) / len(active)
        if active
        else Decimal("0")
    )

    churn_rate, growth_rate = _churn_and_growth(now)

    metrics = {
        "total_subscriptions": len(subs),
        "active_subscriptions": counts["active"],
        "pending_subscriptions": counts["pending"],
        "paused_subscriptions": counts["paused"],
        "cancelled_subscriptions": counts["cancelled"],
        "total_revenue": _money(total_revenue),
        "monthly_recurring_revenue": _money(mrr),
        "average_subscription_value": _money(average_value),
        "churn_rate": round(churn_rate, 2),
        "growth_rate": round(growth_rate, 2),
        "top_products": _top_products(subs),
        "revenue_by_frequency": _revenue_by_frequency(subs),
        "recent_activity": _recent_activity(now),
        "webhooks": get_webhook_metrics(start_date),
    }
    logger.info(
        f"Metrics computed: {metrics['total_subscriptions']} subscriptions, "
        f"revenue={metrics['total_revenue']}"
    )
    return metrics


def _churn_and_growth(now):
    """Rates over the last 30 days, relative to the base at window start."""
    window_start = now - timedelta(days=30)
    subs = Subscription.query.filter(Subscription.start_date.isnot(None)).all()

    base = cancelled = new = 0
    for sub in subs:
        started = as_utc(sub.start_date)
        ended = as_utc(sub.cancelled_at)
        if started < window_start and (ended is None or ended >= window_start):
            base += 1
        if started >= window_start:
            new += 1
        if ended and ended >= window_start:
            cancelled += 1

    if not base:
        return 0.0, 0.0
    return cancelled / base * 100, (new - cancelled) / base * 100


def _top_products(subs, limit=10):
    stats = {}
    for sub in subs:
        entry = stats.setdefault(
            sub.product_id,
            {
                "product_id": sub.product_id,
                "product_name": sub.product_name or "Unknown product",
                "subscription_count": 0,
                "revenue": Decimal("0"),
            },
        )
        entry["subscription_count"] += 1
        entry["revenue"] += Decimal(str(sub.total_price or 0))

    ranked = sorted(stats.values(), key=lambda e: e["subscription_count"], reverse=True)
    for entry in ranked:
        entry["revenue"] = _money(entry["revenue"])
    return ranked[:limit]


def _revenue_by_frequency(subs):
    stats = OrderedDict()
    for sub in subs:
        entry = stats.setdefault(
            sub.subscription_type,
            {"frequency": sub.subscription_type, "count": 0, "revenue": Decimal("0")},
        )
        entry["count"] += 1
        entry["revenue"] += Decimal(str(sub.total_price or 0))
    for entry in stats.values():
        entry["revenue"] = _money(entry["revenue"])
    return list(stats.values())


def _recent_activity(now, days=30):
    """Per-day new subscriptions, cancellations and revenue, newest first."""
    since = now - timedelta(days=days)
    daily = {}

    def bucket(dt):
        key = as_utc(dt).date().isoformat()
        return daily.setdefault(
            key,
            {"date": key, "new_subscriptions": 0, "cancelled_subscriptions": 0,
             "revenue": Decimal("0")},
        )

    for sub in Subscription.query.filter(Subscription.created_at >= since).all():
        bucket(sub.created_at)["new_subscriptions"] += 1
    for sub in Subscription.query.filter(Subscription.cancelled_at >= since).all():
        bucket(sub.cancelled_at)["cancelled_subscriptions"] += 1
    for entry in BillingHistoryEntry.query.filter(
        BillingHistoryEntry.status.in_(REVENUE_STATUSES),
        BillingHistoryEntry.billing_date >= since,
    ).all():
        bucket(entry.billing_date)["revenue"] += Decimal(str(entry.amount))

    rows = sorted(daily.values(), key=lambda d: d["date"], reverse=True)
    for row in rows:
        row["revenue"] = _money(row["revenue"])
    return rows[:days]


def get_webhook_metrics(start_date=None):
    """Counts of webhook log rows by entry type and by outcome."""
    query = db.session.query(WebhookLog.entry_type, func.count(WebhookLog.id))
    if start_date:
        query = query.filter(WebhookLog.created_at >= start_date)
    by_type = dict(query.group_by(WebhookLog.entry_type).all())

    outcome_query = db.session.query(WebhookLog.outcome, func.count(WebhookLog.id)).filter(
        WebhookLog.entry_type.in_(["outcome", "replay"])
    )
    if start_date:
        outcome_query = outcome_query.filter(WebhookLog.created_at >= start_date)
    by_outcome = dict(outcome_query.group_by(WebhookLog.outcome).all())

    return {
        "received": by_type.get("receipt", 0),
        "duplicates": by_type.get("duplicate", 0),
        "rejected": by_type.get("rejected", 0),
        "replays": by_type.get("replay", 0),
        "outcomes": by_outcome,
    }
