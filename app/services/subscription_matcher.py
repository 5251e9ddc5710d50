"""Subscription matcher — resolve a provider object to a local Subscription.

The reference the provider reports back is not always the one we
generated, so resolution runs an ordered chain of strategies and stops
at the first one that yields exactly one candidate:

    1. external_reference        exact match on the provider's reference
    2. provider_subscription_id  exact match on the preapproval id
    3. metadata_reference        alternate reference recorded in metadata
    4. user_product_window       same user + product, pending, created
                                 within MATCH_WINDOW_MINUTES of the
                                 provider object
    5. user_email_window         same user + payer email, pending, and the
                                 user's only pending record in the
                                 EMAIL_MATCH_WINDOW_HOURS window

More than one candidate at any step is ambiguous: logged as a warning and
never guessed.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy import func, or_

from app.models.subscription import Subscription
from app.services import mercadopago_client
from app.services.billing_service import (
    as_utc,
    charge_from_provider,
    parse_provider_date,
    utcnow,
)
from app.services.reference_service import (
    normalize_product_id,
    parse_external_reference,
)

logger = logging.getLogger(__name__)

MATCHED = "matched"
NOT_FOUND = "not_found"
AMBIGUOUS = "ambiguous"


@dataclass
class MatchResult:
    outcome: str
    subscription: Subscription = None
    strategy: str = None
    candidate_ids: list = field(default_factory=list)
    provider_object: dict = None
    kind: str = None

    @property
    def matched(self):
        return self.outcome == MATCHED

    @property
    def charge(self):
        if self.provider_object is None:
            return None
        return charge_from_provider(self.provider_object, self.kind)


# ──────────────────────────────────────────────
# Entry points
# ──────────────────────────────────────────────

def match_payment(payment_id):
    """Fetch a payment from the provider and resolve it.

    Provider errors propagate to the caller.
    """
    payment = mercadopago_client.get_payment(payment_id)
    return resolve(payment, kind="payment")


def match_preapproval(preapproval_id):
    preapproval = mercadopago_client.get_preapproval(preapproval_id)
    return resolve(preapproval, kind="preapproval")


def match_authorized_payment(authorized_payment_id):
    obj = mercadopago_client.get_authorized_payment(authorized_payment_id)
    return resolve(obj, kind="authorized_payment")


def detect_kind(obj):
    if "auto_recurring" in obj:
        return "preapproval"
    if "preapproval_id" in obj and "payment" in obj:
        return "authorized_payment"
    return "payment"


def resolve(provider_object, kind=None):
    """Run the strategy chain against an already-fetched provider object."""
    kind = kind or detect_kind(provider_object)
    context = _MatchContext(provider_object, kind)

    for name, strategy in STRATEGIES:
        candidates = strategy(context)
        if not candidates:
            continue

        ids = [s.id for s in candidates]
        if len(candidates) > 1:
            logger.warning(
                f"Ambiguous match for {kind} {provider_object.get('id')} "
                f"via {name}: candidates={ids}"
            )
            return MatchResult(
                outcome=AMBIGUOUS,
                strategy=name,
                candidate_ids=ids,
                provider_object=provider_object,
                kind=kind,
            )

        logger.info(
            f"Matched {kind} {provider_object.get('id')} to subscription "
            f"{ids[0]} via {name}"
        )
        return MatchResult(
            outcome=MATCHED,
            subscription=candidates[0],
            strategy=name,
            candidate_ids=ids,
            provider_object=provider_object,
            kind=kind,
        )

    logger.info(f"No subscription matches {kind} {provider_object.get('id')}")
    return MatchResult(outcome=NOT_FOUND, provider_object=provider_object, kind=kind)


# ──────────────────────────────────────────────
# Strategies
# ──────────────────────────────────────────────

class _MatchContext:
    """Values extracted once from the provider object."""

    def __init__(self, obj, kind):
        self.obj = obj
        self.kind = kind
        self.metadata = obj.get("metadata") or {}
        self.external_reference = obj.get("external_reference") or None

        if kind == "preapproval":
            self.preapproval_id = _str(obj.get("id"))
        elif kind == "authorized_payment":
            self.preapproval_id = _str(obj.get("preapproval_id"))
        else:
            self.preapproval_id = _str(self.metadata.get("preapproval_id"))

        parsed = parse_external_reference(self.external_reference) or {}
        self.user_id = _str(self.metadata.get("user_id")) or parsed.get("user_id")
        self.product_id = normalize_product_id(
            _str(self.metadata.get("product_id")) or parsed.get("product_id")
        )

        payer = obj.get("payer") or {}
        self.payer_email = (obj.get("payer_email") or payer.get("email") or "").strip().lower() or None

        self.created_at = parse_provider_date(obj.get("date_created")) or utcnow()


def _str(value):
    return str(value) if value not in (None, "") else None


def _by_external_reference(ctx):
    if not ctx.external_reference:
        return []
    return Subscription.query.filter_by(
        external_reference=ctx.external_reference
    ).all()


def _by_provider_subscription_id(ctx):
    if not ctx.preapproval_id:
        return []
    return Subscription.query.filter_by(
        provider_subscription_id=ctx.preapproval_id
    ).all()


def _by_metadata_reference(ctx):
    if not ctx.external_reference:
        return []
    return Subscription.query.filter(
        or_(
            Subscription.metadata_["provider_external_reference"].as_string()
            == ctx.external_reference,
            Subscription.metadata_["payment_external_reference"].as_string()
            == ctx.external_reference,
        )
    ).all()


def _by_user_product_window(ctx):
    if not ctx.user_id or not ctx.product_id:
        return []
    window = timedelta(minutes=current_app.config["MATCH_WINDOW_MINUTES"])
    candidates = Subscription.query.filter_by(
        user_id=ctx.user_id,
        product_id=ctx.product_id,
        status="pending",
    ).all()
    return [
        s for s in candidates
        if abs(as_utc(s.created_at) - ctx.created_at) <= window
    ]


def _by_user_email_window(ctx):
    if not ctx.user_id or not ctx.payer_email:
        return []
    window = timedelta(hours=current_app.config["EMAIL_MATCH_WINDOW_HOURS"])
    pending = [
        s for s in Subscription.query.filter_by(
            user_id=ctx.user_id, status="pending"
        ).filter(
            func.lower(Subscription.customer_snapshot["email"].as_string())
            == ctx.payer_email
        ).all()
        if abs(as_utc(s.created_at) - ctx.created_at) <= window
    ]
    if len(pending) != 1:
        return pending

    # Only trusted when it is the user's sole pending record in the window.
    others = [
        s for s in Subscription.query.filter_by(
            user_id=ctx.user_id, status="pending"
        ).all()
        if abs(as_utc(s.created_at) - ctx.created_at) <= window
    ]
    if len(others) > 1:
        return others
    return pending


STRATEGIES = [
    ("external_reference", _by_external_reference),
    ("provider_subscription_id", _by_provider_subscription_id),
    ("metadata_reference", _by_metadata_reference),
    ("user_product_window", _by_user_product_window),
    ("user_email_window", _by_user_email_window),
]
