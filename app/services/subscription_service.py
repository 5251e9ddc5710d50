"""Subscription service — the state machine.

    pending ──activate──> active ──pause──> paused ──resume──> active
                            │                 │
                            └──cancel──> cancelled <──cancel──┘

Every transition re-reads the row inside its own transaction, applies
the change, appends the ledger row / audit event it implies, recomputes
the user's profile flag and commits once. The `version` column turns a
concurrent write into StaleDataError, reported as TransitionError.

Side effects (confirmation emails, mirroring the status to the provider)
run after the commit through app.services.background and never undo a
transition.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal

import bleach
from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.extensions import db
from app.models.subscription import Subscription
from app.services import background, email_service, mercadopago_client
from app.services.billing_service import (
    add_months,
    as_utc,
    compute_next_billing_date,
    compute_total_price,
    has_billing_entry,
    log_subscription_audit,
    record_billing_entry,
    sync_profile_flag,
    utcnow,
)
from app.services.mercadopago_client import ProviderError
from app.services.reference_service import (
    generate_external_reference,
    normalize_product_id,
)

logger = logging.getLogger(__name__)

ACTIONS_BY_STATUS = {
    "pending": [],
    "active": ["pause", "cancel", "modify"],
    "paused": ["resume", "cancel", "modify"],
    "cancelled": [],
}

# Local status -> preapproval status on the provider side
PROVIDER_STATUS = {
    "paused": "paused",
    "active": "authorized",
    "cancelled": "cancelled",
}


class TransitionError(ValueError):
    """A transition was requested from a state that does not allow it."""

    def __init__(self, current, requested, message=None):
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Cannot {requested} a subscription that is {current}"
        )


class SubscriptionNotFound(LookupError):
    pass


class DuplicateSubscriptionError(ValueError):
    """The user already holds a live subscription for this product."""

    def __init__(self, existing, message):
        self.existing = existing
        super().__init__(message)


def _sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(text, tags=[], strip=True).strip() or None


def available_actions(subscription):
    return list(ACTIONS_BY_STATUS.get(subscription.status, []))


# ──────────────────────────────────────────────
# Transaction helpers
# ──────────────────────────────────────────────

def _load_for_update(subscription_id):
    """Re-read the persisted row, bypassing any stale identity-map copy."""
    sub = (
        Subscription.query.filter_by(id=subscription_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not sub:
        db.session.rollback()
        raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
    return sub


@contextmanager
def _applying(sub, requested):
    """Run a transition body and commit it.

    Autoflushes inside the body hit the version check too, so a lost race
    surfaces here whichever statement triggered it.
    """
    sub_id, status = sub.id, sub.status
    try:
        yield
        db.session.commit()
    except (StaleDataError, IntegrityError) as e:
        db.session.rollback()
        logger.warning(
            f"Concurrent write on subscription {sub_id} during {requested}: {e}"
        )
        raise TransitionError(
            status,
            requested,
            f"Subscription was modified concurrently; {requested} not applied",
        ) from e


def _require(sub, allowed, requested):
    if sub.status not in allowed:
        db.session.rollback()
        raise TransitionError(sub.status, requested)


# ──────────────────────────────────────────────
# Activation & renewals
# ──────────────────────────────────────────────

def activate(subscription_id, charge=None, source="webhook", strategy=None,
             force=False, reason=None, actor_user_id=None):
    """pending -> active.

    charge must be approved unless force=True, which requires a reason.
    Returns (subscription, changed). Already-active without force is a
    successful no-op; force on an active subscription re-applies the
    activation bookkeeping (admin repair).
    """
    reason = _sanitize(reason)
    if force and not (reason or "").strip():
        raise ValueError("A reason is required to force an activation.")

    sub = _load_for_update(subscription_id)

    if not force and (charge is None or not charge.is_approved):
        status = charge.status if charge else "missing"
        db.session.rollback()
        raise TransitionError(
            sub.status,
            "activate",
            f"Payment is not approved (status: {status})",
        )

    if sub.status == "active":
        if not force:
            db.session.rollback()
            logger.info(f"Subscription {sub.id} already active, nothing to do")
            return sub, False
        return _repair_active(sub, charge, source, reason, actor_user_id)

    _require(sub, ["pending"], "activate")

    if charge is not None and has_billing_entry(sub.id, charge.payment_id):
        db.session.rollback()
        return sub, False

    now = utcnow()
    anchor = (charge.paid_at if charge and charge.payment_id else None) or now
    previous = sub.status

    with _applying(sub, "activate"):
        sub.status = "active"
        if not sub.start_date:
            sub.start_date = anchor
        sub.last_billing_date = anchor
        sub.next_billing_date = compute_next_billing_date(
            anchor, sub.frequency, sub.frequency_unit
        )
        term_end = add_months(
            as_utc(sub.start_date), current_app.config["SUBSCRIPTION_TERM_MONTHS"]
        )
        sub.end_date = max(term_end, sub.next_billing_date)
        sub.charges_made = (sub.charges_made or 0) + 1

        meta = {
            "activation_source": source,
            "activated_at": now.isoformat(),
        }
        if strategy:
            meta["matching_strategy"] = strategy
        if force:
            meta["forced_activation_reason"] = reason
        if charge is not None:
            _record_provider_ids(sub, charge, meta)
        sub.update_metadata(**meta)

        ledger_status = None
        if force and (charge is None or not charge.is_approved):
            ledger_status = "forced"
        record_billing_entry(
            sub, charge, source=source, strategy=strategy, status=ledger_status
        )
        sync_profile_flag(sub.user_id)
        log_subscription_audit(
            sub,
            "subscription.activated",
            previous_status=previous,
            actor_user_id=actor_user_id,
            metadata={
                "source": source,
                "matching_strategy": strategy,
                "payment_id": charge.payment_id if charge else None,
                "forced": force,
                "reason": reason,
            },
        )

    logger.info(
        f"Subscription {sub.id} activated (source={source}, strategy={strategy}, "
        f"force={force})"
    )
    _notify(sub, "activated")
    return sub, True


def _repair_active(sub, charge, source, reason, actor_user_id):
    """Forced activation of an already-active subscription.

    Fills missing dates, restores a missing ledger row and resyncs the
    profile flag. charges_made is left alone.
    """
    now = utcnow()
    repaired = []

    with _applying(sub, "activate"):
        if not sub.start_date:
            sub.start_date = now
            repaired.append("start_date")
        if not sub.next_billing_date:
            sub.next_billing_date = compute_next_billing_date(
                sub.last_billing_date or sub.start_date,
                sub.frequency,
                sub.frequency_unit,
            )
            repaired.append("next_billing_date")
        if not sub.end_date or as_utc(sub.end_date) <= as_utc(sub.start_date):
            sub.end_date = max(
                add_months(
                    as_utc(sub.start_date),
                    current_app.config["SUBSCRIPTION_TERM_MONTHS"],
                ),
                as_utc(sub.next_billing_date),
            )
            repaired.append("end_date")

        if sub.billing_entries.count() == 0:
            status = "forced" if charge is None or not charge.is_approved else None
            record_billing_entry(sub, charge, source=source, status=status)
            repaired.append("billing_history")

        if charge is not None:
            meta = {}
            _record_provider_ids(sub, charge, meta)
            if meta:
                sub.update_metadata(**meta)

        sub.update_metadata(last_repair_at=now.isoformat(), last_repair_reason=reason)
        sync_profile_flag(sub.user_id)
        log_subscription_audit(
            sub,
            "subscription.repaired",
            previous_status=sub.status,
            actor_user_id=actor_user_id,
            metadata={"source": source, "reason": reason, "repaired": repaired},
        )
    logger.info(f"Subscription {sub.id} repaired: {repaired or 'nothing missing'}")
    return sub, True


def _record_provider_ids(sub, charge, meta):
    """Collect provider ids into meta; set provider_subscription_id once."""
    if charge.payment_id:
        meta["last_payment_id"] = charge.payment_id
    if charge.external_reference and charge.external_reference != sub.external_reference:
        key = (
            "provider_external_reference"
            if charge.kind == "preapproval"
            else "payment_external_reference"
        )
        meta[key] = charge.external_reference

    if charge.preapproval_id and not sub.provider_subscription_id:
        taken = Subscription.query.filter(
            Subscription.provider_subscription_id == charge.preapproval_id,
            Subscription.id != sub.id,
        ).first()
        if taken:
            logger.warning(
                f"Preapproval {charge.preapproval_id} already linked to "
                f"subscription {taken.id}; not linking {sub.id}"
            )
        else:
            sub.provider_subscription_id = charge.preapproval_id


def record_renewal(subscription_id, charge, source="webhook", strategy=None):
    """Recurring charge on an active subscription.

    A payment dated before next_billing_date - RENEWAL_EARLY_WINDOW_DAYS
    belongs to the cycle already billed (typically the first charge after
    a preapproval-only activation): its id is noted, nothing is counted.
    Returns (subscription, changed).
    """
    if charge is None or not charge.payment_id:
        raise ValueError("A renewal needs a provider payment id.")

    sub = _load_for_update(subscription_id)
    if not charge.is_approved:
        db.session.rollback()
        raise TransitionError(
            sub.status, "renew", f"Payment is not approved (status: {charge.status})"
        )
    _require(sub, ["active"], "renew")

    accounted = list(sub.meta.get("accounted_payment_ids") or [])
    if has_billing_entry(sub.id, charge.payment_id) or charge.payment_id in accounted:
        db.session.rollback()
        return sub, False

    paid_at = charge.paid_at or utcnow()
    next_billing = as_utc(sub.next_billing_date)
    early_window = timedelta(days=current_app.config["RENEWAL_EARLY_WINDOW_DAYS"])

    if next_billing and paid_at < next_billing - early_window:
        accounted.append(charge.payment_id)
        with _applying(sub, "renew"):
            sub.update_metadata(
                accounted_payment_ids=accounted, last_payment_id=charge.payment_id
            )
        logger.info(
            f"Payment {charge.payment_id} falls in the current cycle of "
            f"subscription {sub.id}; not counted again"
        )
        return sub, False

    anchor = max(next_billing, paid_at) if next_billing else paid_at
    with _applying(sub, "renew"):
        sub.charges_made = (sub.charges_made or 0) + 1
        sub.last_billing_date = paid_at
        sub.next_billing_date = compute_next_billing_date(
            anchor, sub.frequency, sub.frequency_unit
        )
        if not sub.end_date or as_utc(sub.end_date) < sub.next_billing_date:
            sub.end_date = sub.next_billing_date
        sub.update_metadata(last_payment_id=charge.payment_id)

        record_billing_entry(sub, charge, source="renewal", strategy=strategy)
        log_subscription_audit(
            sub,
            "subscription.renewed",
            previous_status="active",
            metadata={"payment_id": charge.payment_id, "source": source},
        )
    logger.info(f"Subscription {sub.id} renewed with payment {charge.payment_id}")
    return sub, True


def apply_charge(subscription_id, charge, source="webhook", strategy=None):
    """Route an approved provider charge to activate or record_renewal.

    Returns an outcome string: activated | renewed | already_active |
    already_recorded.
    """
    sub = db.session.get(Subscription, subscription_id)
    if sub is None:
        raise SubscriptionNotFound(f"Subscription {subscription_id} not found")

    if sub.status == "pending":
        _, changed = activate(
            subscription_id, charge, source=source, strategy=strategy
        )
        return "activated" if changed else "already_recorded"

    if sub.status == "active":
        if not charge.payment_id:
            db.session.rollback()
            return "already_active"
        _, changed = record_renewal(
            subscription_id, charge, source=source, strategy=strategy
        )
        return "renewed" if changed else "already_recorded"

    raise TransitionError(sub.status, "activate")


# ──────────────────────────────────────────────
# Customer-initiated transitions
# ──────────────────────────────────────────────

def pause(subscription_id, reason=None, actor_user_id=None, mirror=True):
    reason = _sanitize(reason)
    sub = _load_for_update(subscription_id)
    _require(sub, ["active"], "pause")

    with _applying(sub, "pause"):
        sub.status = "paused"
        sub.paused_at = utcnow()
        sub.pause_reason = reason
        sync_profile_flag(sub.user_id)
        log_subscription_audit(
            sub,
            "subscription.paused",
            previous_status="active",
            actor_user_id=actor_user_id,
            metadata={"reason": reason, "mirrored": mirror},
        )

    logger.info(f"Subscription {sub.id} paused")
    if mirror:
        _mirror(sub)
    _notify(sub, "paused")
    return sub


def resume(subscription_id, actor_user_id=None, mirror=True):
    sub = _load_for_update(subscription_id)
    _require(sub, ["paused"], "resume")

    with _applying(sub, "resume"):
        sub.status = "active"
        sub.paused_at = None
        sub.pause_reason = None
        sub.next_billing_date = compute_next_billing_date(
            utcnow(), sub.frequency, sub.frequency_unit
        )
        if not sub.end_date or as_utc(sub.end_date) < sub.next_billing_date:
            sub.end_date = sub.next_billing_date
        sync_profile_flag(sub.user_id)
        log_subscription_audit(
            sub,
            "subscription.resumed",
            previous_status="paused",
            actor_user_id=actor_user_id,
            metadata={"mirrored": mirror},
        )

    logger.info(f"Subscription {sub.id} resumed")
    if mirror:
        _mirror(sub)
    _notify(sub, "resumed")
    return sub


def cancel(subscription_id, reason=None, actor_user_id=None, mirror=True):
    reason = _sanitize(reason)
    sub = _load_for_update(subscription_id)
    _require(sub, ["active", "paused"], "cancel")

    previous = sub.status
    with _applying(sub, "cancel"):
        sub.status = "cancelled"
        sub.cancelled_at = utcnow()
        sub.cancellation_reason = reason
        sync_profile_flag(sub.user_id)
        log_subscription_audit(
            sub,
            "subscription.cancelled",
            previous_status=previous,
            actor_user_id=actor_user_id,
            metadata={"reason": reason, "mirrored": mirror},
        )

    logger.info(f"Subscription {sub.id} cancelled (was {previous})")
    if mirror:
        _mirror(sub)
    _notify(sub, "cancelled")
    return sub


def modify(subscription_id, subscription_type=None, quantity=None,
           delivery_address=None, actor_user_id=None):
    """Change plan, quantity or delivery address in place."""
    if subscription_type is None and quantity is None and delivery_address is None:
        raise ValueError("Nothing to modify.")
    if subscription_type is not None and subscription_type not in Subscription.TYPES:
        raise ValueError(f"Unknown subscription type: {subscription_type}")
    if quantity is not None:
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise ValueError("Quantity must be a whole number.")
        if quantity < 1:
            raise ValueError("Quantity must be at least 1.")

    sub = _load_for_update(subscription_id)
    _require(sub, ["active", "paused"], "modify")

    changes = {}
    with _applying(sub, "modify"):
        if subscription_type is not None and subscription_type != sub.subscription_type:
            changes["subscription_type"] = [sub.subscription_type, subscription_type]
            sub.subscription_type = subscription_type
            sub.frequency, sub.frequency_unit = Subscription.TYPES[subscription_type]
            anchor = sub.last_billing_date or sub.start_date or utcnow()
            sub.next_billing_date = compute_next_billing_date(
                anchor, sub.frequency, sub.frequency_unit
            )
        if quantity is not None and quantity != sub.quantity:
            changes["quantity"] = [sub.quantity, quantity]
            sub.quantity = quantity
            sub.total_price = compute_total_price(
                sub.base_price, quantity, sub.discount_percentage
            )
        if delivery_address is not None:
            changes["delivery_address"] = True
            sub.delivery_address = delivery_address

        if changes:
            log_subscription_audit(
                sub,
                "subscription.modified",
                previous_status=sub.status,
                actor_user_id=actor_user_id,
                metadata={"changes": changes},
            )

    if not changes:
        return sub
    logger.info(f"Subscription {sub.id} modified: {sorted(changes)}")
    return sub


# ──────────────────────────────────────────────
# Checkout
# ──────────────────────────────────────────────

def create_pending_subscription(user, product, subscription_type="monthly",
                                quantity=1, discount_percentage=0,
                                delivery_address=None):
    """Create the pending record a checkout pays for.

    product: {"id", "name", "price"}; price is the unit price.

    One live record per user and product: an active or paused one raises
    DuplicateSubscriptionError, a pending one is reused with the new terms
    so a retried checkout never leaves two pending rows to match against.
    """
    if subscription_type not in Subscription.TYPES:
        raise ValueError(f"Unknown subscription type: {subscription_type}")
    if not product or not product.get("id") or product.get("price") is None:
        raise ValueError("Product id and price are required.")
    quantity = int(quantity or 1)
    if quantity < 1:
        raise ValueError("Quantity must be at least 1.")

    frequency, unit = Subscription.TYPES[subscription_type]
    product_id = normalize_product_id(str(product["id"]))

    existing = (
        Subscription.query.filter(
            Subscription.user_id == user.id,
            Subscription.product_id == product_id,
            Subscription.status.in_(["pending", "active", "paused"]),
        )
        .order_by(Subscription.created_at.desc())
        .first()
    )
    if existing is not None and existing.status != "pending":
        db.session.rollback()
        raise DuplicateSubscriptionError(
            existing,
            f"You already have a {existing.status} subscription for this product.",
        )
    if existing is not None:
        return _reuse_pending(
            existing, product, subscription_type, quantity,
            discount_percentage, delivery_address, user.id,
        )
    # The reference embeds the row id so retried checkouts never collide.
    subscription_id = str(uuid.uuid4())
    sub = Subscription(
        id=subscription_id,
        external_reference=generate_external_reference(
            user.id, product_id, nonce=subscription_id
        ),
        user_id=user.id,
        product_id=product_id,
        product_name=product.get("name"),
        quantity=quantity,
        base_price=product["price"],
        discount_percentage=discount_percentage or 0,
        total_price=compute_total_price(
            product["price"], quantity, discount_percentage
        ),
        currency=product.get("currency") or current_app.config["DEFAULT_CURRENCY"],
        subscription_type=subscription_type,
        frequency=frequency,
        frequency_unit=unit,
        customer_snapshot={"email": user.email, "name": user.full_name},
        delivery_address=delivery_address,
        status="pending",
        metadata_={},
    )
    db.session.add(sub)
    db.session.flush()
    log_subscription_audit(
        sub, "subscription.created", actor_user_id=user.id
    )
    db.session.commit()
    logger.info(f"Pending subscription {sub.id} created ({sub.external_reference})")
    return sub


def _money(value):
    return Decimal(str(value)).quantize(Decimal("0.01"))


def _reuse_pending(existing, product, subscription_type, quantity,
                   discount_percentage, delivery_address, actor_user_id):
    sub = _load_for_update(existing.id)
    _require(sub, ["pending"], "checkout")

    frequency, unit = Subscription.TYPES[subscription_type]
    terms = {
        "product_name": product.get("name") or sub.product_name,
        "quantity": quantity,
        "base_price": _money(product["price"]),
        "discount_percentage": _money(discount_percentage or 0),
        "total_price": compute_total_price(
            product["price"], quantity, discount_percentage
        ),
        "subscription_type": subscription_type,
        "frequency": frequency,
        "frequency_unit": unit,
    }
    if delivery_address is not None:
        terms["delivery_address"] = delivery_address
    changed = sorted(k for k, v in terms.items() if getattr(sub, k) != v)

    with _applying(sub, "checkout"):
        for key in changed:
            setattr(sub, key, terms[key])
        log_subscription_audit(
            sub,
            "subscription.checkout_retried",
            previous_status="pending",
            actor_user_id=actor_user_id,
            metadata={"changed": changed},
        )
    logger.info(
        f"Reusing pending subscription {sub.id} for a repeated checkout "
        f"(changed: {changed or 'nothing'})"
    )
    return sub


def start_checkout(subscription):
    """Create the provider preapproval for a pending subscription.

    Returns the provider init_point. ProviderError propagates; the pending
    record stays for the sweep / a retry.
    """
    frequency, unit = subscription.frequency, subscription.frequency_unit
    if unit == "weeks":
        frequency, unit = frequency * 7, "days"

    preapproval = mercadopago_client.create_preapproval(
        reason=subscription.product_name or f"Subscription {subscription.product_id}",
        external_reference=subscription.external_reference,
        payer_email=subscription.customer_email,
        amount=subscription.total_price,
        currency=subscription.currency,
        frequency=frequency,
        frequency_type=unit,
        back_url=f"{current_app.config['APP_BASE_URL']}/subscriptions/{subscription.id}",
        metadata={
            "user_id": subscription.user_id,
            "product_id": subscription.product_id,
            "subscription_id": subscription.id,
        },
    )

    sub = db.session.get(Subscription, subscription.id)
    sub.update_metadata(
        checkout_preapproval_id=preapproval.get("id"),
        checkout_created_at=utcnow().isoformat(),
    )
    db.session.commit()
    return preapproval.get("init_point")


# ──────────────────────────────────────────────
# Best-effort side effects
# ──────────────────────────────────────────────

def _mirror(sub):
    if not sub.provider_subscription_id:
        return
    background.run_detached(
        mirror_provider_status,
        sub.id,
        sub.provider_subscription_id,
        PROVIDER_STATUS[sub.status],
    )


def mirror_provider_status(subscription_id, preapproval_id, provider_status):
    """PUT the status to the provider; flag the record for retry on failure."""
    try:
        mercadopago_client.update_preapproval_status(preapproval_id, provider_status)
    except ProviderError as e:
        logger.warning(
            f"Provider mirror of {provider_status} failed for subscription "
            f"{subscription_id}: {e}"
        )
        _set_sync_state(subscription_id, "failed", provider_status, str(e))
        return False

    _set_sync_state(subscription_id, "synced", provider_status)
    return True


def _set_sync_state(subscription_id, state, target, error=None):
    sub = db.session.get(Subscription, subscription_id)
    if sub is None:
        return
    sub.update_metadata(
        provider_sync_status=state,
        provider_sync_target=target,
        provider_sync_error=error,
        provider_sync_at=utcnow().isoformat(),
    )
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning(f"Could not record provider sync state for {subscription_id}")


def _notify(sub, event):
    email = sub.customer_email
    if not email:
        return

    if event == "activated":
        template = "emails/subscription_activated.html"
        subject = "Your subscription is active"
    else:
        template = "emails/subscription_status_changed.html"
        subject = f"Your subscription was {event}"

    background.run_detached(
        email_service.send_email,
        to=email,
        subject=subject,
        template=template,
        context={"subscription": sub.to_dict(), "event": event},
    )

