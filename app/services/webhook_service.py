"""Webhook service — the webhook ingestor.

Responsible for:
- Recording every verified Stripe event in the dedupe ledger
- Claiming the event id and its grant references in one atomic insert
- Dispatching to one handler per event type (unknown types acknowledged)
- Applying the resulting entitlement transition in the same transaction

A (True, ...) result means the effect is committed or was already
committed. Anything else is (False, ...) and the blueprint answers 500 so
Stripe redelivers.
"""

import logging

from flask import current_app

from app.extensions import db
from app.services import checkout_service, ledger_service, stripe_service
from app.services.entitlement_service import (
    find_subscription_by_stripe_id,
    get_or_create_billing_customer,
    get_subscription,
    get_user_id_from_stripe_customer,
    grant_enrollment,
    log_billing_audit,
    normalize_status,
    subscription_is_live,
    upsert_subscription,
)
from app.services.stripe_service import field

logger = logging.getLogger(__name__)

PROCESSED = "processed"
RECONCILED = "reconciled"
IGNORED = "ignored"
ALREADY_PROCESSED = "already_processed"


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    1. Fast path: event id already in the ledger -> no-op
    2. Claim the event id + grant refs (unique insert)
    3. A conflict on a grant ref alone -> apply in reconcile mode
    4. Apply the transition, commit ledger and entitlement writes together

    Returns (success: bool, message: str).
    """
    event_id = field(event, "id")
    event_type = field(event, "type")

    if ledger_service.is_processed(event_id):
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return True, ALREADY_PROCESSED

    # --- Atomic claim ---
    grant_refs = grant_references(event)
    entries = [(event_id, "event", event_type)]
    entries += [(ledger_service.payment_key(ref), "payment", event_type) for ref in grant_refs]

    reconcile = False
    if not ledger_service.claim(entries):
        if ledger_service.is_processed(event_id):
            logger.info(f"Webhook event {event_id} claimed concurrently, skipping")
            return True, ALREADY_PROCESSED
        # Grant ref taken: the activation guard (or a sibling event) granted first.
        if not ledger_service.claim([(event_id, "event", event_type)]):
            return True, ALREADY_PROCESSED
        reconcile = True
        logger.info(f"Webhook event {event_id} ({event_type}) applying in reconcile mode, refs={grant_refs}")

    # --- Route to handler ---
    handler = EVENT_HANDLERS.get(event_type)
    try:
        if handler:
            outcome = handler(event, reconcile)
        else:
            logger.info(f"Unhandled webhook event type {event_type} ({event_id}), acknowledging")
            outcome = IGNORED
        ledger_service.set_outcome(event_id, outcome or PROCESSED)
        db.session.commit()
    except Exception as e:
        logger.error(f"Error handling {event_type} ({event_id}): {e}", exc_info=True)
        db.session.rollback()
        return False, str(e)

    logger.info(f"Webhook event {event_id} ({event_type}) -> {outcome or PROCESSED}")
    return True, outcome or PROCESSED


def grant_references(event):
    """Payment references a grant-type event would apply.

    checkout.session.completed -> session id (+ its payment intent)
    payment_intent.succeeded -> intent id
    invoice.payment_succeeded (first invoice) -> its payment intent
    """
    event_type = field(event, "type")
    obj = _object(event)
    refs = []
    if event_type == "checkout.session.completed":
        refs.append(field(obj, "id"))
        refs.append(_id_of(field(obj, "payment_intent")))
    elif event_type == "payment_intent.succeeded":
        if _course_id_from(field(obj, "metadata") or {}):
            refs.append(field(obj, "id"))
    elif event_type == "invoice.payment_succeeded":
        if field(obj, "billing_reason") == "subscription_create":
            refs.append(_id_of(field(obj, "payment_intent")))
    return [ref for ref in refs if ref]


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def _object(event):
    return field(field(event, "data"), "object")


def _id_of(value):
    """Expandable Stripe field: either an id string or an object."""
    if value is None or isinstance(value, str):
        return value
    return field(value, "id")


def _course_id_from(metadata):
    if field(metadata, "purchase_type") == "course":
        return field(metadata, "course_id")
    return None


def _resolve_user_id(metadata, stripe_customer_id):
    user_id = field(metadata, "user_id")
    if user_id:
        return user_id
    return get_user_id_from_stripe_customer(stripe_customer_id)


def _apply_subscription(user_id, sub_data, stripe_customer_id, metadata=None,
                        action="subscription.updated"):
    """Upsert the user's Subscription from a Stripe subscription object."""
    metadata = metadata or field(sub_data, "metadata") or {}
    period_start, period_end = stripe_service.extract_period_bounds(sub_data)
    stripe_price_id = stripe_service.extract_price_id(sub_data)
    status = normalize_status(field(sub_data, "status"))

    sub = upsert_subscription(
        user_id=user_id,
        status=status,
        stripe_subscription_id=field(sub_data, "id"),
        stripe_customer_id=stripe_customer_id,
        stripe_price_id=stripe_price_id,
        tier=field(metadata, "tier"),
        interval=field(metadata, "interval"),
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=stripe_service.is_cancelling(sub_data),
        source="webhook",
        app_config=current_app.config,
    )

    log_billing_audit(user_id, action, {
        "stripe_subscription_id": sub.stripe_subscription_id,
        "status": status,
        "tier": sub.tier,
        "current_period_end": period_end.isoformat() if period_end else None,
    })
    return sub


def _is_superseded(user_id, stripe_subscription_id):
    """True if the user's row tracks a different Stripe subscription that is still live.

    A cancelled, incomplete or lapsed row yields to the newer subscription.
    """
    sub = get_subscription(user_id)
    return bool(
        sub
        and sub.stripe_subscription_id
        and stripe_subscription_id
        and sub.stripe_subscription_id != stripe_subscription_id
        and subscription_is_live(sub)
    )


def _grant_course(user_id, metadata, payment_ref, reconcile):
    course_id = _course_id_from(metadata)
    if reconcile:
        log_billing_audit(user_id, "enrollment.reconciled", {
            "course_id": course_id,
            "payment_ref": payment_ref,
        })
        return RECONCILED

    days_of_access = field(metadata, "days_of_access") or 365
    enrollment, renewed = grant_enrollment(
        user_id, course_id, days_of_access,
        payment_ref=payment_ref,
        stripe_price_id=field(metadata, "price_id"),
    )
    log_billing_audit(user_id, "enrollment.renewed" if renewed else "enrollment.granted", {
        "course_id": course_id,
        "payment_ref": payment_ref,
        "expires_at": enrollment.expires_at.isoformat() if enrollment.expires_at else None,
    })
    return PROCESSED


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _handle_checkout_completed(event, reconcile):
    """checkout.session.completed: grant the subscription or the course.

    The metadata snapshot written at checkout says what was bought.
    """
    session = _object(event)
    metadata = field(session, "metadata") or {}
    stripe_customer_id = _id_of(field(session, "customer"))
    user_id = _resolve_user_id(metadata, stripe_customer_id)

    if not user_id:
        logger.warning(f"checkout.session.completed {field(session, 'id')} has no user_id")
        return IGNORED

    if stripe_customer_id:
        get_or_create_billing_customer(user_id, stripe_customer_id)

    checkout_service.mark_checkout_status(
        checkout_session_id=field(metadata, "checkout_session_id"),
        stripe_session_id=field(session, "id"),
        status="completed",
    )

    if field(session, "mode") == "subscription":
        stripe_subscription_id = _id_of(field(session, "subscription"))
        if not stripe_subscription_id:
            logger.warning(f"checkout.session.completed {field(session, 'id')} missing subscription")
            return IGNORED
        # Retrieve full subscription from Stripe for period bounds
        sub_data = stripe_service.retrieve_subscription(stripe_subscription_id)
        _apply_subscription(
            user_id, sub_data, stripe_customer_id, metadata=metadata,
            action="subscription.reconciled" if reconcile else "subscription.granted",
        )
        return RECONCILED if reconcile else PROCESSED

    if _course_id_from(metadata):
        payment_ref = _id_of(field(session, "payment_intent")) or field(session, "id")
        return _grant_course(user_id, metadata, payment_ref, reconcile)

    logger.warning(f"checkout.session.completed {field(session, 'id')} has no purchase metadata")
    return IGNORED


def _handle_checkout_expired(event, reconcile):
    session = _object(event)
    metadata = field(session, "metadata") or {}
    checkout = checkout_service.mark_checkout_status(
        checkout_session_id=field(metadata, "checkout_session_id"),
        stripe_session_id=field(session, "id"),
        status="expired",
    )
    if checkout is None:
        return IGNORED
    return PROCESSED


def _handle_payment_intent_succeeded(event, reconcile):
    """Embedded course purchase: the PaymentIntent carries the snapshot."""
    intent = _object(event)
    metadata = field(intent, "metadata") or {}
    if not _course_id_from(metadata):
        return IGNORED

    stripe_customer_id = _id_of(field(intent, "customer"))
    user_id = _resolve_user_id(metadata, stripe_customer_id)
    if not user_id:
        logger.warning(f"payment_intent.succeeded {field(intent, 'id')} has no user_id")
        return IGNORED

    checkout_service.mark_checkout_status(
        checkout_session_id=field(metadata, "checkout_session_id"),
        status="completed",
    )
    return _grant_course(user_id, metadata, field(intent, "id"), reconcile)


def _handle_subscription_created(event, reconcile):
    return _sync_subscription(event, action="subscription.created")


def _handle_subscription_updated(event, reconcile):
    return _sync_subscription(event, action="subscription.updated")


def _sync_subscription(event, action):
    """Overwrite status, period and cancel flag from Stripe's object."""
    sub_data = _object(event)
    stripe_subscription_id = field(sub_data, "id")
    stripe_customer_id = _id_of(field(sub_data, "customer"))

    existing = find_subscription_by_stripe_id(stripe_subscription_id)
    if existing:
        user_id = existing.user_id
    else:
        user_id = _resolve_user_id(field(sub_data, "metadata") or {}, stripe_customer_id)

    if not user_id:
        logger.warning(f"{action}: cannot find user for sub={stripe_subscription_id}")
        return IGNORED

    if not existing and _is_superseded(user_id, stripe_subscription_id):
        logger.info(f"{action}: sub={stripe_subscription_id} is not user {user_id}'s current subscription")
        return IGNORED

    _apply_subscription(user_id, sub_data, stripe_customer_id, action=action)
    return PROCESSED


def _handle_subscription_deleted(event, reconcile):
    """Mark the subscription cancelled. The row is kept."""
    sub_data = _object(event)
    stripe_subscription_id = field(sub_data, "id")

    existing = find_subscription_by_stripe_id(stripe_subscription_id)
    if not existing:
        logger.warning(f"subscription.deleted: no local record for sub={stripe_subscription_id}")
        return IGNORED

    existing.status = "cancelled"
    existing.cancel_at_period_end = False
    existing.source = "webhook"
    db.session.flush()

    log_billing_audit(existing.user_id, "subscription.deleted", {
        "stripe_subscription_id": stripe_subscription_id,
    })
    return PROCESSED


def _handle_payment_failed(event, reconcile):
    """invoice.payment_failed: the subscription goes past_due."""
    invoice = _object(event)
    stripe_subscription_id = _id_of(field(invoice, "subscription"))
    stripe_customer_id = _id_of(field(invoice, "customer"))

    existing = find_subscription_by_stripe_id(stripe_subscription_id)
    if not existing:
        user_id = get_user_id_from_stripe_customer(stripe_customer_id)
        existing = get_subscription(user_id) if user_id else None
        if existing and existing.stripe_subscription_id and stripe_subscription_id:
            # Belongs to some other subscription than the one we track.
            existing = None

    if not existing:
        logger.warning(
            f"invoice.payment_failed: no subscription for customer={stripe_customer_id}"
        )
        return IGNORED

    existing.status = "past_due"
    existing.source = "webhook"
    db.session.flush()

    log_billing_audit(existing.user_id, "subscription.payment_failed", {
        "stripe_subscription_id": stripe_subscription_id,
        "invoice_id": field(invoice, "id"),
        "amount_due": field(invoice, "amount_due"),
    })
    return PROCESSED


def _handle_payment_succeeded(event, reconcile):
    """invoice.payment_succeeded: refresh status and period from Stripe.

    For an embedded first payment this is the event that creates the row.
    """
    invoice = _object(event)
    stripe_subscription_id = _id_of(field(invoice, "subscription"))
    stripe_customer_id = _id_of(field(invoice, "customer"))

    if not stripe_subscription_id:
        return IGNORED

    sub_data = stripe_service.retrieve_subscription(stripe_subscription_id)
    metadata = field(sub_data, "metadata") or {}

    existing = find_subscription_by_stripe_id(stripe_subscription_id)
    if existing:
        user_id = existing.user_id
    else:
        user_id = _resolve_user_id(metadata, stripe_customer_id)

    if not user_id:
        logger.warning(f"invoice.payment_succeeded: cannot find user for sub={stripe_subscription_id}")
        return IGNORED

    first_payment = field(invoice, "billing_reason") == "subscription_create"

    # A paid first invoice is a new purchase and takes over the row, like checkout.session.completed.
    if not existing and not first_payment and _is_superseded(user_id, stripe_subscription_id):
        logger.info(f"invoice.payment_succeeded: sub={stripe_subscription_id} is not user {user_id}'s current subscription")
        return IGNORED

    if first_payment:
        checkout_service.mark_checkout_status(
            checkout_session_id=field(metadata, "checkout_session_id"),
            status="completed",
        )
        action = "subscription.reconciled" if reconcile else "subscription.granted"
    else:
        action = "subscription.renewed"

    _apply_subscription(user_id, sub_data, stripe_customer_id, metadata=metadata, action=action)
    return RECONCILED if reconcile else PROCESSED


EVENT_HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "checkout.session.expired": _handle_checkout_expired,
    "payment_intent.succeeded": _handle_payment_intent_succeeded,
    "customer.subscription.created": _handle_subscription_created,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_failed": _handle_payment_failed,
    "invoice.payment_succeeded": _handle_payment_succeeded,
}
