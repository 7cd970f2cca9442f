"""Checkout service — the checkout initiator.

Responsible for:
- Validating a purchase request before any Stripe call
- Resolving the target (course, or tier + interval) and checking it is
  purchasable for this user
- Replaying an earlier result for a repeated idempotency key
- Resolving or lazily creating the Stripe customer
- Building the metadata snapshot and creating the Stripe object
  (hosted Checkout Session or embedded PaymentIntent / Subscription)
- Recording the pending CheckoutSession, only after Stripe succeeded
"""

import logging
import uuid

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.errors import InvalidRequest, NotFound, PreconditionFailed
from app.extensions import db
from app.models.checkout_session import CheckoutSession
from app.models.course import Course
from app.services import entitlement_service, stripe_service
from app.services.entitlement_service import INTERVALS, TIERS
from app.services.stripe_service import field

logger = logging.getLogger(__name__)

UI_MODES = ("hosted", "embedded")
MAX_IDEMPOTENCY_KEY_LENGTH = 200

COURSE_SUCCESS_PATH = "/checkout/confirm?session_id={CHECKOUT_SESSION_ID}"
COURSE_CANCEL_PATH = "/courses/{course_id}"
SUBSCRIPTION_SUCCESS_PATH = "/checkout/confirm?session_id={CHECKOUT_SESSION_ID}"
SUBSCRIPTION_CANCEL_PATH = "/subscribe"


# ──────────────────────────────────────────────
# Validation
# ──────────────────────────────────────────────

def parse_checkout_request(body):
    """Validate the JSON body of POST /api/checkout.

    Returns (purchase_kind, target, idempotency_key, ui_mode).
    Raises InvalidRequest — nothing has touched Stripe yet.
    """
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")

    purchase_kind = body.get("purchaseKind")
    if purchase_kind not in CheckoutSession.KINDS:
        raise InvalidRequest("purchaseKind must be 'course' or 'subscription'")

    idempotency_key = body.get("idempotencyKey")
    if not isinstance(idempotency_key, str) or not idempotency_key.strip():
        raise InvalidRequest("idempotencyKey is required")
    idempotency_key = idempotency_key.strip()
    if len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise InvalidRequest("idempotencyKey is too long")

    ui_mode = body.get("uiMode") or "hosted"
    if ui_mode not in UI_MODES:
        raise InvalidRequest("uiMode must be 'hosted' or 'embedded'")

    target = body.get("target")
    if not isinstance(target, dict):
        raise InvalidRequest("target is required")

    if purchase_kind == "course":
        course_id = target.get("courseId")
        if not isinstance(course_id, str) or not course_id:
            raise InvalidRequest("target.courseId is required for a course purchase")
        is_renewal = target.get("isRenewal", False)
        if not isinstance(is_renewal, bool):
            raise InvalidRequest("target.isRenewal must be a boolean")
        target = {"course_id": course_id, "is_renewal": is_renewal}
    else:
        tier = target.get("tier")
        interval = target.get("interval")
        if tier not in TIERS:
            raise InvalidRequest(f"target.tier must be one of: {', '.join(TIERS)}")
        if interval not in INTERVALS:
            raise InvalidRequest(f"target.interval must be one of: {', '.join(INTERVALS)}")
        target = {"tier": tier, "interval": interval}

    return purchase_kind, target, idempotency_key, ui_mode


# ──────────────────────────────────────────────
# Target resolution
# ──────────────────────────────────────────────

def _resolve_course(user_id, course_id, is_renewal):
    course = db.session.get(Course, course_id)
    if course is None or not course.is_published:
        raise NotFound("Course not found", code="course_not_found")
    if course.is_free:
        raise PreconditionFailed("This course is free and can't be purchased", code="not_purchasable")

    enrollment = entitlement_service.get_enrollment(user_id, course_id)
    if is_renewal and enrollment is None:
        raise PreconditionFailed("There is no enrollment to renew", code="not_purchasable")
    if not is_renewal and entitlement_service.enrollment_is_active(enrollment):
        raise PreconditionFailed("You already own this course", code="already_owned")
    return course


def _resolve_subscription_price(tier, interval):
    price_id = entitlement_service.get_price_id(tier, interval, current_app.config)
    if not price_id:
        raise PreconditionFailed(
            f"The {tier} plan isn't available with {interval}ly billing",
            code="not_purchasable",
        )
    return price_id


def build_metadata(user_id, checkout_session_id, purchase_kind, target,
                   course=None, price_id=None):
    """Snapshot of what is being bought, attached to every Stripe object.

    Stripe metadata values must be strings.
    """
    metadata = {
        "user_id": str(user_id),
        "checkout_session_id": checkout_session_id,
        "purchase_type": purchase_kind,
        "source": "api",
    }
    if price_id:
        metadata["price_id"] = price_id
    if purchase_kind == "course":
        metadata["course_id"] = course.id
        metadata["days_of_access"] = str(course.days_of_access)
        metadata["is_renewal"] = "true" if target["is_renewal"] else "false"
    else:
        metadata["tier"] = target["tier"]
        metadata["interval"] = target["interval"]
    return metadata


# ──────────────────────────────────────────────
# Checkout
# ──────────────────────────────────────────────

def _find_existing(user_id, idempotency_key):
    return CheckoutSession.query.filter_by(
        user_id=user_id, idempotency_key=idempotency_key
    ).first()


def _resolve_customer_id(user):
    """Stored customer, or a new Stripe customer committed right away."""
    customer = entitlement_service.get_billing_customer(user.id)
    if customer:
        return customer.stripe_customer_id

    stripe_customer_id = stripe_service.create_customer(
        user.id, email=user.email, name=user.full_name
    )
    customer = entitlement_service.save_new_billing_customer(user.id, stripe_customer_id)
    return customer.stripe_customer_id


def _course_line_items(course, is_renewal):
    if course.stripe_price_id:
        return [{"price": course.stripe_price_id, "quantity": 1}]
    return [{
        "price_data": {
            "currency": "usd",
            "product_data": {
                "name": f"Renew Access: {course.title}" if is_renewal else course.title,
                "description": f"{course.days_of_access} days of access",
            },
            "unit_amount": course.price_cents,
        },
        "quantity": 1,
    }]


def create_checkout(user, purchase_kind, target, idempotency_key, ui_mode="hosted"):
    """Create (or replay) a checkout for one logical purchase attempt.

    Returns the CheckoutSession. Raises InvalidRequest / NotFound /
    PreconditionFailed before touching Stripe, UpstreamError if Stripe
    fails (in which case no CheckoutSession row is written).
    """
    existing = _find_existing(user.id, idempotency_key)
    if existing:
        logger.info(f"Replaying checkout {existing.id} for idempotency key {idempotency_key}")
        return existing

    course = None
    price_id = None
    if purchase_kind == "course":
        course = _resolve_course(user.id, target["course_id"], target["is_renewal"])
        price_id = course.stripe_price_id
    else:
        price_id = _resolve_subscription_price(target["tier"], target["interval"])

    customer_id = _resolve_customer_id(user)

    checkout_id = str(uuid.uuid4())
    metadata = build_metadata(user.id, checkout_id, purchase_kind, target,
                              course=course, price_id=price_id)
    stripe_key = f"checkout:{user.id}:{purchase_kind}:{idempotency_key}"

    checkout = CheckoutSession(
        id=checkout_id,
        user_id=user.id,
        kind=purchase_kind,
        course_id=course.id if course else None,
        tier=target.get("tier"),
        interval=target.get("interval"),
        ui_mode=ui_mode,
        idempotency_key=idempotency_key,
        metadata_=metadata,
    )

    if ui_mode == "hosted":
        base_url = current_app.config["APP_BASE_URL"]
        if course:
            mode = "payment"
            line_items = _course_line_items(course, target["is_renewal"])
            success_url = base_url + COURSE_SUCCESS_PATH
            cancel_url = base_url + COURSE_CANCEL_PATH.format(course_id=course.id)
        else:
            mode = "subscription"
            line_items = [{"price": price_id, "quantity": 1}]
            success_url = base_url + SUBSCRIPTION_SUCCESS_PATH
            cancel_url = base_url + SUBSCRIPTION_CANCEL_PATH
        session = stripe_service.create_checkout_session(
            customer_id, mode, line_items, metadata,
            success_url, cancel_url, idempotency_key=stripe_key,
        )
        checkout.stripe_session_id = field(session, "id")
        checkout.redirect_url = field(session, "url")
    elif course:
        intent = stripe_service.create_payment_intent(
            customer_id, course.price_cents, metadata, idempotency_key=stripe_key,
        )
        checkout.stripe_payment_intent_id = field(intent, "id")
        checkout.client_secret = field(intent, "client_secret")
    else:
        subscription, client_secret = stripe_service.create_incomplete_subscription(
            customer_id, price_id, metadata, idempotency_key=stripe_key,
        )
        checkout.stripe_subscription_id = field(subscription, "id")
        checkout.client_secret = client_secret
        payment_intent = field(field(subscription, "latest_invoice"), "payment_intent")
        checkout.stripe_payment_intent_id = field(payment_intent, "id")

    # --- Stripe accepted the request: now record it ---
    db.session.add(checkout)
    entitlement_service.log_billing_audit(user.id, "checkout.created", {
        "checkout_session_id": checkout_id,
        "kind": purchase_kind,
        "ui_mode": ui_mode,
        "stripe_session_id": checkout.stripe_session_id,
        "stripe_payment_intent_id": checkout.stripe_payment_intent_id,
    })
    try:
        db.session.commit()
    except IntegrityError:
        # Concurrent duplicate of the same attempt. Stripe's idempotency key
        # already collapsed both calls onto one object; return the winner.
        db.session.rollback()
        winner = _find_existing(user.id, idempotency_key)
        if winner is None:
            raise
        logger.info(f"Lost checkout race for idempotency key {idempotency_key}, returning {winner.id}")
        return winner

    logger.info(f"Checkout {checkout_id} created for user {user.id} ({purchase_kind}, {ui_mode})")
    return checkout


def create_portal_session(user):
    """Stripe Customer Portal URL for managing an existing subscription.

    Raises PreconditionFailed if the user has never checked out.
    """
    customer = entitlement_service.get_billing_customer(user.id)
    if not customer:
        raise PreconditionFailed("No billing account found. Please subscribe first.",
                                 code="no_billing_customer")
    base_url = current_app.config["APP_BASE_URL"]
    return stripe_service.create_portal_session(
        customer.stripe_customer_id, return_url=f"{base_url}/account"
    )


def mark_checkout_status(checkout_session_id=None, stripe_session_id=None,
                         status="completed", completed_at=None):
    """Resolve a pending CheckoutSession (webhook / activation path). Flush only."""
    checkout = None
    if checkout_session_id:
        checkout = db.session.get(CheckoutSession, checkout_session_id)
    if checkout is None and stripe_session_id:
        checkout = CheckoutSession.query.filter_by(stripe_session_id=stripe_session_id).first()
    if checkout is None or checkout.status == status:
        return checkout
    if checkout.status == "completed":
        # A completed purchase never moves back to expired.
        return checkout
    checkout.status = status
    if status == "completed":
        checkout.completed_at = completed_at or entitlement_service.utcnow()
    db.session.flush()
    return checkout
