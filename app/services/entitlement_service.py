"""Entitlement service — the entitlement store's write helpers and read queries.

Responsible for:
- Mapping (tier, interval) <-> Stripe price IDs
- Normalising Stripe subscription statuses onto ours
- Upserting the single Subscription row per user
- Granting / renewing course Enrollments
- Getting or creating BillingCustomer records
- Entitlement reads: is_active / current_tier / has_course_access

Write helpers only flush(); the caller (webhook ingestor, activation
guard) owns the commit so ledger and entitlement writes land together.
"""

import calendar
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models.audit import AuditEvent
from app.models.billing import BillingCustomer, Enrollment, Subscription

logger = logging.getLogger(__name__)

TIERS = ("premium", "unlimited")
INTERVALS = ("month", "year")
TIER_NAMES = {"premium": "Premium", "unlimited": "Unlimited"}
FREE_TIER_NAME = "Free"

ACTIVE_STATUSES = ("active", "trialing")

# Statuses Stripe can still bill or recover from.
LIVE_STATUSES = ("active", "trialing", "past_due")

_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "past_due",
    "paused": "past_due",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "incomplete": "incomplete",
    "incomplete_expired": "cancelled",
}

_PRICE_CONFIG_KEYS = {
    ("premium", "month"): "STRIPE_PREMIUM_MONTHLY_PRICE_ID",
    ("premium", "year"): "STRIPE_PREMIUM_ANNUAL_PRICE_ID",
    ("unlimited", "month"): "STRIPE_UNLIMITED_MONTHLY_PRICE_ID",
    ("unlimited", "year"): "STRIPE_UNLIMITED_ANNUAL_PRICE_ID",
}


# ──────────────────────────────────────────────
# Time helpers
# ──────────────────────────────────────────────

def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_interval(start, interval):
    """start + one billing interval, clamping the day (Jan 31 + 1 month = Feb 28/29)."""
    months = 12 if interval == "year" else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


# ──────────────────────────────────────────────
# Price / status mapping
# ──────────────────────────────────────────────

def get_price_id(tier, interval, app_config):
    """Configured Stripe price ID for a tier + interval (None if unset)."""
    key = _PRICE_CONFIG_KEYS.get((tier, interval))
    if not key:
        return None
    return app_config.get(key)


def get_plan_from_price_id(price_id, app_config):
    """Map a Stripe price ID back to (tier, interval).

    Returns (None, None) if the price_id doesn't match any configured plan.
    """
    if price_id:
        for (tier, interval), key in _PRICE_CONFIG_KEYS.items():
            if app_config.get(key) == price_id:
                return tier, interval
    return None, None


def normalize_status(stripe_status):
    """Stripe subscription status -> one of Subscription.STATUSES."""
    status = _STATUS_MAP.get(stripe_status or "")
    if status is None:
        logger.warning(f"Unknown Stripe subscription status {stripe_status!r}, treating as incomplete")
        return "incomplete"
    return status


# ──────────────────────────────────────────────
# Customers
# ──────────────────────────────────────────────

def get_billing_customer(user_id):
    return BillingCustomer.query.filter_by(user_id=user_id).first()


def get_or_create_billing_customer(user_id, stripe_customer_id):
    """Get existing BillingCustomer or create one.

    A customer mapping is immutable once created: a different
    stripe_customer_id for the same user is logged, not applied.
    Returns the BillingCustomer instance (flushed, not committed).
    """
    customer = get_billing_customer(user_id)
    if customer:
        if customer.stripe_customer_id != stripe_customer_id:
            logger.warning(
                f"User {user_id} already mapped to {customer.stripe_customer_id}, "
                f"ignoring {stripe_customer_id}"
            )
        return customer

    customer = BillingCustomer(
        user_id=user_id,
        stripe_customer_id=stripe_customer_id,
    )
    db.session.add(customer)
    db.session.flush()
    return customer


def get_user_id_from_stripe_customer(stripe_customer_id):
    """Look up user_id from a Stripe customer ID. Returns None if unknown."""
    if not stripe_customer_id:
        return None
    customer = BillingCustomer.query.filter_by(
        stripe_customer_id=stripe_customer_id
    ).first()
    if customer:
        return customer.user_id
    return None


def save_new_billing_customer(user_id, stripe_customer_id):
    """Commit a brand-new customer mapping outside any grant transaction.

    Two first checkouts racing for one user: the loser's insert hits the
    unique constraint and gets the winner's row back.
    """
    customer = BillingCustomer(user_id=user_id, stripe_customer_id=stripe_customer_id)
    db.session.add(customer)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        customer = get_billing_customer(user_id)
    return customer


# ──────────────────────────────────────────────
# Subscriptions
# ──────────────────────────────────────────────

def get_subscription(user_id):
    return Subscription.query.filter_by(user_id=user_id).first()


def find_subscription_by_stripe_id(stripe_subscription_id):
    if not stripe_subscription_id:
        return None
    return Subscription.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()


def upsert_subscription(user_id, status, stripe_subscription_id=None,
                        stripe_customer_id=None, stripe_price_id=None,
                        tier=None, interval=None, current_period_start=None,
                        current_period_end=None, cancel_at_period_end=False,
                        source="webhook", app_config=None):
    """Create or update the user's one Subscription row from Stripe data.

    Keyed on user_id, so a user never holds two authoritative rows.
    Fields Stripe didn't report (None) keep their stored value.
    Returns the Subscription instance.
    """
    if stripe_price_id and app_config and not tier:
        tier, interval = get_plan_from_price_id(stripe_price_id, app_config)

    sub = get_subscription(user_id)

    if sub:
        sub.status = status
        sub.source = source
        sub.cancel_at_period_end = cancel_at_period_end
        if stripe_subscription_id:
            sub.stripe_subscription_id = stripe_subscription_id
        if stripe_customer_id:
            sub.stripe_customer_id = stripe_customer_id
        if stripe_price_id:
            sub.stripe_price_id = stripe_price_id
        if tier:
            sub.tier = tier
        if interval:
            sub.interval = interval
        if current_period_start:
            sub.current_period_start = current_period_start
        if current_period_end:
            sub.current_period_end = current_period_end
    else:
        sub = Subscription(
            user_id=user_id,
            status=status,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            stripe_price_id=stripe_price_id,
            tier=tier,
            interval=interval,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            cancel_at_period_end=cancel_at_period_end,
            source=source,
        )
        db.session.add(sub)

    db.session.flush()
    return sub


def subscription_is_active(sub, now=None):
    """Active = active/trialing status AND a period end still in the future."""
    if sub is None or sub.status not in ACTIVE_STATUSES:
        return False
    period_end = as_utc(sub.current_period_end)
    if period_end is None:
        return False
    return period_end > (now or utcnow())


def subscription_is_live(sub, now=None):
    """Live = a live status and a period that hasn't lapsed (unknown end counts as live)."""
    if sub is None or sub.status not in LIVE_STATUSES:
        return False
    period_end = as_utc(sub.current_period_end)
    return period_end is None or period_end > (now or utcnow())


# ──────────────────────────────────────────────
# Enrollments
# ──────────────────────────────────────────────

def get_enrollment(user_id, course_id):
    return Enrollment.query.filter_by(user_id=user_id, course_id=course_id).first()


def grant_enrollment(user_id, course_id, days_of_access, payment_ref=None,
                     stripe_price_id=None):
    """Create or renew an Enrollment. expires_at = now + days_of_access.

    Returns (enrollment, renewed: bool).
    """
    now = utcnow()
    expires_at = now + timedelta(days=int(days_of_access))
    enrollment = get_enrollment(user_id, course_id)

    if enrollment:
        enrollment.status = "active"
        enrollment.expires_at = expires_at
        enrollment.renewed_at = now
        enrollment.renewal_count = (enrollment.renewal_count or 0) + 1
        renewed = True
    else:
        enrollment = Enrollment(
            user_id=user_id,
            course_id=course_id,
            status="active",
            enrolled_at=now,
            expires_at=expires_at,
        )
        db.session.add(enrollment)
        renewed = False

    if payment_ref:
        enrollment.stripe_payment_intent_id = payment_ref
    if stripe_price_id:
        enrollment.stripe_price_id = stripe_price_id

    db.session.flush()
    return enrollment, renewed


def enrollment_is_active(enrollment, now=None):
    if enrollment is None or enrollment.status != "active":
        return False
    expires_at = as_utc(enrollment.expires_at)
    return expires_at is None or expires_at > (now or utcnow())


# ──────────────────────────────────────────────
# Audit
# ──────────────────────────────────────────────

def log_billing_audit(user_id, action, metadata=None):
    """Log a billing-related audit event (flushed with the caller's transaction)."""
    event = AuditEvent(
        user_id=user_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()


# ──────────────────────────────────────────────
# Read path
# ──────────────────────────────────────────────

def is_active(user_id):
    return subscription_is_active(get_subscription(user_id))


def current_tier(user_id):
    """Display name of the user's active tier, "Free" without one."""
    sub = get_subscription(user_id)
    if not subscription_is_active(sub):
        return FREE_TIER_NAME
    return TIER_NAMES.get(sub.tier, TIER_NAMES["premium"])


def has_course_access(user_id, course_id):
    return enrollment_is_active(get_enrollment(user_id, course_id))


def entitlement_snapshot(user_id):
    """Body of GET /api/entitlements."""
    sub = get_subscription(user_id)
    active = subscription_is_active(sub)
    period_end = as_utc(sub.current_period_end) if sub else None
    return {
        "isActive": active,
        "tierName": TIER_NAMES.get(sub.tier, TIER_NAMES["premium"]) if active else FREE_TIER_NAME,
        "status": sub.status if sub else None,
        "current_period_end": period_end.isoformat() if period_end else None,
        "cancel_at_period_end": bool(sub.cancel_at_period_end) if sub else False,
    }
