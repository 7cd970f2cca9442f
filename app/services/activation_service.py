"""Activation service — the guarded manual activation path.

Responsible for:
- Single-flight locking per (user, purchase target), never global
- Remembering payment references this process already handled
- Verifying a payment with Stripe before granting anything
- Claiming the payment reference in the dedupe ledger
- Granting the subscription (or course) exactly once

The lock and handled set live in process memory and are best-effort
across instances; the ledger's `payment:<ref>` row is what actually
prevents a double grant between instances and against the webhook path.
"""

import logging
import threading

from flask import current_app

from app.errors import UpstreamError
from app.extensions import db
from app.models.checkout_session import CheckoutSession
from app.services import entitlement_service, ledger_service, stripe_service
from app.services.checkout_service import mark_checkout_status
from app.services.retry import (
    ALREADY_APPLIED,
    APPLIED,
    RETRIABLE,
    TERMINAL,
    Outcome,
    RetryPolicy,
    call_with_retry,
)
from app.services.stripe_service import field

logger = logging.getLogger(__name__)

PAID_STATUSES = ("succeeded", "paid")


class ActivationGuard:
    """Serialises manual activations for one logical purchase."""

    def __init__(self, lock_timeout=5.0):
        self.lock_timeout = lock_timeout
        self._locks = {}
        self._registry_lock = threading.Lock()
        self._handled = set()

    # ──────────────────────────────────────────────
    # Process-local state
    # ──────────────────────────────────────────────

    def _lock_for(self, key):
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def is_handled(self, payment_ref):
        with self._registry_lock:
            return payment_ref in self._handled

    def _mark_handled(self, *payment_refs):
        with self._registry_lock:
            self._handled.update(ref for ref in payment_refs if ref)

    def reset(self):
        """Forget locks and handled refs (tests, process restart)."""
        with self._registry_lock:
            self._locks.clear()
            self._handled.clear()

    # ──────────────────────────────────────────────
    # Activation
    # ──────────────────────────────────────────────

    def try_activate(self, user_id, target_ref, payment_ref):
        """One activation attempt. Returns an Outcome, never raises.

        applied          -> this call granted the purchase
        already_applied  -> granted earlier (here, by the webhook, or elsewhere)
        retriable        -> lock busy or Stripe unreachable
        terminal         -> payment not usable, or the grant could not be written
        """
        if self.is_handled(payment_ref):
            return Outcome(ALREADY_APPLIED, reason="handled")

        lock = self._lock_for(f"{user_id}:{target_ref}")
        if not lock.acquire(timeout=self.lock_timeout):
            logger.info(f"Activation busy for user {user_id} target {target_ref}")
            return Outcome(RETRIABLE, reason="busy")
        try:
            return self._activate_locked(user_id, payment_ref)
        finally:
            lock.release()

    def activate_with_retry(self, user_id, target_ref, payment_ref, policy=None):
        policy = policy or RetryPolicy(
            max_attempts=current_app.config["ACTIVATION_MAX_ATTEMPTS"],
            base_delay=current_app.config["ACTIVATION_RETRY_BASE_DELAY"],
        )
        return call_with_retry(self.try_activate, policy, user_id, target_ref, payment_ref)

    def _activate_locked(self, user_id, payment_ref):
        if self.is_handled(payment_ref):
            return Outcome(ALREADY_APPLIED, reason="handled")

        # --- Verify with Stripe ---
        try:
            payment = verify_payment(user_id, payment_ref)
        except UpstreamError as e:
            logger.warning(f"Activation of {payment_ref} could not reach Stripe: {e}")
            return Outcome(RETRIABLE, reason="upstream_error")
        if not payment.ok:
            return payment

        refs = payment.data["refs"]
        snapshot = payment.data["metadata"]

        # --- Claim in the ledger, then grant ---
        try:
            claimed = ledger_service.claim(
                [(ledger_service.payment_key(ref), "payment", "manual_activation") for ref in refs]
            )
            if not claimed:
                logger.info(f"Payment {payment_ref} already granted, activation is a no-op")
                self._mark_handled(*refs)
                return Outcome(ALREADY_APPLIED, reason="ledger")

            data = _grant(user_id, snapshot, payment_ref,
                          stripe_subscription_id=payment.data.get("stripe_subscription_id"))
            entitlement_service.log_billing_audit(user_id, "activation.manual", {
                "payment_ref": payment_ref,
                **data,
            })
            db.session.commit()
        except Exception as e:
            logger.error(f"Manual activation of {payment_ref} failed: {e}", exc_info=True)
            db.session.rollback()
            return Outcome(TERMINAL, reason="activation_failed")

        self._mark_handled(*refs)
        logger.info(f"Manual activation applied for user {user_id}, payment {payment_ref}: {data}")
        return Outcome(APPLIED, data=data)


# ──────────────────────────────────────────────
# Verification
# ──────────────────────────────────────────────

def find_checkout(payment_ref, metadata=None):
    """Local CheckoutSession for a payment reference (None if unknown)."""
    checkout_session_id = field(metadata, "checkout_session_id")
    if checkout_session_id:
        checkout = db.session.get(CheckoutSession, checkout_session_id)
        if checkout:
            return checkout
    if payment_ref.startswith("cs_"):
        return CheckoutSession.query.filter_by(stripe_session_id=payment_ref).first()
    return CheckoutSession.query.filter_by(stripe_payment_intent_id=payment_ref).first()


def target_ref_for(payment_ref):
    """Lock key component: what the payment buys, from our own records."""
    checkout = find_checkout(payment_ref)
    if checkout is None:
        return payment_ref
    if checkout.kind == "course":
        return f"course:{checkout.course_id}"
    return "subscription"


def verify_payment(user_id, payment_ref):
    """Ask Stripe whether payment_ref is paid and belongs to user_id.

    Returns an Outcome: APPLIED-shaped (ok) with data {refs, metadata}, or
    TERMINAL. Raises UpstreamError when Stripe can't be reached.
    """
    if payment_ref.startswith("cs_"):
        session = stripe_service.retrieve_checkout_session(payment_ref)
        status = field(session, "payment_status")
        metadata = field(session, "metadata") or {}
        refs = [payment_ref, _id_of(field(session, "payment_intent"))]
        stripe_subscription_id = _id_of(field(session, "subscription"))
    elif payment_ref.startswith("pi_"):
        intent = stripe_service.retrieve_payment_intent(payment_ref)
        status = field(intent, "status")
        metadata = field(intent, "metadata") or {}
        refs = [payment_ref]
        stripe_subscription_id = None
    else:
        return Outcome(TERMINAL, reason="unsupported_reference")

    checkout = find_checkout(payment_ref, metadata)
    if checkout is not None:
        # The stored snapshot is authoritative; invoice-driven intents carry none.
        metadata = checkout.metadata_ or metadata
        owner_id = checkout.user_id
        stripe_subscription_id = stripe_subscription_id or checkout.stripe_subscription_id
    else:
        owner_id = field(metadata, "user_id")

    if not owner_id or str(owner_id) != str(user_id):
        logger.warning(f"Activation of {payment_ref} refused: not owned by user {user_id}")
        return Outcome(TERMINAL, reason="not_owner")

    if status not in PAID_STATUSES:
        return Outcome(TERMINAL, reason=f"payment_{status or 'unknown'}")

    if field(metadata, "purchase_type") not in CheckoutSession.KINDS:
        return Outcome(TERMINAL, reason="missing_metadata")

    return Outcome(APPLIED, data={
        "refs": [ref for ref in refs if ref],
        "metadata": metadata,
        "checkout_session_id": checkout.id if checkout else None,
        "stripe_subscription_id": stripe_subscription_id,
    })


def _id_of(value):
    if value is None or isinstance(value, str):
        return value
    return field(value, "id")


# ──────────────────────────────────────────────
# Grant
# ──────────────────────────────────────────────

def _grant(user_id, snapshot, payment_ref, stripe_subscription_id=None):
    """Write the entitlement. Flush only; the guard commits."""
    if field(snapshot, "purchase_type") == "course":
        enrollment, renewed = entitlement_service.grant_enrollment(
            user_id,
            field(snapshot, "course_id"),
            field(snapshot, "days_of_access") or 365,
            payment_ref=payment_ref,
            stripe_price_id=field(snapshot, "price_id"),
        )
        _complete_checkout(snapshot)
        return {
            "course_id": enrollment.course_id,
            "renewed": renewed,
            "expires_at": enrollment.expires_at.isoformat(),
        }

    now = entitlement_service.utcnow()
    sub = entitlement_service.get_subscription(user_id)
    _complete_checkout(snapshot)
    tier = field(snapshot, "tier")
    interval = field(snapshot, "interval") or "month"

    if entitlement_service.subscription_is_active(sub, now=now):
        # Never push an active period further out.
        if not tier or sub.tier == tier:
            return {"tier": sub.tier, "extended": False}
        # Paid for another tier: switch it, keep the current period.
        previous_tier = sub.tier
        sub.tier = tier
        sub.interval = interval
        sub.source = "manual"
        if field(snapshot, "price_id"):
            sub.stripe_price_id = field(snapshot, "price_id")
        if stripe_subscription_id:
            sub.stripe_subscription_id = stripe_subscription_id
        db.session.flush()
        return {"tier": sub.tier, "previous_tier": previous_tier, "extended": False}

    sub = entitlement_service.upsert_subscription(
        user_id=user_id,
        status="active",
        stripe_price_id=field(snapshot, "price_id"),
        tier=tier,
        interval=interval,
        current_period_start=now,
        current_period_end=entitlement_service.add_interval(now, interval),
        cancel_at_period_end=False,
        source="manual",
    )
    # A cancelled or lapsed row may still point at the old Stripe subscription.
    sub.stripe_subscription_id = stripe_subscription_id
    db.session.flush()
    return {
        "tier": sub.tier,
        "extended": True,
        "current_period_end": entitlement_service.as_utc(sub.current_period_end).isoformat(),
    }


def _complete_checkout(snapshot):
    mark_checkout_status(checkout_session_id=field(snapshot, "checkout_session_id"),
                         status="completed")


# Process-wide guard; lock timeout is read from config at first use.
_guard = None
_guard_lock = threading.Lock()


def get_guard():
    global _guard
    with _guard_lock:
        if _guard is None:
            _guard = ActivationGuard(current_app.config["ACTIVATION_LOCK_TIMEOUT"])
        return _guard
