"""Payments blueprint — /api/payments/*

- POST /api/payments/status: payment-status lookup used by the
  confirmation poller after the redirect back from checkout
- POST /api/payments/activate: guarded manual activation fallback
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from app.errors import InvalidRequest, NotFound
from app.extensions import limiter
from app.services import ledger_service, stripe_service
from app.services.activation_service import find_checkout, get_guard, target_ref_for
from app.services.entitlement_service import get_billing_customer
from app.services.retry import ALREADY_APPLIED, APPLIED, RETRIABLE
from app.services.stripe_service import field

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

# Stripe error fields safe to hand back to the browser.
_PUBLIC_ERROR_FIELDS = ("code", "decline_code", "message", "type")


def _owns(metadata, customer_id, payment_ref):
    """Does the current user own this Stripe object?"""
    if field(metadata, "user_id") == current_user.id:
        return True
    checkout = find_checkout(payment_ref, metadata)
    if checkout is not None:
        return checkout.user_id == current_user.id
    customer = get_billing_customer(current_user.id)
    return bool(customer and customer_id and customer.stripe_customer_id == customer_id)


def _purchase_snapshot(payment_ref, metadata):
    """What the payment buys: the stored checkout snapshot, else Stripe metadata."""
    checkout = find_checkout(payment_ref, metadata)
    if checkout is not None and checkout.metadata_:
        return checkout.metadata_
    return metadata


def _public_error(error):
    if not error:
        return None
    return {key: field(error, key) for key in _PUBLIC_ERROR_FIELDS if field(error, key)}


def _customer_id(obj):
    customer = field(obj, "customer")
    if customer is None or isinstance(customer, str):
        return customer
    return field(customer, "id")


# ──────────────────────────────────────────────
# POST /api/payments/status
# ──────────────────────────────────────────────

@payments_bp.route("/status", methods=["POST"])
@login_required
@limiter.limit("60 per minute")
def payment_status():
    """Body: {payment_intent_id} | {setup_intent_id} | {checkout_session_id}

    200: {id, status, granted?, tier?, client_secret?, error?}
    granted is whether this payment has been applied (webhook or manual
    activation); tier is the subscription tier it buys.
    A hosted Checkout Session reports its payment status mapped onto the
    PaymentIntent vocabulary (paid -> succeeded).
    """
    body = request.get_json(silent=True) or {}
    payment_intent_id = body.get("payment_intent_id")
    setup_intent_id = body.get("setup_intent_id")
    checkout_session_id = body.get("checkout_session_id")

    if payment_intent_id:
        obj = stripe_service.retrieve_payment_intent(payment_intent_id)
        ref = payment_intent_id
        status = field(obj, "status")
        error = _public_error(field(obj, "last_payment_error"))
    elif setup_intent_id:
        obj = stripe_service.retrieve_setup_intent(setup_intent_id)
        ref = setup_intent_id
        status = field(obj, "status")
        error = _public_error(field(obj, "last_setup_error"))
    elif checkout_session_id:
        obj = stripe_service.retrieve_checkout_session(checkout_session_id)
        ref = checkout_session_id
        payment_state = field(obj, "payment_status")
        if payment_state in ("paid", "no_payment_required"):
            status = "succeeded"
        elif field(obj, "status") == "expired":
            status = "canceled"
        else:
            status = "processing"
        error = None
    else:
        raise InvalidRequest("payment_intent_id, setup_intent_id or checkout_session_id is required")

    if not _owns(field(obj, "metadata") or {}, _customer_id(obj), ref):
        logger.warning(f"User {current_user.id} asked for status of {ref} they don't own")
        raise NotFound("Payment not found", code="payment_not_found")

    response = {"id": field(obj, "id"), "status": status}
    if not setup_intent_id:
        response["granted"] = ledger_service.is_processed(ledger_service.payment_key(ref))
        snapshot = _purchase_snapshot(ref, field(obj, "metadata") or {})
        if field(snapshot, "purchase_type") == "subscription" and field(snapshot, "tier"):
            response["tier"] = field(snapshot, "tier")
    if field(obj, "client_secret") and status in ("requires_action", "requires_payment_method",
                                                 "requires_confirmation"):
        response["client_secret"] = field(obj, "client_secret")
    if error:
        response["error"] = error
    return jsonify(response), 200


# ──────────────────────────────────────────────
# POST /api/payments/activate
# ──────────────────────────────────────────────

@payments_bp.route("/activate", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def activate():
    """Guarded manual activation for a paid purchase the webhook hasn't applied.

    Body: {payment_intent_id} | {checkout_session_id}
    200 applied / already_applied, 409 retriable, 422 terminal,
    500 activation_failed (contact support).
    """
    body = request.get_json(silent=True) or {}
    payment_ref = body.get("payment_intent_id") or body.get("checkout_session_id")
    if not payment_ref or not isinstance(payment_ref, str):
        raise InvalidRequest("payment_intent_id or checkout_session_id is required")

    guard = get_guard()
    outcome = guard.activate_with_retry(current_user.id, target_ref_for(payment_ref), payment_ref)

    payload = {
        "status": outcome.status,
        "reason": outcome.reason,
        "attempts": outcome.attempts,
    }
    if outcome.status in (APPLIED, ALREADY_APPLIED):
        payload["data"] = outcome.data
        return jsonify(payload), 200
    if outcome.status == RETRIABLE:
        return jsonify(payload), 409
    if outcome.reason == "activation_failed":
        payload["error"] = "We couldn't activate your purchase. Please contact support."
        return jsonify(payload), 500
    return jsonify(payload), 422
