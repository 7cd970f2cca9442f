"""Checkout blueprint — /api/checkout, /api/billing/portal

Thin HTTP layer over checkout_service. BillingError subclasses raised
by the service become {error, code} responses via the app error handler.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from app.extensions import limiter
from app.services import checkout_service

logger = logging.getLogger(__name__)

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")


@checkout_bp.route("/checkout", methods=["POST"])
@login_required
@limiter.limit("20 per minute")
def create_checkout():
    """Start (or replay) a checkout.

    Body: {purchaseKind, target, idempotencyKey, uiMode?}
    200: {checkoutSessionId, redirectUrl} or {checkoutSessionId, clientSecret}
    """
    purchase_kind, target, idempotency_key, ui_mode = checkout_service.parse_checkout_request(
        request.get_json(silent=True)
    )
    checkout = checkout_service.create_checkout(
        current_user, purchase_kind, target, idempotency_key, ui_mode=ui_mode
    )
    return jsonify(checkout.to_response()), 200


@checkout_bp.route("/billing/portal", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def billing_portal():
    """Stripe Customer Portal link for the current user."""
    url = checkout_service.create_portal_session(current_user)
    return jsonify({"url": url}), 200
