"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from app.services.stripe_service import verify_webhook_signature
from app.services.webhook_service import handle_webhook_event

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Refuse to run without STRIPE_WEBHOOK_SECRET (500, Stripe redelivers)
    2. Verify signature before touching the body
    3. Pass to handle_webhook_event (idempotent via processed_events)
    4. 200 only once the effect is committed or was already applied

    CSRF is exempted for this blueprint in create_app().
    """
    if not current_app.config.get("STRIPE_WEBHOOK_SECRET"):
        logger.error("STRIPE_WEBHOOK_SECRET is not configured, refusing webhook")
        return jsonify({"error": "Webhook endpoint not configured"}), 500

    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    # --- Verify signature ---
    try:
        event = verify_webhook_signature(payload, sig_header)
    except Exception as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    # --- Process event (idempotent) ---
    success, message = handle_webhook_event(event)

    if success:
        return jsonify({"received": True, "status": message}), 200
    else:
        logger.error(f"Webhook processing failed: {message}")
        return jsonify({"error": "Webhook processing failed"}), 500
