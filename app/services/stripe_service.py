"""Stripe service — every Stripe API call goes through here.

Responsible for:
- Creating Stripe Customers, Checkout Sessions, PaymentIntents and
  incomplete Subscriptions (embedded Payment Element flow)
- Creating Customer Portal Sessions
- Retrieving subscriptions / intents / sessions for reconciliation
- Verifying webhook signatures

API failures are re-raised as UpstreamError so callers never leave a
half-committed local record behind. Signature errors are NOT converted:
the webhook blueprint needs to tell them apart.
"""

import logging
from datetime import datetime, timezone

import stripe
from flask import current_app

from app.errors import UpstreamError

logger = logging.getLogger(__name__)


def field(obj, name, default=None):
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _use_api_key():
    api_key = current_app.config.get("STRIPE_SECRET_KEY")
    if not api_key:
        raise UpstreamError("Stripe is not configured", code="stripe_not_configured")
    stripe.api_key = api_key


def _ts(value):
    if value:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def extract_period_bounds(sub_data):
    """Extract (current_period_start, current_period_end) from a subscription.

    In newer Stripe API versions the period fields moved from the
    subscription top level to items.data[0]. This helper checks both.

    Returns timezone-aware datetimes (or None).
    """
    start = field(sub_data, "current_period_start")
    end = field(sub_data, "current_period_end")

    if not start or not end:
        items = field(sub_data, "items")
        data = field(items, "data") or []
        if data:
            start = start or field(data[0], "current_period_start")
            end = end or field(data[0], "current_period_end")

    return _ts(start), _ts(end)


def extract_price_id(sub_data):
    """First subscription item's price id (None if absent)."""
    items = field(sub_data, "items")
    data = field(items, "data") or []
    if data:
        return field(field(data[0], "price"), "id")
    return None


def is_cancelling(sub_data):
    """Stripe uses cancel_at_period_end OR cancel_at (a future timestamp)."""
    return bool(
        field(sub_data, "cancel_at_period_end", False)
        or field(sub_data, "cancel_at") is not None
    )


# ──────────────────────────────────────────────
# Customers & Checkout
# ──────────────────────────────────────────────

def create_customer(user_id, email=None, name=None):
    """Create a Stripe Customer tagged with our user id.

    The idempotency key makes concurrent first checkouts for one user
    resolve to a single Stripe customer.
    """
    _use_api_key()
    params = {"metadata": {"user_id": str(user_id)}}
    if email:
        params["email"] = email
    if name:
        params["name"] = name
    try:
        customer = stripe.Customer.create(
            idempotency_key=f"customer:{user_id}", **params
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe customer create failed for user {user_id}: {e}")
        raise UpstreamError("Payment provider unavailable, please try again") from e
    return field(customer, "id")


def create_checkout_session(customer_id, mode, line_items, metadata,
                            success_url, cancel_url, idempotency_key):
    """Create a hosted Checkout Session (mode = payment | subscription).

    The metadata snapshot is copied onto the PaymentIntent / Subscription
    too, so every downstream event carries it.
    """
    _use_api_key()
    params = {
        "mode": mode,
        "customer": customer_id,
        "line_items": line_items,
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
        "client_reference_id": metadata.get("user_id"),
    }
    if mode == "payment":
        params["payment_intent_data"] = {"metadata": metadata}
    else:
        params["subscription_data"] = {"metadata": metadata}
    try:
        return stripe.checkout.Session.create(idempotency_key=idempotency_key, **params)
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout session create failed ({mode}): {e}")
        raise UpstreamError("Could not start checkout, please try again") from e


def create_payment_intent(customer_id, amount_cents, metadata, idempotency_key,
                          currency="usd"):
    """Embedded course purchase: a PaymentIntent for the Payment Element."""
    _use_api_key()
    try:
        return stripe.PaymentIntent.create(
            amount=amount_cents,
            currency=currency,
            customer=customer_id,
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe payment intent create failed: {e}")
        raise UpstreamError("Could not start checkout, please try again") from e


def create_incomplete_subscription(customer_id, price_id, metadata, idempotency_key):
    """Embedded subscription purchase.

    payment_behavior=default_incomplete leaves the first invoice open;
    its PaymentIntent's client secret drives the Payment Element.
    Returns (subscription, client_secret).
    """
    _use_api_key()
    try:
        subscription = stripe.Subscription.create(
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.payment_intent"],
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe subscription create failed: {e}")
        raise UpstreamError("Could not start checkout, please try again") from e

    invoice = field(subscription, "latest_invoice")
    payment_intent = field(invoice, "payment_intent")
    client_secret = field(payment_intent, "client_secret")
    if not client_secret:
        logger.error(f"No client secret on subscription {field(subscription, 'id')}")
        raise UpstreamError("Could not start checkout, please try again")
    return subscription, client_secret


def create_portal_session(customer_id, return_url):
    """Create a Stripe Customer Portal Session. Returns the portal URL."""
    _use_api_key()
    try:
        session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=return_url,
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe portal session create failed: {e}")
        raise UpstreamError("Could not open the billing portal, please try again") from e
    return field(session, "url")


# ──────────────────────────────────────────────
# Retrieval (reconciliation reads)
# ──────────────────────────────────────────────

def retrieve_subscription(subscription_id):
    _use_api_key()
    try:
        return stripe.Subscription.retrieve(subscription_id)
    except stripe.StripeError as e:
        raise UpstreamError(f"Could not load subscription {subscription_id}") from e


def retrieve_payment_intent(payment_intent_id):
    _use_api_key()
    try:
        return stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as e:
        raise UpstreamError(f"Could not load payment {payment_intent_id}") from e


def retrieve_setup_intent(setup_intent_id):
    _use_api_key()
    try:
        return stripe.SetupIntent.retrieve(setup_intent_id)
    except stripe.StripeError as e:
        raise UpstreamError(f"Could not load setup intent {setup_intent_id}") from e


def retrieve_checkout_session(session_id):
    _use_api_key()
    try:
        return stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as e:
        raise UpstreamError(f"Could not load checkout session {session_id}") from e


# ──────────────────────────────────────────────
# Webhooks
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify Stripe webhook signature and construct the event.

    Returns the verified Stripe event object.
    Raises stripe.SignatureVerificationError on invalid signature and
    ValueError on an unparseable payload.
    """
    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
