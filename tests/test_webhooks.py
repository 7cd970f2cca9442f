"""Tests for the webhooks blueprint and Stripe event handling.

Covers:
- Webhook signature verification (missing, invalid, unconfigured secret)
- Idempotent event processing (duplicate events skipped)
- checkout.session.completed (subscription and course)
- checkout.session.expired
- payment_intent.succeeded (embedded course purchase)
- customer.subscription.created / updated / deleted
- invoice.payment_failed / invoice.payment_succeeded
- Unknown event types (recorded and acknowledged)
- Failure inside a handler rolls back ledger and entitlement writes
- A new subscription replacing a cancelled, incomplete or lapsed row
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from app.extensions import db
from app.models.audit import AuditEvent
from app.models.billing import BillingCustomer, Enrollment, Subscription
from app.models.checkout_session import CheckoutSession
from app.models.processed_event import ProcessedEvent
from app.services import entitlement_service
from app.services.entitlement_service import as_utc, utcnow

PERIOD_START = 1798761600  # 2027-01-01
PERIOD_END = 1801440000  # 2027-02-01


def stripe_subscription(sub_id="sub_001", status="active", price="price_unlimited_month_test",
                        metadata=None, **extra):
    sub = {
        "id": sub_id,
        "status": status,
        "customer": "cus_001",
        "cancel_at_period_end": False,
        "cancel_at": None,
        "items": {"data": [{
            "price": {"id": price},
            "current_period_start": PERIOD_START,
            "current_period_end": PERIOD_END,
        }]},
        "metadata": metadata or {},
    }
    sub.update(extra)
    return sub


def subscription_session(user_id, session_id="cs_sub_001", checkout_session_id=None):
    return {
        "id": session_id,
        "mode": "subscription",
        "customer": "cus_001",
        "subscription": "sub_001",
        "payment_intent": None,
        "payment_status": "paid",
        "metadata": {
            "user_id": user_id,
            "purchase_type": "subscription",
            "tier": "unlimited",
            "interval": "month",
            "checkout_session_id": checkout_session_id or "",
        },
    }


def course_session(user_id, course_id, session_id="cs_course_001", payment_intent="pi_course_001"):
    return {
        "id": session_id,
        "mode": "payment",
        "customer": "cus_001",
        "payment_intent": payment_intent,
        "payment_status": "paid",
        "metadata": {
            "user_id": user_id,
            "purchase_type": "course",
            "course_id": course_id,
            "days_of_access": "30",
            "is_renewal": "false",
        },
    }


def add_subscription(user_id, **overrides):
    values = dict(
        user_id=user_id,
        tier="unlimited",
        interval="month",
        status="active",
        stripe_subscription_id="sub_001",
        stripe_customer_id="cus_001",
        current_period_start=utcnow() - timedelta(days=3),
        current_period_end=utcnow() + timedelta(days=27),
        source="webhook",
    )
    values.update(overrides)
    sub = Subscription(**values)
    db.session.add(sub)
    db.session.add(BillingCustomer(user_id=user_id, stripe_customer_id=values["stripe_customer_id"]))
    db.session.commit()
    return sub


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client, seed_data):
        """POST /stripe/webhooks without signature -> 400."""
        resp = client.post(
            "/stripe/webhooks",
            data="{}",
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert b"Missing signature" in resp.data

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_invalid_signature_returns_400(self, mock_construct, client, seed_data, stripe_event):
        """A plausible body with a bad signature writes nothing."""
        mock_construct.side_effect = ValueError("No signatures found matching the expected signature")
        event = stripe_event("evt_forged", "checkout.session.completed",
                             subscription_session(seed_data["user_id"]))

        resp = client.post(
            "/stripe/webhooks",
            data=json.dumps(event),
            content_type="application/json",
            headers={"Stripe-Signature": "bad_sig"},
        )
        assert resp.status_code == 400
        assert b"Invalid signature" in resp.data
        assert Subscription.query.count() == 0
        assert ProcessedEvent.query.count() == 0

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_unconfigured_secret_fails_closed(self, mock_construct, client, seed_data, app):
        app.config["STRIPE_WEBHOOK_SECRET"] = None
        try:
            resp = client.post(
                "/stripe/webhooks",
                data="{}",
                content_type="application/json",
                headers={"Stripe-Signature": "sig"},
            )
        finally:
            app.config["STRIPE_WEBHOOK_SECRET"] = "whsec_test_fake"
        assert resp.status_code == 500
        mock_construct.assert_not_called()
        assert ProcessedEvent.query.count() == 0

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_signature_checked_with_raw_body_and_secret(self, mock_construct, client,
                                                        seed_data, stripe_event):
        mock_construct.return_value = stripe_event("evt_raw", "customer.created", {})
        client.post(
            "/stripe/webhooks",
            data='{"id": "evt_raw"}',
            content_type="application/json",
            headers={"Stripe-Signature": "t=1,v1=abc"},
        )
        args = mock_construct.call_args.args
        assert args == ('{"id": "evt_raw"}', "t=1,v1=abc", "whsec_test_fake")


class TestWebhookIdempotency:
    """Tests for duplicate event handling."""

    def test_duplicate_event_returns_200(self, post_webhook, seed_data, stripe_event):
        """Duplicate event_id -> 200 with 'already_processed'."""
        db.session.add(ProcessedEvent(key="evt_duplicate_123", kind="event",
                                      event_type="checkout.session.completed"))
        db.session.commit()

        resp = post_webhook(stripe_event("evt_duplicate_123", "checkout.session.completed", {}))

        assert resp.status_code == 200
        data = resp.get_json()
        assert data == {"received": True, "status": "already_processed"}

    def test_unknown_event_type_recorded(self, post_webhook, seed_data, stripe_event):
        resp = post_webhook(stripe_event("evt_unknown_1", "customer.tax_id.created", {"id": "txi_1"}))

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ignored"
        entry = ProcessedEvent.query.filter_by(key="evt_unknown_1").one()
        assert entry.outcome == "ignored"

    @patch("app.services.stripe_service.stripe.Subscription.retrieve")
    def test_handler_failure_rolls_back_and_returns_500(self, mock_retrieve, post_webhook,
                                                        seed_data, stripe_event):
        mock_retrieve.side_effect = RuntimeError("database exploded mid-transition")
        event = stripe_event("evt_fail_1", "checkout.session.completed",
                             subscription_session(seed_data["user_id"]))

        resp = post_webhook(event)

        assert resp.status_code == 500
        assert ProcessedEvent.query.count() == 0
        assert Subscription.query.count() == 0

        # Stripe redelivers once the fault clears
        mock_retrieve.side_effect = None
        mock_retrieve.return_value = stripe_subscription()
        resp = post_webhook(event)
        assert resp.status_code == 200
        assert Subscription.query.count() == 1


class TestCheckoutCompleted:
    """Tests for checkout.session.completed webhook."""

    @patch("app.services.stripe_service.stripe.Subscription.retrieve")
    def test_creates_subscription(self, mock_retrieve, post_webhook, seed_data, stripe_event):
        mock_retrieve.return_value = stripe_subscription()

        resp = post_webhook(stripe_event("evt_checkout_001", "checkout.session.completed",
                                         subscription_session(seed_data["user_id"])))

        assert resp.status_code == 200
        mock_retrieve.assert_called_once_with("sub_001")
        sub = Subscription.query.filter_by(user_id=seed_data["user_id"]).one()
        assert sub.status == "active"
        assert sub.tier == "unlimited"
        assert sub.interval == "month"
        assert sub.stripe_subscription_id == "sub_001"
        assert sub.source == "webhook"
        assert as_utc(sub.current_period_end) == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
        assert BillingCustomer.query.filter_by(user_id=seed_data["user_id"]).one().stripe_customer_id == "cus_001"
        assert AuditEvent.query.filter_by(action="subscription.granted").count() == 1

        keys = {e.key for e in ProcessedEvent.query.all()}
        assert keys == {"evt_checkout_001", "payment:cs_sub_001"}

    @patch("app.services.stripe_service.stripe.Subscription.retrieve")
    def test_marks_checkout_completed(self, mock_retrieve, post_webhook, seed_data, stripe_event):
        checkout = CheckoutSession(user_id=seed_data["user_id"], kind="subscription",
                                   tier="unlimited", interval="month",
                                   idempotency_key="k1", stripe_session_id="cs_sub_001")
        db.session.add(checkout)
        db.session.commit()
        mock_retrieve.return_value = stripe_subscription()

        post_webhook(stripe_event("evt_checkout_002", "checkout.session.completed",
                                  subscription_session(seed_data["user_id"],
                                                       checkout_session_id=checkout.id)))

        checkout = db.session.get(CheckoutSession, checkout.id)
        assert checkout.status == "completed"
        assert checkout.completed_at is not None

    def test_course_purchase_grants_enrollment(self, post_webhook, seed_data, stripe_event):
        resp = post_webhook(stripe_event("evt_course_001", "checkout.session.completed",
                                         course_session(seed_data["user_id"], seed_data["course_id"])))

        assert resp.status_code == 200
        enrollment = Enrollment.query.filter_by(user_id=seed_data["user_id"]).one()
        assert enrollment.status == "active"
        assert enrollment.stripe_payment_intent_id == "pi_course_001"
        remaining = as_utc(enrollment.expires_at) - utcnow()
        assert timedelta(days=29) < remaining <= timedelta(days=30)

        keys = {e.key for e in ProcessedEvent.query.all()}
        assert keys == {"evt_course_001", "payment:cs_course_001", "payment:pi_course_001"}

    def test_course_renewal_extends_from_now(self, post_webhook, seed_data, stripe_event):
        db.session.add(Enrollment(user_id=seed_data["user_id"], course_id=seed_data["course_id"],
                                  status="expired", enrolled_at=utcnow() - timedelta(days=60),
                                  expires_at=utcnow() - timedelta(days=30)))
        db.session.commit()

        post_webhook(stripe_event("evt_course_renew", "checkout.session.completed",
                                  course_session(seed_data["user_id"], seed_data["course_id"])))

        enrollment = Enrollment.query.one()
        assert enrollment.status == "active"
        assert enrollment.renewal_count == 1
        assert as_utc(enrollment.expires_at) > utcnow() + timedelta(days=29)

    def test_missing_user_is_ignored(self, post_webhook, seed_data, stripe_event):
        session = course_session(seed_data["user_id"], seed_data["course_id"])
        session["metadata"].pop("user_id")
        session["customer"] = "cus_unknown"

        resp = post_webhook(stripe_event("evt_orphan", "checkout.session.completed", session))

        assert resp.status_code == 200
        assert Enrollment.query.count() == 0
        assert ProcessedEvent.query.filter_by(key="evt_orphan").one().outcome == "ignored"


class TestCheckoutExpired:

    def test_marks_checkout_expired(self, post_webhook, seed_data, stripe_event):
        checkout = CheckoutSession(user_id=seed_data["user_id"], kind="course",
                                   course_id=seed_data["course_id"], idempotency_key="k-exp",
                                   stripe_session_id="cs_exp_001")
        db.session.add(checkout)
        db.session.commit()

        post_webhook(stripe_event("evt_expired", "checkout.session.expired",
                                  {"id": "cs_exp_001", "metadata": {}}))

        assert db.session.get(CheckoutSession, checkout.id).status == "expired"


class TestPaymentIntentSucceeded:

    def test_embedded_course_purchase(self, post_webhook, seed_data, stripe_event):
        intent = {
            "id": "pi_emb_course",
            "customer": "cus_001",
            "status": "succeeded",
            "metadata": course_session(seed_data["user_id"], seed_data["course_id"])["metadata"],
        }

        resp = post_webhook(stripe_event("evt_pi_001", "payment_intent.succeeded", intent))

        assert resp.status_code == 200
        enrollment = Enrollment.query.one()
        assert enrollment.stripe_payment_intent_id == "pi_emb_course"

    def test_hosted_course_not_granted_twice(self, post_webhook, seed_data, stripe_event):
        """payment_intent.succeeded and checkout.session.completed share the intent id."""
        session = course_session(seed_data["user_id"], seed_data["course_id"])
        intent = {"id": "pi_course_001", "customer": "cus_001", "metadata": session["metadata"]}

        post_webhook(stripe_event("evt_pi_first", "payment_intent.succeeded", intent))
        first_expiry = as_utc(Enrollment.query.one().expires_at)
        post_webhook(stripe_event("evt_cs_second", "checkout.session.completed", session))

        enrollment = Enrollment.query.one()
        assert enrollment.renewal_count == 0
        assert as_utc(enrollment.expires_at) == first_expiry
        assert ProcessedEvent.query.filter_by(key="evt_cs_second").one().outcome == "reconciled"

    def test_subscription_invoice_intent_ignored(self, post_webhook, seed_data, stripe_event):
        resp = post_webhook(stripe_event("evt_pi_sub", "payment_intent.succeeded",
                                         {"id": "pi_invoice", "metadata": {}}))
        assert resp.status_code == 200
        assert Enrollment.query.count() == 0


class TestSubscriptionUpdated:
    """Tests for customer.subscription.created / updated."""

    def test_created_event_upserts(self, post_webhook, seed_data, stripe_event):
        db.session.add(BillingCustomer(user_id=seed_data["user_id"], stripe_customer_id="cus_001"))
        db.session.commit()

        post_webhook(stripe_event("evt_sub_created", "customer.subscription.created",
                                  stripe_subscription(status="incomplete")))

        sub = Subscription.query.one()
        assert sub.status == "incomplete"
        assert sub.tier == "unlimited"  # from the configured price id

    def test_updates_status_and_cancel_flag(self, post_webhook, seed_data, stripe_event):
        add_subscription(seed_data["user_id"])

        post_webhook(stripe_event("evt_sub_upd", "customer.subscription.updated",
                                  stripe_subscription(cancel_at=PERIOD_END)))

        sub = Subscription.query.one()
        assert sub.cancel_at_period_end is True
        assert as_utc(sub.current_period_end) == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)

    def test_status_normalised(self, post_webhook, seed_data, stripe_event):
        add_subscription(seed_data["user_id"])

        post_webhook(stripe_event("evt_sub_unpaid", "customer.subscription.updated",
                                  stripe_subscription(status="unpaid")))

        assert Subscription.query.one().status == "past_due"

    def test_older_subscription_does_not_touch_current_row(self, post_webhook, seed_data, stripe_event):
        add_subscription(seed_data["user_id"], stripe_subscription_id="sub_new")

        post_webhook(stripe_event("evt_sub_old", "customer.subscription.updated",
                                  stripe_subscription(sub_id="sub_old", status="canceled")))

        sub = Subscription.query.one()
        assert sub.stripe_subscription_id == "sub_new"
        assert sub.status == "active"

    def test_overwrites_manual_row(self, post_webhook, seed_data, stripe_event):
        """A guard-applied row gets Stripe's values."""
        add_subscription(seed_data["user_id"], stripe_subscription_id=None, source="manual")

        post_webhook(stripe_event("evt_sub_manual", "customer.subscription.updated",
                                  stripe_subscription()))

        sub = Subscription.query.one()
        assert sub.stripe_subscription_id == "sub_001"
        assert sub.source == "webhook"
        assert as_utc(sub.current_period_end) == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)


class TestSubscriptionDeleted:

    def test_marks_cancelled_and_keeps_row(self, post_webhook, seed_data, stripe_event):
        add_subscription(seed_data["user_id"])

        post_webhook(stripe_event("evt_sub_del", "customer.subscription.deleted",
                                  stripe_subscription(status="canceled")))

        sub = Subscription.query.one()
        assert sub.status == "cancelled"
        assert AuditEvent.query.filter_by(action="subscription.deleted").count() == 1

    def test_unknown_subscription_ignored(self, post_webhook, seed_data, stripe_event):
        add_subscription(seed_data["user_id"], stripe_subscription_id="sub_current")

        post_webhook(stripe_event("evt_sub_del_old", "customer.subscription.deleted",
                                  stripe_subscription(sub_id="sub_ancient")))

        assert Subscription.query.one().status == "active"


class TestReturningSubscriber:
    """A new subscription replaces a row that is no longer live."""

    @patch("app.services.stripe_service.stripe.Subscription.retrieve")
    def test_first_invoice_replaces_cancelled_row(self, mock_retrieve, post_webhook,
                                                  seed_data, stripe_event):
        add_subscription(seed_data["user_id"], stripe_subscription_id="sub_old", status="cancelled")
        mock_retrieve.return_value = stripe_subscription(sub_id="sub_new")

        resp = post_webhook(stripe_event("evt_back_inv", "invoice.payment_succeeded", {
            "id": "in_back", "customer": "cus_001", "subscription": "sub_new",
            "billing_reason": "subscription_create", "payment_intent": "pi_back",
        }))

        assert resp.get_json() == {"received": True, "status": "processed"}
        sub = Subscription.query.one()
        assert sub.stripe_subscription_id == "sub_new"
        assert sub.status == "active"
        assert entitlement_service.is_active(seed_data["user_id"]) is True

    def test_updated_event_replaces_cancelled_row(self, post_webhook, seed_data, stripe_event):
        add_subscription(seed_data["user_id"], stripe_subscription_id="sub_old", status="cancelled")

        resp = post_webhook(stripe_event("evt_back_upd", "customer.subscription.updated",
                                         stripe_subscription(sub_id="sub_new")))

        assert resp.get_json()["status"] == "processed"
        sub = Subscription.query.one()
        assert sub.stripe_subscription_id == "sub_new"
        assert entitlement_service.is_active(seed_data["user_id"]) is True

    def test_created_event_replaces_incomplete_row(self, post_webhook, seed_data, stripe_event):
        add_subscription(seed_data["user_id"], stripe_subscription_id="sub_abandoned",
                         status="incomplete")

        post_webhook(stripe_event("evt_back_created", "customer.subscription.created",
                                  stripe_subscription(sub_id="sub_new")))

        assert Subscription.query.one().stripe_subscription_id == "sub_new"

    def test_updated_event_replaces_lapsed_row(self, post_webhook, seed_data, stripe_event):
        add_subscription(seed_data["user_id"], stripe_subscription_id="sub_old",
                         current_period_end=utcnow() - timedelta(days=2))

        post_webhook(stripe_event("evt_back_lapsed", "customer.subscription.updated",
                                  stripe_subscription(sub_id="sub_new")))

        assert Subscription.query.one().stripe_subscription_id == "sub_new"

    def test_live_row_ignores_other_subscription_updates(self, post_webhook, seed_data, stripe_event):
        add_subscription(seed_data["user_id"], stripe_subscription_id="sub_current", status="past_due")

        resp = post_webhook(stripe_event("evt_other_upd", "customer.subscription.updated",
                                         stripe_subscription(sub_id="sub_other")))

        assert resp.get_json()["status"] == "ignored"
        sub = Subscription.query.one()
        assert sub.stripe_subscription_id == "sub_current"
        assert sub.status == "past_due"

    @patch("app.services.stripe_service.stripe.Subscription.retrieve")
    def test_first_invoice_takes_over_live_row(self, mock_retrieve, post_webhook,
                                               seed_data, stripe_event):
        add_subscription(seed_data["user_id"], stripe_subscription_id="sub_old", tier="premium",
                         stripe_price_id="price_premium_month_test")
        mock_retrieve.return_value = stripe_subscription(sub_id="sub_new")

        post_webhook(stripe_event("evt_upgrade_inv", "invoice.payment_succeeded", {
            "id": "in_upgrade", "customer": "cus_001", "subscription": "sub_new",
            "billing_reason": "subscription_create", "payment_intent": "pi_upgrade",
        }))

        sub = Subscription.query.one()
        assert sub.stripe_subscription_id == "sub_new"
        assert sub.tier == "unlimited"


class TestInvoiceEvents:

    def test_payment_failed_sets_past_due(self, post_webhook, seed_data, stripe_event):
        add_subscription(seed_data["user_id"])

        resp = post_webhook(stripe_event("evt_inv_fail", "invoice.payment_failed", {
            "id": "in_fail", "customer": "cus_001", "subscription": "sub_001", "amount_due": 1500,
        }))

        assert resp.status_code == 200
        assert Subscription.query.one().status == "past_due"

    @patch("app.services.stripe_service.stripe.Subscription.retrieve")
    def test_payment_succeeded_refreshes_period(self, mock_retrieve, post_webhook,
                                                seed_data, stripe_event):
        add_subscription(seed_data["user_id"], status="past_due")
        mock_retrieve.return_value = stripe_subscription()

        post_webhook(stripe_event("evt_inv_ok", "invoice.payment_succeeded", {
            "id": "in_ok", "customer": "cus_001", "subscription": "sub_001",
            "billing_reason": "subscription_cycle", "payment_intent": "pi_cycle",
        }))

        sub = Subscription.query.one()
        assert sub.status == "active"
        assert as_utc(sub.current_period_end) == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
        # renewals aren't grants: only the event id is claimed
        assert ProcessedEvent.query.filter_by(key="payment:pi_cycle").count() == 0

    @patch("app.services.stripe_service.stripe.Subscription.retrieve")
    def test_first_invoice_creates_row_for_embedded_flow(self, mock_retrieve, post_webhook,
                                                          seed_data, stripe_event):
        mock_retrieve.return_value = stripe_subscription(metadata={
            "user_id": seed_data["user_id"],
            "purchase_type": "subscription",
            "tier": "premium",
            "interval": "month",
        }, price="price_premium_month_test")

        post_webhook(stripe_event("evt_inv_first", "invoice.payment_succeeded", {
            "id": "in_first", "customer": "cus_001", "subscription": "sub_001",
            "billing_reason": "subscription_create", "payment_intent": "pi_first_inv",
        }))

        sub = Subscription.query.one()
        assert sub.user_id == seed_data["user_id"]
        assert sub.tier == "premium"
        assert ProcessedEvent.query.filter_by(key="payment:pi_first_inv").count() == 1
