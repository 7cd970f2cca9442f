"""Checkout session model.

One row per initiated purchase, written only after Stripe accepted the
request. metadata_ is the snapshot of what was bought (tier/interval or
course + days of access) — grants read it, never the live price tables.
"""

import uuid

from app.extensions import db


class CheckoutSession(db.Model):
    __tablename__ = "checkout_sessions"
    __table_args__ = (
        db.UniqueConstraint(
            "user_id", "idempotency_key", name="uq_checkout_user_idempotency_key"
        ),
    )

    KINDS = ["course", "subscription"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    kind = db.Column(db.String(20), nullable=False)  # course | subscription
    course_id = db.Column(
        db.String(36), db.ForeignKey("courses.id"), nullable=True
    )
    tier = db.Column(db.String(50), nullable=True)
    interval = db.Column(db.String(10), nullable=True)
    ui_mode = db.Column(db.String(20), nullable=False, default="hosted")  # hosted | embedded
    status = db.Column(
        db.String(20), nullable=False, default="pending"
    )  # pending | completed | expired
    idempotency_key = db.Column(db.String(255), nullable=False)
    stripe_session_id = db.Column(db.String(255), unique=True, nullable=True)
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True, index=True)
    stripe_subscription_id = db.Column(db.String(255), nullable=True)
    redirect_url = db.Column(db.Text, nullable=True)
    client_secret = db.Column(db.String(255), nullable=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # named metadata_ to avoid clashing with SQLAlchemy's MetaData
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_response(self):
        """Body returned to the client for this checkout (also on replays)."""
        body = {"checkoutSessionId": self.id}
        if self.ui_mode == "embedded":
            body["clientSecret"] = self.client_secret
        else:
            body["redirectUrl"] = self.redirect_url
        return body

    def __repr__(self):
        return f"<CheckoutSession {self.kind} ({self.status})>"
