"""Billing models — the entitlement store.

- BillingCustomer: links a user to a Stripe customer ID.
- Subscription: the user's tier entitlement, synced from Stripe webhooks
  (or a guard-approved manual activation). One row per user.
- Enrollment: a purchased course with an expiry date.

subscriptions.status / enrollments.status are the source of truth for
access gating. Rows are never deleted; cancellation is a status change.
"""

import uuid

from app.extensions import db


class BillingCustomer(db.Model):
    __tablename__ = "billing_customers"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id"),
        unique=True,
        nullable=False,
    )
    stripe_customer_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="billing_customer")

    def __repr__(self):
        return f"<BillingCustomer stripe={self.stripe_customer_id}>"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    # -- Valid statuses (Stripe statuses are normalised onto these) --
    STATUSES = [
        "active",
        "past_due",
        "cancelled",
        "trialing",
        "incomplete",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), unique=True, nullable=False
    )
    tier = db.Column(db.String(50), nullable=True)  # premium | unlimited
    interval = db.Column(db.String(10), nullable=True)  # month | year
    status = db.Column(
        db.String(50), nullable=False
    )  # active | past_due | cancelled | trialing | incomplete
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # null until Stripe reports one (manual activation)
    stripe_customer_id = db.Column(db.String(255), nullable=True)
    stripe_price_id = db.Column(db.String(255), nullable=True)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, default=False)
    source = db.Column(db.String(20), default="webhook")  # webhook | manual
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="subscription")

    def __repr__(self):
        return f"<Subscription {self.tier} ({self.status})>"


class Enrollment(db.Model):
    __tablename__ = "enrollments"
    __table_args__ = (
        db.UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    course_id = db.Column(
        db.String(36), db.ForeignKey("courses.id"), nullable=False
    )
    status = db.Column(db.String(20), nullable=False, default="active")  # active | expired
    enrolled_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    renewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    renewal_count = db.Column(db.Integer, nullable=False, default=0)
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True)
    stripe_price_id = db.Column(db.String(255), nullable=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="enrollments")
    course = db.relationship("Course", back_populates="enrollments")

    def __repr__(self):
        return f"<Enrollment course={self.course_id} ({self.status})>"
