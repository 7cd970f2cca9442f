"""Processed event model (the dedupe ledger).

Every webhook event is recorded by its Stripe event ID, and every granted
purchase by its payment reference ("payment:pi_..." / "payment:cs_...").
The unique constraint on `key` is the idempotency anchor: inserting a key
that already exists fails, so a second delivery (or a second grant path)
can never apply the same effect twice, across processes included.
"""

import uuid

from app.extensions import db


class ProcessedEvent(db.Model):
    __tablename__ = "processed_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    key = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..." or "payment:pi_3Xyz..."
    kind = db.Column(db.String(20), nullable=False)  # event | payment
    event_type = db.Column(
        db.String(255), nullable=True
    )  # e.g. "checkout.session.completed", "manual_activation"
    outcome = db.Column(db.String(50), nullable=True)  # processed | reconciled | ignored
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<ProcessedEvent {self.key} ({self.event_type})>"
