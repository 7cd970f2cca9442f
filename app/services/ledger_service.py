"""Dedupe ledger — atomic check-and-insert over processed_events.

A claim is an INSERT, not a read-then-write: the unique constraint on
processed_events.key decides which of two racing writers wins, on one
instance or many. claim() must be the first write of its transaction,
since losing the race rolls the session back.
"""

import logging

from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models.processed_event import ProcessedEvent

logger = logging.getLogger(__name__)


def payment_key(payment_ref):
    """Ledger key for a granted purchase (PaymentIntent or Checkout Session id)."""
    return f"payment:{payment_ref}"


def is_processed(key):
    return ProcessedEvent.query.filter_by(key=key).first() is not None


def claim(entries):
    """Insert ledger rows; all or nothing.

    entries: iterable of (key, kind, event_type).
    Returns True if every key was claimed (rows flushed, caller commits),
    False if any key already existed (session rolled back).
    """
    for key, kind, event_type in entries:
        db.session.add(ProcessedEvent(key=key, kind=kind, event_type=event_type))
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def set_outcome(key, outcome):
    entry = ProcessedEvent.query.filter_by(key=key).first()
    if entry:
        entry.outcome = outcome
        db.session.flush()
