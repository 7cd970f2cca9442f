"""Client-side confirmation after the redirect back from Stripe."""

from app.confirmation.client import PortalClient, PortalClientError
from app.confirmation.machine import (
    ERROR,
    LOADING,
    MANUAL,
    PROCESSING,
    REQUIRES_ACTION,
    SUCCESS,
    TRANSITIONS,
    VERIFYING,
    WAITING_AUTH,
    IllegalTransition,
    PaymentReference,
    extract_payment_reference,
)
from app.confirmation.poller import ConfirmationPoller

__all__ = [
    "ConfirmationPoller",
    "PortalClient",
    "PortalClientError",
    "PaymentReference",
    "IllegalTransition",
    "extract_payment_reference",
    "TRANSITIONS",
    "LOADING",
    "WAITING_AUTH",
    "VERIFYING",
    "SUCCESS",
    "PROCESSING",
    "REQUIRES_ACTION",
    "ERROR",
    "MANUAL",
]
