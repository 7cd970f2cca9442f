"""Confirmation state machine: states, allowed transitions, and parsing
the payment reference out of the redirect URL Stripe sends the user back to.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlsplit

LOADING = "loading"
WAITING_AUTH = "waiting_auth"
VERIFYING = "verifying"
SUCCESS = "success"
PROCESSING = "processing"
REQUIRES_ACTION = "requires_action"
ERROR = "error"
MANUAL = "manual"

TRANSITIONS = {
    LOADING: {WAITING_AUTH, VERIFYING, ERROR},
    WAITING_AUTH: {VERIFYING, ERROR},
    VERIFYING: {SUCCESS, PROCESSING, REQUIRES_ACTION, ERROR, MANUAL},
    MANUAL: {SUCCESS, ERROR},
    SUCCESS: set(),
    PROCESSING: set(),
    REQUIRES_ACTION: set(),
    ERROR: set(),
}

TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)


class IllegalTransition(RuntimeError):
    def __init__(self, current, target):
        super().__init__(f"Illegal confirmation transition {current} -> {target}")
        self.current = current
        self.target = target


def check_transition(current, target):
    if target not in TRANSITIONS[current]:
        raise IllegalTransition(current, target)


@dataclass(frozen=True)
class PaymentReference:
    kind: str  # payment_intent | setup_intent | checkout_session
    id: str

    @property
    def status_request(self):
        """Body for POST /api/payments/status."""
        return {f"{self.kind}_id": self.id}

    @property
    def activation_request(self):
        """Body for POST /api/payments/activate (None for setup intents)."""
        if self.kind == "setup_intent":
            return None
        return {f"{self.kind}_id": self.id}


def _from_client_secret(secret):
    # "pi_123_secret_abc" -> "pi_123"
    if secret and "_secret_" in secret:
        return secret.split("_secret_", 1)[0]
    return None


def extract_payment_reference(redirect_url) -> Optional[PaymentReference]:
    """Payment reference from the return URL's query string.

    Checks, in order: payment_intent (or its client secret), setup_intent
    (or its client secret), and the hosted checkout's session_id.
    """
    params = parse_qs(urlsplit(redirect_url or "").query)

    def first(name):
        values = params.get(name)
        return values[0] if values else None

    payment_intent = first("payment_intent") or _from_client_secret(
        first("payment_intent_client_secret")
    )
    if payment_intent:
        return PaymentReference("payment_intent", payment_intent)

    setup_intent = first("setup_intent") or _from_client_secret(
        first("setup_intent_client_secret")
    )
    if setup_intent:
        return PaymentReference("setup_intent", setup_intent)

    session_id = first("session_id")
    if session_id and session_id.startswith("cs_"):
        return PaymentReference("checkout_session", session_id)

    return None
