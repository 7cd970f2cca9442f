"""Confirmation poller — runs after the user is redirected back from checkout.

Responsible for:
- Reading the payment reference out of the return URL
- Waiting (bounded) for the session identity to resolve
- Looking up the payment status, with bounded retry on transient errors
- Waiting for the webhook's grant to become visible, then falling back
  to the activation guard once
- Offering a bounded, user-triggered manual retry

`success` is only reported once the status endpoint marks this payment
granted and an entitlement read shows what it bought.
"""

import asyncio
import logging

from app.confirmation.client import PortalClientError
from app.confirmation.machine import (
    ERROR,
    LOADING,
    MANUAL,
    PROCESSING,
    REQUIRES_ACTION,
    SUCCESS,
    TERMINAL_STATES,
    VERIFYING,
    WAITING_AUTH,
    check_transition,
    extract_payment_reference,
)
from app.services.retry import APPLIED, RETRIABLE, TERMINAL, Outcome, RetryPolicy, acall_with_retry

logger = logging.getLogger(__name__)

CONTACT_SUPPORT = "We couldn't activate your purchase automatically. Please contact support."


class ConfirmationPoller:
    """Finite-state machine driving one post-checkout confirmation.

    api is a PortalClient (or anything with the same coroutine methods).
    Listeners are called as listener(state, reason) on every transition,
    never after close().
    """

    def __init__(self, api, redirect_url, *, course_id=None, auth_timeout=10.0,
                 webhook_grace=10.0, poll_interval=1.0, max_manual_retries=2,
                 status_policy=None):
        self.api = api
        self.redirect_url = redirect_url
        self.course_id = course_id
        self.auth_timeout = auth_timeout
        self.webhook_grace = webhook_grace
        self.poll_interval = poll_interval
        self.max_manual_retries = max_manual_retries
        self.status_policy = status_policy or RetryPolicy(max_attempts=3, base_delay=0.5)

        self.state = LOADING
        self.reason = None
        self.reference = None
        self.purchase = {}
        self.manual_retries = 0
        self.guard_calls = 0
        self._listeners = []
        self._task = None
        self._closed = False

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def start(self):
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
        return self._task

    async def wait(self):
        """Run to the first resting state (terminal or manual)."""
        if not self._closed:
            await self.start()
        return self.state

    async def close(self):
        """Cancel the running task and its timers; silence listeners."""
        self._closed = True
        self._listeners.clear()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def closed(self):
        return self._closed

    def subscribe(self, listener):
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _transition(self, target, reason=None):
        if self._closed:
            return
        check_transition(self.state, target)
        logger.info(f"Confirmation {self.state} -> {target}" + (f" ({reason})" if reason else ""))
        self.state = target
        self.reason = reason
        for listener in list(self._listeners):
            listener(target, reason)

    # ──────────────────────────────────────────────
    # Flow
    # ──────────────────────────────────────────────

    async def _run(self):
        self.reference = extract_payment_reference(self.redirect_url)
        if self.reference is None:
            self._transition(ERROR, "missing_payment_reference")
            return

        if not await self._is_authenticated():
            self._transition(WAITING_AUTH)
            try:
                await asyncio.wait_for(self._wait_for_auth(), timeout=self.auth_timeout)
            except asyncio.TimeoutError:
                logger.info("Session identity not resolved in time, verifying anyway")

        self._transition(VERIFYING)
        outcome = await acall_with_retry(self._lookup_status, self.status_policy)
        if not outcome.ok:
            self._transition(ERROR, outcome.reason or "status_unavailable")
            return

        self.purchase = outcome.data or {}
        status = self.purchase.get("status")
        if status == "succeeded":
            await self._reconcile()
        elif status == "processing":
            self._transition(PROCESSING)
        elif status == "requires_action":
            self._transition(REQUIRES_ACTION)
        else:
            error = outcome.data.get("error") or {}
            self._transition(ERROR, error.get("message") or f"payment_{status}")

    async def _is_authenticated(self):
        try:
            session = await self.api.session()
        except PortalClientError:
            return False
        return bool(session.get("authenticated"))

    async def _wait_for_auth(self):
        while not await self._is_authenticated():
            await asyncio.sleep(self.poll_interval)

    async def _lookup_status(self):
        try:
            payload = await self.api.payment_status(self.reference.status_request)
        except PortalClientError as e:
            if e.transient:
                return Outcome(RETRIABLE, reason=str(e))
            return Outcome(TERMINAL, reason=str(e))
        return Outcome(APPLIED, data=payload)

    async def _entitlement_visible(self):
        """Entitlement read shows the purchase: course access, or the bought tier."""
        try:
            if self.course_id:
                payload = await self.api.course_access(self.course_id)
                return bool(payload.get("hasAccess"))
            payload = await self.api.entitlements()
        except PortalClientError as e:
            logger.warning(f"Entitlement read failed: {e}")
            return False
        if not payload.get("isActive"):
            return False
        tier = self.purchase.get("tier")
        return not tier or str(payload.get("tierName", "")).lower() == tier.lower()

    async def _payment_granted(self):
        """Re-read the status endpoint's grant flag; True where it reports none."""
        if self.purchase.get("granted") is None:
            return True
        try:
            payload = await self.api.payment_status(self.reference.status_request)
        except PortalClientError as e:
            logger.warning(f"Grant check failed: {e}")
            return False
        return bool(payload.get("granted"))

    async def _grant_visible(self):
        # An already-active entitlement says nothing about this payment.
        return await self._payment_granted() and await self._entitlement_visible()

    async def _await_grant(self, grace):
        """Re-check the grant until visible or `grace` seconds pass."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace
        while True:
            if await self._grant_visible():
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.poll_interval)

    async def _activate_once(self):
        request = self.reference.activation_request
        if request is None:
            return Outcome(TERMINAL, reason="not_activatable")
        self.guard_calls += 1
        try:
            return await self.api.activate(request)
        except PortalClientError as e:
            return Outcome(RETRIABLE if e.transient else TERMINAL, reason=str(e))

    async def _reconcile(self):
        # Prefer the webhook's grant.
        if await self._await_grant(self.webhook_grace):
            self._transition(SUCCESS)
            return

        outcome = await self._activate_once()
        if outcome.ok and await self._grant_visible():
            self._transition(SUCCESS)
            return
        logger.info(f"Guarded activation did not show a grant ({outcome.status}: {outcome.reason})")
        self._transition(MANUAL, outcome.reason)

    async def retry_activation(self):
        """User-triggered retry from the manual state. Bounded."""
        if self._closed or self.state != MANUAL:
            return self.state

        if self.manual_retries >= self.max_manual_retries:
            self._transition(ERROR, CONTACT_SUPPORT)
            return self.state
        self.manual_retries += 1

        outcome = await self._activate_once()
        if outcome.ok and await self._grant_visible():
            self._transition(SUCCESS)
        elif outcome.status == TERMINAL and outcome.reason == "activation_failed":
            self._transition(ERROR, CONTACT_SUPPORT)
        elif self.manual_retries >= self.max_manual_retries:
            self._transition(ERROR, CONTACT_SUPPORT)
        else:
            self.reason = outcome.reason
        return self.state

    @property
    def done(self):
        return self.state in TERMINAL_STATES
