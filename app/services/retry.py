"""Bounded retry with exponential backoff and a typed outcome.

Callers get an Outcome back instead of an exception so they can tell
"try again automatically" (retriable) from "needs user action" (terminal).
Used by the activation guard on the server and by the confirmation
poller's HTTP client (async variant).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
RETRIABLE = "retriable"
TERMINAL = "terminal"


@dataclass
class Outcome:
    status: str
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 1

    @property
    def ok(self):
        return self.status in (APPLIED, ALREADY_APPLIED)

    @property
    def retriable(self):
        return self.status == RETRIABLE


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 8.0

    def delays(self):
        """Sleep before attempt 2..N (one fewer than max_attempts)."""
        delay = self.base_delay
        for _ in range(max(1, self.max_attempts) - 1):
            yield min(delay, self.max_delay)
            delay *= self.factor


def call_with_retry(fn, policy, *args, **kwargs):
    """Call fn until it returns a non-retriable Outcome or attempts run out."""
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        outcome = fn(*args, **kwargs)
        outcome.attempts = attempt
        if not outcome.retriable:
            return outcome
        delay = next(delays, None)
        if delay is None:
            logger.warning(f"Giving up after {attempt} attempts: {outcome.reason}")
            return outcome
        logger.info(f"Retriable outcome ({outcome.reason}), attempt {attempt}, sleeping {delay}s")
        time.sleep(delay)


async def acall_with_retry(fn, policy, *args, **kwargs):
    """Async variant: fn is a coroutine function returning an Outcome."""
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        outcome = await fn(*args, **kwargs)
        outcome.attempts = attempt
        if not outcome.retriable:
            return outcome
        delay = next(delays, None)
        if delay is None:
            return outcome
        await asyncio.sleep(delay)
