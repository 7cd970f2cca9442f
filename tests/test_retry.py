"""Tests for bounded retry — RetryPolicy, call_with_retry, acall_with_retry."""

import asyncio
from unittest.mock import patch

from app.services.retry import (
    APPLIED,
    RETRIABLE,
    TERMINAL,
    Outcome,
    RetryPolicy,
    acall_with_retry,
    call_with_retry,
)


class TestRetryPolicy:

    def test_delays_grow_and_cap(self):
        policy = RetryPolicy(max_attempts=5, base_delay=1, factor=3, max_delay=5)
        assert list(policy.delays()) == [1, 3, 5, 5]

    def test_single_attempt_has_no_delays(self):
        assert list(RetryPolicy(max_attempts=1).delays()) == []


class TestCallWithRetry:

    @patch("app.services.retry.time.sleep")
    def test_stops_on_first_success(self, mock_sleep):
        results = iter([Outcome(RETRIABLE, "blip"), Outcome(APPLIED)])

        outcome = call_with_retry(lambda: next(results), RetryPolicy(max_attempts=3, base_delay=0.2))

        assert outcome.status == APPLIED
        assert outcome.attempts == 2
        mock_sleep.assert_called_once_with(0.2)

    @patch("app.services.retry.time.sleep")
    def test_terminal_is_not_retried(self, mock_sleep):
        calls = []

        def fn(value):
            calls.append(value)
            return Outcome(TERMINAL, "not_owner")

        outcome = call_with_retry(fn, RetryPolicy(max_attempts=4), "x")

        assert outcome.status == TERMINAL
        assert calls == ["x"]
        mock_sleep.assert_not_called()

    @patch("app.services.retry.time.sleep")
    def test_gives_up_after_max_attempts(self, mock_sleep):
        outcome = call_with_retry(lambda: Outcome(RETRIABLE, "stripe_unavailable"),
                                  RetryPolicy(max_attempts=3, base_delay=0.1))

        assert outcome.status == RETRIABLE
        assert outcome.attempts == 3
        assert mock_sleep.call_count == 2


class TestAsyncRetry:

    def test_async_retry_until_applied(self):
        results = iter([Outcome(RETRIABLE), Outcome(RETRIABLE), Outcome(APPLIED)])

        async def fn():
            return next(results)

        outcome = asyncio.run(acall_with_retry(fn, RetryPolicy(max_attempts=3, base_delay=0)))

        assert outcome.ok
        assert outcome.attempts == 3

    def test_async_gives_up(self):
        async def fn():
            return Outcome(RETRIABLE, "busy")

        outcome = asyncio.run(acall_with_retry(fn, RetryPolicy(max_attempts=2, base_delay=0)))

        assert outcome.retriable
        assert outcome.attempts == 2
