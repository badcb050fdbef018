"""Tests for invoice_scan.retry."""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest

from invoice_scan.config import RetryConfig
from invoice_scan.errors import MailboxAPIError, MailboxTransientError
from invoice_scan.retry import backoff_wait, with_retry


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_attempts=3, initial_wait_seconds=0.01, max_wait_seconds=0.1)


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_first_try(self, fast_retry: RetryConfig):
        call_count = 0

        @with_retry(fast_retry)
        async def fn():
            nonlocal call_count
            call_count += 1
            return "ok"

        assert await fn() == "ok"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, fast_retry: RetryConfig):
        call_count = 0

        @with_retry(fast_retry)
        async def fn():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ConnectionError("transient")
            return "recovered"

        assert await fn() == "recovered"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_exhausts_retries_and_raises(self, fast_retry: RetryConfig):
        call_count = 0

        @with_retry(fast_retry)
        async def fn():
            nonlocal call_count
            call_count += 1
            raise ValueError("permanent")

        with pytest.raises(ValueError, match="permanent"):
            await fn()
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_transient_mailbox_errors_are_retried(self, fast_retry: RetryConfig):
        call_count = 0

        @with_retry(fast_retry, retryable_exceptions=(MailboxTransientError, httpx.TransportError))
        async def fn():
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise MailboxTransientError(503, "/messages")
            if call_count == 2:
                raise httpx.ConnectError("refused")
            return "ok"

        assert await fn() == "ok"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_permanent_mailbox_error_fails_immediately(self, fast_retry: RetryConfig):
        call_count = 0

        @with_retry(fast_retry, retryable_exceptions=(MailboxTransientError,))
        async def fn():
            nonlocal call_count
            call_count += 1
            raise MailboxAPIError(400, "/messages", "bad query")

        with pytest.raises(MailboxAPIError):
            await fn()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_single_attempt(self):
        config = RetryConfig(max_attempts=1, initial_wait_seconds=0.01, max_wait_seconds=0.1)
        call_count = 0

        @with_retry(config)
        async def fn():
            nonlocal call_count
            call_count += 1
            raise RuntimeError("fail")

        with pytest.raises(RuntimeError):
            await fn()
        assert call_count == 1


def _state(attempt: int, error: BaseException) -> MagicMock:
    state = MagicMock()
    state.attempt_number = attempt
    state.outcome.exception.return_value = error
    return state


class TestBackoffWait:
    def test_exponential_without_hint(self):
        config = RetryConfig(max_attempts=3, initial_wait_seconds=0.01, max_wait_seconds=0.1, multiplier=0.01)
        wait = backoff_wait(config)
        assert wait(_state(1, ConnectionError())) == pytest.approx(0.01)
        assert wait(_state(3, ConnectionError())) == pytest.approx(0.04)

    def test_retry_after_lengthens_wait(self):
        config = RetryConfig(max_attempts=3, initial_wait_seconds=0.5, max_wait_seconds=10.0, multiplier=1.0)
        wait = backoff_wait(config)

        error = MailboxTransientError(429, "/messages", retry_after=4)

        assert wait(_state(1, error)) == pytest.approx(4.0)

    def test_retry_after_is_capped(self, fast_retry: RetryConfig):
        wait = backoff_wait(fast_retry)

        error = MailboxTransientError(429, "/messages", retry_after=60)

        assert wait(_state(1, error)) == pytest.approx(0.1)

    def test_short_hint_does_not_shorten_backoff(self, fast_retry: RetryConfig):
        wait = backoff_wait(fast_retry)

        error = MailboxTransientError(429, "/messages", retry_after=0.001)

        assert wait(_state(3, error)) == pytest.approx(0.1)
