"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig

logger = structlog.get_logger()


def backoff_wait(config: RetryConfig) -> Callable[[RetryCallState], float]:
    """Exponential backoff that also honours a ``retry_after`` hint on the error.

    The hint (seconds, e.g. from a 429 ``Retry-After`` header) can lengthen
    the wait but never beyond ``max_wait_seconds``.
    """
    exponential = wait_exponential(
        multiplier=config.multiplier,
        min=config.initial_wait_seconds,
        max=config.max_wait_seconds,
    )

    def wait(retry_state: RetryCallState) -> float:
        delay = exponential(retry_state)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(error, "retry_after", None)
        if hint:
            delay = max(delay, min(float(hint), config.max_wait_seconds))
        return delay

    return wait


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retrying_call",
        function=getattr(retry_state.fn, "__qualname__", None),
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
        error=str(error),
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Exceptions outside *retryable_exceptions* are re-raised immediately;
    the last error is re-raised once attempts run out.

    Usage::

        @with_retry(config.retry, retryable_exceptions=(MailboxTransientError,))
        async def fetch(path: str) -> dict: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=backoff_wait(config),
        retry=retry_if_exception_type(retryable_exceptions),
        before_sleep=_log_retry,
        reraise=True,
    )
