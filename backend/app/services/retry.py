# backend/app/services/retry.py
"""
Retry with exponential backoff.

The first invocation counts as attempt 1. After a failed attempt ``n`` the
caller waits ``initial_delay * multiplier ** (n - 1)`` plus random jitter,
capped at ``max_delay``. When the budget is exhausted the last error is
re-raised unchanged.

Validation errors and permanent notification rejections are never retried.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..core.config import settings
from ..core.exceptions import DomainException, NotificationPermanentError
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

OnRetry = Callable[[int, BaseException, float], None]


def is_retryable(exc: BaseException) -> bool:
    """Caller-correctable and permanent failures are raised immediately."""
    return not isinstance(exc, (DomainException, NotificationPermanentError))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = field(default_factory=lambda: settings.retry_max_attempts)
    initial_delay: float = field(default_factory=lambda: settings.retry_initial_delay_seconds)
    multiplier: float = field(default_factory=lambda: settings.retry_backoff_multiplier)
    max_delay: float = field(default_factory=lambda: settings.retry_max_delay_seconds)
    jitter: float = field(default_factory=lambda: settings.retry_jitter_seconds)

    def calculate_delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay to wait after failed attempt ``attempt`` (1-based)."""
        base = self.initial_delay * (self.multiplier ** max(0, attempt - 1))
        return min(base + rng() * self.jitter, self.max_delay)


def with_retry(
    operation: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    *,
    operation_name: Optional[str] = None,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    on_retry: Optional[OnRetry] = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the attempt budget is spent.

    Args:
        operation: Zero-argument callable
        policy: Attempt budget and backoff shape (defaults from settings)
        operation_name: Label for logs and metrics
        retry_on: Predicate deciding whether an error is worth another attempt
        on_retry: Called as ``on_retry(attempt, error, delay)`` before each wait
        sleep: Injected for tests

    Raises:
        The last error raised by ``operation``
    """
    policy = policy or RetryPolicy()
    name = operation_name or getattr(operation, "__name__", "operation")
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as exc:
            if attempt >= policy.max_attempts or not retry_on(exc):
                _log_final_failure(name, attempt, policy, exc)
                raise
            delay = policy.calculate_delay(attempt)
            _log_retry(name, attempt, policy, delay, exc)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            sleep(delay)
            attempt += 1


async def async_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    operation_name: Optional[str] = None,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    on_retry: Optional[OnRetry] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Async variant of with_retry for coroutine-based operations."""
    policy = policy or RetryPolicy()
    name = operation_name or getattr(operation, "__name__", "operation")
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_attempts or not retry_on(exc):
                _log_final_failure(name, attempt, policy, exc)
                raise
            delay = policy.calculate_delay(attempt)
            _log_retry(name, attempt, policy, delay, exc)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await sleep(delay)
            attempt += 1


def _log_retry(
    name: str, attempt: int, policy: RetryPolicy, delay: float, exc: BaseException
) -> None:
    prometheus_metrics.record_retry_attempt(name)
    logger.warning(
        "Attempt %d/%d failed for %s: %s. Retrying in %.2fs",
        attempt,
        policy.max_attempts,
        name,
        exc,
        delay,
        extra={"event": "retry", "op": name, "attempt": attempt, "delay": delay},
    )


def _log_final_failure(name: str, attempt: int, policy: RetryPolicy, exc: BaseException) -> None:
    if attempt >= policy.max_attempts:
        logger.error("All %d attempts failed for %s: %s", policy.max_attempts, name, exc)
    else:
        logger.info("Not retrying %s after %s: %s", name, type(exc).__name__, exc)
