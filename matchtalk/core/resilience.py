"""
Resilience Patterns

Retry policy and exponential backoff shared by the HTTP client
and the realtime reconnect scheduler.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from matchtalk.core.exceptions import HttpError, NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(base_delay: float, exponent: int, max_delay: Optional[float] = None) -> float:
    """Return ``base_delay * 2**exponent``, capped at ``max_delay``."""
    delay = base_delay * (2 ** max(exponent, 0))
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


def default_is_retryable(error: BaseException) -> bool:
    """
    Network errors, timeouts and 5xx are retryable; 429 never is.
    """
    if isinstance(error, HttpError):
        if error.status == 429:
            return False
        return 500 <= error.status < 600
    return isinstance(error, NetworkError)


@dataclass
class RetryPolicy:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Number of retries after the first call
        base_delay: Delay before the first retry (seconds)
        max_delay: Cap applied to every computed delay (seconds)
        is_retryable: Predicate deciding whether an error is retried
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: Optional[float] = None
    is_retryable: Callable[[BaseException], bool] = default_is_retryable

    def get_delay(self, attempt: int) -> float:
        """Delay before retrying after failed attempt ``attempt`` (1-based)."""
        return backoff_delay(self.base_delay, attempt - 1, self.max_delay)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Check if failed attempt ``attempt`` (1-based) should be retried."""
        return attempt <= self.max_attempts and self.is_retryable(error)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    name: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry policy
        sleep: Awaitable sleep (injectable for tests)
        on_retry: Callback ``(attempt, error, delay)`` called before sleeping
        name: Label used in log messages

    Returns:
        Result of the first successful attempt

    Raises:
        The error of the last attempt.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if not policy.should_retry(e, attempt):
                raise

            delay = policy.get_delay(attempt)
            logger.warning(
                f"[Retry] {name} attempt {attempt} failed: {e}. "
                f"Retrying in {delay:.2f}s ({attempt}/{policy.max_attempts})"
            )
            if on_retry:
                on_retry(attempt, e, delay)

            await sleep(delay)
            attempt += 1


# Pre-configured policies
DEFAULT_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay=1.0)

NO_RETRY_POLICY = RetryPolicy(max_attempts=0)
