"""
Retry executor: bounded exponential backoff with jitter around one provider call.

The executor knows nothing about users, quotas or routing. It classifies each
failure as retryable or fatal, sleeps between retryable failures and gives up
after ``max_attempts``.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from .adapters.base import ProviderError
from .config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Transient failure vocabulary matched against lower-cased error messages.
RETRYABLE_MESSAGES = (
    "rate limit",
    "too many requests",
    "timeout",
    "timed out",
    "overloaded",
    "service unavailable",
    "temporarily unavailable",
    "try again",
)


class RetryExhaustedError(ProviderError):
    """Every attempt failed with a retryable error."""

    def __init__(self, last_error: BaseException, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        provider = getattr(last_error, "provider", "unknown")
        status_code = getattr(last_error, "status_code", None)
        message = getattr(last_error, "message", None) or str(last_error)
        super().__init__(
            provider,
            f"failed after {attempts} attempts: {message}",
            status_code=status_code,
        )


def is_retryable(error: BaseException) -> bool:
    """
    An error is retryable iff its status code is a transient HTTP status or
    its message mentions a known transient condition.
    """
    status_code = getattr(error, "status_code", None)
    if status_code in RETRYABLE_STATUS_CODES:
        return True
    message = str(error).lower()
    return any(fragment in message for fragment in RETRYABLE_MESSAGES)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    jitter: float = 0.25,
    rng: random.Random | None = None,
) -> float:
    """
    Delay before the retry that follows failed attempt ``attempt`` (0-based).

    The nominal delay is ``min(base_delay * 2**attempt, max_delay)``; jitter
    scales it by a uniform factor in ``[1 - jitter, 1 + jitter]``.
    """
    nominal = min(base_delay * (2 ** attempt), max_delay)
    if not jitter:
        return nominal
    factor = (rng or random).uniform(1.0 - jitter, 1.0 + jitter)
    return max(0.0, nominal * factor)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int | None = None,
    policy: RetryConfig | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
    operation_name: str = "provider call",
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds, fails fatally or runs out of attempts.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        max_attempts: Total attempts, overriding ``policy.max_attempts``
        policy: Backoff parameters (defaults to RetryConfig())
        sleep: Awaitable sleep, injectable for tests
        rng: Random source for jitter
        operation_name: Label used in log messages
        on_retry: Callback receiving (attempt, error, delay) before each sleep

    Returns:
        The operation's result

    Raises:
        The original error if it is fatal (no sleep, no further attempts).
        RetryExhaustedError after ``max_attempts`` retryable failures.
        asyncio.CancelledError if cancelled, including during a backoff sleep.
    """
    policy = policy or RetryConfig()
    attempts = max_attempts if max_attempts is not None else policy.max_attempts
    if attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: BaseException | None = None
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if not is_retryable(e):
                logger.warning("%s failed with non-retryable error: %s", operation_name, e)
                raise

            if attempt < attempts - 1:
                delay = calculate_backoff(
                    attempt, policy.base_delay, policy.max_delay, policy.jitter, rng
                )
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    operation_name, attempt + 1, attempts, e, delay,
                )
                if on_retry:
                    on_retry(attempt, e, delay)
                await sleep(delay)

    logger.error("%s failed after %d attempts: %s", operation_name, attempts, last_error)
    raise RetryExhaustedError(last_error, attempts)
