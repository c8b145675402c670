"""Bounded retry with exponential backoff for transient pipeline errors."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from price_tracker.errors import FetchError, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """Storage transport failures and retryable fetch failures are worth another try."""
    if isinstance(exc, StorageError):
        return True
    if isinstance(exc, FetchError):
        return exc.retryable
    return False


def backoff_delay(attempt: int, base_delay: float, max_delay: float = 30.0) -> float:
    """Exponential backoff with up to one base_delay of jitter."""
    if base_delay <= 0:
        return 0.0
    delay = base_delay * (2 ** (attempt - 1)) + random.uniform(0, base_delay)
    return min(delay, max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    description: str = "operation",
    should_retry: Callable[[BaseException], bool] = is_transient,
) -> T:
    """
    Run operation, retrying transient failures.

    Args:
        operation: Zero-argument coroutine factory
        attempts: Total attempts (1 disables retrying)
        base_delay: Base backoff in seconds
        description: Used in log messages
        should_retry: Predicate selecting retryable exceptions

    Returns:
        Result of the first successful attempt

    Raises:
        The last exception once attempts are exhausted or on a non-retryable error
    """
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= attempts or not should_retry(e):
                raise
            sleep_s = backoff_delay(attempt, base_delay)
            logger.warning(
                f"{description}: {type(e).__name__}: {e}; retrying in {sleep_s:.1f}s "
                f"(attempt {attempt}/{attempts})"
            )
            await asyncio.sleep(sleep_s)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{description}: retry loop exited without result")
