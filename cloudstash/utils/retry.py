"""
Retry helper with exponential backoff for rate-limited API calls.

Delays double from `base_delay` up to `max_delay` and are spread by a
jitter factor so that parallel uploads don't retry in lockstep.
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_MIN = 0.6
JITTER_MAX = 1.4


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (0-indexed), jitter included."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay * random.uniform(JITTER_MIN, JITTER_MAX)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    is_retryable: Callable[[Exception], bool],
    max_attempts: int = 4,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    description: str = "request",
    on_retry: Optional[Callable[[Exception, int, float], None]] = None,
) -> T:
    """
    Await `func()` until it succeeds, retrying errors accepted by `is_retryable`.

    `max_attempts` counts every call including the first. Non-retryable
    errors, and the last retryable one, are raised unchanged.
    """
    for attempt in range(max_attempts):
        try:
            return await func()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= max_attempts - 1:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.debug(
                f"Retrying {description} in {delay:.2f}s "
                f"(attempt {attempt + 1}/{max_attempts}): {exc}"
            )
            if on_retry:
                on_retry(exc, attempt + 1, delay)
            await asyncio.sleep(delay)
    raise RuntimeError(f"{description} was not attempted")
