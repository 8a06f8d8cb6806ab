"""Utility functions for Gmail Mirror."""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


def utcnow() -> datetime:
    """Current time as naive UTC, the form every stored timestamp uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def backoff_delay(attempt: int, delay: float, backoff: float, max_delay: float) -> float:
    """Full-jitter exponential backoff for the given zero-based attempt."""
    ceiling = min(max_delay, delay * (backoff**attempt))
    return random.uniform(0, ceiling)


async def retry_on_failure(
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 30.0,
    should_retry: Callable[[Exception], bool] = lambda exc: True,
    on_retry: Callable[[Exception, float], Awaitable[None] | None] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await `func()` and retry it with exponential backoff and jitter.

    Args:
        func: Zero-argument coroutine factory; called once per attempt.
        max_retries: Maximum number of retry attempts.
        delay: Initial backoff ceiling in seconds.
        backoff: Multiplier for the ceiling after each retry.
        max_delay: Upper bound for any single wait.
        should_retry: Predicate deciding whether an exception is retryable.
        on_retry: Optional hook invoked with the exception and chosen wait.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        The value of the first successful attempt.
    """

    attempt = 0
    while True:
        try:
            return await func()
        except Exception as exc:
            if attempt >= max_retries or not should_retry(exc):
                if attempt > 0:
                    logger.error(
                        "function_retry_exhausted",
                        function=getattr(func, "__name__", repr(func)),
                        attempts=attempt + 1,
                        error=str(exc),
                    )
                raise

            wait = backoff_delay(attempt, delay, backoff, max_delay)
            logger.warning(
                "function_retry",
                function=getattr(func, "__name__", repr(func)),
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=round(wait, 3),
                error=str(exc),
            )
            if on_retry is not None:
                hooked = on_retry(exc, wait)
                if hooked is not None:
                    await hooked
            await sleep(wait)
            attempt += 1
