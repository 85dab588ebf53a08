"""Exponential backoff with jitter for invoicing-service calls.

Retries only on TransientError (connection errors, timeouts, 429, 5xx, as
classified by the client). Respects Retry-After. Logs each retry attempt.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from typing import Any, Awaitable, Callable

from sigo_bridge.errors import TransientError

logger = logging.getLogger(__name__)


def retry_async(
    max_retries: int | Callable[[Any], int] = 3,
    base_delay: float | Callable[[Any], float] = 1.0,
    max_delay: float = 30.0,
    jitter: float = 0.3,
) -> Callable:
    """Decorator: retry a coroutine with exponential backoff + jitter.

    Args:
        max_retries: Maximum number of retry attempts, or a callable taking
            the bound instance (``self``) and returning it.
        base_delay: Initial delay in seconds (or a callable, as above).
        max_delay: Maximum delay cap in seconds.
        jitter: Jitter factor (0.0-1.0).
    """

    def decorator(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            owner = args[0] if args else None
            retries = max_retries(owner) if callable(max_retries) else max_retries
            base = base_delay(owner) if callable(base_delay) else base_delay
            for attempt in range(retries + 1):
                try:
                    return await fn(*args, **kwargs)
                except TransientError as e:
                    if attempt == retries:
                        raise
                    delay = compute_delay(attempt, base, max_delay, jitter, e.retry_after)
                    logger.warning(
                        "Retry %d/%d for %s (%s), waiting %.1fs",
                        attempt + 1,
                        retries,
                        fn.__name__,
                        e.message,
                        delay,
                    )
                    await asyncio.sleep(delay)
            raise AssertionError("unreachable")

        return wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    retry_after: float | None = None,
) -> float:
    """Compute delay with exponential backoff + jitter, respecting Retry-After."""
    if retry_after is not None:
        return min(retry_after, max_delay)

    # Exponential backoff: base * 2^attempt
    delay = min(base_delay * (2**attempt), max_delay)

    jitter_amount = delay * jitter
    delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)
