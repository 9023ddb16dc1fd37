"""Retry wrapper for the database boundary.

Linear backoff (``backoff``, ``2 * backoff``, ...) up to ``attempts`` tries.
Only exceptions matching ``retry_on`` are retried; anything else propagates on
the first occurrence.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import TransientDBError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    backoff: float = 0.5,
    retry_on: tuple[type[BaseException], ...] = (TransientDBError,),
    label: str = "operation",
) -> T:
    """Await ``fn()`` and retry it on retryable failures.

    The last retryable exception is re-raised once ``attempts`` is exhausted.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts):
        try:
            return await fn()
        except retry_on as exc:
            delay = backoff * attempt
            logger.debug(
                "Retryable error in %s (attempt %d/%d), retrying in %.1fs: %s",
                label,
                attempt,
                attempts,
                delay,
                str(exc)[:120],
            )
            if delay > 0:
                await asyncio.sleep(delay)
    # Final attempt: whatever it raises propagates
    return await fn()

