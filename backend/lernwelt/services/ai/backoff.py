"""Retry logic for provider rate limits."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence, Tuple, TypeVar

from ...errors import RateLimited

T = TypeVar("T")
logger = logging.getLogger(__name__)


def backoff_delays(
    max_retries: int, base: float = 2.0, factor: float = 4.0, cap: float = 30.0
) -> Tuple[float, ...]:
    """Exponential retry schedule: 2s, 8s, then capped at 30s."""
    return tuple(min(cap, base * factor ** i) for i in range(max(0, max_retries)))


DEFAULT_DELAYS = backoff_delays(3)


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args,
    delays: Sequence[float] = DEFAULT_DELAYS,
    **kwargs,
) -> T:
    """
    Execute a coroutine function, retrying only on RateLimited.

    One attempt per delay, then a final attempt whose error propagates.
    Any other error is raised immediately.
    """
    for attempt, delay in enumerate(delays):
        try:
            return await func(*args, **kwargs)
        except RateLimited as e:
            logger.warning(
                f"Rate limited, retry {attempt + 1}/{len(delays)} in {delay}s: {e}"
            )
            await asyncio.sleep(delay)

    return await func(*args, **kwargs)
