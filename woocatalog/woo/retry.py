# woocatalog/woo/retry.py
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "call",
) -> T:
    """
    Await `fn()` up to `attempts` times with exponential backoff.

    After failed attempt n (1-based) the wait is `base_delay * 2**n` seconds,
    so the default schedule is 2s, 4s. Exceptions outside `retry_on` propagate
    immediately; the last retryable one is re-raised once the budget is spent.
    """
    attempts = max(1, int(attempts))
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as e:
            if attempt >= attempts:
                logger.warning("[RETRY] %s failed after %d attempt(s): %s", label, attempt, e)
                raise
            delay = base_delay * (2 ** attempt)
            logger.info("[RETRY] %s attempt %d/%d failed (%s); retrying in %.1fs", label, attempt, attempts, e, delay)
            await sleep(delay)
