from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_PATTERN = re.compile(
    r"rate limit|timeout|timed out|network|temporar|unavailable|fetch failed|etimedout|econnreset|enotfound|\b429\b",
    re.IGNORECASE,
)


def is_transient(error: BaseException | str) -> bool:
    return bool(TRANSIENT_PATTERN.search(str(error)))


def backoff_delay(attempt: int, base_delay: float) -> float:
    return max(0.0, base_delay) * max(1, attempt)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    base_delay: float,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= max_retries or not is_transient(exc):
                raise
            attempt += 1
            delay = backoff_delay(attempt, base_delay)
            logger.info("transient failure (%s); retry %d/%d in %.2fs", exc, attempt, max_retries, delay)
            await sleep(delay)
