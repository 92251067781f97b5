import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .config import RetryConfig

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

TRANSIENT_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return response is not None and response.status_code in TRANSIENT_STATUS_CODES
    return False


def backoff_delay(attempt: int, policy: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based)."""
    base = policy.base_delay_ms * (policy.multiplier ** (attempt - 1))
    capped = min(base, policy.max_delay_ms)
    jitter = (rng or random).uniform(0, policy.jitter_ms) if policy.jitter_ms else 0.0
    return (capped + jitter) / 1000.0


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryConfig] = None,
    operation: str = "model call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    policy = policy or RetryConfig()
    attempts = max(1, policy.attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            if attempt >= attempts or not is_transient_error(exc):
                raise
            delay = backoff_delay(attempt, policy)
            logger.warning("%s failed (attempt %s/%s), retrying in %.2fs: %s", operation, attempt, attempts, delay, exc)
            await sleep(delay)
    raise RuntimeError("unreachable")
