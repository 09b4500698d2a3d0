# menugen/core/retry.py
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import httpx
import openai

from .errors import TransientServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retry configuration
MAX_RETRIES = 3
INITIAL_RETRY_DELAY = 2.0  # seconds, doubled after every failed attempt

RETRYABLE_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}


def is_transient(error: BaseException) -> bool:
    """Whether an error from an external service is worth retrying"""
    if isinstance(error, TransientServiceError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    # APITimeoutError is a subclass of APIConnectionError
    if isinstance(error, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        return True
    return False


async def call_with_retries(
    func: Callable[[], Awaitable[T]],
    *,
    label: str,
    max_retries: int = MAX_RETRIES,
    initial_delay: float = INITIAL_RETRY_DELAY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``func()``, retrying transient failures with exponential backoff.

    Non-transient errors and the error of the final attempt propagate unchanged.
    """
    attempts = max(1, max_retries)
    for attempt in range(attempts):
        try:
            return await func()
        except Exception as e:
            if not is_transient(e) or attempt == attempts - 1:
                raise
            backoff_time = initial_delay * (2 ** attempt)
            logger.warning(
                f"{label} failed (attempt {attempt + 1}/{attempts}): {str(e)}; retrying in {backoff_time:.1f}s"
            )
            await sleep(backoff_time)
