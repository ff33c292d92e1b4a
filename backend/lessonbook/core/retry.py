"""Async retry with capped exponential backoff."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .exceptions import ExternalServiceException

logger = logging.getLogger(__name__)

R = TypeVar("R")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2**attempt, capped."""
    return min(base_delay * (2**attempt), max_delay)


async def retry_async(
    func: Callable[[], Awaitable[R]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    is_retryable: Optional[Callable[[Exception], bool]] = None,
    operation: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> R:
    """
    Run ``func`` until it succeeds or attempts are exhausted.

    Errors rejected by ``is_retryable`` propagate immediately. After the last
    attempt the final error propagates unchanged.
    """
    last_exception: Exception | None = None

    for attempt in range(max_attempts):
        try:
            return await func()
        except Exception as e:
            last_exception = e
            if is_retryable is not None and not is_retryable(e):
                raise
            if attempt < max_attempts - 1:
                wait_time = backoff_delay(attempt, base_delay, max_delay)
                logger.warning(
                    f"Attempt {attempt + 1}/{max_attempts} failed for {operation}: {str(e)}. "
                    f"Retrying in {wait_time}s..."
                )
                await (sleep or asyncio.sleep)(wait_time)
            else:
                logger.error(f"All {max_attempts} attempts failed for {operation}: {str(e)}")

    if last_exception is not None:
        raise last_exception
    raise RuntimeError("Retry failed without capturing exception")


def is_transient_error(exc: BaseException) -> bool:
    """
    Network failures, timeouts and 5xx responses are worth retrying.

    4xx responses and validation failures are not.
    """
    if isinstance(exc, ExternalServiceException):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    return False
