"""Single-flight: concurrent identical requests share one in-flight result."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    Coalesce concurrent calls per key into one upstream operation.

    The first caller for a key starts the operation; callers arriving while it
    is in flight await the same future. The entry is cleared once the
    operation settles, whether it succeeded or failed.
    """

    def __init__(self) -> None:
        self._inflight: Dict[str, asyncio.Future[T]] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug("single_flight_join key=%s", key)
            return await asyncio.shield(existing)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._inflight[key] = future
        try:
            result = await fn()
        except BaseException as exc:
            if not future.done():
                if isinstance(exc, asyncio.CancelledError):
                    future.cancel()
                else:
                    future.set_exception(exc)
                    # Mark retrieved so an unjoined failure does not warn at GC time.
                    future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)
