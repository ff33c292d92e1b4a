"""
In-process booking mutex.

Serialises the validate-then-persist window of booking writes for the same
calendar so two concurrent coroutines cannot both pass validation for the
same slot.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator, Dict, Optional

from .exceptions import BookingLockTimeoutException

logger = logging.getLogger(__name__)


def _lock_key(subject: str) -> str:
    return f"booking:{subject}:mutex"


class BookingLockRegistry:
    """Per-key asyncio locks, created lazily and dropped when idle."""

    def __init__(self, timeout_s: float = 30.0) -> None:
        self.timeout_s = timeout_s
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, subject: str) -> bool:
        lock = self._locks.get(_lock_key(subject))
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, subject: str, timeout_s: Optional[float] = None) -> AsyncIterator[None]:
        """
        Hold the lock for ``subject``.

        Raises:
            BookingLockTimeoutException: if the lock is not acquired within the timeout
        """
        timeout = self.timeout_s if timeout_s is None else timeout_s
        key = _lock_key(subject)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                logger.warning("booking_lock_timeout", extra={"lock_key": key})
                raise BookingLockTimeoutException(subject, timeout) from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)
