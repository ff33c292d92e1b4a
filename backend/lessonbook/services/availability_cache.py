# backend/lessonbook/services/availability_cache.py
"""
In-process availability cache.

Short-TTL memoization of computed availability and external event
listings, keyed by subject, date (or range) and duration. Expired entries
are removed by a background sweep; when the store is full the least
recently used entry is evicted.

Only this class mutates entries. Booking writes invalidate by pattern
before they return.
"""

import asyncio
from collections import OrderedDict
from datetime import date, datetime
import logging
import re
import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Pattern, Union
from urllib.parse import quote

from .base import BaseService

logger = logging.getLogger(__name__)

ANY_SUBJECT = "*"


class CacheEntry(NamedTuple):
    value: Any
    expires_at: float


class CacheKeyBuilder:
    """Standardized cache key generation."""

    @staticmethod
    def subject(subject: Optional[str]) -> str:
        """Percent-encode a subject so it never contains the key separator."""
        return ANY_SUBJECT if subject is None else quote(subject, safe="")

    @staticmethod
    def build(*parts: Union[str, int, date, datetime]) -> str:
        """
        Build a cache key from parts.

        Examples:
            build('availability', 'day', 'u1', date(2025, 6, 18), 60)
            -> 'availability:day:u1:2025-06-18:60'
        """
        formatted_parts = []
        for part in parts:
            if isinstance(part, (date, datetime)):
                formatted_parts.append(part.isoformat())
            else:
                formatted_parts.append(str(part))
        return ":".join(formatted_parts)

    @staticmethod
    def day_availability(subject: Optional[str], day: date, duration_minutes: int) -> str:
        return CacheKeyBuilder.build(
            "availability", "day", CacheKeyBuilder.subject(subject), day, duration_minutes
        )

    @staticmethod
    def week_availability(subject: Optional[str], week_start: date, duration_minutes: int) -> str:
        return CacheKeyBuilder.build(
            "availability", "week", CacheKeyBuilder.subject(subject), week_start, duration_minutes
        )

    @staticmethod
    def next_slot(subject: Optional[str], start_from: datetime, duration_minutes: int) -> str:
        return CacheKeyBuilder.build(
            "availability", "next", CacheKeyBuilder.subject(subject), start_from, duration_minutes
        )

    @staticmethod
    def calendar_events(start: datetime, end: datetime) -> str:
        return CacheKeyBuilder.build("calendar", "events", start, end)


class CachePatterns:
    """Regular expressions used for write-through invalidation."""

    @staticmethod
    def subject(subject: str) -> str:
        return rf"^availability:(day|week|next):{re.escape(CacheKeyBuilder.subject(subject))}:"

    @staticmethod
    def day(day: date) -> str:
        return rf"^availability:day:[^:]+:{re.escape(day.isoformat())}:"

    @staticmethod
    def week(week_start: date) -> str:
        return rf"^availability:week:[^:]+:{re.escape(week_start.isoformat())}:"

    NEXT_SLOT = r"^availability:next:"
    CALENDAR_EVENTS = r"^calendar:events:"


class AvailabilityCache(BaseService):
    """
    TTL + LRU cache with an explicitly started and stopped sweep task.

    Every invalidation bumps ``generation``. A reader captures it before
    collecting data and passes it to ``set``; the store is skipped when an
    invalidation happened in between.

    ``start()`` must be called from a running event loop; ``shutdown()``
    cancels the sweep so nothing outlives the application or a test.
    """

    def __init__(
        self,
        default_ttl_seconds: float = 90,
        max_entries: int = 1000,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.default_ttl_seconds = default_ttl_seconds
        self.max_entries = max_entries
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._generation = 0
        self._sweep_task: Optional[asyncio.Task[None]] = None
        self._stats = self._initialize_stats()

    def _initialize_stats(self) -> Dict[str, int]:
        return {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "evictions": 0,
            "expirations": 0,
            "stale_sets": 0,
        }

    # Core Cache Operations

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            logger.debug(f"Cache miss: {key}")
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self._stats["expirations"] += 1
            self._stats["misses"] += 1
            logger.debug(f"Cache expired: {key}")
            return None
        self._entries.move_to_end(key)
        self._stats["hits"] += 1
        logger.debug(f"Cache hit: {key}")
        return entry.value

    @property
    def generation(self) -> int:
        return self._generation

    def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        *,
        generation: Optional[int] = None,
    ) -> bool:
        """Store ``value``; returns False when ``generation`` is out of date."""
        if generation is not None and generation != self._generation:
            self._stats["stale_sets"] += 1
            logger.debug(f"Skipping stale cache set: {key}")
            return False
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._stats["evictions"] += 1
            logger.debug(f"Cache full; evicted least recently used key {evicted}")
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)
        self._stats["sets"] += 1
        return True

    def delete(self, key: str) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self._stats["deletes"] += 1
        return True

    def invalidate_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        """Remove every key matching ``pattern`` (regex); returns the count removed."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        self._generation += 1
        doomed = [key for key in self._entries if regex.search(key)]
        for key in doomed:
            del self._entries[key]
        self._stats["deletes"] += len(doomed)
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} keys matching {regex.pattern}")
        return len(doomed)

    def get_keys(self, pattern: Optional[str] = None) -> List[str]:
        if pattern is None:
            return list(self._entries)
        regex = re.compile(pattern)
        return [key for key in self._entries if regex.search(key)]

    def clear(self) -> None:
        self._generation += 1
        self._entries.clear()
        self._stats = self._initialize_stats()
        logger.info("Availability cache cleared")

    def cleanup(self) -> int:
        """Remove expired entries; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._stats["expirations"] += len(expired)
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        total = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "hit_rate": (self._stats["hits"] / total * 100) if total else 0.0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    # Background sweep

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.info(f"Availability cache sweep started (every {self.sweep_interval_seconds}s)")

    async def shutdown(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Availability cache sweep stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Cache sweep failed: {str(e)}")
