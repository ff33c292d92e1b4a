# backend/lessonbook/services/conflict_resolver.py
"""
Conflict resolution for candidate slots.

Checks run in a fixed order and the first failure wins:

1. Raw overlap with any confirmed booking or busy event (buffer-padded)
2. Daily hour / lesson cap for the requesting user
3. Weekly hour / lesson cap for the requesting user (Monday-aligned week)
4. Buffer adjacency to the user's own bookings

Slots are never mutated; an unavailable slot is a new copy with a reason.
"""

from datetime import date, datetime, timedelta
import logging
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

import pytz

from ..core.timezone_utils import day_bounds, ensure_aware, week_start_for
from ..schemas.availability import TimeSlot
from ..schemas.booking import ExistingBooking
from ..schemas.scheduling_constraints import SchedulingConstraints

logger = logging.getLogger(__name__)

REASON_OVERLAP = "conflicts with existing booking"
REASON_DAILY_HOURS = "daily hour limit exceeded"
REASON_DAILY_LESSONS = "daily lesson limit exceeded"
REASON_WEEKLY_HOURS = "weekly hour limit exceeded"
REASON_WEEKLY_LESSONS = "weekly lesson limit exceeded"
REASON_BUFFER = "insufficient buffer time between lessons"


class Usage(NamedTuple):
    """Confirmed consumption inside a window."""

    hours: float = 0.0
    lessons: int = 0


class UserLimits(NamedTuple):
    daily_limit_reached: bool = False
    weekly_limit_reached: bool = False


def _valid_interval(booking: ExistingBooking) -> Optional[Tuple[datetime, datetime]]:
    try:
        start = ensure_aware(booking.start_time)
        end = ensure_aware(booking.end_time)
    except (AttributeError, TypeError, ValueError):
        return None
    if end <= start:
        return None
    return start, end


def overlaps(slot: TimeSlot, booking: ExistingBooking, buffer_minutes: int) -> bool:
    """``slot.start < event.end + buffer and slot.end > event.start - buffer``."""
    interval = _valid_interval(booking)
    if interval is None:
        return False
    start, end = interval
    padding = timedelta(minutes=buffer_minutes)
    return slot.start < end + padding and slot.end > start - padding


class ConflictResolver:
    """Annotates slots as available or not, one reason per slot."""

    def __init__(self, tz: pytz.BaseTzInfo):
        self.tz = tz

    def filter(
        self,
        slots: Sequence[TimeSlot],
        events: Iterable[ExistingBooking],
        buffer_minutes: int,
    ) -> List[TimeSlot]:
        """Mark slots overlapping any confirmed event (with buffer padding)."""
        blocking = []
        for event in events:
            if not event.is_confirmed:
                continue
            if _valid_interval(event) is None:
                logger.debug(f"Skipping event {event.id} with invalid time range")
                continue
            blocking.append(event)

        result: List[TimeSlot] = []
        for slot in slots:
            if slot.available and any(overlaps(slot, e, buffer_minutes) for e in blocking):
                result.append(slot.mark_unavailable(REASON_OVERLAP))
            else:
                result.append(slot)
        return result

    def usage_between(
        self, user_bookings: Iterable[ExistingBooking], start: datetime, end: datetime
    ) -> Usage:
        """Hours and count of confirmed bookings starting in ``[start, end)``."""
        hours = 0.0
        lessons = 0
        for booking in user_bookings:
            if not booking.is_confirmed:
                continue
            interval = _valid_interval(booking)
            if interval is None:
                continue
            if start <= interval[0] < end:
                hours += booking.duration_hours
                lessons += 1
        return Usage(hours=hours, lessons=lessons)

    def daily_usage(self, day: date, user_bookings: Iterable[ExistingBooking]) -> Usage:
        day_start, day_end = day_bounds(day, self.tz)
        return self.usage_between(user_bookings, day_start, day_end)

    def weekly_usage(self, day: date, user_bookings: Iterable[ExistingBooking]) -> Usage:
        week_start = week_start_for(day)
        start, _ = day_bounds(week_start, self.tz)
        end, _ = day_bounds(week_start + timedelta(days=7), self.tz)
        return self.usage_between(user_bookings, start, end)

    def cap_reason(
        self,
        day: date,
        duration_minutes: int,
        user_bookings: Sequence[ExistingBooking],
        constraints: SchedulingConstraints,
    ) -> Optional[str]:
        """First cap that one more lesson of ``duration_minutes`` would break."""
        requested_hours = duration_minutes / 60

        daily = self.daily_usage(day, user_bookings)
        if daily.hours + requested_hours > constraints.max_hours_per_day:
            return REASON_DAILY_HOURS
        if daily.lessons >= constraints.max_lessons_per_day:
            return REASON_DAILY_LESSONS

        weekly = self.weekly_usage(day, user_bookings)
        if weekly.hours + requested_hours > constraints.max_hours_per_week:
            return REASON_WEEKLY_HOURS
        if weekly.lessons >= constraints.max_lessons_per_week:
            return REASON_WEEKLY_LESSONS
        return None

    def check_user_limits(
        self,
        day: date,
        duration_minutes: int,
        user_bookings: Sequence[ExistingBooking],
        constraints: SchedulingConstraints,
    ) -> UserLimits:
        requested_hours = duration_minutes / 60
        daily = self.daily_usage(day, user_bookings)
        weekly = self.weekly_usage(day, user_bookings)
        return UserLimits(
            daily_limit_reached=(
                daily.hours + requested_hours > constraints.max_hours_per_day
                or daily.lessons >= constraints.max_lessons_per_day
            ),
            weekly_limit_reached=(
                weekly.hours + requested_hours > constraints.max_hours_per_week
                or weekly.lessons >= constraints.max_lessons_per_week
            ),
        )

    @staticmethod
    def has_buffer_conflict(
        slot: TimeSlot, bookings: Iterable[ExistingBooking], min_buffer_minutes: int
    ) -> bool:
        """
        True when the slot sits closer than the buffer to a confirmed booking.

        A gap of exactly ``min_buffer_minutes`` is allowed, as is a gap of
        zero or less (that case is an overlap, not an adjacency problem).
        """
        if min_buffer_minutes <= 0:
            return False
        buffer_seconds = min_buffer_minutes * 60
        for booking in bookings:
            if not booking.is_confirmed:
                continue
            interval = _valid_interval(booking)
            if interval is None:
                continue
            start, end = interval
            gap_before = (slot.start - end).total_seconds()
            gap_after = (start - slot.end).total_seconds()
            if 0 < gap_before < buffer_seconds or 0 < gap_after < buffer_seconds:
                return True
        return False

    def apply_user_caps(
        self,
        slots: Sequence[TimeSlot],
        day: date,
        duration_minutes: int,
        user_bookings: Sequence[ExistingBooking],
        constraints: SchedulingConstraints,
    ) -> List[TimeSlot]:
        """Re-annotate still-available slots against one user's caps and buffers."""
        cap_reason = self.cap_reason(day, duration_minutes, user_bookings, constraints)

        result: List[TimeSlot] = []
        for slot in slots:
            if not slot.available:
                result.append(slot)
            elif cap_reason is not None:
                result.append(slot.mark_unavailable(cap_reason))
            elif self.has_buffer_conflict(
                slot, user_bookings, constraints.min_buffer_between_lessons
            ):
                result.append(slot.mark_unavailable(REASON_BUFFER))
            else:
                result.append(slot)
        return result
