# backend/lessonbook/services/availability_service.py
"""
Availability Calculator for the scheduling core.

Pure computation over a configuration snapshot and a list of existing
bookings: no I/O, no awaiting. Fetching events and caching results is the
booking service's job.
"""

from datetime import date, datetime, timedelta
import logging
from typing import List, Optional, Sequence

import pytz

from ..core.timezone_utils import ensure_aware, local_date, sunday_based_weekday, week_start_for
from ..schemas.availability import (
    AvailabilityStats,
    ConstraintFlags,
    DayAvailability,
    TimeSlot,
    WeekAvailability,
)
from ..schemas.booking import ExistingBooking
from ..schemas.scheduling_constraints import DayWorkingHours, ScheduleSnapshot
from .base import BaseService
from .conflict_resolver import ConflictResolver
from .slot_generator import SlotGenerator

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_DAYS = 30


def format_slot(slot: TimeSlot, tz: pytz.BaseTzInfo) -> str:
    """Render a slot as "HH:MM - HH:MM" in ``tz``."""
    start = slot.start.astimezone(tz)
    end = slot.end.astimezone(tz)
    return f"{start:%H:%M} - {end:%H:%M}"


class AvailabilityCalculator(BaseService):
    """
    Orchestrates slot generation and conflict resolution.

    Every call takes the ``ScheduleSnapshot`` it should use, so a whole day
    or week is computed against one consistent configuration.
    """

    def __init__(
        self,
        tz: pytz.BaseTzInfo,
        slot_generator: Optional[SlotGenerator] = None,
        conflict_resolver: Optional[ConflictResolver] = None,
    ):
        super().__init__()
        self.tz = tz
        self.slot_generator = slot_generator or SlotGenerator(tz)
        self.conflict_resolver = conflict_resolver or ConflictResolver(tz)

    def _working_hours(self, day: date, snapshot: ScheduleSnapshot) -> Optional[DayWorkingHours]:
        return snapshot.working_hours.get(sunday_based_weekday(day))

    def _is_closed(self, day: date, snapshot: ScheduleSnapshot) -> bool:
        if day in snapshot.vacation_days:
            return True
        window = self.slot_generator.operating_window(
            day, self._working_hours(day, snapshot), snapshot.constraints
        )
        return window is None

    def annotate_day(
        self,
        day: date,
        duration_minutes: int,
        snapshot: ScheduleSnapshot,
        existing_bookings: Sequence[ExistingBooking] = (),
        user_id: Optional[str] = None,
    ) -> List[TimeSlot]:
        """Every slot of the day, each marked available or carrying its reason."""
        if day in snapshot.vacation_days:
            return []

        constraints = snapshot.constraints
        slots = self.slot_generator.generate(
            day, duration_minutes, self._working_hours(day, snapshot), constraints
        )
        slots = self.conflict_resolver.filter(
            slots, existing_bookings, constraints.min_buffer_between_lessons
        )
        if user_id:
            user_bookings = [b for b in existing_bookings if b.user_id == user_id]
            slots = self.conflict_resolver.apply_user_caps(
                slots, day, duration_minutes, user_bookings, constraints
            )
        return slots

    def calculate_day_availability(
        self,
        day: date,
        duration_minutes: int,
        snapshot: ScheduleSnapshot,
        user_id: Optional[str] = None,
        existing_bookings: Sequence[ExistingBooking] = (),
        include_unavailable: bool = False,
    ) -> DayAvailability:
        """
        Calculate availability for one day.

        Raw overlaps are checked against every confirmed booking regardless of
        owner. Caps and buffer adjacency apply only when ``user_id`` is given,
        and only against that user's bookings.

        Args:
            day: Calendar day in the business timezone
            duration_minutes: Lesson length
            snapshot: Configuration to compute against
            user_id: Optional requesting user
            existing_bookings: Local bookings and busy external events
            include_unavailable: Return unavailable slots (with reasons) too
        """
        slots = self.annotate_day(day, duration_minutes, snapshot, existing_bookings, user_id)

        limits_daily = False
        limits_weekly = False
        if user_id:
            user_bookings = [b for b in existing_bookings if b.user_id == user_id]
            limits = self.conflict_resolver.check_user_limits(
                day, duration_minutes, user_bookings, snapshot.constraints
            )
            limits_daily = limits.daily_limit_reached
            limits_weekly = limits.weekly_limit_reached

        available = [slot for slot in slots if slot.available]
        return DayAvailability(
            date=day,
            slots=slots if include_unavailable else available,
            total_available_slots=len(available),
            total_available_hours=len(available) * duration_minutes / 60,
            constraint_flags=ConstraintFlags(
                daily_limit_reached=limits_daily,
                weekly_limit_reached=limits_weekly,
                outside_operating_hours=self._is_closed(day, snapshot),
            ),
        )

    def calculate_week_availability(
        self,
        week_start: date,
        duration_minutes: int,
        snapshot: ScheduleSnapshot,
        user_id: Optional[str] = None,
        existing_bookings: Sequence[ExistingBooking] = (),
    ) -> WeekAvailability:
        """Seven day calculations from the Monday of ``week_start``'s week."""
        monday = week_start_for(week_start)
        days = [
            self.calculate_day_availability(
                monday + timedelta(days=offset),
                duration_minutes,
                snapshot,
                user_id=user_id,
                existing_bookings=existing_bookings,
            )
            for offset in range(7)
        ]

        return self.build_week(monday, days, snapshot, user_id, existing_bookings)

    def build_week(
        self,
        week_start: date,
        days: List[DayAvailability],
        snapshot: ScheduleSnapshot,
        user_id: Optional[str] = None,
        existing_bookings: Sequence[ExistingBooking] = (),
    ) -> WeekAvailability:
        """Aggregate seven days and the user's remaining weekly capacity (floored at zero)."""
        monday = week_start_for(week_start)
        constraints = snapshot.constraints
        if user_id:
            user_bookings = [b for b in existing_bookings if b.user_id == user_id]
            usage = self.conflict_resolver.weekly_usage(monday, user_bookings)
            remaining_hours = max(0.0, constraints.max_hours_per_week - usage.hours)
            remaining_lessons = max(0, constraints.max_lessons_per_week - usage.lessons)
        else:
            remaining_hours = float(constraints.max_hours_per_week)
            remaining_lessons = constraints.max_lessons_per_week

        return WeekAvailability(
            week_start=monday,
            week_end=monday + timedelta(days=7),
            days=days,
            total_weekly_hours=sum(d.total_available_hours for d in days),
            remaining_weekly_hours=remaining_hours,
            remaining_weekly_lessons=remaining_lessons,
        )

    def unavailable_day(
        self,
        day: date,
        duration_minutes: int,
        snapshot: ScheduleSnapshot,
        reason: str,
        include_unavailable: bool = False,
    ) -> DayAvailability:
        """A day on which every slot is withheld with ``reason``."""
        slots = [
            slot.mark_unavailable(reason)
            for slot in self.annotate_day(day, duration_minutes, snapshot)
        ]
        return DayAvailability(
            date=day,
            slots=slots if include_unavailable else [],
            total_available_slots=0,
            total_available_hours=0.0,
            constraint_flags=ConstraintFlags(
                outside_operating_hours=self._is_closed(day, snapshot)
            ),
        )

    def first_available_slot(
        self, availability: DayAvailability, start_from: datetime
    ) -> Optional[TimeSlot]:
        """Earliest available slot of the day starting at or after ``start_from``."""
        start_from = ensure_aware(start_from, self.tz)
        for slot in availability.slots:
            if slot.available and slot.start >= start_from:
                return slot
        return None

    def find_next_available_slot(
        self,
        start_from: datetime,
        duration_minutes: int,
        snapshot: ScheduleSnapshot,
        existing_bookings: Sequence[ExistingBooking] = (),
        user_id: Optional[str] = None,
        max_days_to_search: int = DEFAULT_SEARCH_DAYS,
    ) -> Optional[TimeSlot]:
        """
        Scan day by day from ``start_from`` and stop at the first opening.

        Returns None when nothing opens up within ``max_days_to_search`` days.
        """
        first_day = local_date(ensure_aware(start_from, self.tz), self.tz)
        for offset in range(max_days_to_search):
            day = first_day + timedelta(days=offset)
            availability = self.calculate_day_availability(
                day,
                duration_minutes,
                snapshot,
                user_id=user_id,
                existing_bookings=existing_bookings,
            )
            slot = self.first_available_slot(availability, start_from)
            if slot is not None:
                return slot
        logger.info(
            f"No available {duration_minutes}-minute slot within {max_days_to_search} days "
            f"of {start_from.isoformat()}"
        )
        return None

    def get_availability_stats(
        self,
        day: date,
        duration_minutes: int,
        snapshot: ScheduleSnapshot,
        existing_bookings: Sequence[ExistingBooking] = (),
        user_id: Optional[str] = None,
    ) -> AvailabilityStats:
        slots = self.annotate_day(day, duration_minutes, snapshot, existing_bookings, user_id)
        available = sum(1 for slot in slots if slot.available)
        total = len(slots)
        return AvailabilityStats(
            total_slots=total,
            available_slots=available,
            unavailable_slots=total - available,
            availability_rate=(available / total * 100) if total else 0.0,
        )

    def format_slot(self, slot: TimeSlot) -> str:
        return format_slot(slot, self.tz)
