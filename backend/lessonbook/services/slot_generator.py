# backend/lessonbook/services/slot_generator.py
"""
Slot generation for a single day.

Produces evenly spaced candidate windows inside the day's operating hours.
No conflict knowledge exists at this stage: every slot starts available.
"""

from datetime import date, timedelta
import logging
from typing import List, Optional, Tuple

import pytz

from ..core.timezone_utils import hhmm_to_minutes, localize
from ..schemas.availability import TimeSlot
from ..schemas.scheduling_constraints import DayWorkingHours, SchedulingConstraints

logger = logging.getLogger(__name__)


class SlotGenerator:
    """Builds the raw slot grid for a day in the business timezone."""

    def __init__(self, tz: pytz.BaseTzInfo):
        self.tz = tz

    def operating_window(
        self,
        day: date,
        working_hours: Optional[DayWorkingHours],
        constraints: SchedulingConstraints,
    ) -> Optional[Tuple[int, int]]:
        """
        Return (start, end) in minutes after midnight, or None when closed.

        Per-weekday working hours win over the flat constraint window.
        """
        if working_hours is not None:
            if not working_hours.enabled:
                return None
            context = f"working hours on {day.isoformat()}"
            start = hhmm_to_minutes(working_hours.start, context=context)
            end = hhmm_to_minutes(working_hours.end, context=context)
        else:
            start = hhmm_to_minutes(constraints.earliest_start_time, context="earliest_start_time")
            end = hhmm_to_minutes(constraints.latest_end_time, context="latest_end_time")

        if start >= end:
            return None
        return start, end

    def generate(
        self,
        day: date,
        duration_minutes: int,
        working_hours: Optional[DayWorkingHours],
        constraints: SchedulingConstraints,
    ) -> List[TimeSlot]:
        """
        Generate slots of ``duration_minutes`` separated by the lesson buffer.

        Returns an empty list when the day is closed or the duration does not
        fit inside the window.
        """
        if duration_minutes <= 0:
            return []

        window = self.operating_window(day, working_hours, constraints)
        if window is None:
            return []

        window_start, window_end = window
        step = duration_minutes + constraints.min_buffer_between_lessons
        slots: List[TimeSlot] = []

        cursor = window_start
        while cursor + duration_minutes <= window_end:
            start = localize(day, cursor, self.tz)
            slots.append(
                TimeSlot(
                    start=start,
                    end=self.tz.normalize(start + timedelta(minutes=duration_minutes)),
                    duration_minutes=duration_minutes,
                )
            )
            cursor += step

        logger.debug(f"Generated {len(slots)} slots for {day.isoformat()} ({duration_minutes} min)")
        return slots
