"""
Availability schemas.

Slots are immutable: recomputing availability produces new ``TimeSlot``
objects rather than mutating existing ones.
"""

from datetime import date, datetime, timedelta
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TimeSlot(BaseModel):
    """A candidate bookable window of fixed duration."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    duration_minutes: int = Field(gt=0)
    available: bool = True
    reason: Optional[str] = None

    @model_validator(mode="after")
    def validate_span(self) -> "TimeSlot":
        if self.start >= self.end:
            raise ValueError("Slot start must be before end")
        if self.end - self.start != timedelta(minutes=self.duration_minutes):
            raise ValueError("Slot span must equal duration_minutes")
        return self

    def mark_unavailable(self, reason: str) -> "TimeSlot":
        """Return a copy flagged unavailable with ``reason``."""
        return self.model_copy(update={"available": False, "reason": reason})


class ConstraintFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    daily_limit_reached: bool = False
    weekly_limit_reached: bool = False
    outside_operating_hours: bool = False


class DayAvailability(BaseModel):
    """Availability for one calendar day, recomputed on every call."""

    model_config = ConfigDict(frozen=True)

    date: date
    slots: Tuple[TimeSlot, ...]
    total_available_slots: int
    total_available_hours: float
    constraint_flags: ConstraintFlags = ConstraintFlags()


class WeekAvailability(BaseModel):
    """Seven consecutive days starting on ``week_start``."""

    model_config = ConfigDict(frozen=True)

    week_start: date
    week_end: date
    days: Tuple[DayAvailability, ...]
    total_weekly_hours: float
    remaining_weekly_hours: float
    remaining_weekly_lessons: int


class AvailabilityStats(BaseModel):
    total_slots: int
    available_slots: int
    unavailable_slots: int
    availability_rate: float
