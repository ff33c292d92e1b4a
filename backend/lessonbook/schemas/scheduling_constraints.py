"""
Scheduling constraint schemas.

``SchedulingConstraints`` and ``ScheduleSnapshot`` are frozen: a copy handed
to a caller is never mutated, a reload produces a new object.
"""

from datetime import date
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..core.exceptions import ConfigurationException
from ..core.timezone_utils import hhmm_to_minutes, parse_hhmm


def _check_hhmm(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        hour, minute = parse_hhmm(value)
    except ConfigurationException:
        raise ValueError("Time must be a 24-hour HH:MM string")
    return f"{hour:02d}:{minute:02d}"


class SchedulingConstraints(BaseModel):
    """Per-operation scheduling limits and the default operating-hours window."""

    model_config = ConfigDict(frozen=True)

    max_hours_per_day: float = Field(default=8, ge=0)
    max_lessons_per_day: int = Field(default=8, ge=0)
    max_hours_per_week: float = Field(default=40, ge=0)
    max_lessons_per_week: int = Field(default=30, ge=0)
    # Not format-validated here: stored values may be malformed and the
    # calculator degrades them to midnight instead of failing.
    earliest_start_time: str = "07:00"
    latest_end_time: str = "19:00"
    min_buffer_between_lessons: int = Field(default=15, ge=0)


DEFAULT_CONSTRAINTS = SchedulingConstraints()


class ConstraintsUpdate(BaseModel):
    """Partial update for scheduling constraints; every field optional."""

    max_hours_per_day: Optional[float] = Field(default=None, ge=0, le=24)
    max_lessons_per_day: Optional[int] = Field(default=None, ge=0)
    max_hours_per_week: Optional[float] = Field(default=None, ge=0, le=168)
    max_lessons_per_week: Optional[int] = Field(default=None, ge=0)
    earliest_start_time: Optional[str] = None
    latest_end_time: Optional[str] = None
    min_buffer_between_lessons: Optional[int] = Field(default=None, ge=0, le=240)

    @field_validator("earliest_start_time", "latest_end_time")
    @classmethod
    def validate_format(cls, v: Optional[str]) -> Optional[str]:
        return _check_hhmm(v)


class DayWorkingHours(BaseModel):
    """Working window for one weekday."""

    model_config = ConfigDict(frozen=True)

    start: str = "09:00"
    end: str = "17:00"
    enabled: bool = True


class WorkingHoursUpdate(BaseModel):
    """Replace the working window for a weekday (0=Sunday..6=Saturday)."""

    day_of_week: int = Field(ge=0, le=6)
    start: str
    end: str
    enabled: bool = True

    @field_validator("start", "end")
    @classmethod
    def validate_format(cls, v: str) -> str:
        return _check_hhmm(v) or v

    @model_validator(mode="after")
    def validate_order(self) -> "WorkingHoursUpdate":
        if hhmm_to_minutes(self.start) >= hhmm_to_minutes(self.end):
            raise ValueError("End time must be after start time")
        return self


DEFAULT_WORKING_HOURS: Dict[int, DayWorkingHours] = {
    0: DayWorkingHours(start="10:00", end="16:00", enabled=False),
    1: DayWorkingHours(start="09:00", end="17:00", enabled=True),
    2: DayWorkingHours(start="09:00", end="17:00", enabled=True),
    3: DayWorkingHours(start="09:00", end="17:00", enabled=True),
    4: DayWorkingHours(start="09:00", end="17:00", enabled=True),
    5: DayWorkingHours(start="09:00", end="17:00", enabled=True),
    6: DayWorkingHours(start="10:00", end="16:00", enabled=False),
}


class ScheduleSnapshot(BaseModel):
    """
    Everything a calculation needs from configuration, captured at one instant.

    ``working_hours`` may be empty, in which case every day uses the flat
    operating hours from ``constraints``.
    """

    model_config = ConfigDict(frozen=True)

    constraints: SchedulingConstraints = DEFAULT_CONSTRAINTS
    working_hours: Dict[int, DayWorkingHours] = Field(default_factory=dict)
    vacation_days: FrozenSet[date] = frozenset()
