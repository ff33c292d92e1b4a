"""
External calendar schemas.

``CalendarEvent`` is the single normalized shape produced at the provider
boundary; raw provider payloads never travel past the calendar client.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

TRANSPARENT = "transparent"
CANCELLED = "cancelled"


class CalendarEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    description: str = ""
    start: datetime
    end: datetime
    status: str = "confirmed"
    all_day: bool = False
    location: str = ""
    attendees: List[Dict[str, Any]] = Field(default_factory=list)
    transparency: str = "opaque"
    html_link: str = ""
    recurring_event_id: str = ""
    created: str = ""
    updated: str = ""

    @property
    def is_busy(self) -> bool:
        """Whether the event blocks time (not cancelled, not marked free)."""
        return self.status != CANCELLED and self.transparency != TRANSPARENT


class CalendarEventCreate(BaseModel):
    title: str = Field(min_length=1)
    start: datetime
    end: datetime
    description: str = ""
    location: str = ""
    attendees: List[Dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_order(self) -> "CalendarEventCreate":
        if self.end <= self.start:
            raise ValueError("Event end must be after start")
        return self


class CalendarEventUpdate(BaseModel):
    title: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    description: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = None

    @model_validator(mode="after")
    def validate_order(self) -> "CalendarEventUpdate":
        if self.start and self.end and self.end <= self.start:
            raise ValueError("Event end must be after start")
        return self


class CachedCredential(BaseModel):
    """Short-lived bearer token. Replaced wholesale on refresh."""

    model_config = ConfigDict(frozen=True)

    token: str
    expires_at: datetime

    def is_fresh(self, now: datetime, safety_buffer_seconds: float) -> bool:
        return (self.expires_at - now).total_seconds() > safety_buffer_seconds


class CalendarConnectionStatus(BaseModel):
    connected: bool
    message: str
    calendar_id: Optional[str] = None
    summary: Optional[str] = None
    time_zone: Optional[str] = None
    access_role: Optional[str] = None


class CalendarSyncResult(BaseModel):
    success: bool
    events_processed: int
    errors: List[str] = Field(default_factory=list)
    last_sync_time: datetime


class BookingStats(BaseModel):
    total_bookings: int
    completed_lessons: int
    upcoming_lessons: int
    cancelled_lessons: int
    average_bookings_per_day: float
