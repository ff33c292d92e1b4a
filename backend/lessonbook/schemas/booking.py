"""Booking schemas."""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, ConfigDict, Field

from .calendar import CalendarEvent

if TYPE_CHECKING:
    from ..models.booking import Booking


class ExistingBooking(BaseModel):
    """
    A booking or busy calendar event as seen by conflict detection.

    Local bookings and external events are both reduced to this shape.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    start_time: datetime
    end_time: datetime
    status: str = "confirmed"
    user_id: Optional[str] = None
    title: str = ""
    description: str = ""
    external_event_id: Optional[str] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == "confirmed"

    @property
    def duration_hours(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 3600

    @classmethod
    def from_booking(cls, booking: "Booking") -> "ExistingBooking":
        return cls(
            id=booking.id,
            start_time=booking.start_time,
            end_time=booking.end_time,
            status=booking.status,
            user_id=booking.user_id,
            title=booking.title or "",
            description=booking.description or "",
            external_event_id=booking.external_event_id,
        )

    @classmethod
    def from_event(cls, event: CalendarEvent) -> "ExistingBooking":
        """External events have no local owner; busy ones count as confirmed."""
        return cls(
            id=event.id,
            start_time=event.start,
            end_time=event.end,
            status="confirmed" if event.is_busy else "cancelled",
            title=event.title,
            description=event.description,
            external_event_id=event.id,
        )


class BookingCreate(BaseModel):
    user_id: str = Field(min_length=1)
    start_time: datetime
    duration_minutes: int
    title: str = Field(default="Lesson", min_length=1)
    description: str = ""
    lesson_type: Optional[str] = None


class BookingReschedule(BaseModel):
    start_time: datetime
    duration_minutes: Optional[int] = None

