# backend/lessonbook/models/booking.py
"""
Booking model for the lesson scheduling core.

Bookings are self-contained records: they store their own start/end
timestamps and the id of the mirrored external calendar event, so they
persist as commitments regardless of later configuration changes.
"""

from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any, Optional

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator
import ulid

from ..database import Base

logger = logging.getLogger(__name__)


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class UTCDateTime(TypeDecorator):
    """Store timestamps as UTC and always hand back aware datetimes (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Booking(Base):
    """A lesson booked by a user against the shared calendar."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(64), nullable=False, index=True)

    start_time = Column(UTCDateTime(), nullable=False)
    end_time = Column(UTCDateTime(), nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default=BookingStatus.CONFIRMED.value)
    title = Column(String(255), nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    lesson_type = Column(String(100), nullable=True)
    external_event_id = Column(String(255), nullable=True, index=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at = Column(UTCDateTime(), nullable=True, onupdate=func.now())
    cancelled_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_bookings_time_order"),
        CheckConstraint("duration_minutes > 0", name="ck_bookings_positive_duration"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled')", name="ck_bookings_status"
        ),
        Index("ix_bookings_status_start", "status", "start_time"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id} user={self.user_id} "
            f"{self.start_time}-{self.end_time} {self.status}>"
        )

    @property
    def is_confirmed(self) -> bool:
        return self.status == BookingStatus.CONFIRMED.value

    def cancel(self, reason: Optional[str] = None) -> None:
        """Mark the booking cancelled; the caller owns the transaction."""
        self.status = BookingStatus.CANCELLED.value
        self.cancellation_reason = reason
        self.cancelled_at = datetime.now(timezone.utc)
