# backend/lessonbook/repositories/booking_repository.py
"""
Booking Repository for the scheduling core.

All time queries use the booking's own start/end timestamps. Ranges are
half-open: a booking overlaps [start, end) when
``booking.start_time < end AND booking.end_time > start``.
"""

from datetime import datetime
import logging
from typing import Iterable, List, Optional, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.booking import Booking, BookingStatus
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)


class BookingRepository(BaseRepository[Booking]):
    """Data access for local bookings."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)
        self.logger = logging.getLogger(__name__)

    def get_bookings_in_range(
        self,
        start: datetime,
        end: datetime,
        *,
        statuses: Optional[Iterable[str]] = None,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """
        Get bookings overlapping ``[start, end)``, ordered by start time.

        Args:
            start: Range start (inclusive)
            end: Range end (exclusive)
            statuses: Optional status filter; all statuses when omitted
            exclude_booking_id: Optional booking to leave out (reschedules)
        """
        try:
            query = self.db.query(Booking).filter(
                Booking.start_time < end,
                Booking.end_time > start,
            )
            if statuses is not None:
                query = query.filter(Booking.status.in_(list(statuses)))
            if exclude_booking_id:
                query = query.filter(Booking.id != exclude_booking_id)
            return cast(List[Booking], query.order_by(Booking.start_time).all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting bookings in range: {str(e)}")
            raise RepositoryException(f"Failed to get bookings: {str(e)}")
