# backend/lessonbook/services/booking_service.py
"""
Scheduling Service for the scheduling core.

The entry point used by callers (booking UI, admin tooling, assistants):

- Availability reads for a day, a week, or the next opening, memoized in
  ``AvailabilityCache``
- Booking writes (create, cancel, reschedule) that re-validate against
  freshly fetched events under a per-calendar lock and invalidate the cache
  before returning
- Constraint, working-hours and vacation administration

External events and local bookings are merged into one list of
``ExistingBooking`` objects before any calculation runs.
"""

from datetime import date, datetime, timedelta, timezone
import logging
import math
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ..core.booking_lock import BookingLockRegistry
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    BookingConflictException,
    ExternalServiceException,
    NotFoundException,
    ValidationException,
)
from ..core.timezone_utils import (
    day_bounds,
    ensure_aware,
    get_timezone,
    local_date,
    week_start_for,
)
from ..integrations.google_calendar_client import GoogleCalendarClient
from ..models.booking import Booking, BookingStatus
from ..repositories.booking_repository import ACTIVE_STATUSES, BookingRepository
from ..repositories.factory import RepositoryFactory
from ..schemas.availability import AvailabilityStats, DayAvailability, TimeSlot, WeekAvailability
from ..schemas.booking import BookingCreate, BookingReschedule, ExistingBooking
from ..schemas.calendar import (
    BookingStats,
    CalendarConnectionStatus,
    CalendarEvent,
    CalendarEventCreate,
    CalendarEventUpdate,
    CalendarSyncResult,
)
from ..schemas.scheduling_constraints import (
    ConstraintsUpdate,
    DayWorkingHours,
    ScheduleSnapshot,
    SchedulingConstraints,
    WorkingHoursUpdate,
)
from .availability_cache import AvailabilityCache, CacheKeyBuilder, CachePatterns
from .availability_service import AvailabilityCalculator
from .base import BaseService
from .constraint_store import ConstraintStore

logger = logging.getLogger(__name__)

REASON_CALENDAR_UNAVAILABLE = "external calendar unavailable"
REASON_NOT_A_SLOT = "requested time is not a bookable slot"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulingService(BaseService):
    """
    Facade over constraint store, calculator, calendar client and cache.

    Built per request with a database session; the cache, lock registry,
    constraint store and calendar client are process-wide and injected.
    """

    def __init__(
        self,
        db: Session,
        *,
        calendar: GoogleCalendarClient,
        constraint_store: ConstraintStore,
        lock_registry: BookingLockRegistry,
        cache: Optional[AvailabilityCache] = None,
        booking_repository: Optional[BookingRepository] = None,
        config: Optional[Settings] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        super().__init__(db, cache)
        self.logger = logging.getLogger(__name__)
        self.config = config or default_settings
        self.tz = get_timezone(self.config.business_timezone)
        self.calendar = calendar
        self.constraint_store = constraint_store
        self.lock_registry = lock_registry
        self.booking_repository = booking_repository or RepositoryFactory.create_booking_repository(db)
        self.calculator = AvailabilityCalculator(self.tz)
        self._now = now

    # Input validation

    def _validate_duration(self, duration_minutes: object) -> int:
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
            raise ValidationException(
                "Duration must be a whole number of minutes", field="duration_minutes"
            )
        low = self.config.min_lesson_duration_minutes
        high = self.config.max_lesson_duration_minutes
        if not low <= duration_minutes <= high:
            raise ValidationException(
                f"Duration must be between {low} and {high} minutes", field="duration_minutes"
            )
        return duration_minutes

    def _validate_start(self, start_time: datetime) -> datetime:
        start = ensure_aware(start_time, self.tz)
        if start < self._now():
            raise ValidationException("Bookings cannot start in the past", field="start_time")
        return start

    # Event collection

    def _cache_generation(self) -> Optional[int]:
        return self.cache.generation if self.cache is not None else None

    def _week_range(self, day: date) -> Tuple[datetime, datetime]:
        monday = week_start_for(day)
        start, _ = day_bounds(monday, self.tz)
        end, _ = day_bounds(monday + timedelta(days=7), self.tz)
        return start, end

    def _local_bookings(
        self, start: datetime, end: datetime, exclude_booking_id: Optional[str] = None
    ) -> List[ExistingBooking]:
        bookings = self.booking_repository.get_bookings_in_range(
            start, end, statuses=ACTIVE_STATUSES, exclude_booking_id=exclude_booking_id
        )
        return [ExistingBooking.from_booking(b) for b in bookings]

    async def _external_events(
        self, start: datetime, end: datetime, *, use_cache: bool
    ) -> List[CalendarEvent]:
        """
        External events in range; cached reads may be served from memory.

        Raises:
            ExternalServiceException: if the provider could not be read
        """
        key = CacheKeyBuilder.calendar_events(start, end)
        if use_cache and self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return list(cached)

        generation = self._cache_generation()
        events = await self.calendar.get_events(start, end)
        if self.cache is not None:
            self.cache.set(
                key,
                tuple(events),
                self.config.availability_cache_ttl_seconds,
                generation=generation,
            )
        return events

    async def _collect_bookings(
        self,
        local_range: Tuple[datetime, datetime],
        external_range: Tuple[datetime, datetime],
        *,
        use_cache: bool = True,
        exclude_booking_id: Optional[str] = None,
    ) -> List[ExistingBooking]:
        """Local bookings plus busy external events, without double counting."""
        local = self._local_bookings(*local_range, exclude_booking_id=exclude_booking_id)
        mirrored = {b.external_event_id for b in local if b.external_event_id}
        if exclude_booking_id:
            excluded = self.booking_repository.get_by_id(exclude_booking_id)
            if excluded is not None and excluded.external_event_id:
                mirrored.add(excluded.external_event_id)

        events = await self._external_events(*external_range, use_cache=use_cache)
        external = [
            ExistingBooking.from_event(event)
            for event in events
            if event.is_busy and event.id not in mirrored
        ]
        return local + external

    # Availability reads

    @BaseService.measure_operation("get_day_availability")
    async def get_day_availability(
        self,
        day: date,
        duration_minutes: int,
        user_id: Optional[str] = None,
        include_unavailable: bool = False,
    ) -> DayAvailability:
        """
        Availability for one day.

        When the external calendar cannot be read, every slot is withheld
        rather than shown as open, and the result is not cached.
        """
        duration_minutes = self._validate_duration(duration_minutes)
        key = CacheKeyBuilder.day_availability(user_id, day, duration_minutes)
        if not include_unavailable and self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        generation = self._cache_generation()
        snapshot = self.constraint_store.get_snapshot()
        local_range = self._week_range(day) if user_id else day_bounds(day, self.tz)
        try:
            bookings = await self._collect_bookings(local_range, day_bounds(day, self.tz))
        except ExternalServiceException as e:
            self.logger.warning(f"Withholding availability for {day.isoformat()}: {e.message}")
            return self.calculator.unavailable_day(
                day, duration_minutes, snapshot, REASON_CALENDAR_UNAVAILABLE, include_unavailable
            )

        result = self.calculator.calculate_day_availability(
            day,
            duration_minutes,
            snapshot,
            user_id=user_id,
            existing_bookings=bookings,
            include_unavailable=include_unavailable,
        )
        if not include_unavailable and self.cache is not None:
            self.cache.set(
                key, result, self.config.availability_cache_ttl_seconds, generation=generation
            )
        return result

    async def get_available_slots(
        self, day: date, duration_minutes: int, user_id: Optional[str] = None
    ) -> List[TimeSlot]:
        availability = await self.get_day_availability(day, duration_minutes, user_id)
        return list(availability.slots)

    @BaseService.measure_operation("get_week_availability")
    async def get_week_availability(
        self, week_start: date, duration_minutes: int, user_id: Optional[str] = None
    ) -> WeekAvailability:
        duration_minutes = self._validate_duration(duration_minutes)
        monday = week_start_for(week_start)
        key = CacheKeyBuilder.week_availability(user_id, monday, duration_minutes)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        generation = self._cache_generation()
        snapshot = self.constraint_store.get_snapshot()
        week_range = self._week_range(monday)
        try:
            bookings = await self._collect_bookings(week_range, week_range)
        except ExternalServiceException as e:
            self.logger.warning(f"Withholding availability for week {monday.isoformat()}: {e.message}")
            local = self._local_bookings(*week_range)
            days = [
                self.calculator.unavailable_day(
                    monday + timedelta(days=offset),
                    duration_minutes,
                    snapshot,
                    REASON_CALENDAR_UNAVAILABLE,
                )
                for offset in range(7)
            ]
            return self.calculator.build_week(monday, days, snapshot, user_id, local)

        result = self.calculator.calculate_week_availability(
            monday, duration_minutes, snapshot, user_id=user_id, existing_bookings=bookings
        )
        if self.cache is not None:
            self.cache.set(
                key, result, self.config.availability_cache_ttl_seconds, generation=generation
            )
        return result

    @BaseService.measure_operation("find_next_available_slot")
    async def find_next_available_slot(
        self,
        start_from: datetime,
        duration_minutes: int,
        user_id: Optional[str] = None,
        max_days_to_search: Optional[int] = None,
    ) -> Optional[TimeSlot]:
        """
        Earliest open slot at or after ``start_from``, scanning one day at a time.

        Stops at the first day with an opening; returns None once the horizon
        (``next_slot_search_days`` by default) is exhausted.
        """
        duration_minutes = self._validate_duration(duration_minutes)
        horizon = max_days_to_search or self.config.next_slot_search_days
        start_from = ensure_aware(start_from, self.tz)

        key = CacheKeyBuilder.next_slot(user_id, start_from, duration_minutes)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        generation = self._cache_generation()
        first_day = local_date(start_from, self.tz)
        for offset in range(horizon):
            day = first_day + timedelta(days=offset)
            availability = await self.get_day_availability(day, duration_minutes, user_id)
            slot = self.calculator.first_available_slot(availability, start_from)
            if slot is not None:
                if self.cache is not None:
                    ttl = self.config.availability_cache_ttl_seconds
                    self.cache.set(key, slot, ttl, generation=generation)
                return slot

        self.logger.info(
            f"No available {duration_minutes}-minute slot within {horizon} days "
            f"of {start_from.isoformat()}"
        )
        return None

    async def get_availability_stats(
        self, day: date, duration_minutes: int, user_id: Optional[str] = None
    ) -> AvailabilityStats:
        availability = await self.get_day_availability(
            day, duration_minutes, user_id, include_unavailable=True
        )
        total = len(availability.slots)
        available = availability.total_available_slots
        return AvailabilityStats(
            total_slots=total,
            available_slots=available,
            unavailable_slots=total - available,
            availability_rate=(available / total * 100) if total else 0.0,
        )

    def format_slot(self, slot: TimeSlot) -> str:
        return self.calculator.format_slot(slot)

    # Booking writes

    async def _validate_slot(
        self,
        start: datetime,
        duration_minutes: int,
        user_id: str,
        exclude_booking_id: Optional[str] = None,
    ) -> TimeSlot:
        """
        Re-run availability for the requested start against fresh events.

        Raises:
            BookingConflictException: if the start is not an available slot
            ExternalServiceException: if the external calendar cannot be read
        """
        snapshot: ScheduleSnapshot = self.constraint_store.get_snapshot()
        day = local_date(start, self.tz)
        bookings = await self._collect_bookings(
            self._week_range(day),
            day_bounds(day, self.tz),
            use_cache=False,
            exclude_booking_id=exclude_booking_id,
        )
        slots = self.calculator.annotate_day(day, duration_minutes, snapshot, bookings, user_id)
        match = next((slot for slot in slots if slot.start == start), None)
        if match is None:
            raise BookingConflictException(REASON_NOT_A_SLOT)
        if not match.available:
            raise BookingConflictException(match.reason or REASON_NOT_A_SLOT)
        return match

    def _invalidate_availability(self, start: datetime, user_id: Optional[str] = None) -> int:
        """Drop every cached answer a write at ``start`` could have changed."""
        if self.cache is None:
            return 0
        day = local_date(start, self.tz)
        patterns = [
            CachePatterns.day(day),
            CachePatterns.week(week_start_for(day)),
            CachePatterns.NEXT_SLOT,
            CachePatterns.CALENDAR_EVENTS,
        ]
        if user_id:
            patterns.append(CachePatterns.subject(user_id))
        return sum(self.invalidate_pattern(pattern) for pattern in patterns)

    @BaseService.measure_operation("create_booking")
    async def create_booking(self, data: BookingCreate) -> Booking:
        """
        Validate, persist, mirror to the external calendar, then invalidate.

        Raises:
            ValidationException: malformed input
            BookingConflictException: the slot is no longer available
            ExternalServiceException: the calendar could not be read or written
        """
        duration = self._validate_duration(data.duration_minutes)
        start = self._validate_start(data.start_time)
        if not data.user_id.strip():
            raise ValidationException("User id is required", field="user_id")
        if not data.title.strip():
            raise ValidationException("Title is required", field="title")

        async with self.lock_registry.hold(self.calendar.calendar_id):
            slot = await self._validate_slot(start, duration, data.user_id)

            with self.transaction():
                booking = self.booking_repository.create(
                    user_id=data.user_id,
                    start_time=slot.start,
                    end_time=slot.end,
                    duration_minutes=duration,
                    status=BookingStatus.CONFIRMED.value,
                    title=data.title,
                    description=data.description,
                    lesson_type=data.lesson_type,
                )
                event = await self.calendar.create_event(
                    CalendarEventCreate(
                        title=data.title,
                        start=slot.start,
                        end=slot.end,
                        description=data.description,
                    )
                )
                booking.external_event_id = event.id

            self._invalidate_availability(slot.start, data.user_id)

        self.logger.info(
            f"Booking {booking.id} created for user {data.user_id} at {slot.start.isoformat()}"
        )
        return booking

    @BaseService.measure_operation("cancel_booking")
    async def cancel_booking(self, booking_id: str, reason: Optional[str] = None) -> bool:
        """
        Cancel a booking and remove its external event.

        Returns False when the booking does not exist or is already cancelled.
        """
        async with self.lock_registry.hold(self.calendar.calendar_id):
            booking = self.booking_repository.get_by_id(booking_id)
            if booking is None or booking.status == BookingStatus.CANCELLED.value:
                return False

            with self.transaction():
                booking.cancel(reason)
                self.booking_repository.flush()
                if booking.external_event_id:
                    await self.calendar.delete_event(booking.external_event_id)

            self._invalidate_availability(booking.start_time, booking.user_id)

        self.logger.info(f"Booking {booking_id} cancelled")
        return True

    @BaseService.measure_operation("reschedule_booking")
    async def reschedule_booking(self, booking_id: str, data: BookingReschedule) -> Booking:
        """
        Move a booking to a new start, validating as if it did not exist.

        Raises:
            NotFoundException: unknown booking
            ValidationException: cancelled booking or malformed input
            BookingConflictException: the new slot is not available
        """
        async with self.lock_registry.hold(self.calendar.calendar_id):
            booking = self.booking_repository.get_by_id(booking_id)
            if booking is None:
                raise NotFoundException(f"Booking {booking_id} not found")
            if booking.status == BookingStatus.CANCELLED.value:
                raise ValidationException("Cancelled bookings cannot be rescheduled", field="status")

            duration = self._validate_duration(data.duration_minutes or booking.duration_minutes)
            start = self._validate_start(data.start_time)
            previous_start = booking.start_time

            slot = await self._validate_slot(
                start, duration, booking.user_id, exclude_booking_id=booking.id
            )

            with self.transaction():
                booking.start_time = slot.start
                booking.end_time = slot.end
                booking.duration_minutes = duration
                self.booking_repository.flush()
                if booking.external_event_id:
                    await self.calendar.update_event(
                        booking.external_event_id,
                        CalendarEventUpdate(start=slot.start, end=slot.end),
                    )

            self._invalidate_availability(previous_start, booking.user_id)
            self._invalidate_availability(slot.start, booking.user_id)

        self.logger.info(f"Booking {booking_id} moved to {slot.start.isoformat()}")
        return booking

    def get_booking_stats(self, start: datetime, end: datetime) -> BookingStats:
        """Counts over local bookings overlapping ``[start, end)``."""
        bookings = self.booking_repository.get_bookings_in_range(start, end)
        now = self._now()
        confirmed = [b for b in bookings if b.status == BookingStatus.CONFIRMED.value]
        days = max(math.ceil((end - start).total_seconds() / 86400), 1)
        return BookingStats(
            total_bookings=len(bookings),
            completed_lessons=sum(1 for b in confirmed if b.end_time < now),
            upcoming_lessons=sum(1 for b in confirmed if b.start_time > now),
            cancelled_lessons=sum(
                1 for b in bookings if b.status == BookingStatus.CANCELLED.value
            ),
            average_bookings_per_day=len(bookings) / days,
        )

    # External calendar passthroughs

    async def get_calendar_status(self) -> CalendarConnectionStatus:
        return await self.calendar.get_calendar_status()

    async def sync_calendar(self, days: int = 30) -> CalendarSyncResult:
        result = await self.calendar.sync_calendar(days)
        if result.success:
            self.invalidate_pattern(CachePatterns.CALENDAR_EVENTS)
            self.invalidate_pattern(r"^availability:")
        return result

    # Configuration administration

    def get_constraints(self) -> SchedulingConstraints:
        return self.constraint_store.get_constraints()

    def get_working_hours(self) -> Dict[int, DayWorkingHours]:
        return dict(self.constraint_store.get_snapshot().working_hours)

    def get_vacation_days(self) -> Sequence[date]:
        return sorted(self.constraint_store.get_snapshot().vacation_days)

    def update_constraints(self, update: ConstraintsUpdate) -> SchedulingConstraints:
        constraints = self.constraint_store.update_constraints(update)
        self.invalidate_pattern(r"^availability:")
        return constraints

    def update_working_hours(self, update: WorkingHoursUpdate) -> DayWorkingHours:
        hours = self.constraint_store.update_working_hours(update)
        self.invalidate_pattern(r"^availability:")
        return hours

    def add_vacation_day(self, day: date, reason: Optional[str] = None) -> None:
        self.constraint_store.add_vacation_day(day, reason)
        self.invalidate_pattern(r"^availability:")

    def remove_vacation_day(self, day: date) -> bool:
        removed = self.constraint_store.remove_vacation_day(day)
        self.invalidate_pattern(r"^availability:")
        return removed
