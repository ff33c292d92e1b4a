# backend/lessonbook/services/constraint_store.py
"""
Constraint Store for the scheduling core.

Holds scheduling limits, per-weekday working hours and vacation dates.
Configuration is loaded lazily from the configuration tables and cached as
an immutable ``ScheduleSnapshot``; callers always receive that snapshot, never
a live reference, so a concurrent reload cannot change a calculation that is
already running.
"""

from datetime import date
import logging
import time
from typing import Callable, Dict, FrozenSet, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..core.exceptions import ConfigurationException, RepositoryException, ValidationException
from ..core.timezone_utils import hhmm_to_minutes, sunday_based_weekday
from ..models.scheduling_config import SchedulingConstraintsRecord, WorkingHoursRecord
from ..repositories.factory import RepositoryFactory
from ..schemas.scheduling_constraints import (
    DEFAULT_CONSTRAINTS,
    DEFAULT_WORKING_HOURS,
    ConstraintsUpdate,
    DayWorkingHours,
    ScheduleSnapshot,
    SchedulingConstraints,
    WorkingHoursUpdate,
)
from .base import BaseService

logger = logging.getLogger(__name__)

CONSTRAINT_FIELDS = (
    "max_hours_per_day",
    "max_lessons_per_day",
    "max_hours_per_week",
    "max_lessons_per_week",
    "earliest_start_time",
    "latest_end_time",
    "min_buffer_between_lessons",
)


def constraints_from_record(record: Optional[SchedulingConstraintsRecord]) -> SchedulingConstraints:
    """
    Build constraints from the persisted row.

    Raises:
        ConfigurationException: if the row holds values that fail validation
    """
    if record is None:
        return DEFAULT_CONSTRAINTS
    values = {
        field: getattr(record, field)
        for field in CONSTRAINT_FIELDS
        if getattr(record, field, None) is not None
    }
    try:
        return SchedulingConstraints(**values)
    except ValidationError as e:
        raise ConfigurationException(
            "Stored scheduling constraints are invalid",
            code="INVALID_CONSTRAINTS",
            details={"errors": e.errors(include_url=False, include_context=False)},
        )


class ConstraintStore(BaseService):
    """
    Process-wide holder of scheduling configuration.

    Reads go through ``get_snapshot()``; the snapshot is reused until it is
    older than ``ttl_seconds`` or ``invalidate()`` is called. Updates persist
    first and then swap in a brand-new snapshot.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        ttl_seconds: float = 600,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self._session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._snapshot: Optional[ScheduleSnapshot] = None
        self._loaded_at = 0.0

    # Reads

    def get_snapshot(self) -> ScheduleSnapshot:
        """Return the current configuration snapshot, loading it when stale."""
        if self._snapshot is None or self._clock() - self._loaded_at >= self.ttl_seconds:
            self.reload()
        assert self._snapshot is not None
        return self._snapshot

    def get_constraints(self) -> SchedulingConstraints:
        return self.get_snapshot().constraints

    def working_hours_for(self, day: date) -> Optional[DayWorkingHours]:
        """Working window for ``day``; None when the flat operating hours apply."""
        return self.get_snapshot().working_hours.get(sunday_based_weekday(day))

    def is_vacation_day(self, day: date) -> bool:
        return day in self.get_snapshot().vacation_days

    def invalidate(self) -> None:
        """Drop the cached snapshot; the next read reloads from storage."""
        self._snapshot = None
        self.logger.debug("Scheduling configuration invalidated")

    def reload(self) -> ScheduleSnapshot:
        """Load configuration from storage and swap it in as one new snapshot."""
        with self._session_factory() as db:
            repo = RepositoryFactory.create_scheduling_config_repository(db)
            constraints = self._load_constraints(repo.get_constraints_record)
            working_hours = self._load_working_hours(repo.get_working_hours())
            vacation_days: FrozenSet[date] = frozenset(v.day for v in repo.get_vacation_days())

        self._snapshot = ScheduleSnapshot(
            constraints=constraints,
            working_hours=working_hours,
            vacation_days=vacation_days,
        )
        self._loaded_at = self._clock()
        self.logger.debug(
            "Loaded scheduling configuration: %d working-hour rows, %d vacation days",
            len(working_hours),
            len(vacation_days),
        )
        return self._snapshot

    def _load_constraints(
        self, fetch: Callable[[], Optional[SchedulingConstraintsRecord]]
    ) -> SchedulingConstraints:
        try:
            return constraints_from_record(fetch())
        except ConfigurationException as e:
            self.logger.warning(f"{e.message}; using default constraints ({e.details})")
            return DEFAULT_CONSTRAINTS
        except RepositoryException as e:
            self.logger.warning(f"Could not read scheduling constraints: {str(e)}; using defaults")
            return DEFAULT_CONSTRAINTS

    def _load_working_hours(self, records: list[WorkingHoursRecord]) -> Dict[int, DayWorkingHours]:
        working_hours: Dict[int, DayWorkingHours] = {}
        for record in records:
            day_of_week = int(record.day_of_week)
            context = f"working hours day {day_of_week}"
            start = hhmm_to_minutes(record.start_time, context=context)
            end = hhmm_to_minutes(record.end_time, context=context)
            if record.enabled and start >= end:
                self.logger.warning(
                    f"Data quality: {context} has start {record.start_time!r} not before "
                    f"end {record.end_time!r}; using default hours for that day"
                )
                working_hours[day_of_week] = DEFAULT_WORKING_HOURS[day_of_week]
                continue
            working_hours[day_of_week] = DayWorkingHours(
                start=record.start_time,
                end=record.end_time,
                enabled=bool(record.enabled),
            )
        return working_hours

    # Writes

    @BaseService.measure_operation("update_constraints")
    def update_constraints(self, update: ConstraintsUpdate) -> SchedulingConstraints:
        """
        Merge a partial update into the current constraints and persist it.

        Raises:
            ValidationException: if the merged operating hours are inverted
        """
        current = self.get_constraints()
        changes = update.model_dump(exclude_none=True)
        merged = current.model_copy(update=changes)

        if hhmm_to_minutes(merged.earliest_start_time) >= hhmm_to_minutes(merged.latest_end_time):
            raise ValidationException(
                "Earliest start time must be before latest end time",
                field="latest_end_time",
            )

        try:
            new_constraints = SchedulingConstraints(**merged.model_dump())
        except ValidationError as e:
            raise ValidationException(f"Invalid scheduling constraints: {str(e)}")

        with self._session_factory() as db:
            repo = RepositoryFactory.create_scheduling_config_repository(db)
            with repo.transaction():
                repo.upsert_constraints(**new_constraints.model_dump())

        snapshot = self.get_snapshot()
        self._snapshot = snapshot.model_copy(update={"constraints": new_constraints})
        self.logger.info(f"Scheduling constraints updated: {sorted(changes)}")
        return new_constraints

    @BaseService.measure_operation("update_working_hours")
    def update_working_hours(self, update: WorkingHoursUpdate) -> DayWorkingHours:
        with self._session_factory() as db:
            repo = RepositoryFactory.create_scheduling_config_repository(db)
            with repo.transaction():
                repo.upsert_working_hours(update.day_of_week, update.start, update.end, update.enabled)

        hours = DayWorkingHours(start=update.start, end=update.end, enabled=update.enabled)
        snapshot = self.get_snapshot()
        working_hours = dict(snapshot.working_hours)
        working_hours[update.day_of_week] = hours
        self._snapshot = snapshot.model_copy(update={"working_hours": working_hours})
        self.logger.info(f"Working hours updated for weekday {update.day_of_week}")
        return hours

    @BaseService.measure_operation("add_vacation_day")
    def add_vacation_day(self, day: date, reason: Optional[str] = None) -> None:
        with self._session_factory() as db:
            repo = RepositoryFactory.create_scheduling_config_repository(db)
            with repo.transaction():
                repo.add_vacation_day(day, reason)

        snapshot = self.get_snapshot()
        self._snapshot = snapshot.model_copy(
            update={"vacation_days": snapshot.vacation_days | {day}}
        )
        self.logger.info(f"Vacation day added: {day.isoformat()}")

    @BaseService.measure_operation("remove_vacation_day")
    def remove_vacation_day(self, day: date) -> bool:
        with self._session_factory() as db:
            repo = RepositoryFactory.create_scheduling_config_repository(db)
            with repo.transaction():
                removed = repo.remove_vacation_day(day)

        snapshot = self.get_snapshot()
        self._snapshot = snapshot.model_copy(
            update={"vacation_days": snapshot.vacation_days - {day}}
        )
        if removed:
            self.logger.info(f"Vacation day removed: {day.isoformat()}")
        return removed
