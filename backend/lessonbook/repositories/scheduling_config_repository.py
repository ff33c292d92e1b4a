"""Scheduling configuration repository (constraints, working hours, vacation days)."""

from datetime import date
import logging
from typing import Any, List, Optional, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.scheduling_config import (
    SchedulingConstraintsRecord,
    VacationDay,
    WorkingHoursRecord,
)
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

CONSTRAINTS_ROW_ID = 1


class SchedulingConfigRepository(BaseRepository[SchedulingConstraintsRecord]):
    """Single-row constraints plus per-weekday and vacation-day records."""

    def __init__(self, db: Session):
        super().__init__(db, SchedulingConstraintsRecord)
        self.logger = logging.getLogger(__name__)

    def get_constraints_record(self) -> Optional[SchedulingConstraintsRecord]:
        return self.get_by_id(CONSTRAINTS_ROW_ID)

    def upsert_constraints(self, **values: Any) -> SchedulingConstraintsRecord:
        """Update the constraints row, creating it when missing. Does not commit."""
        record = self.get_constraints_record()
        if record is None:
            return self.create(id=CONSTRAINTS_ROW_ID, **values)
        updated = self.update(CONSTRAINTS_ROW_ID, **values)
        return cast(SchedulingConstraintsRecord, updated)

    def get_working_hours(self) -> List[WorkingHoursRecord]:
        try:
            return cast(
                List[WorkingHoursRecord],
                self.db.query(WorkingHoursRecord).order_by(WorkingHoursRecord.day_of_week).all(),
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting working hours: {str(e)}")
            raise RepositoryException(f"Failed to get working hours: {str(e)}")

    def upsert_working_hours(
        self, day_of_week: int, start_time: str, end_time: str, enabled: bool
    ) -> WorkingHoursRecord:
        try:
            record = self.db.get(WorkingHoursRecord, day_of_week)
            if record is None:
                record = WorkingHoursRecord(day_of_week=day_of_week)
                self.db.add(record)
            record.start_time = start_time
            record.end_time = end_time
            record.enabled = enabled
            self.db.flush()
            return record
        except SQLAlchemyError as e:
            self.logger.error(f"Error saving working hours for day {day_of_week}: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to save working hours: {str(e)}")

    def get_vacation_days(self) -> List[VacationDay]:
        try:
            return cast(List[VacationDay], self.db.query(VacationDay).order_by(VacationDay.day).all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting vacation days: {str(e)}")
            raise RepositoryException(f"Failed to get vacation days: {str(e)}")

    def add_vacation_day(self, day: date, reason: Optional[str] = None) -> VacationDay:
        try:
            record = self.db.get(VacationDay, day)
            if record is None:
                record = VacationDay(day=day, reason=reason)
                self.db.add(record)
            else:
                record.reason = reason
            self.db.flush()
            return record
        except SQLAlchemyError as e:
            self.logger.error(f"Error adding vacation day {day}: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to add vacation day: {str(e)}")

    def remove_vacation_day(self, day: date) -> bool:
        try:
            record = self.db.get(VacationDay, day)
            if record is None:
                return False
            self.db.delete(record)
            self.db.flush()
            return True
        except SQLAlchemyError as e:
            self.logger.error(f"Error removing vacation day {day}: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to remove vacation day: {str(e)}")
