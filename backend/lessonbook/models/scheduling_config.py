"""
Persisted scheduling configuration.

One constraints row (id=1), one working-hours row per weekday
(0=Sunday..6=Saturday) and any number of vacation dates.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, Date, Float, Integer, String

from ..database import Base


class SchedulingConstraintsRecord(Base):
    __tablename__ = "scheduling_constraints"

    id = Column(Integer, primary_key=True, default=1)
    max_hours_per_day = Column(Float, nullable=False, default=8)
    max_lessons_per_day = Column(Integer, nullable=False, default=8)
    max_hours_per_week = Column(Float, nullable=False, default=40)
    max_lessons_per_week = Column(Integer, nullable=False, default=30)
    # Stored as text so malformed legacy values can be detected and logged
    earliest_start_time = Column(String(8), nullable=False, default="07:00")
    latest_end_time = Column(String(8), nullable=False, default="19:00")
    min_buffer_between_lessons = Column(Integer, nullable=False, default=15)


class WorkingHoursRecord(Base):
    __tablename__ = "working_hours"

    day_of_week = Column(Integer, primary_key=True)
    start_time = Column(String(8), nullable=False, default="09:00")
    end_time = Column(String(8), nullable=False, default="17:00")
    enabled = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_working_hours_day"),
    )


class VacationDay(Base):
    __tablename__ = "vacation_days"

    day = Column(Date, primary_key=True)
    reason = Column(String(255), nullable=True)
