# backend/lessonbook/repositories/factory.py
"""
Repository Factory for the scheduling core.

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .scheduling_config_repository import SchedulingConfigRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        """Create repository for booking operations."""
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_scheduling_config_repository(db: Session) -> "SchedulingConfigRepository":
        """Create repository for scheduling configuration."""
        from .scheduling_config_repository import SchedulingConfigRepository

        return SchedulingConfigRepository(db)
