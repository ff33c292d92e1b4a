from .booking import Booking, BookingStatus
from .scheduling_config import SchedulingConstraintsRecord, VacationDay, WorkingHoursRecord

__all__ = [
    "Booking",
    "BookingStatus",
    "SchedulingConstraintsRecord",
    "VacationDay",
    "WorkingHoursRecord",
]
