"""
Timezone and time-of-day helpers for the scheduling core.

All day boundaries are interpreted in the business timezone. Operating-hours
configuration uses zero-padded 24-hour "HH:MM" strings.
"""

from datetime import date, datetime, time, timedelta
from functools import lru_cache
import logging
import re
from typing import Optional, Tuple

import pytz

from .exceptions import ConfigurationException

logger = logging.getLogger(__name__)

HHMM_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::[0-5]\d)?$")


@lru_cache(maxsize=32)
def get_timezone(name: str) -> pytz.BaseTzInfo:
    """Return a pytz timezone, falling back to UTC for unknown names."""
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        logger.warning("Unknown timezone %r; falling back to UTC", name)
        return pytz.UTC


def parse_hhmm(value: object) -> Tuple[int, int]:
    """
    Parse an "HH:MM" string; a trailing ":SS" is accepted and ignored.

    Raises:
        ConfigurationException: if the value is not a valid 24-hour time
    """
    if isinstance(value, time):
        return value.hour, value.minute
    text = str(value or "").strip()
    match = HHMM_PATTERN.match(text)
    if not match:
        raise ConfigurationException(
            f"Invalid time-of-day value: {value!r}",
            code="INVALID_TIME_OF_DAY",
            details={"value": str(value)},
        )
    return int(match.group(1)), int(match.group(2))


def hhmm_to_minutes(value: object, *, context: str = "time") -> int:
    """
    Convert "HH:MM" to minutes after midnight.

    Malformed values log a data-quality warning and resolve to midnight
    rather than failing the calculation.
    """
    try:
        hour, minute = parse_hhmm(value)
    except ConfigurationException as exc:
        logger.warning("Data quality: %s for %s; using 00:00", exc.message, context)
        return 0
    return hour * 60 + minute


def minutes_to_hhmm(minutes: int) -> str:
    """Format minutes after midnight as HH:MM."""
    minutes = max(0, min(minutes, 24 * 60 - 1))
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def localize(day: date, minutes_after_midnight: int, tz: pytz.BaseTzInfo) -> datetime:
    """Build an aware datetime for ``day`` at the given offset in ``tz``."""
    naive = datetime.combine(day, time()) + timedelta(minutes=minutes_after_midnight)
    return tz.localize(naive)


def day_bounds(day: date, tz: pytz.BaseTzInfo) -> Tuple[datetime, datetime]:
    """Return [start, end) of a calendar day in ``tz``."""
    return localize(day, 0, tz), localize(day + timedelta(days=1), 0, tz)


def week_start_for(day: date) -> date:
    """Monday of the week containing ``day``, regardless of locale."""
    return day - timedelta(days=day.weekday())


def sunday_based_weekday(day: date) -> int:
    """Weekday index with 0=Sunday .. 6=Saturday."""
    return (day.weekday() + 1) % 7


def ensure_aware(value: datetime, tz: Optional[pytz.BaseTzInfo] = None) -> datetime:
    """Attach ``tz`` (UTC when omitted) to naive datetimes."""
    if value.tzinfo is not None:
        return value
    return (tz or pytz.UTC).localize(value)


def parse_iso_datetime(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; returns None for missing or invalid input."""
    if isinstance(value, datetime):
        return ensure_aware(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_aware(datetime.fromisoformat(text))
    except ValueError:
        return None


def local_date(value: datetime, tz: pytz.BaseTzInfo) -> date:
    """Calendar date of an aware datetime in ``tz``."""
    return ensure_aware(value).astimezone(tz).date()
