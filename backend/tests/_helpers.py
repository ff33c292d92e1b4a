"""Shared constants and small doubles for the scheduling tests."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import pytz

from lessonbook.schemas.booking import ExistingBooking
from lessonbook.schemas.calendar import CachedCredential

# Tuesday; the week starts Monday 2030-01-07.
DAY = date(2030, 1, 8)
MONDAY = date(2030, 1, 7)
NOW = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)


def at(day: date, hhmm: str, tz: pytz.BaseTzInfo = pytz.UTC) -> datetime:
    """Aware datetime for ``day`` at "HH:MM" in ``tz``."""
    hour, minute = (int(part) for part in hhmm.split(":"))
    return tz.localize(datetime.combine(day, time(hour, minute)))


def booking(
    id: str,
    start: datetime,
    minutes: int = 60,
    user_id: Optional[str] = None,
    status: str = "confirmed",
) -> ExistingBooking:
    return ExistingBooking(
        id=id,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        status=status,
        user_id=user_id,
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticTokenProvider:
    """Token provider handing out one long-lived token and counting calls."""

    def __init__(self, token: str = "test-token", lifetime_seconds: int = 3600) -> None:
        self.token = token
        self.lifetime_seconds = lifetime_seconds
        self.calls = 0

    async def fetch_token(self, subject_key: str) -> CachedCredential:
        self.calls += 1
        return CachedCredential(
            token=self.token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.lifetime_seconds),
        )
