from typing import Callable

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from lessonbook.core.booking_lock import BookingLockRegistry
from lessonbook.core.config import Settings
from lessonbook.database import Base
from lessonbook.integrations.google_calendar_client import FakeCalendarClient

# Import models so Base.metadata is populated for create_all.
import lessonbook.models  # noqa: F401
from lessonbook.schemas.scheduling_constraints import ConstraintsUpdate
from lessonbook.services.availability_cache import AvailabilityCache
from lessonbook.services.booking_service import SchedulingService
from lessonbook.services.constraint_store import ConstraintStore

from _helpers import NOW, FakeClock


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> Callable[[], Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        business_timezone="UTC",
        database_url="sqlite+pysqlite:///:memory:",
    )


@pytest.fixture
def constraint_store(session_factory) -> ConstraintStore:
    """Store configured with a 09:00-17:00 window and a 15 minute buffer."""
    store = ConstraintStore(session_factory)
    store.update_constraints(
        ConstraintsUpdate(
            earliest_start_time="09:00",
            latest_end_time="17:00",
            min_buffer_between_lessons=15,
        )
    )
    return store


@pytest.fixture
def fake_calendar() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def availability_cache() -> AvailabilityCache:
    return AvailabilityCache(default_ttl_seconds=90, max_entries=100)


@pytest.fixture
def scheduling_service(
    db, fake_calendar, constraint_store, availability_cache, test_settings
) -> SchedulingService:
    return SchedulingService(
        db,
        calendar=fake_calendar,
        constraint_store=constraint_store,
        lock_registry=BookingLockRegistry(),
        cache=availability_cache,
        config=test_settings,
        now=lambda: NOW,
    )
