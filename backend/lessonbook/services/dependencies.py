# backend/lessonbook/services/dependencies.py
"""
Composition root and FastAPI dependency functions.

``SchedulingContainer`` owns the process-wide collaborators: the
availability cache, the booking lock registry, the constraint store, the
credential refresher and the calendar client. Per-request services are
built from a database session plus the container.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from ..core.booking_lock import BookingLockRegistry
from ..core.config import Settings, settings as default_settings
from ..database import SessionLocal, get_db
from ..integrations.credential_refresher import CredentialRefresher, ServiceAccountTokenProvider
from ..integrations.google_calendar_client import GoogleCalendarClient
from .availability_cache import AvailabilityCache
from .booking_service import SchedulingService
from .constraint_store import ConstraintStore

logger = logging.getLogger(__name__)


def build_credential_refresher(config: Settings) -> CredentialRefresher:
    """Service-account refresher, or an empty one when credentials are missing."""
    provider: Optional[ServiceAccountTokenProvider] = None
    if config.calendar_configured:
        provider = ServiceAccountTokenProvider(
            client_email=config.google_service_account_email or "",
            private_key=config.service_account_private_key(),
            token_url=config.google_token_url,
            scopes=config.google_calendar_scopes,
            timeout=config.calendar_request_timeout_seconds,
        )
    else:
        logger.warning("External calendar credentials not configured; reads will see no events")
    return CredentialRefresher(
        provider,
        safety_buffer_seconds=config.credential_safety_buffer_seconds,
        max_attempts=config.calendar_retry_attempts,
        base_delay=config.calendar_retry_base_delay_seconds,
        max_delay=config.calendar_retry_max_delay_seconds,
    )


class SchedulingContainer:
    """Process-lifetime collaborators, started and stopped with the application."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        calendar: Optional[GoogleCalendarClient] = None,
        cache: Optional[AvailabilityCache] = None,
    ):
        self.config = config or default_settings
        self.cache = cache or AvailabilityCache(
            default_ttl_seconds=self.config.availability_cache_ttl_seconds,
            max_entries=self.config.cache_max_entries,
            sweep_interval_seconds=self.config.cache_sweep_interval_seconds,
        )
        self.lock_registry = BookingLockRegistry()
        self.constraint_store = ConstraintStore(
            session_factory, ttl_seconds=self.config.constraints_cache_ttl_seconds
        )
        if calendar is None:
            self.credentials = build_credential_refresher(self.config)
            calendar = GoogleCalendarClient(
                calendar_id=self.config.google_calendar_id,
                credentials=self.credentials,
                base_url=self.config.google_calendar_api_base,
                timezone_name=self.config.business_timezone,
                timeout=self.config.calendar_request_timeout_seconds,
                max_attempts=self.config.calendar_retry_attempts,
                base_delay=self.config.calendar_retry_base_delay_seconds,
                max_delay=self.config.calendar_retry_max_delay_seconds,
            )
        else:
            self.credentials = calendar.credentials
        self.calendar = calendar

    async def startup(self) -> None:
        self.cache.start()
        logger.info("Scheduling container started")

    async def shutdown(self) -> None:
        await self.cache.shutdown()
        await self.calendar.aclose()
        logger.info("Scheduling container stopped")

    def scheduling_service(self, db: Session) -> SchedulingService:
        return SchedulingService(
            db,
            calendar=self.calendar,
            constraint_store=self.constraint_store,
            lock_registry=self.lock_registry,
            cache=self.cache,
            config=self.config,
        )


def get_container(request: Request) -> SchedulingContainer:
    """
    Dependency returning the container attached to the application.

    Usage in routes:
        container: SchedulingContainer = Depends(get_container)
    """
    container: SchedulingContainer = request.app.state.scheduling
    return container


def get_scheduling_service(
    db: Session = Depends(get_db),
    container: SchedulingContainer = Depends(get_container),
) -> SchedulingService:
    """
    Dependency injection function for SchedulingService.

    Usage in routes:
        scheduling: SchedulingService = Depends(get_scheduling_service)
    """
    return container.scheduling_service(db)
