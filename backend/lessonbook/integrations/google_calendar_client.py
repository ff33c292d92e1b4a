"""Google Calendar integration client.

Talks to the Calendar v3 REST API with a bearer token from
``CredentialRefresher``. Raw provider payloads are turned into
``CalendarEvent`` objects by ``normalize_event`` and never leave this module.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote
from uuid import uuid4

import httpx
import pytz

from ..core.exceptions import ExternalServiceException
from ..core.retry import is_transient_error, retry_async
from ..core.timezone_utils import ensure_aware, get_timezone, localize, parse_iso_datetime
from ..schemas.calendar import (
    CalendarConnectionStatus,
    CalendarEvent,
    CalendarEventCreate,
    CalendarEventUpdate,
    CalendarSyncResult,
)
from .credential_refresher import CredentialRefresher

logger = logging.getLogger(__name__)

PAGE_SIZE = 250
ALL_DAY_END_ADJUSTMENT = timedelta(microseconds=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return ensure_aware(value).isoformat()


def _parse_boundary(boundary: Any, tz: pytz.BaseTzInfo) -> tuple[Optional[datetime], bool]:
    """Return (timestamp, is_all_day) for a provider start/end object."""
    if not isinstance(boundary, dict):
        return None, False
    if boundary.get("dateTime"):
        return parse_iso_datetime(boundary["dateTime"]), False
    if boundary.get("date"):
        try:
            day = date.fromisoformat(str(boundary["date"]))
        except ValueError:
            return None, True
        return localize(day, 0, tz), True
    return None, False


def normalize_event(raw: Dict[str, Any], tz: pytz.BaseTzInfo) -> Optional[CalendarEvent]:
    """
    Translate a provider event into a ``CalendarEvent``.

    All-day events carry an exclusive end date; it becomes an inclusive end
    one microsecond before that midnight. Events without an id or a usable
    time range are dropped (None).
    """
    event_id = raw.get("id")
    start, start_all_day = _parse_boundary(raw.get("start"), tz)
    end, _ = _parse_boundary(raw.get("end"), tz)

    if not event_id or start is None:
        logger.warning("Data quality: dropping calendar event without id or start: %r", event_id)
        return None

    if start_all_day:
        exclusive_end = end if end is not None else start + timedelta(days=1)
        end = exclusive_end - ALL_DAY_END_ADJUSTMENT

    if end is None or end <= start:
        logger.warning("Data quality: dropping calendar event %s with invalid end", event_id)
        return None

    attendees = raw.get("attendees")
    return CalendarEvent(
        id=str(event_id),
        title=raw.get("summary") or "Untitled Event",
        description=raw.get("description") or "",
        start=start,
        end=end,
        status=raw.get("status") or "confirmed",
        all_day=start_all_day,
        location=raw.get("location") or "",
        attendees=attendees if isinstance(attendees, list) else [],
        transparency=raw.get("transparency") or "opaque",
        html_link=raw.get("htmlLink") or "",
        recurring_event_id=raw.get("recurringEventId") or "",
        created=raw.get("created") or "",
        updated=raw.get("updated") or "",
    )


class GoogleCalendarClient:
    """Async HTTP client for one Google calendar."""

    def __init__(
        self,
        *,
        calendar_id: Optional[str],
        credentials: CredentialRefresher,
        base_url: str = "https://www.googleapis.com/calendar/v3",
        timezone_name: str = "UTC",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 5.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self._calendar_id = calendar_id or "primary"
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._timezone_name = timezone_name
        self._tz = get_timezone(timezone_name)
        self._timeout = timeout
        self._owns_client = http_client is None
        self._http = http_client
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    @property
    def calendar_id(self) -> str:
        return self._calendar_id

    @property
    def credentials(self) -> CredentialRefresher:
        return self._credentials

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def aclose(self) -> None:
        if self._owns_client and self._http is not None:
            await self._http.aclose()
            self._http = None

    def _events_path(self, event_id: Optional[str] = None) -> str:
        path = f"/calendars/{quote(self._calendar_id, safe='')}/events"
        if event_id:
            path += f"/{quote(event_id, safe='')}"
        return path

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated request; errors become ExternalServiceException."""
        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = await self._client().request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_body,
                timeout=self._timeout,
            )
        except httpx.TransportError as exc:
            logger.error("Calendar API unreachable for %s %s: %s", method, path, exc)
            raise ExternalServiceException(f"Calendar API unreachable: {exc}") from exc

        if response.status_code == 401:
            self._credentials.invalidate(self._calendar_id)

        if response.status_code >= 400:
            logger.warning(
                "Calendar API error %s for %s %s", response.status_code, method, path
            )
            raise ExternalServiceException(
                f"Calendar API error: {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
                details={"body": response.text[:500]},
            )

        if response.status_code == 204 or not response.content:
            return {}
        body = response.json()
        return body if isinstance(body, dict) else {}

    async def _require_token(self) -> str:
        token = await self._credentials.get_valid_token(self._calendar_id)
        if not token:
            raise ExternalServiceException(
                "External calendar not connected or credential unavailable", retryable=False
            )
        return token

    async def _mutate(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async def attempt() -> dict[str, Any]:
            token = await self._require_token()
            return await self._request(method, path, token, json_body=json_body)

        return await retry_async(
            attempt,
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
            max_delay=self._max_delay,
            is_retryable=is_transient_error,
            operation=operation,
            sleep=self._sleep,
        )

    # Reads

    async def get_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        """
        All events in ``[start, end)``, following continuation tokens.

        Returns an empty list when no credential is available.

        Raises:
            ExternalServiceException: if a credential exists but the fetch fails
        """
        token = await self._credentials.get_valid_token(self._calendar_id)
        if not token:
            logger.info("No calendar credential available; treating external events as empty")
            return []

        raw_items: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            params: dict[str, Any] = {
                "timeMin": _iso(start),
                "timeMax": _iso(end),
                "singleEvents": "true",
                "orderBy": "startTime",
                "timeZone": self._timezone_name,
                "maxResults": PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            body = await self._request("GET", self._events_path(), token, params=params)
            items = body.get("items")
            if isinstance(items, list):
                raw_items.extend(item for item in items if isinstance(item, dict))
            page_token = body.get("nextPageToken") or None
            if not page_token:
                break

        events = [e for e in (normalize_event(raw, self._tz) for raw in raw_items) if e]
        logger.debug("Fetched %d calendar events (%d raw)", len(events), len(raw_items))
        return events

    async def is_busy(self, start: datetime, end: datetime, buffer_minutes: int = 0) -> bool:
        """
        Free/busy check for ``[start, end)`` widened by ``buffer_minutes``.

        Any failure, including a missing credential, answers busy.
        """
        token = await self._credentials.get_valid_token(self._calendar_id)
        if not token:
            return True

        padding = timedelta(minutes=buffer_minutes)
        body = {
            "timeMin": _iso(start - padding),
            "timeMax": _iso(end + padding),
            "items": [{"id": self._calendar_id}],
        }
        try:
            result = await self._request("POST", "/freeBusy", token, json_body=body)
        except ExternalServiceException as exc:
            logger.warning("Free/busy query failed; assuming busy: %s", exc.message)
            return True

        calendars = result.get("calendars") or {}
        calendar = calendars.get(self._calendar_id) or calendars.get("primary") or {}
        busy = calendar.get("busy")
        return isinstance(busy, list) and len(busy) > 0

    async def get_calendar_status(self) -> CalendarConnectionStatus:
        token = await self._credentials.get_valid_token(self._calendar_id)
        if not token:
            return CalendarConnectionStatus(
                connected=False, message="Calendar not connected or credential expired"
            )
        try:
            body = await self._request(
                "GET", f"/calendars/{quote(self._calendar_id, safe='')}", token
            )
        except ExternalServiceException as exc:
            return CalendarConnectionStatus(
                connected=False, message=f"Error checking calendar connection: {exc.message}"
            )
        return CalendarConnectionStatus(
            connected=True,
            message="Calendar successfully connected via service account",
            calendar_id=body.get("id") or self._calendar_id,
            summary=body.get("summary") or "Lesson Calendar",
            time_zone=body.get("timeZone") or self._timezone_name,
            access_role=body.get("accessRole") or "owner",
        )

    async def sync_calendar(self, days: int = 30) -> CalendarSyncResult:
        start = _utcnow()
        try:
            events = await self.get_events(start, start + timedelta(days=days))
        except ExternalServiceException as exc:
            return CalendarSyncResult(
                success=False, events_processed=0, errors=[exc.message], last_sync_time=_utcnow()
            )
        return CalendarSyncResult(
            success=True, events_processed=len(events), last_sync_time=_utcnow()
        )

    # Writes (retried on transient failure, never degraded)

    def _event_body(self, data: CalendarEventCreate | CalendarEventUpdate) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if data.title is not None:
            body["summary"] = data.title
        if data.description is not None:
            body["description"] = data.description
        if data.location is not None:
            body["location"] = data.location
        if data.start is not None:
            body["start"] = {"dateTime": _iso(data.start), "timeZone": self._timezone_name}
        if data.end is not None:
            body["end"] = {"dateTime": _iso(data.end), "timeZone": self._timezone_name}
        if isinstance(data, CalendarEventCreate) and data.attendees:
            body["attendees"] = data.attendees
        if isinstance(data, CalendarEventUpdate) and data.status is not None:
            body["status"] = data.status
        return body

    def _normalized_or_fail(self, raw: dict[str, Any], operation: str) -> CalendarEvent:
        event = normalize_event(raw, self._tz)
        if event is None:
            raise ExternalServiceException(
                f"Calendar API returned an unusable event for {operation}", retryable=False
            )
        return event

    async def create_event(self, data: CalendarEventCreate) -> CalendarEvent:
        raw = await self._mutate(
            "create calendar event", "POST", self._events_path(), json_body=self._event_body(data)
        )
        event = self._normalized_or_fail(raw, "create")
        logger.info("Created calendar event %s", event.id)
        return event

    async def update_event(self, event_id: str, data: CalendarEventUpdate) -> CalendarEvent:
        raw = await self._mutate(
            "update calendar event",
            "PATCH",
            self._events_path(event_id),
            json_body=self._event_body(data),
        )
        event = self._normalized_or_fail(raw, "update")
        logger.info("Updated calendar event %s", event.id)
        return event

    async def delete_event(self, event_id: str) -> None:
        try:
            await self._mutate("delete calendar event", "DELETE", self._events_path(event_id))
        except ExternalServiceException as exc:
            if exc.upstream_status in (404, 410):
                logger.warning("Calendar event %s already gone", event_id)
                return
            raise
        logger.info("Deleted calendar event %s", event_id)


class FakeCalendarClient(GoogleCalendarClient):
    """In-memory calendar with the same interface, for tests and local runs."""

    def __init__(self, timezone_name: str = "UTC") -> None:
        super().__init__(
            calendar_id="fake-calendar",
            credentials=CredentialRefresher(None),
            timezone_name=timezone_name,
        )
        self.events: Dict[str, CalendarEvent] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.calls: List[str] = []

    def _check(self, name: str, failing: bool) -> None:
        self.calls.append(name)
        if failing:
            raise ExternalServiceException(f"Fake calendar {name} failure")

    async def get_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        self._check("get_events", self.fail_reads)
        return sorted(
            (e for e in self.events.values() if e.start < end and e.end > start),
            key=lambda e: e.start,
        )

    async def is_busy(self, start: datetime, end: datetime, buffer_minutes: int = 0) -> bool:
        if self.fail_reads:
            return True
        padding = timedelta(minutes=buffer_minutes)
        events = await self.get_events(start - padding, end + padding)
        return any(e.is_busy for e in events)

    async def get_calendar_status(self) -> CalendarConnectionStatus:
        return CalendarConnectionStatus(
            connected=not self.fail_reads,
            message="Fake calendar",
            calendar_id=self.calendar_id,
        )

    async def create_event(self, data: CalendarEventCreate) -> CalendarEvent:
        self._check("create_event", self.fail_writes)
        event = CalendarEvent(
            id=f"fake-event-{uuid4().hex}",
            title=data.title,
            description=data.description,
            start=data.start,
            end=data.end,
            location=data.location,
            attendees=data.attendees,
        )
        self.events[event.id] = event
        return event

    async def update_event(self, event_id: str, data: CalendarEventUpdate) -> CalendarEvent:
        self._check("update_event", self.fail_writes)
        current = self.events.get(event_id)
        if current is None:
            raise ExternalServiceException(
                "Calendar API error: 404", status_code=404, retryable=False
            )
        changes = {k: v for k, v in data.model_dump().items() if v is not None}
        updated = current.model_copy(update=changes)
        self.events[event_id] = updated
        return updated

    async def delete_event(self, event_id: str) -> None:
        self._check("delete_event", self.fail_writes)
        self.events.pop(event_id, None)
