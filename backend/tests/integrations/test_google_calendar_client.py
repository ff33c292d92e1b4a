from datetime import timedelta
import json
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
import pytz
import respx

from lessonbook.core.exceptions import ExternalServiceException
from lessonbook.integrations.credential_refresher import CredentialRefresher
from lessonbook.integrations.google_calendar_client import GoogleCalendarClient, normalize_event
from lessonbook.schemas.calendar import CalendarEventCreate, CalendarEventUpdate

from _helpers import DAY, StaticTokenProvider, at

BASE_URL = "https://calendar.test/v3"
CALENDAR_ID = "lessons"
EVENTS_URL = f"{BASE_URL}/calendars/{CALENDAR_ID}/events"
BRISBANE = pytz.timezone("Australia/Brisbane")


def _raw_event(event_id: str, start: str, end: str, **extra):
    return {
        "id": event_id,
        "summary": f"Event {event_id}",
        "start": {"dateTime": start},
        "end": {"dateTime": end},
        **extra,
    }


@pytest.fixture
def token_provider():
    return StaticTokenProvider()


@pytest.fixture
def credentials(token_provider):
    return CredentialRefresher(token_provider, sleep=AsyncMock())


@pytest_asyncio.fixture
async def client(credentials):
    client = GoogleCalendarClient(
        calendar_id=CALENDAR_ID,
        credentials=credentials,
        base_url=BASE_URL,
        timezone_name="Australia/Brisbane",
        sleep=AsyncMock(),
    )
    yield client
    await client.aclose()


class TestNormalizeEvent:
    def test_timed_event(self):
        event = normalize_event(
            _raw_event("e1", "2030-01-08T10:00:00+10:00", "2030-01-08T11:00:00+10:00"), BRISBANE
        )
        assert event is not None
        assert event.start == at(DAY, "10:00", BRISBANE)
        assert event.end == at(DAY, "11:00", BRISBANE)
        assert event.title == "Event e1"
        assert not event.all_day
        assert event.is_busy

    def test_all_day_event_spans_local_day_inclusive(self):
        raw = {"id": "holiday", "start": {"date": "2030-01-08"}, "end": {"date": "2030-01-09"}}

        event = normalize_event(raw, BRISBANE)

        assert event is not None
        assert event.all_day
        assert event.title == "Untitled Event"
        assert event.start == at(DAY, "00:00", BRISBANE)
        assert event.end == at(DAY + timedelta(days=1), "00:00", BRISBANE) - timedelta(microseconds=1)

    def test_free_and_cancelled_events_do_not_block(self):
        free = normalize_event(
            _raw_event("f", "2030-01-08T10:00:00Z", "2030-01-08T11:00:00Z", transparency="transparent"),
            pytz.UTC,
        )
        cancelled = normalize_event(
            _raw_event("c", "2030-01-08T10:00:00Z", "2030-01-08T11:00:00Z", status="cancelled"),
            pytz.UTC,
        )
        assert free is not None and not free.is_busy
        assert cancelled is not None and not cancelled.is_busy

    @pytest.mark.parametrize(
        "raw",
        [
            {"summary": "no id", "start": {"dateTime": "2030-01-08T10:00:00Z"}},
            {"id": "no-start", "end": {"dateTime": "2030-01-08T10:00:00Z"}},
            _raw_event("backwards", "2030-01-08T11:00:00Z", "2030-01-08T10:00:00Z"),
            {"id": "bad-date", "start": {"date": "not-a-date"}, "end": {"date": "2030-01-09"}},
        ],
    )
    def test_unusable_events_are_dropped(self, raw):
        assert normalize_event(raw, pytz.UTC) is None


class TestGetEvents:
    @pytest.mark.asyncio
    @respx.mock
    async def test_follows_pagination(self, client):
        route = respx.get(EVENTS_URL).mock(
            side_effect=[
                httpx.Response(
                    200,
                    json={
                        "items": [_raw_event("a", "2030-01-08T09:00:00Z", "2030-01-08T10:00:00Z")],
                        "nextPageToken": "page-2",
                    },
                ),
                httpx.Response(
                    200,
                    json={"items": [_raw_event("b", "2030-01-08T12:00:00Z", "2030-01-08T13:00:00Z")]},
                ),
            ]
        )

        events = await client.get_events(at(DAY, "00:00"), at(DAY, "23:59"))

        assert [e.id for e in events] == ["a", "b"]
        assert route.call_count == 2
        first, second = (call.request for call in route.calls)
        assert first.url.params["singleEvents"] == "true"
        assert first.url.params["orderBy"] == "startTime"
        assert "pageToken" not in first.url.params
        assert second.url.params["pageToken"] == "page-2"
        assert first.headers["Authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_items_are_skipped(self, client):
        respx.get(EVENTS_URL).respond(
            200,
            json={
                "items": [
                    _raw_event("ok", "2030-01-08T09:00:00Z", "2030-01-08T10:00:00Z"),
                    {"id": "broken"},
                    "not an object",
                ]
            },
        )

        events = await client.get_events(at(DAY, "00:00"), at(DAY, "23:59"))

        assert [e.id for e in events] == ["ok"]

    @pytest.mark.asyncio
    async def test_no_credential_returns_empty(self):
        client = GoogleCalendarClient(calendar_id=CALENDAR_ID, credentials=CredentialRefresher(None))
        assert await client.get_events(at(DAY, "00:00"), at(DAY, "23:59")) == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_read_failure_is_raised_without_retry(self, client):
        route = respx.get(EVENTS_URL).respond(503)

        with pytest.raises(ExternalServiceException) as exc_info:
            await client.get_events(at(DAY, "00:00"), at(DAY, "23:59"))

        assert exc_info.value.upstream_status == 503
        assert route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_unauthorized_drops_cached_token(self, client, credentials):
        respx.get(EVENTS_URL).respond(401)

        with pytest.raises(ExternalServiceException):
            await client.get_events(at(DAY, "00:00"), at(DAY, "23:59"))

        assert credentials.cached_credential(CALENDAR_ID) is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_becomes_external_service_error(self, client):
        respx.get(EVENTS_URL).mock(side_effect=httpx.ConnectTimeout("slow"))

        with pytest.raises(ExternalServiceException) as exc_info:
            await client.get_events(at(DAY, "00:00"), at(DAY, "23:59"))
        assert exc_info.value.retryable


class TestIsBusy:
    @pytest.mark.asyncio
    @respx.mock
    async def test_busy_window(self, client):
        route = respx.post(f"{BASE_URL}/freeBusy").respond(
            200,
            json={"calendars": {CALENDAR_ID: {"busy": [{"start": "x", "end": "y"}]}}},
        )

        assert await client.is_busy(at(DAY, "10:00"), at(DAY, "11:00"), buffer_minutes=15)

        body = json.loads(route.calls[0].request.content)
        assert body["items"] == [{"id": CALENDAR_ID}]
        assert body["timeMin"] == at(DAY, "09:45").isoformat()
        assert body["timeMax"] == at(DAY, "11:15").isoformat()

    @pytest.mark.asyncio
    @respx.mock
    async def test_free_window(self, client):
        respx.post(f"{BASE_URL}/freeBusy").respond(
            200, json={"calendars": {CALENDAR_ID: {"busy": []}}}
        )
        assert not await client.is_busy(at(DAY, "10:00"), at(DAY, "11:00"))

    @pytest.mark.asyncio
    @respx.mock
    async def test_failure_answers_busy(self, client):
        respx.post(f"{BASE_URL}/freeBusy").respond(500)
        assert await client.is_busy(at(DAY, "10:00"), at(DAY, "11:00"))

    @pytest.mark.asyncio
    async def test_missing_credential_answers_busy(self):
        client = GoogleCalendarClient(calendar_id=CALENDAR_ID, credentials=CredentialRefresher(None))
        assert await client.is_busy(at(DAY, "10:00"), at(DAY, "11:00"))


class TestWrites:
    @pytest.mark.asyncio
    @respx.mock
    async def test_create_event_retries_transient_failure(self, client):
        created = _raw_event("new", "2030-01-08T10:00:00Z", "2030-01-08T11:00:00Z")
        route = respx.post(EVENTS_URL).mock(
            side_effect=[httpx.Response(503), httpx.Response(200, json=created)]
        )

        event = await client.create_event(
            CalendarEventCreate(title="Lesson", start=at(DAY, "10:00"), end=at(DAY, "11:00"))
        )

        assert event.id == "new"
        assert route.call_count == 2
        body = json.loads(route.calls[0].request.content)
        assert body["summary"] == "Lesson"
        assert body["start"] == {
            "dateTime": at(DAY, "10:00").isoformat(),
            "timeZone": "Australia/Brisbane",
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_create_event_does_not_retry_client_error(self, client):
        route = respx.post(EVENTS_URL).respond(400, json={"error": "bad request"})

        with pytest.raises(ExternalServiceException) as exc_info:
            await client.create_event(
                CalendarEventCreate(title="Lesson", start=at(DAY, "10:00"), end=at(DAY, "11:00"))
            )

        assert exc_info.value.upstream_status == 400
        assert route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_create_event_exhausts_retries(self, client):
        route = respx.post(EVENTS_URL).respond(502)

        with pytest.raises(ExternalServiceException):
            await client.create_event(
                CalendarEventCreate(title="Lesson", start=at(DAY, "10:00"), end=at(DAY, "11:00"))
            )

        assert route.call_count == 3

    @pytest.mark.asyncio
    async def test_write_without_credential_fails(self):
        client = GoogleCalendarClient(calendar_id=CALENDAR_ID, credentials=CredentialRefresher(None))
        with pytest.raises(ExternalServiceException) as exc_info:
            await client.create_event(
                CalendarEventCreate(title="Lesson", start=at(DAY, "10:00"), end=at(DAY, "11:00"))
            )
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    @respx.mock
    async def test_update_event_patches_only_given_fields(self, client):
        updated = _raw_event("e1", "2030-01-08T12:00:00Z", "2030-01-08T13:00:00Z")
        route = respx.patch(f"{EVENTS_URL}/e1").respond(200, json=updated)

        event = await client.update_event(
            "e1", CalendarEventUpdate(start=at(DAY, "12:00"), end=at(DAY, "13:00"))
        )

        assert event.start == at(DAY, "12:00")
        body = json.loads(route.calls[0].request.content)
        assert set(body) == {"start", "end"}

    @pytest.mark.parametrize("status", [404, 410])
    @pytest.mark.asyncio
    @respx.mock
    async def test_delete_of_missing_event_is_ignored(self, client, status):
        respx.delete(f"{EVENTS_URL}/gone").respond(status)
        await client.delete_event("gone")

    @pytest.mark.asyncio
    @respx.mock
    async def test_delete_event(self, client):
        route = respx.delete(f"{EVENTS_URL}/e1").respond(204)
        await client.delete_event("e1")
        assert route.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_delete_propagates_other_errors(self, client):
        respx.delete(f"{EVENTS_URL}/e1").respond(403)
        with pytest.raises(ExternalServiceException):
            await client.delete_event("e1")


class TestStatusAndSync:
    @pytest.mark.asyncio
    @respx.mock
    async def test_connected_status(self, client):
        respx.get(f"{BASE_URL}/calendars/{CALENDAR_ID}").respond(
            200, json={"id": CALENDAR_ID, "summary": "Lessons", "timeZone": "Australia/Brisbane"}
        )

        status = await client.get_calendar_status()

        assert status.connected
        assert status.summary == "Lessons"
        assert status.time_zone == "Australia/Brisbane"

    @pytest.mark.asyncio
    @respx.mock
    async def test_status_reports_errors(self, client):
        respx.get(f"{BASE_URL}/calendars/{CALENDAR_ID}").respond(500)

        status = await client.get_calendar_status()

        assert not status.connected
        assert "Error checking calendar connection" in status.message

    @pytest.mark.asyncio
    async def test_status_without_credential(self):
        client = GoogleCalendarClient(calendar_id=CALENDAR_ID, credentials=CredentialRefresher(None))
        status = await client.get_calendar_status()
        assert not status.connected

    @pytest.mark.asyncio
    @respx.mock
    async def test_sync_counts_events(self, client):
        respx.get(EVENTS_URL).respond(
            200, json={"items": [_raw_event("a", "2030-01-08T09:00:00Z", "2030-01-08T10:00:00Z")]}
        )

        result = await client.sync_calendar(days=7)

        assert result.success
        assert result.events_processed == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_sync_failure_is_reported(self, client):
        respx.get(EVENTS_URL).respond(500)

        result = await client.sync_calendar()

        assert not result.success
        assert result.errors
