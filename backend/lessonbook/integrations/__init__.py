"""External service integrations for the scheduling core."""

from .credential_refresher import CredentialRefresher, ServiceAccountTokenProvider
from .google_calendar_client import FakeCalendarClient, GoogleCalendarClient, normalize_event

__all__ = [
    "CredentialRefresher",
    "FakeCalendarClient",
    "GoogleCalendarClient",
    "ServiceAccountTokenProvider",
    "normalize_event",
]
