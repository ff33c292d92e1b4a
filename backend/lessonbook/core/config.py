# backend/lessonbook/core/config.py
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: str = Field(default="development", description="Deployment environment")
    database_url: str = Field(
        default="sqlite+pysqlite:///./lessonbook.db",
        description="SQLAlchemy URL for the local booking and configuration store",
    )
    business_timezone: str = Field(
        default="Australia/Brisbane",
        description="Timezone in which days and HH:MM operating hours are interpreted",
    )

    # External calendar (service account)
    google_calendar_id: Optional[str] = Field(default=None, description="Calendar identifier")
    google_service_account_email: Optional[str] = Field(default=None)
    google_service_account_private_key: Optional[SecretStr] = Field(
        default=None,
        description="PEM private key; escaped newlines are accepted",
    )
    google_token_url: str = "https://oauth2.googleapis.com/token"
    google_calendar_api_base: str = "https://www.googleapis.com/calendar/v3"
    google_calendar_scopes: list[str] = Field(
        default_factory=lambda: [
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/calendar.events",
        ]
    )

    # Resilience
    calendar_request_timeout_seconds: float = Field(
        default=15.0, description="Per-attempt timeout for external calendar calls"
    )
    calendar_retry_attempts: int = Field(default=3, ge=1)
    calendar_retry_base_delay_seconds: float = Field(default=0.5, ge=0)
    calendar_retry_max_delay_seconds: float = Field(default=5.0, ge=0)
    credential_safety_buffer_seconds: int = Field(
        default=300, description="Treat tokens as expired this many seconds early"
    )

    # Caching
    availability_cache_ttl_seconds: int = Field(default=90, description="Availability + events TTL")
    constraints_cache_ttl_seconds: int = Field(default=600, description="Configuration data TTL")
    cache_max_entries: int = Field(default=1000, ge=1)
    cache_sweep_interval_seconds: float = Field(default=60.0, gt=0)

    # Booking rules
    next_slot_search_days: int = Field(default=30, ge=1)
    min_lesson_duration_minutes: int = 30
    max_lesson_duration_minutes: int = 480

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("google_calendar_scopes", mode="before")
    @classmethod
    def _parse_scopes(cls, value: object) -> object:
        if isinstance(value, str):
            return [token.strip() for token in value.split(",") if token.strip()]
        return value

    @model_validator(mode="after")
    def _check_duration_bounds(self) -> "Settings":
        if self.min_lesson_duration_minutes > self.max_lesson_duration_minutes:
            raise ValueError("min_lesson_duration_minutes cannot exceed max_lesson_duration_minutes")
        return self

    @property
    def calendar_configured(self) -> bool:
        """True when every credential needed for the external calendar is present."""
        key = self.google_service_account_private_key
        return bool(
            self.google_calendar_id
            and self.google_service_account_email
            and key is not None
            and key.get_secret_value().strip()
        )

    def service_account_private_key(self) -> str:
        """Return the PEM key with escaped newlines restored."""
        if self.google_service_account_private_key is None:
            return ""
        return self.google_service_account_private_key.get_secret_value().replace("\\n", "\n")


settings = Settings()
