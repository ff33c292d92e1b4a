"""Short-lived credential management for the external calendar.

A ``CredentialRefresher`` keeps one bearer token per subject key. Tokens are
treated as expired ``safety_buffer_seconds`` before their real expiry, and
concurrent callers for the same subject share a single in-flight refresh.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx
import jwt
from pydantic import SecretStr

from ..core.exceptions import ExternalServiceException
from ..core.retry import is_transient_error, retry_async
from ..core.single_flight import SingleFlight
from ..schemas.calendar import CachedCredential

logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenProvider(Protocol):
    async def fetch_token(self, subject_key: str) -> CachedCredential:
        ...


class ServiceAccountTokenProvider:
    """Exchanges a signed service-account assertion for an access token."""

    def __init__(
        self,
        *,
        client_email: str,
        private_key: str | SecretStr,
        token_url: str,
        scopes: list[str],
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        assertion_lifetime_seconds: int = 3600,
    ) -> None:
        self._client_email = client_email
        self._private_key = (
            private_key.get_secret_value() if isinstance(private_key, SecretStr) else private_key
        )
        self._token_url = token_url
        self._scopes = scopes
        self._http_client = http_client
        self._timeout = timeout
        self._assertion_lifetime = assertion_lifetime_seconds

    def _build_assertion(self) -> str:
        """Sign the RS256 JWT assertion presented to the token endpoint."""
        now = int(time.time())
        payload = {
            "iss": self._client_email,
            "scope": " ".join(self._scopes),
            "aud": self._token_url,
            "iat": now,
            "exp": now + self._assertion_lifetime,
        }
        token: str = jwt.encode(payload, self._private_key, algorithm="RS256")
        return token

    async def fetch_token(self, subject_key: str) -> CachedCredential:
        try:
            assertion = self._build_assertion()
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            raise ExternalServiceException(
                f"Could not sign service account assertion: {exc}", retryable=False
            ) from exc

        data = {"grant_type": JWT_BEARER_GRANT, "assertion": assertion}
        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    self._token_url, data=data, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._token_url, data=data)
        except httpx.TransportError as exc:
            logger.error("Token endpoint unreachable for %s: %s", subject_key, exc)
            raise ExternalServiceException(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise ExternalServiceException(
                f"Token exchange failed with status {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
                details={"body": response.text[:500]},
            )

        body: dict[str, Any] = response.json()
        access_token = body.get("access_token")
        if not access_token:
            raise ExternalServiceException(
                "Token endpoint returned no access_token", retryable=False
            )
        expires_in = int(body.get("expires_in") or 3600)
        return CachedCredential(
            token=access_token,
            expires_at=_utcnow() + timedelta(seconds=expires_in),
        )


class CredentialRefresher:
    """
    Empty -> Refreshing -> Cached -> (expiry) -> Refreshing.

    The only writer of credentials. A failed refresh evicts whatever was
    cached for the subject and yields None.
    """

    def __init__(
        self,
        provider: Optional[TokenProvider],
        *,
        safety_buffer_seconds: float = 300,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 5.0,
        now: Callable[[], datetime] = _utcnow,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self._provider = provider
        self.safety_buffer_seconds = safety_buffer_seconds
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._now = now
        self._sleep = sleep
        self._credentials: Dict[str, CachedCredential] = {}
        self._flight: SingleFlight[Optional[CachedCredential]] = SingleFlight()

    @property
    def configured(self) -> bool:
        return self._provider is not None

    def cached_credential(self, subject_key: str) -> Optional[CachedCredential]:
        return self._credentials.get(subject_key)

    def invalidate(self, subject_key: str) -> None:
        """Forget the cached token, e.g. after the provider rejected it."""
        self._credentials.pop(subject_key, None)

    async def get_valid_token(self, subject_key: str) -> Optional[str]:
        """Return a usable bearer token, refreshing when missing or near expiry."""
        if self._provider is None:
            return None

        cached = self._credentials.get(subject_key)
        if cached is not None and cached.is_fresh(self._now(), self.safety_buffer_seconds):
            return cached.token

        credential = await self._flight.do(subject_key, lambda: self._refresh(subject_key))
        return credential.token if credential is not None else None

    async def _refresh(self, subject_key: str) -> Optional[CachedCredential]:
        provider = self._provider
        assert provider is not None
        logger.debug("Refreshing credential for %s", subject_key)
        try:
            credential = await retry_async(
                lambda: provider.fetch_token(subject_key),
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                max_delay=self._max_delay,
                is_retryable=is_transient_error,
                operation=f"credential refresh for {subject_key}",
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.error("Credential refresh failed for %s: %s", subject_key, exc)
            self._credentials.pop(subject_key, None)
            return None

        self._credentials[subject_key] = credential
        logger.info(
            "Credential refreshed for %s (expires %s)",
            subject_key,
            credential.expires_at.isoformat(),
        )
        return credential
