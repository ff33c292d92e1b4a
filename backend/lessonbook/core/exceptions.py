# backend/lessonbook/core/exceptions.py
"""
Domain-specific exceptions for the scheduling core.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Convert to an HTTPException carrying the structured detail."""
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when input validation fails. Never retried."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = dict(details or {})
        if field:
            merged.setdefault("field", field)
        super().__init__(message, code=code or "VALIDATION_ERROR", details=merged)
        self.field = field


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


class ConfigurationException(DomainException):
    """
    Raised for malformed or missing scheduling configuration.

    The constraint layer catches this and falls back to defaults; it should
    never reach an end user.
    """


# Specific business exceptions


class BookingConflictException(ConflictException):
    """Raised when the requested slot is unavailable at validation time."""

    def __init__(
        self,
        reason: str,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {"reason": reason, **(details or {})}
        super().__init__(
            message=message or f"Requested time is not available: {reason}",
            code="BOOKING_CONFLICT",
            details=merged,
        )
        self.reason = reason


class BookingLockTimeoutException(ServiceException):
    """Raised when another write held the booking lock for too long. Safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, subject: str, timeout_s: float) -> None:
        super().__init__(
            "Another booking change is in progress; please try again",
            code="BOOKING_LOCK_TIMEOUT",
            details={"subject": subject, "timeout_seconds": timeout_s},
        )


class ExternalServiceException(ServiceException):
    """
    Raised when the calendar provider is unreachable or rejects our credential.

    Surfaced to users as a "try again" failure, distinct from a conflict.
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = dict(details or {})
        if status_code is not None:
            merged.setdefault("upstream_status", status_code)
        super().__init__(message, code="EXTERNAL_SERVICE_ERROR", details=merged)
        self.upstream_status = status_code
        self.retryable = retryable


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
