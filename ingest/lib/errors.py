"""Structured exception hierarchy for the ingestion core.

Every failure observed at a boundary (HTTP transport, warehouse sink,
configuration) is raised as an ``IngestError`` subclass carrying a
machine-readable ``kind``. The resilience layer classifies on that tag
instead of inspecting message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Type

__all__ = [
    "ErrorKind",
    "IngestError",
    "ApiError",
    "RateLimitedError",
    "AuthFailureError",
    "NotFoundError",
    "ServerError",
    "ApiTimeoutError",
    "ApiConnectionError",
    "ValidationFailureError",
    "CircuitOpenError",
    "SinkError",
    "ConfigurationError",
    "api_error_for_status",
]


class ErrorKind(str, Enum):
    """Failure classification used to pick a retry policy."""

    RATE_LIMITED = "rate_limited"
    AUTH_FAILURE = "auth_failure"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    VALIDATION_FAILURE = "validation_failure"
    UNKNOWN = "unknown"


class IngestError(Exception):
    """Base exception for all ingestion errors.

    Provides structured error information for logging and for the
    failed-job queue.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        if kind is not None:
            self.kind = kind
        self.message = message
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]
        if details:
            parts.append("\nDetails:")
            parts.extend(f"  {k}: {v}" for k, v in details.items())
        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class ApiError(IngestError):
    """Failure talking to the metered upstream API."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        self.cause = cause

        details = kwargs.pop("details", None) or {}
        if endpoint:
            details["endpoint"] = endpoint
        if status_code is not None:
            details["status_code"] = status_code
        if cause is not None:
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class RateLimitedError(ApiError):
    """Provider signalled that the request budget is exhausted (HTTP 429)."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs: Any) -> None:
        self.retry_after = retry_after
        super().__init__(message, **kwargs)


class AuthFailureError(ApiError):
    """Credential rejected by the provider."""

    kind = ErrorKind.AUTH_FAILURE

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault(
            "suggestion", "Check the API key (FMP_API_KEY) and the plan's endpoint access."
        )
        super().__init__(message, **kwargs)


class NotFoundError(ApiError):
    """Resource does not exist upstream. Treated as an empty result."""

    kind = ErrorKind.NOT_FOUND


class ServerError(ApiError):
    """Provider returned a 5xx response."""

    kind = ErrorKind.SERVER_ERROR


class ApiTimeoutError(ApiError):
    """Request did not complete within the configured timeout."""

    kind = ErrorKind.TIMEOUT


class ApiConnectionError(ApiError):
    """Connection to the provider could not be established."""

    kind = ErrorKind.CONNECTION


class ValidationFailureError(ApiError):
    """Response or request shape is invalid. Never retried."""

    kind = ErrorKind.VALIDATION_FAILURE


class CircuitOpenError(IngestError):
    """Raised instead of invoking an operation whose breaker is open."""

    def __init__(self, operation: str, *, retry_in: Optional[float] = None) -> None:
        self.operation = operation
        self.retry_in = retry_in
        details: Dict[str, Any] = {"operation": operation}
        if retry_in is not None:
            details["retry_in_seconds"] = round(retry_in, 1)
        super().__init__(f"Circuit breaker is OPEN for {operation}", details=details)


class SinkError(IngestError):
    """Failure writing to the warehouse or failed-job store."""

    def __init__(
        self,
        message: str,
        *,
        table: Optional[str] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.table = table
        self.cause = cause

        details = kwargs.pop("details", None) or {}
        if table:
            details["table"] = table
        if cause is not None:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        kwargs.setdefault("kind", ErrorKind.CONNECTION)
        super().__init__(message, details=details, **kwargs)


class ConfigurationError(IngestError):
    """Error in ingestion configuration.

    Raised when configuration is invalid or incomplete. Fatal at startup.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        issues: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value
        self.issues = issues or []

        details = kwargs.pop("details", None) or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        if self.issues:
            issue_lines = "\n".join(f"  - {issue}" for issue in self.issues)
            message = f"{message}\n\nIssues found:\n{issue_lines}"

        kwargs.setdefault("kind", ErrorKind.VALIDATION_FAILURE)
        super().__init__(message, details=details, **kwargs)


_STATUS_ERRORS: Dict[int, Type[ApiError]] = {
    400: ValidationFailureError,
    401: AuthFailureError,
    403: AuthFailureError,
    404: NotFoundError,
    422: ValidationFailureError,
    429: RateLimitedError,
}


def api_error_for_status(
    status_code: int,
    message: str,
    *,
    endpoint: Optional[str] = None,
    **kwargs: Any,
) -> ApiError:
    """Build the typed ApiError for an HTTP status code."""
    error_cls = _STATUS_ERRORS.get(status_code)
    if error_cls is None:
        if 500 <= status_code < 600:
            error_cls = ServerError
        else:
            error_cls = ApiError
    return error_cls(message, status_code=status_code, endpoint=endpoint, **kwargs)
