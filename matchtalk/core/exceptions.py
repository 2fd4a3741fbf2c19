"""
Exception Hierarchy for the MatchTalk network client

Every error that leaves the HTTP client, the realtime connection
manager or the telemetry queue is normalized into one of these
types before it reaches calling code.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ClientError(Exception):
    """
    Base exception for all client-layer errors.

    All custom exceptions should inherit from this class.
    """

    error_code: str = "CLIENT_ERROR"

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        """
        Initialize client error.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code
            details: Additional context/details
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.details:
            parts.append(f" Details: {self.details}")
        if self.cause:
            parts.append(f" Caused by: {self.cause}")
        return "".join(parts)


# =============================================================================
# Configuration / Storage Errors
# =============================================================================


class ConfigurationError(ClientError):
    """Configuration value is missing or invalid."""

    error_code = "CONFIG_ERROR"


class StorageError(ClientError):
    """Durable key-value storage failed."""

    error_code = "STORAGE_ERROR"


# =============================================================================
# HTTP Errors
# =============================================================================


class NetworkError(ClientError):
    """Request was sent but no response was received."""

    error_code = "NETWORK_ERROR"


class RequestTimeoutError(NetworkError):
    """Request timed out before a response arrived."""

    error_code = "NETWORK_TIMEOUT"


class HttpError(ClientError):
    """Server responded with a failure status."""

    error_code = "HTTP_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status: int,
        response_body: Any = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status = status
        self.response_body = response_body
        self.details["status"] = status


class RateLimitError(HttpError):
    """Server rejected the request with 429."""

    error_code = "HTTP_RATE_LIMIT"

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        kwargs.setdefault("status", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        if retry_after:
            self.details["retry_after_seconds"] = retry_after


class AuthError(HttpError):
    """Token refresh failed; the session has been invalidated."""

    error_code = "AUTH_ERROR"

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("status", 401)
        super().__init__(message, **kwargs)


class RequestCancelledError(ClientError):
    """Request was cancelled through the client before it settled."""

    error_code = "REQUEST_CANCELLED"


class UnexpectedError(ClientError):
    """Anything that does not fit the other categories."""

    error_code = "UNEXPECTED_ERROR"


# =============================================================================
# Telemetry Errors
# =============================================================================


class ValidationError(ClientError):
    """Backend rejected a telemetry batch as malformed."""

    error_code = "VALIDATION_ERROR"


# =============================================================================
# Realtime Errors
# =============================================================================


class RealtimeError(ClientError):
    """Base class for realtime connection errors."""

    error_code = "REALTIME_ERROR"


class NoTokenError(RealtimeError):
    """No authentication token is available for the realtime handshake."""

    error_code = "REALTIME_NO_TOKEN"


class ConnectionTimeoutError(RealtimeError):
    """Realtime handshake did not complete within the connection timeout."""

    error_code = "REALTIME_TIMEOUT"


class RealtimeConnectionError(RealtimeError):
    """Transport reported a connection error during the handshake."""

    error_code = "REALTIME_CONNECT_ERROR"


class NotConnectedError(RealtimeError):
    """Emit attempted while the connection is not established."""

    error_code = "REALTIME_NOT_CONNECTED"


# =============================================================================
# Helper Functions
# =============================================================================


def wrap_exception(
    exception: BaseException,
    wrapper_class: type = UnexpectedError,
    message: Optional[str] = None,
) -> ClientError:
    """
    Wrap a standard exception in a client exception.

    Args:
        exception: The original exception
        wrapper_class: ClientError class to use
        message: Optional custom message

    Returns:
        Wrapped ClientError
    """
    if isinstance(exception, ClientError):
        return exception

    return wrapper_class(
        message=message or str(exception) or exception.__class__.__name__,
        cause=exception,
    )
