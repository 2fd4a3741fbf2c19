"""
Error Tracking

Thin wrapper around a crash-reporting sink. Every call is
best-effort: a failing sink is logged and never reaches the caller.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol, runtime_checkable

from matchtalk.core.exceptions import (
    AuthError,
    ClientError,
    HttpError,
    NetworkError,
    RateLimitError,
    RealtimeError,
    RequestTimeoutError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """Crash report severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}

# Statuses that are expected outcomes, not crashes
UNREPORTED_STATUSES = frozenset({401, 404, 429})


def should_report_status(status: int) -> bool:
    """Whether an HTTP failure status goes to the crash sink."""
    return status not in UNREPORTED_STATUSES


def severity_for_status(status: int) -> Severity:
    return Severity.HIGH if status >= 500 else Severity.MEDIUM


@runtime_checkable
class CrashReporter(Protocol):
    """Crash-reporting sink."""

    def capture_exception(
        self,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None,
        severity: Severity = Severity.HIGH,
    ) -> None: ...

    def capture_message(
        self,
        message: str,
        severity: Severity = Severity.LOW,
        context: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    def add_breadcrumb(
        self,
        message: str,
        category: str = "default",
        level: str = "info",
        data: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    def set_user(self, user_id: str, data: Optional[Dict[str, Any]] = None) -> None: ...

    def clear_user(self) -> None: ...


class LoggingCrashReporter:
    """
    Crash sink that writes reports to ``logging`` and keeps a bounded
    ring of breadcrumbs which is attached to every report.
    """

    def __init__(self, *, max_breadcrumbs: int = 50, logger_name: str = "matchtalk.crash"):
        self._breadcrumbs: Deque[Dict[str, Any]] = deque(maxlen=max_breadcrumbs)
        self._user: Optional[Dict[str, Any]] = None
        self._logger = logging.getLogger(logger_name)

    @property
    def breadcrumbs(self) -> List[Dict[str, Any]]:
        return list(self._breadcrumbs)

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self._user

    def _extra(self, severity: Severity, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "severity": severity.value,
            "context": context or {},
            "user": self._user,
            "breadcrumbs": list(self._breadcrumbs),
        }

    def capture_exception(
        self,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None,
        severity: Severity = Severity.HIGH,
    ) -> None:
        self._logger.log(
            _LOG_LEVELS[severity],
            "[Crash] %s: %s",
            error.__class__.__name__,
            error,
            exc_info=(type(error), error, error.__traceback__),
            extra=self._extra(severity, context),
        )

    def capture_message(
        self,
        message: str,
        severity: Severity = Severity.LOW,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._logger.log(
            _LOG_LEVELS[severity],
            "[Crash] %s",
            message,
            extra=self._extra(severity, context),
        )

    def add_breadcrumb(
        self,
        message: str,
        category: str = "default",
        level: str = "info",
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._breadcrumbs.append(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "message": message,
                "category": category,
                "level": level,
                "data": data or {},
            }
        )

    def set_user(self, user_id: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._user = {"id": user_id, **(data or {})}

    def clear_user(self) -> None:
        self._user = None


class ErrorTracker:
    """
    Facade used by the client components. Sink failures are suppressed.
    """

    def __init__(self, reporter: Optional[CrashReporter] = None):
        self.reporter = reporter

    def capture_exception(
        self,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None,
        severity: Severity = Severity.HIGH,
    ) -> None:
        if self.reporter is None:
            return
        try:
            self.reporter.capture_exception(error, context, severity)
        except Exception as e:
            logger.warning(f"[ErrorTracking] Failed to capture exception: {e}")

    def capture_message(
        self,
        message: str,
        severity: Severity = Severity.LOW,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.reporter is None or not message:
            return
        try:
            self.reporter.capture_message(message, severity, context)
        except Exception as e:
            logger.warning(f"[ErrorTracking] Failed to capture message: {e}")

    def add_breadcrumb(
        self,
        message: str,
        category: str = "default",
        level: str = "info",
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.reporter is None:
            return
        try:
            self.reporter.add_breadcrumb(message, category, level, data)
        except Exception as e:
            logger.debug(f"[ErrorTracking] Failed to add breadcrumb: {e}")

    def set_user(self, user_id: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self.reporter is None or not user_id:
            return
        try:
            self.reporter.set_user(user_id, data)
        except Exception as e:
            logger.warning(f"[ErrorTracking] Failed to set user context: {e}")

    def clear_user(self) -> None:
        if self.reporter is None:
            return
        try:
            self.reporter.clear_user()
        except Exception as e:
            logger.warning(f"[ErrorTracking] Failed to clear user context: {e}")


# =============================================================================
# User-facing messages
# =============================================================================

MESSAGE_NETWORK = "Network error. Please check your connection."
MESSAGE_TIMEOUT = "The request timed out. Please check your connection and try again."
MESSAGE_SESSION_EXPIRED = "Your session has expired. Please sign in again."
MESSAGE_FORBIDDEN = "You do not have permission to do that."
MESSAGE_NOT_FOUND = "The requested resource was not found."
MESSAGE_RATE_LIMITED = "Too many requests. Please wait a moment and try again."
MESSAGE_INVALID_INPUT = "The information you entered is invalid. Please check it."
MESSAGE_SERVER = "A server error occurred. Please try again later."
MESSAGE_REALTIME = "Live connection could not be established. Please try again."
MESSAGE_DEFAULT = "An unexpected error occurred. Please try again later."

_STATUS_MESSAGES = {
    400: MESSAGE_INVALID_INPUT,
    401: MESSAGE_SESSION_EXPIRED,
    403: MESSAGE_FORBIDDEN,
    404: MESSAGE_NOT_FOUND,
    429: MESSAGE_RATE_LIMITED,
}


def message_for_status(status: int) -> str:
    if status in _STATUS_MESSAGES:
        return _STATUS_MESSAGES[status]
    if status >= 500:
        return MESSAGE_SERVER
    return MESSAGE_DEFAULT


def user_friendly_message(error: BaseException) -> str:
    """
    Map an error to text that can be shown to the user.

    Args:
        error: Any exception raised by the client

    Returns:
        Short user-facing message
    """
    if isinstance(error, RequestTimeoutError):
        return MESSAGE_TIMEOUT
    if isinstance(error, NetworkError):
        return MESSAGE_NETWORK
    if isinstance(error, AuthError):
        return MESSAGE_SESSION_EXPIRED
    if isinstance(error, RateLimitError):
        return MESSAGE_RATE_LIMITED
    if isinstance(error, HttpError):
        return message_for_status(error.status)
    if isinstance(error, ValidationError):
        return MESSAGE_INVALID_INPUT
    if isinstance(error, RealtimeError):
        return MESSAGE_REALTIME
    if isinstance(error, ClientError):
        return MESSAGE_DEFAULT

    text = str(error).lower()
    if "timeout" in text or "timed out" in text:
        return MESSAGE_TIMEOUT
    if "network" in text or "failed to fetch" in text:
        return MESSAGE_NETWORK
    return MESSAGE_DEFAULT
