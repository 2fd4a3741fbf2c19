"""
Structured Logging for the MatchTalk client

Provides JSON-formatted logging with request/session context
so that every HTTP call and realtime event can be correlated.
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

# Context variables for request/session tracking
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_session_id: ContextVar[Optional[str]] = ContextVar("session_id", default=None)


def get_request_id() -> Optional[str]:
    """Get current request ID."""
    return _request_id.get()


def set_request_id(request_id: Optional[str]) -> None:
    """Set request ID for current context."""
    _request_id.set(request_id)


def generate_request_id() -> str:
    """Generate a new request ID and bind it to the current context."""
    request_id = uuid.uuid4().hex[:12]
    set_request_id(request_id)
    return request_id


def get_session_id() -> Optional[str]:
    return _session_id.get()


def set_session_id(session_id: Optional[str]) -> None:
    _session_id.set(session_id)


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Outputs log records as JSON objects with standardized fields.
    """

    STANDARD_FIELDS = {
        "timestamp",
        "level",
        "logger",
        "message",
        "request_id",
        "session_id",
    }

    # Attributes every LogRecord carries; anything else came in via ``extra``.
    _RECORD_ATTRS = set(
        logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
    ) | {"message", "asctime"}

    def __init__(
        self,
        *,
        include_timestamp: bool = True,
        include_traceback: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        indent: Optional[int] = None,
    ):
        """
        Initialize JSON formatter.

        Args:
            include_timestamp: Include ISO timestamp
            include_traceback: Include traceback for exceptions
            extra_fields: Additional fields to include in every log
            indent: JSON indent (None for compact)
        """
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_traceback = include_traceback
        self.extra_fields = extra_fields or {}
        self.indent = indent

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {}

        if self.include_timestamp:
            log_data["timestamp"] = (
                datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            )

        log_data["level"] = record.levelname
        log_data["logger"] = record.name
        log_data["message"] = record.getMessage()

        log_data["source"] = {
            "file": record.filename,
            "line": record.lineno,
            "function": record.funcName,
        }

        if request_id := get_request_id():
            log_data["request_id"] = request_id
        if session_id := get_session_id():
            log_data["session_id"] = session_id

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            log_data["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
            }
            if self.include_traceback:
                log_data["exception"]["traceback"] = self._format_traceback(
                    record.exc_info
                )

        # Extra fields from record
        for key, value in record.__dict__.items():
            if key in self._RECORD_ATTRS or key.startswith("_"):
                continue
            if key not in self.STANDARD_FIELDS:
                log_data[key] = self._serialize_value(value)

        log_data.update(self.extra_fields)

        return json.dumps(log_data, default=str, indent=self.indent)

    def _format_traceback(self, exc_info) -> list:
        """Format exception traceback as list of frames."""
        if not exc_info[2]:
            return []

        return [
            {
                "file": frame.filename,
                "line": frame.lineno,
                "function": frame.name,
                "code": frame.line,
            }
            for frame in traceback.extract_tb(exc_info[2])
        ]

    def _serialize_value(self, value: Any) -> Any:
        """Serialize value for JSON output."""
        if isinstance(value, (str, int, float, bool, type(None))):
            return value
        if isinstance(value, (list, tuple)):
            return [self._serialize_value(v) for v in value]
        if isinstance(value, dict):
            return {k: self._serialize_value(v) for k, v in value.items()}
        if hasattr(value, "to_dict"):
            return value.to_dict()
        return str(value)


def configure_logging(
    *,
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    log_file: Optional[str] = None,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Configure logging for the host application.

    Args:
        level: Log level
        json_format: Use JSON formatting
        log_file: Optional log file path
        extra_fields: Extra fields to include in all logs
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if json_format:
        formatter: logging.Formatter = JSONFormatter(extra_fields=extra_fields)
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger
    """
    return logging.getLogger(name)


class LogContext:
    """
    Context manager binding request/session ids for the enclosed block.

    Example:
        with LogContext(request_id="abc123"):
            logger.info("Dispatching")  # includes request_id
    """

    def __init__(self, *, request_id: Optional[str] = None, session_id: Optional[str] = None):
        self.request_id = request_id
        self.session_id = session_id
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        if self.request_id is not None:
            self._tokens.append((_request_id, _request_id.set(self.request_id)))
        if self.session_id is not None:
            self._tokens.append((_session_id, _session_id.set(self.session_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
