"""
Analytics event model and validation gate.
"""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union


_EVENT_FIELDS = ("eventType", "eventData", "metadata")


@dataclass
class AnalyticsEvent:
    """Telemetry event as sent to the backend."""

    event_type: str
    event_data: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Wire/storage form with camelCase keys."""
        return {
            **self.extra,
            "eventType": self.event_type,
            "eventData": self.event_data,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AnalyticsEvent":
        """Rebuild a stored event as-is; only missing fields get defaults."""
        return cls(
            event_type=raw["eventType"],
            event_data=raw.get("eventData", {}),
            metadata=raw.get("metadata", {}),
            extra={k: v for k, v in raw.items() if k not in _EVENT_FIELDS},
        )


def is_valid_event(raw: Union[AnalyticsEvent, Dict[str, Any], Any]) -> bool:
    """True for an event whose type is a non-empty string after trimming."""
    if isinstance(raw, AnalyticsEvent):
        event_type = raw.event_type
    elif isinstance(raw, dict):
        event_type = raw.get("eventType")
    else:
        return False
    return isinstance(event_type, str) and bool(event_type.strip())


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def new_session_id() -> str:
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(9))
    return f"session-{int(time.time() * 1000)}-{suffix}"


def build_event(
    event_type: str,
    data: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    session_id: Optional[str] = None,
) -> AnalyticsEvent:
    return AnalyticsEvent(
        event_type=event_type.strip(),
        event_data=dict(data or {}),
        metadata={
            **(metadata or {}),
            "timestamp": utc_timestamp(),
            "sessionId": session_id,
        },
    )
