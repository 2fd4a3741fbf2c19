"""
Room and matching emits.

These emits are best-effort: the REST API is the source of truth for
room membership, so a missing realtime connection degrades the
experience (no live updates) instead of failing the user action.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from matchtalk.adapters.interceptors import EventSink
from matchtalk.core.error_tracking import ErrorTracker, Severity
from matchtalk.realtime.websocket_client import RealtimeConnectionManager

logger = logging.getLogger(__name__)


class EmitStatus(str, Enum):
    SENT = "sent"
    DEGRADED = "degraded"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class EmitResult:
    status: EmitStatus
    reason: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.status == EmitStatus.SENT


SENT = EmitResult(EmitStatus.SENT)


class RoomChannel:
    """Room and matching events over a ``RealtimeConnectionManager``."""

    def __init__(
        self,
        manager: RealtimeConnectionManager,
        *,
        tracker: Optional[ErrorTracker] = None,
        events: Optional[EventSink] = None,
    ):
        self.manager = manager
        self.tracker = tracker or ErrorTracker()
        self.events = events

    def _track(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.track_nowait(event_type, data)
        except Exception as e:
            logger.debug(f"[Rooms] Failed to track {event_type}: {e}")

    async def _emit_connected(
        self,
        action: str,
        event: str,
        payload: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> EmitResult:
        """Connect if needed, then emit. Failures degrade instead of raising."""
        try:
            if not self.manager.is_connected:
                logger.info(f"[Rooms] Socket not connected, connecting for {action}")
                await self.manager.connect()
            await self.manager.emit(event, payload)
        except Exception as e:
            reason = getattr(e, "message", None) or str(e)
            logger.warning(
                f"[Rooms] {action} failed, continuing without realtime updates: {reason}"
            )
            self.tracker.capture_exception(
                e,
                {"component": "WebSocketClient", "action": action, **(context or {})},
                Severity.MEDIUM,
            )
            return EmitResult(EmitStatus.DEGRADED, reason)
        return SENT

    async def _emit_if_connected(self, action: str, event: str, payload: Any = None) -> EmitResult:
        if not self.manager.is_connected:
            logger.debug(f"[Rooms] {action} skipped: not connected")
            return EmitResult(EmitStatus.SKIPPED, "not connected")
        return await self._emit_connected(action, event, payload)

    async def join_room(self, room_id: str) -> EmitResult:
        result = await self._emit_connected(
            "joinRoom", "join-room", {"roomId": room_id}, {"roomId": room_id}
        )
        if result.sent:
            logger.info(f"[Rooms] Joined room {room_id}")
            self._track("websocket_join_room", {"roomId": room_id})
        return result

    async def leave_room(self, room_id: str) -> EmitResult:
        result = await self._emit_if_connected("leaveRoom", "leave-room", {"roomId": room_id})
        if result.sent:
            self._track("websocket_leave_room", {"roomId": room_id})
        return result

    async def vote_extension(self, room_id: str, vote: str) -> EmitResult:
        if vote not in ("yes", "no"):
            raise ValueError(f"vote must be 'yes' or 'no', got {vote!r}")
        return await self._emit_connected(
            "voteExtension",
            "vote-extension",
            {"roomId": room_id, "vote": vote},
            {"roomId": room_id},
        )

    async def join_matching(self) -> EmitResult:
        result = await self._emit_connected("joinMatching", "matching-join")
        if result.sent:
            self._track("websocket_join_matching", {})
        return result

    async def leave_matching(self) -> EmitResult:
        result = await self._emit_if_connected("leaveMatching", "matching-leave")
        if result.sent:
            self._track("websocket_leave_matching", {})
        return result

    async def request_matching_status(self) -> EmitResult:
        return await self._emit_connected("getMatchingStatus", "matching-status")
