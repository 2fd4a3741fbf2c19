"""
Realtime connection layer

- Token-authenticated websocket transport with JSON event frames
- Connection manager with timeout detection and backoff reconnection
- Best-effort room and matching emits
"""

from matchtalk.realtime.listeners import ListenerRegistry
from matchtalk.realtime.rooms import EmitResult, EmitStatus, RoomChannel
from matchtalk.realtime.transport import RealtimeTransport, WebSocketTransport
from matchtalk.realtime.websocket_client import (
    ConnectionState,
    RealtimeConnectionManager,
    describe_connection_error,
)

__all__ = [
    "ConnectionState",
    "EmitResult",
    "EmitStatus",
    "ListenerRegistry",
    "RealtimeConnectionManager",
    "RealtimeTransport",
    "RoomChannel",
    "WebSocketTransport",
    "describe_connection_error",
]
