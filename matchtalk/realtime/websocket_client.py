"""
Realtime Connection Manager

Features:
- Token-authenticated handshake with timeout detection
- Exponential backoff reconnection through a single timer handle
- Listener registration that survives reconnects
- Connection quality telemetry and crash reporting
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from matchtalk.adapters.interceptors import EventSink
from matchtalk.core.error_tracking import ErrorTracker, Severity
from matchtalk.core.exceptions import (
    ConnectionTimeoutError,
    NoTokenError,
    NotConnectedError,
    RealtimeConnectionError,
    RealtimeError,
)
from matchtalk.core.resilience import backoff_delay
from matchtalk.core.storage import TokenStore
from matchtalk.realtime.listeners import ListenerRegistry
from matchtalk.realtime.transport import (
    REASON_SERVER_DISCONNECT,
    REASON_TRANSPORT_CLOSE,
    Handler,
    RealtimeTransport,
    WebSocketTransport,
)

logger = logging.getLogger(__name__)

# Disconnect reasons that trigger automatic reconnection
RECOVERABLE_REASONS = frozenset({REASON_SERVER_DISCONNECT, REASON_TRANSPORT_CLOSE})

# Fraction of connection_timeout after which a handshake is declared failed
TIMEOUT_CHECK_RATIO = 0.75

TransportFactory = Callable[[str], RealtimeTransport]


class ConnectionState(Enum):
    """Realtime connection states."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    RECONNECTING = auto()


def describe_connection_error(message: str, url: str) -> str:
    """User-facing text for a handshake error message."""
    if "Authentication" in message or "token" in message:
        return "Authentication failed. Please sign in again."
    if any(
        marker in message
        for marker in ("ECONNREFUSED", "Connection refused", "Failed to fetch", "xhr poll error")
    ):
        return (
            f"Cannot reach the realtime server. Make sure the backend is running. URL: {url}"
        )
    return f"Realtime connection error: {message}"


class RealtimeConnectionManager:
    """
    Owns one logical realtime connection.

    Example:
        manager = RealtimeConnectionManager(tokens, url="wss://api.example.com/ws")
        manager.on("room-message", handle_message)
        await manager.connect()
        await manager.emit("join-room", {"roomId": "r1"})
    """

    def __init__(
        self,
        token_store: TokenStore,
        *,
        url: str = "ws://localhost:4000/ws",
        transport_factory: Optional[TransportFactory] = None,
        tracker: Optional[ErrorTracker] = None,
        events: Optional[EventSink] = None,
        connection_timeout: float = 20.0,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        max_reconnect_attempts: int = 5,
        status_poll_interval: float = 0.1,
    ):
        """
        Initialize the connection manager.

        Args:
            token_store: Auth token source for the handshake
            url: Realtime endpoint
            transport_factory: Builds a transport for a token
            tracker: Crash reporting facade
            events: Telemetry sink for connection events
            connection_timeout: Handshake timeout (seconds)
            reconnect_delay: Base reconnect delay (seconds)
            max_reconnect_delay: Reconnect delay cap (seconds)
            max_reconnect_attempts: Attempts before giving up
            status_poll_interval: Connected-status polling period (seconds)
        """
        self.tokens = token_store
        self.url = url
        self._factory = transport_factory or (
            lambda token: WebSocketTransport(url, token, open_timeout=connection_timeout)
        )
        self.tracker = tracker or ErrorTracker()
        self.events = events
        self.connection_timeout = connection_timeout
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.status_poll_interval = status_poll_interval

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[RealtimeTransport] = None
        self._listeners = ListenerRegistry()
        self._reconnect_attempts = 0
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._background: Set[asyncio.Task] = set()

        # Statistics
        self._stats: Dict[str, Any] = {
            "connects": 0,
            "connect_failures": 0,
            "reconnects_scheduled": 0,
            "last_reconnect_delay": None,
        }

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return (
            self._state == ConnectionState.CONNECTED
            and self._transport is not None
            and self._transport.connected
        )

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_timer is not None

    @property
    def transport(self) -> Optional[RealtimeTransport]:
        return self._transport

    @property
    def listeners(self) -> ListenerRegistry:
        return self._listeners

    @property
    def stats(self) -> Dict[str, Any]:
        """Get connection statistics."""
        return {
            **self._stats,
            "state": self._state.name,
            "reconnect_attempts": self._reconnect_attempts,
        }

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug(f"[WebSocket] {self._state.name} -> {state.name}")
        self._state = state

    def _track(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.track_nowait(event_type, data)
        except Exception as e:
            logger.debug(f"[WebSocket] Failed to track {event_type}: {e}")

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def connect(self) -> RealtimeTransport:
        """
        Establish the connection. Concurrent calls share one attempt.

        Raises:
            NoTokenError: No token stored; no transport is created
            RealtimeConnectionError: Transport reported a connection error
            ConnectionTimeoutError: Handshake did not complete in time
        """
        return await self._connect_shared(from_timer=False)

    async def _connect_shared(self, *, from_timer: bool) -> RealtimeTransport:
        if self.is_connected:
            logger.debug("[WebSocket] Already connected")
            return self._transport

        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self._connect(from_timer))
        return await asyncio.shield(self._connect_task)

    async def _connect(self, from_timer: bool) -> RealtimeTransport:
        generation = self._generation
        token = await self.tokens.get_token()
        self._check_current(generation)
        if not token:
            raise NoTokenError("No authentication token available")

        await self._teardown_transport()
        self._check_current(generation)

        logger.info("[WebSocket] Connecting to %s", self.url)
        self._set_state(ConnectionState.CONNECTING)
        transport = self._factory(token)
        self._transport = transport
        self._bind_lifecycle(transport)

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        def on_connect(*_args: Any) -> None:
            if not outcome.done():
                outcome.set_result(("connect", None))

        def on_connect_error(error: Any = None, *_args: Any) -> None:
            if not outcome.done():
                outcome.set_result(("error", error))

        transport.on("connect", on_connect)
        transport.on("connect_error", on_connect_error)
        started = loop.time()
        try:
            try:
                await transport.connect()
            except Exception as e:
                kind, error = "error", e
            else:
                kind, error = await self._await_handshake(transport, outcome)
        finally:
            transport.off("connect", on_connect)
            transport.off("connect_error", on_connect_error)

        if generation != self._generation:
            kind = "aborted"
        if kind == "error":
            await self._handshake_failed(error, count_attempt=not from_timer)
        elif kind == "timeout":
            await self._handshake_timed_out()
        elif kind == "aborted":
            raise RealtimeConnectionError("Connection attempt aborted")

        self._on_connected(transport, (loop.time() - started) * 1000)
        return transport

    def _check_current(self, generation: int) -> None:
        if generation != self._generation:
            raise RealtimeConnectionError("Connection attempt aborted")

    async def _await_handshake(
        self, transport: RealtimeTransport, outcome: asyncio.Future
    ) -> Tuple[str, Any]:
        """Wait for a connect event, a connected status, an error or the timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.connection_timeout * TIMEOUT_CHECK_RATIO

        while True:
            if outcome.done():
                return outcome.result()
            if transport is not self._transport:
                return ("aborted", None)
            if transport.connected:
                logger.info("[WebSocket] Connected (detected via status check)")
                return ("connect", None)

            remaining = deadline - loop.time()
            if remaining <= 0:
                # Final liveness check before declaring a timeout
                if transport.connected:
                    logger.info("[WebSocket] Connected (detected before timeout)")
                    return ("connect", None)
                return ("timeout", None)

            await asyncio.wait({outcome}, timeout=min(self.status_poll_interval, remaining))

    def _on_connected(self, transport: RealtimeTransport, connection_ms: float) -> None:
        previous_attempts = self._reconnect_attempts
        self._reconnect_attempts = 0
        self._stats["connects"] += 1
        self._set_state(ConnectionState.CONNECTED)
        attached = self._listeners.attach_pending(transport)
        logger.info(f"[WebSocket] Connected successfully ({attached} listeners attached)")
        self._track(
            "websocket_connection_quality",
            {
                "connectionTime": int(connection_ms),
                "reconnectAttempts": previous_attempts,
                "success": True,
            },
        )

    async def _handshake_failed(self, error: Any, *, count_attempt: bool) -> None:
        message = str(error) if error is not None else "unknown error"
        logger.error(f"[WebSocket] Connection error: {message}")
        self._stats["connect_failures"] += 1

        cause = error if isinstance(error, BaseException) else None
        failure = RealtimeConnectionError(
            describe_connection_error(message, self.url),
            details={"url": self.url, "error": message},
            cause=cause,
        )
        self.tracker.capture_exception(
            cause or failure,
            {
                "component": "WebSocketClient",
                "action": "connect_error",
                "url": self.url,
                "reconnectAttempts": self._reconnect_attempts,
            },
            Severity.HIGH,
        )
        self.tracker.add_breadcrumb(
            f"WebSocket connection error: {message}",
            "websocket",
            "error",
            {"url": self.url, "errorMessage": message},
        )
        if count_attempt:
            self._reconnect_attempts += 1

        await self._teardown_transport()
        self._set_state(ConnectionState.DISCONNECTED)
        raise failure

    async def _handshake_timed_out(self) -> None:
        seconds = self.connection_timeout
        logger.error(f"[WebSocket] Connection timeout after {seconds} seconds")
        self._stats["connect_failures"] += 1

        await self._teardown_transport()
        self._set_state(ConnectionState.DISCONNECTED)

        failure = ConnectionTimeoutError(
            f"Realtime connection timed out after {seconds} seconds. URL: {self.url}",
            details={"url": self.url, "timeout_seconds": seconds},
        )
        self.tracker.capture_exception(
            failure,
            {
                "component": "WebSocketClient",
                "action": "connection_timeout",
                "url": self.url,
                "timeoutSeconds": seconds,
            },
            Severity.HIGH,
        )
        self.tracker.add_breadcrumb(
            f"WebSocket connection timeout: {seconds}s",
            "websocket",
            "error",
            {"url": self.url, "timeoutSeconds": seconds},
        )
        raise failure

    # ------------------------------------------------------------------
    # Transport lifecycle
    # ------------------------------------------------------------------

    def _bind_lifecycle(self, transport: RealtimeTransport) -> None:
        def on_disconnect(reason: str = "", *_args: Any) -> None:
            if transport is self._transport:
                self._handle_disconnect(reason)

        def on_reconnect_attempt(attempt: int = 0, *_args: Any) -> None:
            if transport is self._transport:
                self._handle_reconnect_attempt(attempt)

        def on_reconnect(attempt: int = 0, *_args: Any) -> None:
            if transport is self._transport:
                self._handle_transport_reconnect(transport, attempt)

        def on_reconnect_failed(*_args: Any) -> None:
            if transport is self._transport:
                self._give_up()

        transport.on("disconnect", on_disconnect)
        transport.on("reconnect_attempt", on_reconnect_attempt)
        transport.on("reconnect", on_reconnect)
        transport.on("reconnect_failed", on_reconnect_failed)

    def _handle_disconnect(self, reason: str) -> None:
        logger.info(f"[WebSocket] Disconnected: {reason}")
        if self._state != ConnectionState.CONNECTED:
            return
        if reason in RECOVERABLE_REASONS:
            self._schedule_reconnect()
        else:
            self._set_state(ConnectionState.DISCONNECTED)

    def _handle_reconnect_attempt(self, attempt: int) -> None:
        logger.info(f"[WebSocket] Reconnection attempt {attempt}")
        self._reconnect_attempts = attempt
        self._set_state(ConnectionState.RECONNECTING)
        self._track(
            "websocket_reconnect_attempt",
            {"attemptNumber": attempt, "maxAttempts": self.max_reconnect_attempts},
        )

    def _handle_transport_reconnect(self, transport: RealtimeTransport, attempt: int) -> None:
        logger.info(f"[WebSocket] Reconnected after {attempt} attempts")
        self._reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        self._listeners.attach_pending(transport)
        self._track(
            "websocket_reconnect_success",
            {"attemptNumber": attempt, "totalAttempts": attempt},
        )

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        """Arm the reconnect timer, replacing any pending one."""
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            self._give_up()
            return

        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()

        delay = backoff_delay(
            self.reconnect_delay, self._reconnect_attempts, self.max_reconnect_delay
        )
        logger.info(
            f"[WebSocket] Scheduling reconnection in {delay:.1f}s "
            f"(attempt {self._reconnect_attempts + 1}/{self.max_reconnect_attempts})"
        )
        self._set_state(ConnectionState.RECONNECTING)
        self._stats["reconnects_scheduled"] += 1
        self._stats["last_reconnect_delay"] = delay
        self._reconnect_timer = asyncio.get_running_loop().call_later(
            delay, self._fire_reconnect
        )

    def _fire_reconnect(self) -> None:
        self._reconnect_timer = None
        self._reconnect_attempts += 1
        self._spawn(self._reconnect_once())

    async def _reconnect_once(self) -> None:
        try:
            await self._connect_shared(from_timer=True)
        except Exception as e:
            logger.error(f"[WebSocket] Reconnection attempt failed: {e}")
            if self._state == ConnectionState.CONNECTED:
                return
            self._schedule_reconnect()

    def _give_up(self) -> None:
        logger.error(
            f"[WebSocket] Reconnection failed after {self.max_reconnect_attempts} attempts"
        )
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

        self._track(
            "websocket_reconnect_failed",
            {
                "maxAttempts": self.max_reconnect_attempts,
                "finalAttempt": self._reconnect_attempts,
            },
        )
        self.tracker.capture_exception(
            RealtimeError("WebSocket reconnection failed after all attempts"),
            {
                "component": "WebSocketClient",
                "action": "reconnect_failed",
                "url": self.url,
                "maxReconnectAttempts": self.max_reconnect_attempts,
            },
            Severity.HIGH,
        )
        self.tracker.add_breadcrumb(
            "WebSocket reconnection failed after all attempts",
            "websocket",
            "error",
            {"maxAttempts": self.max_reconnect_attempts},
        )
        self._reconnect_attempts = 0
        self._set_state(ConnectionState.DISCONNECTED)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    async def _teardown_transport(self) -> None:
        transport, self._transport = self._transport, None
        self._listeners.detach_all()
        if transport is None:
            return
        transport.remove_all_listeners()
        try:
            await transport.disconnect()
        except Exception as e:
            logger.debug(f"[WebSocket] Error closing transport: {e}")

    async def disconnect(self) -> None:
        """Close the connection without reconnecting. Idempotent."""
        self._generation += 1
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

        current = asyncio.current_task()
        for task in list(self._background):
            if task is not current:
                task.cancel()

        await self._teardown_transport()
        self._reconnect_attempts = 0
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("[WebSocket] Disconnected")

    async def close(self) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Emit and listeners
    # ------------------------------------------------------------------

    async def emit(self, event: str, payload: Any = None) -> None:
        """
        Send an event.

        Raises:
            NotConnectedError: Connection is not established
        """
        if not self.is_connected:
            raise NotConnectedError(f"Cannot emit '{event}': socket not connected")
        await self._transport.emit(event, payload)

    def on(self, event: str, handler: Handler) -> None:
        """
        Register a handler; it is attached whenever a transport connects.
        When nothing is connected a background connect is started.
        """
        listener = self._listeners.add(event, handler)
        if self.is_connected:
            if not listener.attached:
                self._transport.on(event, handler)
                listener.attached = True
            return

        if self._state == ConnectionState.DISCONNECTED and (
            self._connect_task is None or self._connect_task.done()
        ):
            self._spawn(self._connect_for_listener(event))

    async def _connect_for_listener(self, event: str) -> None:
        try:
            await self.connect()
        except Exception as e:
            logger.warning(
                f"[WebSocket] Connect for listener '{event}' failed, "
                f"registration kept: {e}"
            )

    def off(self, event: str, handler: Optional[Handler] = None) -> None:
        removed = self._listeners.remove(event, handler)
        if self._transport is None:
            return
        for listener in removed:
            if listener.attached:
                self._transport.off(event, listener.handler)

    def registered_events(self) -> List[str]:
        return sorted({event for event, _ in self._listeners.pending() + self._listeners.attached()})
