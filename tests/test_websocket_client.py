"""
Tests for the realtime connection manager.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from matchtalk.core.error_tracking import Severity
from matchtalk.core.exceptions import (
    ConnectionTimeoutError,
    NoTokenError,
    NotConnectedError,
    RealtimeConnectionError,
)
from matchtalk.realtime.websocket_client import (
    ConnectionState,
    RealtimeConnectionManager,
    describe_connection_error,
)


async def settle(rounds: int = 20):
    for _ in range(rounds):
        await asyncio.sleep(0)


class TimerRecorder:
    """Stands in for ``loop.call_later``; timers fire only when told to."""

    def __init__(self):
        self.scheduled = []
        self._patcher = None

    def install(self):
        self._patcher = patch.object(asyncio.get_running_loop(), "call_later", side_effect=self)
        self._patcher.start()

    def uninstall(self):
        if self._patcher is not None:
            self._patcher.stop()
            self._patcher = None

    def __call__(self, delay, callback, *args):
        handle = MagicMock()
        self.scheduled.append((delay, callback, handle))
        return handle

    @property
    def delays(self):
        return [delay for delay, _, _ in self.scheduled]

    async def fire_last(self):
        _, callback, _ = self.scheduled[-1]
        callback()
        await settle()


@pytest.fixture
def timers():
    """Call ``timers.install()`` from inside the test to capture reconnect timers."""
    recorder = TimerRecorder()
    yield recorder
    recorder.uninstall()


def make_manager(tokens, factory, tracker=None, sink=None, **kwargs):
    return RealtimeConnectionManager(
        tokens,
        url="ws://test/ws",
        transport_factory=factory,
        tracker=tracker,
        events=sink,
        **kwargs,
    )


class TestDescribeConnectionError:
    """Tests for user-facing handshake error text."""

    def test_auth(self):
        assert "sign in" in describe_connection_error("Authentication error", "ws://x")
        assert "sign in" in describe_connection_error("invalid token", "ws://x")

    def test_unreachable(self):
        text = describe_connection_error("connect ECONNREFUSED 127.0.0.1:4000", "ws://x")
        assert "Cannot reach" in text
        assert "ws://x" in text

    def test_other(self):
        assert describe_connection_error("boom", "ws://x") == "Realtime connection error: boom"


class TestConnect:
    """Tests for establishing the connection."""

    @pytest.mark.asyncio
    async def test_no_token_creates_no_transport(self, tokens, make_factory):
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)

        with pytest.raises(NoTokenError):
            await manager.connect()

        assert factory.created == []
        assert manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_event(self, tokens, make_factory, sink):
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory, sink=sink)

        transport = await manager.connect()

        assert transport is factory.last
        assert transport.token == "abc"
        assert manager.state == ConnectionState.CONNECTED
        assert manager.is_connected
        quality = sink.of_type("websocket_connection_quality")[0]
        assert quality["success"] is True
        assert quality["reconnectAttempts"] == 0
        assert quality["connectionTime"] >= 0

    @pytest.mark.asyncio
    async def test_connected_status_without_event(self, tokens, make_factory):
        await tokens.set_token("abc")
        manager = make_manager(tokens, make_factory("status"), status_poll_interval=0.01)

        await manager.connect()

        assert manager.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_already_connected_returns_transport(self, tokens, make_factory):
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)

        first = await manager.connect()
        second = await manager.connect()

        assert first is second
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_attempt(self, tokens, make_factory):
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)

        results = await asyncio.gather(manager.connect(), manager.connect(), manager.connect())

        assert len(factory.created) == 1
        assert results[0] is results[1] is results[2]

    @pytest.mark.asyncio
    async def test_connect_error(self, tokens, make_factory, tracker, reporter):
        await tokens.set_token("abc")
        factory = make_factory("error", error_message="connect ECONNREFUSED")
        manager = make_manager(tokens, factory, tracker)

        with pytest.raises(RealtimeConnectionError) as exc_info:
            await manager.connect()

        assert "Cannot reach the realtime server" in exc_info.value.message
        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.transport is None
        assert manager.reconnect_attempts == 1
        assert factory.last.disconnect_calls == 1
        args = reporter.capture_exception.call_args.args
        assert str(args[0]) == "connect ECONNREFUSED"
        assert args[1]["action"] == "connect_error"
        assert args[2] == Severity.HIGH
        reporter.add_breadcrumb.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_raises(self, tokens, make_factory):
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)
        original = factory.__call__

        def broken_factory(token):
            transport = original(token)
            transport.connect = MagicMock(side_effect=OSError("socket exploded"))
            return transport

        manager._factory = broken_factory

        with pytest.raises(RealtimeConnectionError, match="socket exploded"):
            await manager.connect()

    @pytest.mark.asyncio
    async def test_timeout(self, tokens, make_factory, tracker, reporter):
        await tokens.set_token("abc")
        factory = make_factory("silent")
        manager = make_manager(
            tokens, factory, tracker, connection_timeout=0.04, status_poll_interval=0.01
        )

        with pytest.raises(ConnectionTimeoutError):
            await manager.connect()

        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.transport is None
        assert factory.last.disconnect_calls == 1
        args = reporter.capture_exception.call_args.args
        assert isinstance(args[0], ConnectionTimeoutError)
        assert args[1]["action"] == "connection_timeout"


class TestReconnect:
    """Tests for reconnection scheduling."""

    @pytest.mark.asyncio
    async def test_server_disconnect_schedules_one_timer(self, tokens, make_factory, timers):
        timers.install()
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)
        await manager.connect()

        factory.last.server_disconnect("io server disconnect")

        assert manager.state == ConnectionState.RECONNECTING
        assert manager.reconnect_scheduled
        assert timers.delays == [1.0]

        # Already reconnecting: a second disconnect does not arm another timer
        factory.last.server_disconnect("transport close")
        assert timers.delays == [1.0]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_client_disconnect_not_recovered(self, tokens, make_factory, timers):
        timers.install()
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)
        await manager.connect()

        factory.last.server_disconnect("io client disconnect")

        assert manager.state == ConnectionState.DISCONNECTED
        assert timers.delays == []

    @pytest.mark.asyncio
    async def test_backoff_then_give_up(self, tokens, make_factory, timers, tracker, reporter, sink):
        timers.install()
        await tokens.set_token("abc")
        factory = make_factory("connect", "error")
        manager = make_manager(tokens, factory, tracker, sink)
        await manager.connect()

        factory.last.server_disconnect()
        for _ in range(5):
            await timers.fire_last()

        assert timers.delays == [1, 2, 4, 8, 16]
        assert len(factory.created) == 6
        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.reconnect_attempts == 0
        assert not manager.reconnect_scheduled
        failed = sink.of_type("websocket_reconnect_failed")
        assert failed == [{"maxAttempts": 5, "finalAttempt": 5}]
        actions = [c.args[1]["action"] for c in reporter.capture_exception.call_args_list]
        assert actions.count("reconnect_failed") == 1

    @pytest.mark.asyncio
    async def test_backoff_capped(self, tokens, make_factory, timers):
        timers.install()
        await tokens.set_token("abc")
        factory = make_factory("connect", "error")
        manager = make_manager(tokens, factory, max_reconnect_attempts=8)
        await manager.connect()

        factory.last.server_disconnect()
        for _ in range(7):
            await timers.fire_last()

        assert timers.delays == [1, 2, 4, 8, 16, 30, 30, 30]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_success_resets_attempts(self, tokens, make_factory, timers, sink):
        timers.install()
        await tokens.set_token("abc")
        factory = make_factory("connect", "error", "connect")
        manager = make_manager(tokens, factory, sink=sink)
        await manager.connect()

        factory.last.server_disconnect()
        await timers.fire_last()
        assert manager.reconnect_attempts == 1
        await timers.fire_last()

        assert manager.state == ConnectionState.CONNECTED
        assert manager.reconnect_attempts == 0
        assert timers.delays == [1, 2]
        assert sink.of_type("websocket_connection_quality")[-1]["reconnectAttempts"] == 2

    @pytest.mark.asyncio
    async def test_stale_transport_events_ignored(self, tokens, make_factory, timers):
        timers.install()
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)
        await manager.connect()
        old = factory.last

        old.server_disconnect()
        await timers.fire_last()
        assert factory.last is not old
        assert manager.state == ConnectionState.CONNECTED

        old.emit_local("disconnect", "io server disconnect")
        assert manager.state == ConnectionState.CONNECTED
        assert timers.delays == [1]

    @pytest.mark.asyncio
    async def test_transport_reconnect_events(self, tokens, make_factory, sink):
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory, sink=sink)
        await manager.connect()

        factory.last.emit_local("reconnect_attempt", 2)
        assert manager.state == ConnectionState.RECONNECTING
        assert manager.reconnect_attempts == 2

        factory.last.emit_local("reconnect", 2)
        assert manager.state == ConnectionState.CONNECTED
        assert manager.reconnect_attempts == 0
        assert sink.types()[-2:] == ["websocket_reconnect_attempt", "websocket_reconnect_success"]

        factory.last.emit_local("reconnect_failed")
        assert manager.state == ConnectionState.DISCONNECTED


class TestDisconnect:
    """Tests for disconnect."""

    @pytest.mark.asyncio
    async def test_disconnect_idempotent(self, tokens, make_factory, timers):
        timers.install()
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)
        await manager.connect()
        factory.last.server_disconnect()
        _, _, handle = timers.scheduled[-1]

        await manager.disconnect()
        await manager.disconnect()

        handle.cancel.assert_called_once()
        assert factory.last.disconnect_calls == 1
        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.transport is None
        assert not manager.reconnect_scheduled

    @pytest.mark.asyncio
    async def test_disconnect_aborts_pending_connect(self, tokens, make_factory):
        release = asyncio.Event()

        async def slow_token():
            await release.wait()
            return "abc"

        factory = make_factory("connect")
        manager = make_manager(tokens, factory)

        with patch.object(tokens, "get_token", side_effect=slow_token):
            connecting = asyncio.ensure_future(manager.connect())
            await settle()
            release.set()
            await manager.disconnect()

            with pytest.raises(RealtimeConnectionError, match="aborted"):
                await connecting

        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.transport is None
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_disconnect_during_handshake(self, tokens, make_factory):
        await tokens.set_token("abc")
        factory = make_factory("silent")
        manager = make_manager(tokens, factory, connection_timeout=5, status_poll_interval=0.01)

        connecting = asyncio.ensure_future(manager.connect())
        await settle()
        await manager.disconnect()

        with pytest.raises(RealtimeConnectionError, match="aborted"):
            await connecting
        assert manager.state == ConnectionState.DISCONNECTED
        assert factory.last.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_disconnect_never_connected(self, tokens, make_factory):
        manager = make_manager(tokens, make_factory())
        await manager.close()
        assert manager.state == ConnectionState.DISCONNECTED


class TestEmitAndListeners:
    """Tests for emit and listener registration."""

    @pytest.mark.asyncio
    async def test_emit_not_connected(self, tokens, make_factory):
        manager = make_manager(tokens, make_factory())
        with pytest.raises(NotConnectedError):
            await manager.emit("join-room", {"roomId": "r1"})

    @pytest.mark.asyncio
    async def test_emit_connected(self, tokens, make_factory):
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)
        await manager.connect()

        await manager.emit("join-room", {"roomId": "r1"})

        assert factory.last.emitted == [("join-room", {"roomId": "r1"})]

    @pytest.mark.asyncio
    async def test_on_starts_connect(self, tokens, make_factory):
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)
        handler = MagicMock()

        manager.on("match-found", handler)
        await settle()

        assert manager.is_connected
        factory.last.emit_local("match-found", {"roomId": "r1"})
        handler.assert_called_once_with({"roomId": "r1"})
        assert manager.registered_events() == ["match-found"]

    @pytest.mark.asyncio
    async def test_on_without_token_keeps_registration(self, tokens, make_factory):
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)

        manager.on("match-found", MagicMock())
        await settle()

        assert factory.created == []
        assert manager.listeners.pending()[0][0] == "match-found"

    @pytest.mark.asyncio
    async def test_listeners_survive_reconnect(self, tokens, make_factory, timers):
        timers.install()
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)
        await manager.connect()
        handler = MagicMock()
        manager.on("room-message", handler)
        assert factory.last.listener_count("room-message") == 1

        old = factory.last
        old.server_disconnect()
        await timers.fire_last()

        assert old.listener_count("room-message") == 0
        factory.last.emit_local("room-message", "hi")
        handler.assert_called_once_with("hi")

    @pytest.mark.asyncio
    async def test_off_detaches(self, tokens, make_factory):
        await tokens.set_token("abc")
        factory = make_factory("connect")
        manager = make_manager(tokens, factory)
        await manager.connect()
        handler = MagicMock()
        manager.on("x", handler)

        manager.off("x", handler)

        assert factory.last.listener_count("x") == 0
        assert manager.registered_events() == []
