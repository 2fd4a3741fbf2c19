"""
MatchTalk Test Configuration
- In-memory collaborators (store, transports, sinks)
- No network access
"""

import asyncio
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from matchtalk.adapters.transport import TransportResponse
from matchtalk.core.error_tracking import ErrorTracker, LoggingCrashReporter
from matchtalk.core.exceptions import NotConnectedError
from matchtalk.core.storage import MemoryStore, TokenStore
from matchtalk.realtime.transport import EventEmitter


def ok(data: Any = None, status: int = 200) -> TransportResponse:
    """Successful envelope response."""
    return TransportResponse(status=status, body={"success": True, "data": data})


def fail(status: int, error: Optional[str] = None, headers: Optional[Dict[str, str]] = None) -> TransportResponse:
    body = {"success": False, "error": error} if error else None
    return TransportResponse(status=status, headers=headers or {}, body=body)


class FakeHttpTransport:
    """
    Scripted HttpTransport.

    Responses are consumed per URL first (``route``), then from the
    shared queue (``queue``); when both are empty ``default`` is returned.
    Exceptions in the script are raised instead of returned.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.default = ok()
        self.gate: Optional[asyncio.Event] = None
        self.closed = False
        self._queue: List[Any] = []
        self._routes: Dict[str, List[Any]] = {}

    def queue(self, *items: Any) -> None:
        self._queue.extend(items)

    def route(self, url: str, *items: Any) -> None:
        self._routes.setdefault(url, []).extend(items)

    def calls_to(self, url: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["url"] == url]

    async def send(self, method, url, *, json=None, headers=None, timeout=None):
        self.calls.append(
            {"method": method, "url": url, "json": json, "headers": dict(headers or {}), "timeout": timeout}
        )
        if self.gate is not None:
            await self.gate.wait()

        if self._routes.get(url):
            item = self._routes[url].pop(0)
        elif self._queue:
            item = self._queue.pop(0)
        else:
            item = self.default

        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self):
        self.closed = True


class FakeRealtimeTransport(EventEmitter):
    """
    Scripted RealtimeTransport.

    behavior:
        connect: fires ``connect`` during ``connect()``
        status:  becomes connected without firing ``connect``
        error:   fires ``connect_error`` with ``error_message``
        silent:  never connects
    """

    def __init__(self, token: str, behavior: str = "connect", error_message: str = "boom"):
        super().__init__()
        self.token = token
        self.behavior = behavior
        self.error_message = error_message
        self.emitted: List[Any] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self._connected = False
        self._sid: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def sid(self) -> Optional[str]:
        return self._sid

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.behavior == "connect":
            self._connected = True
            self._sid = "sid-1"
            self.emit_local("connect")
        elif self.behavior == "status":
            self._connected = True
        elif self.behavior == "error":
            self.emit_local("connect_error", Exception(self.error_message))

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    async def emit(self, event: str, data: Any = None) -> None:
        if not self._connected:
            raise NotConnectedError("not connected")
        self.emitted.append((event, data))

    def server_disconnect(self, reason: str = "io server disconnect") -> None:
        self._connected = False
        self.emit_local("disconnect", reason)


class FakeTransportFactory:
    """Builds FakeRealtimeTransports; the last behavior repeats."""

    def __init__(self, *behaviors: str, error_message: str = "boom"):
        self.behaviors = list(behaviors) or ["connect"]
        self.error_message = error_message
        self.created: List[FakeRealtimeTransport] = []

    def __call__(self, token: str) -> FakeRealtimeTransport:
        behavior = self.behaviors.pop(0) if len(self.behaviors) > 1 else self.behaviors[0]
        transport = FakeRealtimeTransport(token, behavior, self.error_message)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeRealtimeTransport:
        return self.created[-1]


class RecordingSink:
    """Telemetry sink recording ``track`` / ``track_nowait`` calls."""

    def __init__(self):
        self.events: List[Any] = []

    def track_nowait(self, event_type, data=None, metadata=None):
        self.events.append((event_type, data or {}))

    async def track(self, event_type, data=None, metadata=None):
        self.events.append((event_type, data or {}))

    def types(self) -> List[str]:
        return [event_type for event_type, _ in self.events]

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [data for t, data in self.events if t == event_type]


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tokens(store):
    return TokenStore(store)


@pytest.fixture
def http_transport():
    return FakeHttpTransport()


@pytest.fixture
def reporter():
    return MagicMock(spec=LoggingCrashReporter)


@pytest.fixture
def tracker(reporter):
    return ErrorTracker(reporter)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_factory():
    return FakeTransportFactory


@pytest.fixture
def responses():
    """Response builders: ``responses.ok(data)``, ``responses.fail(status)``."""
    return MagicMock(ok=ok, fail=fail)
