"""
Realtime Transport

Event-emitter style socket used by ``RealtimeConnectionManager``.
``WebSocketTransport`` speaks JSON frames ``{"event": ..., "data": ...}``
over ``websockets`` and reports lifecycle events:

- ``connect``
- ``connect_error`` (error)
- ``disconnect`` (reason): ``io server disconnect``, ``transport close``
  or ``io client disconnect``
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, runtime_checkable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed

from matchtalk.core.exceptions import NotConnectedError

logger = logging.getLogger(__name__)

# Disconnect reasons
REASON_SERVER_DISCONNECT = "io server disconnect"
REASON_TRANSPORT_CLOSE = "transport close"
REASON_CLIENT_DISCONNECT = "io client disconnect"

Handler = Callable[..., Any]


@runtime_checkable
class RealtimeTransport(Protocol):
    @property
    def connected(self) -> bool: ...

    @property
    def sid(self) -> Optional[str]: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def emit(self, event: str, data: Any = None) -> None: ...

    def on(self, event: str, handler: Handler) -> None: ...

    def off(self, event: str, handler: Optional[Handler] = None) -> None: ...

    def remove_all_listeners(self) -> None: ...


class EventEmitter:
    """
    Minimal event emitter. Coroutine handlers are scheduled as tasks;
    handler failures are logged.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}
        self._handler_tasks: Set[asyncio.Task] = set()

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Optional[Handler] = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(event, None)

    def remove_all_listeners(self) -> None:
        self._handlers.clear()

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def emit_local(self, event: str, *args: Any) -> None:
        """Invoke every handler registered for ``event``."""
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
            except Exception as e:
                logger.error(f"[Realtime] Handler for '{event}' failed: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[Realtime] Async handler failed: {task.exception()}")


def with_token(url: str, token: str) -> str:
    """Append ``token`` as a query parameter."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "token"]
    query.append(("token", token))
    return urlunsplit(parts._replace(query=urlencode(query)))


class WebSocketTransport(EventEmitter):
    """
    ``RealtimeTransport`` over a single websocket.

    ``connect()`` returns immediately; the handshake and receive loop
    run in a background task and report through lifecycle events.
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        open_timeout: Optional[float] = 20.0,
        close_timeout: float = 10.0,
    ):
        super().__init__()
        self.url = url
        self._token = token
        self.open_timeout = open_timeout
        self.close_timeout = close_timeout
        self._ws = None
        self._sid: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def sid(self) -> Optional[str]:
        return self._sid

    async def connect(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        logger.info("[WebSocket] Connecting to %s", self.url)
        try:
            ws = await websockets.connect(
                with_token(self.url, self._token),
                open_timeout=self.open_timeout,
                close_timeout=self.close_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[WebSocket] Connection failed: %s", e)
            self.emit_local("connect_error", e)
            return

        self._ws = ws
        self._sid = uuid.uuid4().hex
        logger.info("[WebSocket] Connected successfully")
        self.emit_local("connect")

        reason = REASON_TRANSPORT_CLOSE
        try:
            async for message in ws:
                self._dispatch(message)
            reason = REASON_CLIENT_DISCONNECT if self._closing else REASON_SERVER_DISCONNECT
        except ConnectionClosed as e:
            logger.warning("[WebSocket] Connection closed abnormally: %s", e)
            reason = REASON_CLIENT_DISCONNECT if self._closing else REASON_TRANSPORT_CLOSE
        except Exception as e:
            logger.error("[WebSocket] Receive loop failed: %s", e)
            reason = REASON_CLIENT_DISCONNECT if self._closing else REASON_TRANSPORT_CLOSE
            try:
                await ws.close()
            except Exception as close_error:
                logger.debug("[WebSocket] Error closing connection: %s", close_error)
        finally:
            self._ws = None
            self._sid = None

        logger.info("[WebSocket] Disconnected: %s", reason)
        self.emit_local("disconnect", reason)

    def _dispatch(self, message: Any) -> None:
        if isinstance(message, bytes):
            try:
                message = message.decode("utf-8")
            except UnicodeDecodeError:
                logger.debug("[WebSocket] Undecodable binary frame dropped")
                return
        try:
            frame = json.loads(message)
        except json.JSONDecodeError:
            logger.debug("[WebSocket] Non-JSON message: %s", message[:100])
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            logger.debug("[WebSocket] Frame without event name dropped")
            return
        self.emit_local(frame["event"], frame.get("data"))

    async def emit(self, event: str, data: Any = None) -> None:
        if self._ws is None:
            raise NotConnectedError(f"Cannot emit '{event}': socket not connected")
        await self._ws.send(json.dumps({"event": event, "data": data}, default=str))

    async def disconnect(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("[WebSocket] Error closing connection: %s", e)
        task = self._task
        if task is not None and not task.done():
            if ws is None:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
