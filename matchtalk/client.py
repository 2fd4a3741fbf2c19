"""
Network client composition root.

Builds the HTTP client, the realtime connection manager and the
telemetry queue from one ``ClientConfig`` and wires them together:

- HTTP calls feed telemetry through ``TelemetryInterceptor``
- realtime connection events feed telemetry directly
- both read the auth token from the same ``TokenStore``
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from matchtalk.adapters.auth import AuthApi, CallbackSessionController, SessionController
from matchtalk.adapters.interceptors import TelemetryInterceptor
from matchtalk.adapters.resilient_client import ResilientHTTPClient
from matchtalk.adapters.transport import AiohttpTransport, HttpTransport
from matchtalk.analytics.api import AnalyticsApi
from matchtalk.analytics.event_queue import EventQueue
from matchtalk.analytics.navigation import NavigationPath
from matchtalk.analytics.tracker import Analytics
from matchtalk.core.config import ClientConfig, load_config
from matchtalk.core.error_tracking import CrashReporter, ErrorTracker, LoggingCrashReporter
from matchtalk.core.resilience import RetryPolicy
from matchtalk.core.storage import FileStore, KeyValueStore, MemoryStore, TokenStore
from matchtalk.core.structured_logging import set_session_id
from matchtalk.realtime.rooms import RoomChannel
from matchtalk.realtime.websocket_client import RealtimeConnectionManager, TransportFactory

logger = logging.getLogger(__name__)


class NetworkClient:
    """
    Owns every network component of the app.

    Example:
        async with NetworkClient(load_config()) as client:
            await client.http.get("/rooms")
            await client.rooms.join_room("r1")
            await client.analytics.track_screen_view("Home")
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        store: Optional[KeyValueStore] = None,
        http_transport: Optional[HttpTransport] = None,
        realtime_transport_factory: Optional[TransportFactory] = None,
        crash_reporter: Optional[CrashReporter] = None,
        session: Optional[SessionController] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or ClientConfig()
        api = self.config.api
        realtime = self.config.realtime
        analytics = self.config.analytics

        if store is None:
            store = FileStore(self.config.storage_path) if self.config.storage_path else MemoryStore()
        self.store = store
        self.tokens = TokenStore(self.store)
        self.tracker = ErrorTracker(crash_reporter or LoggingCrashReporter())
        self.session = session or CallbackSessionController()

        self.transport = http_transport or AiohttpTransport(api.base_url, timeout=api.timeout)
        self.auth = AuthApi(self.transport, refresh_path=api.refresh_path, timeout=api.timeout)

        self.events = EventQueue(
            self.store,
            enabled=analytics.enabled,
            batch_size=analytics.batch_size,
            batch_interval=analytics.batch_interval,
            max_queue_size=analytics.max_queue_size,
            enable_offline_queue=analytics.enable_offline_queue,
            load_corruption_threshold=analytics.load_corruption_threshold,
            flush_corruption_threshold=analytics.flush_corruption_threshold,
        )

        self.http = ResilientHTTPClient(
            self.transport,
            token_store=self.tokens,
            refresher=self.auth,
            session=self.session,
            tracker=self.tracker,
            retry_policy=RetryPolicy(
                max_attempts=api.retry_attempts,
                base_delay=api.retry_delay,
                max_delay=api.max_retry_delay,
            ),
            interceptors=[
                TelemetryInterceptor(self.events, self.tracker, skip_paths=(analytics.track_path,))
            ],
            timeout=api.timeout,
            health_path=api.health_path,
            health_timeout=api.health_timeout,
            refresh_path=api.refresh_path,
            sleep=sleep,
        )
        self.events.transmitter = AnalyticsApi(self.http, track_path=analytics.track_path)

        self.analytics = Analytics(
            self.events,
            navigation=NavigationPath(
                self.store,
                self.events,
                max_entries=analytics.max_navigation_path,
                report_interval=analytics.navigation_report_interval,
                session_id=self.events.session_id,
            ),
        )

        self.realtime = RealtimeConnectionManager(
            self.tokens,
            url=realtime.url,
            transport_factory=realtime_transport_factory,
            tracker=self.tracker,
            events=self.events,
            connection_timeout=realtime.connection_timeout,
            reconnect_delay=realtime.reconnect_delay,
            max_reconnect_delay=realtime.max_reconnect_delay,
            max_reconnect_attempts=realtime.max_reconnect_attempts,
            status_poll_interval=realtime.status_poll_interval,
        )
        self.rooms = RoomChannel(self.realtime, tracker=self.tracker, events=self.events)
        self._started = False

    @classmethod
    def from_config_file(cls, path: Optional[str | Path] = None, **kwargs) -> "NetworkClient":
        return cls(load_config(path), **kwargs)

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Restore persisted telemetry and start background timers."""
        if self._started:
            return
        set_session_id(self.events.session_id)
        await self.analytics.start()
        self._started = True
        logger.info(f"[NetworkClient] Started ({self.config})")

    async def close(self) -> None:
        """Disconnect realtime, stop telemetry timers and close HTTP."""
        await self.realtime.disconnect()
        await self.analytics.close()
        await self.http.close()
        self._started = False
        logger.info("[NetworkClient] Closed")

    async def __aenter__(self) -> "NetworkClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def login(self, token: str) -> None:
        await self.tokens.set_token(token)

    async def logout(self) -> None:
        """Clear the token and drop the realtime connection."""
        await self.tokens.clear_token()
        await self.realtime.disconnect()
