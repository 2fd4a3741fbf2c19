"""
Request interceptors.

Interceptors observe every transport call made by ``ResilientHTTPClient``.
Hooks run in registration order; a failing hook is logged and skipped.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple

from matchtalk.adapters.transport import TransportResponse
from matchtalk.core.error_tracking import ErrorTracker
from matchtalk.core.exceptions import HttpError, NetworkError

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """Per-attempt request metadata handed to interceptors."""

    method: str
    url: str
    request_id: str
    attempt: int = 1
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def duration_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)


class Interceptor:
    """Base class; override the hooks you need."""

    def on_request(self, ctx: RequestContext) -> None:
        pass

    def on_response(self, ctx: RequestContext, response: TransportResponse) -> None:
        pass

    def on_error(self, ctx: RequestContext, error: HttpError) -> None:
        pass

    def on_network_error(self, ctx: RequestContext, error: NetworkError) -> None:
        pass


class EventSink(Protocol):
    def track_nowait(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None: ...


class TelemetryInterceptor(Interceptor):
    """
    Emits crash-sink breadcrumbs and ``api_*`` analytics events.

    Requests to ``skip_paths`` (the analytics endpoint) are ignored so
    that flushing telemetry does not generate more telemetry.
    """

    def __init__(
        self,
        events: Optional[EventSink] = None,
        tracker: Optional[ErrorTracker] = None,
        *,
        skip_paths: Tuple[str, ...] = ("/analytics/track",),
    ):
        self.events = events
        self.tracker = tracker or ErrorTracker()
        self.skip_paths = skip_paths

    def _skipped(self, ctx: RequestContext) -> bool:
        return any(path in ctx.url for path in self.skip_paths)

    def _track(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.events is not None:
            self.events.track_nowait(event_type, data)

    def on_request(self, ctx: RequestContext) -> None:
        if self._skipped(ctx):
            return
        self.tracker.add_breadcrumb(
            f"API Request: {ctx.method} {ctx.url}",
            "http",
            "info",
            {"method": ctx.method, "url": ctx.url, "requestId": ctx.request_id},
        )

    def on_response(self, ctx: RequestContext, response: TransportResponse) -> None:
        if self._skipped(ctx):
            return
        duration = ctx.duration_ms
        self._track(
            "api_request_success",
            {
                "endpoint": ctx.url,
                "method": ctx.method,
                "status": response.status,
                "duration": duration,
                "requestId": ctx.request_id,
            },
        )
        self.tracker.add_breadcrumb(
            f"API Response: {ctx.method} {ctx.url} - {response.status}",
            "http",
            "info",
            {"status": response.status, "duration": duration, "requestId": ctx.request_id},
        )

    def on_error(self, ctx: RequestContext, error: HttpError) -> None:
        if self._skipped(ctx):
            return
        self._track(
            "api_request_error",
            {
                "endpoint": ctx.url,
                "method": ctx.method,
                "status": error.status,
                "duration": ctx.duration_ms,
                "requestId": ctx.request_id,
            },
        )

    def on_network_error(self, ctx: RequestContext, error: NetworkError) -> None:
        if self._skipped(ctx):
            return
        self._track(
            "api_network_error",
            {
                "endpoint": ctx.url,
                "method": ctx.method,
                "errorCode": error.error_code,
                "errorMessage": error.message,
                "duration": ctx.duration_ms,
                "requestId": ctx.request_id,
            },
        )
        self.tracker.add_breadcrumb(
            f"Network Error: {ctx.method} {ctx.url}",
            "http",
            "error",
            {"errorCode": error.error_code, "requestId": ctx.request_id},
        )
