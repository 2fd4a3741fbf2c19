"""
Analytics facade.

Convenience tracking helpers on top of ``EventQueue``, with funnel and
navigation tracking sharing the same queue.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from matchtalk.analytics.event_queue import EventQueue
from matchtalk.analytics.funnels import FunnelTracker
from matchtalk.analytics.navigation import NavigationPath


class Analytics:
    def __init__(
        self,
        queue: EventQueue,
        *,
        navigation: Optional[NavigationPath] = None,
        funnels: Optional[FunnelTracker] = None,
    ):
        self.queue = queue
        self.navigation = navigation or NavigationPath(
            queue.store, queue, session_id=queue.session_id
        )
        self.funnels = funnels or FunnelTracker(queue)

    async def start(self) -> None:
        await self.queue.start()
        if self.queue.enabled:
            await self.navigation.start()

    async def close(self) -> None:
        await self.navigation.close()
        await self.queue.close()

    @property
    def session_id(self) -> str:
        return self.queue.session_id

    async def track(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.queue.track(event_type, data, metadata)

    def track_nowait(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.queue.track_nowait(event_type, data, metadata)

    async def track_screen_view(self, screen: str, data: Optional[Dict[str, Any]] = None) -> None:
        await self.track("screen_view", {"screen": screen, **(data or {})})

    async def track_page_view(self, page: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Record ``page`` in the navigation path and track a page view."""
        path_length = await self.navigation.record(page)
        await self.track("page_view", {"page": page, "pathLength": path_length, **(data or {})})

    async def track_conversion(
        self,
        conversion_type: str,
        value: Optional[float] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.track(
            "conversion",
            {"conversionType": conversion_type, "value": value, **(data or {})},
        )

    async def track_performance(
        self,
        metric_name: str,
        value: float,
        unit: str = "ms",
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.track(
            "performance_metric",
            {"metricName": metric_name, "value": value, "unit": unit, **(data or {})},
        )

    async def track_funnel_step(
        self, funnel: str, step: str, data: Optional[Dict[str, Any]] = None
    ) -> None:
        await self.funnels.track_step(funnel, step, data)

    async def track_funnel_completion(self, funnel: str, duration: Optional[float] = None) -> None:
        await self.funnels.track_completion(funnel, duration)

    async def track_funnel_dropoff(
        self, funnel: str, step: str, reason: Optional[str] = None
    ) -> None:
        await self.funnels.track_dropoff(funnel, step, reason)

    def navigation_path(self) -> List[Dict[str, Any]]:
        return self.navigation.entries()

    async def clear_navigation_path(self) -> None:
        await self.navigation.clear()

    async def set_consent(self, consent: bool) -> None:
        await self.queue.set_consent(consent)

    async def get_consent(self) -> Optional[bool]:
        return await self.queue.get_consent()

    def update_online_status(self, online: bool) -> None:
        self.queue.update_online_status(online)

    async def flush(self) -> int:
        return await self.queue.flush()

    async def clear_queue(self) -> None:
        await self.queue.clear()

    @property
    def queue_size(self) -> int:
        return self.queue.size
