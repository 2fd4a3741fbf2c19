"""
Conversion funnel tracking.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class AsyncEventSink(Protocol):
    def track(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Awaitable[None]: ...


@dataclass
class FunnelStep:
    step: str
    timestamp: float
    data: Dict[str, Any] = field(default_factory=dict)


class FunnelTracker:
    """
    Tracks ordered steps per funnel. A funnel exists from its first
    step until it completes or drops off.
    """

    def __init__(self, sink: AsyncEventSink, *, clock: Callable[[], float] = time.time):
        self.sink = sink
        self._clock = clock
        self._funnels: Dict[str, List[FunnelStep]] = {}

    def steps(self, funnel: str) -> List[FunnelStep]:
        return list(self._funnels.get(funnel, []))

    def active_funnels(self) -> List[str]:
        return list(self._funnels)

    async def track_step(
        self, funnel: str, step: str, data: Optional[Dict[str, Any]] = None
    ) -> None:
        steps = self._funnels.setdefault(funnel, [])
        steps.append(FunnelStep(step=step, timestamp=self._clock(), data=dict(data or {})))
        await self.sink.track(
            "funnel_step",
            {
                "funnelName": funnel,
                "step": step,
                "stepNumber": len(steps),
                **(data or {}),
            },
        )

    async def track_completion(self, funnel: str, duration: Optional[float] = None) -> None:
        """
        Track completion; ``duration`` is in seconds and defaults to the
        time since the first step. Unknown funnels are ignored.
        """
        steps = self._funnels.get(funnel)
        if not steps:
            logger.debug(f"[Funnel] Completion for unknown funnel '{funnel}' ignored")
            return
        if duration is None:
            duration = self._clock() - steps[0].timestamp
        del self._funnels[funnel]
        await self.sink.track(
            "funnel_completion",
            {
                "funnelName": funnel,
                "steps": len(steps),
                "duration": round(duration),
                "completed": True,
            },
        )

    async def track_dropoff(self, funnel: str, step: str, reason: Optional[str] = None) -> None:
        steps = self._funnels.get(funnel)
        if not steps:
            logger.debug(f"[Funnel] Dropoff for unknown funnel '{funnel}' ignored")
            return
        duration = self._clock() - steps[0].timestamp
        del self._funnels[funnel]
        await self.sink.track(
            "funnel_dropoff",
            {
                "funnelName": funnel,
                "step": step,
                "stepNumber": len(steps),
                "duration": round(duration),
                "reason": reason,
            },
        )
