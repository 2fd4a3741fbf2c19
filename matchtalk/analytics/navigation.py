"""
Navigation path recording.

Keeps the most recent pages visited, mirrors them to storage and
periodically reports the path as a ``navigation_path`` event.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from matchtalk.analytics.funnels import AsyncEventSink
from matchtalk.core.storage import NAVIGATION_PATH_KEY, KeyValueStore

logger = logging.getLogger(__name__)


class NavigationPath:
    def __init__(
        self,
        store: KeyValueStore,
        sink: AsyncEventSink,
        *,
        max_entries: int = 50,
        report_interval: float = 30.0,
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.sink = sink
        self.max_entries = max_entries
        self.report_interval = report_interval
        self.session_id = session_id
        self._clock = clock
        self._path: List[Dict[str, Any]] = []
        self._timer_task: Optional[asyncio.Task] = None

    def entries(self) -> List[Dict[str, Any]]:
        return [dict(entry) for entry in self._path]

    def __len__(self) -> int:
        return len(self._path)

    async def start(self) -> None:
        await self.load()
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self._run_timer())

    async def close(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.report_interval)
            await self.report()

    async def load(self) -> None:
        try:
            raw = await self.store.get(NAVIGATION_PATH_KEY)
            if raw is None:
                return
            parsed = json.loads(raw)
        except Exception as e:
            logger.warning(f"[Navigation] Failed to load path: {e}")
            return
        if not isinstance(parsed, list):
            return
        self._path = [
            {"page": entry["page"], "timestamp": entry.get("timestamp", 0)}
            for entry in parsed
            if isinstance(entry, dict) and isinstance(entry.get("page"), str)
        ][-self.max_entries:]

    async def _save(self) -> None:
        try:
            if self._path:
                await self.store.set(NAVIGATION_PATH_KEY, json.dumps(self._path))
            else:
                await self.store.remove(NAVIGATION_PATH_KEY)
        except Exception as e:
            logger.debug(f"[Navigation] Failed to save path: {e}")

    async def record(self, page: str) -> int:
        """Append a page visit. Returns the path length."""
        self._path.append({"page": page, "timestamp": int(self._clock() * 1000)})
        if len(self._path) > self.max_entries:
            self._path = self._path[-self.max_entries:]
        await self._save()
        return len(self._path)

    async def clear(self) -> None:
        self._path = []
        await self._save()

    async def report(self) -> None:
        """Emit the current path as a ``navigation_path`` event."""
        if not self._path:
            return
        path = list(self._path)
        duration_ms = path[-1]["timestamp"] - path[0]["timestamp"] if len(path) > 1 else 0
        await self.sink.track(
            "navigation_path",
            {
                "path": [entry["page"] for entry in path],
                "steps": len(path),
                "duration": round(duration_ms / 1000),
                "sessionId": self.session_id,
            },
        )
