"""
Telemetry Event Queue

Offline-durable, batched analytics pipeline.

Events are validated at every boundary (enqueue, persist, load, flush),
mirrored to durable storage after every mutation, and flushed in
batches. Tracking never raises into the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Set

from matchtalk.analytics.events import AnalyticsEvent, build_event, is_valid_event, new_session_id
from matchtalk.core.exceptions import ValidationError
from matchtalk.core.storage import ANALYTICS_CONSENT_KEY, ANALYTICS_QUEUE_KEY, KeyValueStore

logger = logging.getLogger(__name__)


class EventTransmitter(Protocol):
    async def track_events(self, events: List[AnalyticsEvent]) -> None: ...


class EventQueue:
    """
    Batched analytics queue with offline persistence.

    Example:
        queue = EventQueue(store, transmitter=AnalyticsApi(http))
        await queue.start()
        await queue.track("screen_view", {"screen": "Home"})
    """

    def __init__(
        self,
        store: KeyValueStore,
        transmitter: Optional[EventTransmitter] = None,
        *,
        enabled: bool = True,
        batch_size: int = 10,
        batch_interval: float = 5.0,
        max_queue_size: int = 100,
        enable_offline_queue: bool = True,
        load_corruption_threshold: float = 0.5,
        flush_corruption_threshold: float = 0.3,
        session_id: Optional[str] = None,
    ):
        self.store = store
        self.transmitter = transmitter
        self.enabled = enabled
        self.batch_size = batch_size
        self.batch_interval = batch_interval
        self.max_queue_size = max_queue_size
        self.enable_offline_queue = enable_offline_queue
        self.load_corruption_threshold = load_corruption_threshold
        self.flush_corruption_threshold = flush_corruption_threshold
        self.session_id = session_id or new_session_id()

        self._queue: List[Any] = []
        self._in_flight: List[Any] = []
        self._online = True
        self._flushed_once = False
        self._flush_lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._timer_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore the persisted queue and start the periodic flush timer."""
        if not self.enabled:
            return
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
        await self.drain()

    async def drain(self) -> None:
        """Wait for background ``track_nowait`` tasks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.batch_interval)
            if self._queue:
                await self.flush()

    @property
    def size(self) -> int:
        return len(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def is_online(self) -> bool:
        return self._online

    def queued_events(self) -> List[Dict[str, Any]]:
        return [_as_dict(event) for event in self._queue]

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    async def set_consent(self, consent: bool) -> None:
        try:
            await self.store.set(ANALYTICS_CONSENT_KEY, json.dumps(bool(consent)))
        except Exception as e:
            logger.error(f"[Analytics] Failed to save consent: {e}")

    async def get_consent(self) -> Optional[bool]:
        """Stored consent; ``None`` when never set."""
        try:
            raw = await self.store.get(ANALYTICS_CONSENT_KEY)
        except Exception as e:
            logger.error(f"[Analytics] Failed to read consent: {e}")
            return None
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            return None
        return value if isinstance(value, bool) else None

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    async def track(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Queue an event. Never raises."""
        try:
            await self._track(event_type, data, metadata)
        except Exception as e:
            logger.error(f"[Analytics] Failed to track '{event_type}': {e}")

    async def _track(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]],
    ) -> None:
        if not self.enabled:
            return
        if not isinstance(event_type, str) or not event_type.strip():
            logger.warning(f"[Analytics] Invalid eventType provided: {event_type!r}")
            return
        if await self.get_consent() is False:
            logger.debug("[Analytics] Tracking disabled due to user consent")
            return

        event = build_event(event_type, data, metadata, session_id=self.session_id)
        self._queue.append(event)
        self._apply_bound()
        await self._persist()

        if len(self._queue) >= self.batch_size:
            await self.flush()

    def track_nowait(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Schedule ``track`` in the background."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"[Analytics] No running loop, dropped '{event_type}'")
            return
        task = loop.create_task(self.track(event_type, data, metadata))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _apply_bound(self) -> None:
        overflow = len(self._queue) - self.max_queue_size
        if overflow > 0:
            logger.debug(f"[Analytics] Queue full, dropped {overflow} oldest events")
            self._queue = self._queue[overflow:]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self) -> None:
        """Mirror in-flight and queued events to storage."""
        if not self.enable_offline_queue:
            return
        async with self._persist_lock:
            events = [
                _as_dict(event)
                for event in self._in_flight + self._queue
                if is_valid_event(event)
            ]
            try:
                if events:
                    await self.store.set(ANALYTICS_QUEUE_KEY, json.dumps(events, default=str))
                else:
                    await self.store.remove(ANALYTICS_QUEUE_KEY)
            except Exception as e:
                logger.error(f"[Analytics] Failed to save queue to storage: {e}")

    async def _discard_stored(self) -> None:
        try:
            await self.store.remove(ANALYTICS_QUEUE_KEY)
        except Exception as e:
            logger.error(f"[Analytics] Failed to clear stored queue: {e}")

    async def load(self) -> int:
        """
        Restore the persisted queue, dropping invalid entries.

        Returns:
            Number of events restored
        """
        if not self.enable_offline_queue:
            return 0
        try:
            raw = await self.store.get(ANALYTICS_QUEUE_KEY)
        except Exception as e:
            logger.error(f"[Analytics] Failed to load queue from storage: {e}")
            return 0
        if raw is None:
            return 0

        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("[Analytics] Unparseable queue in storage, clearing")
            await self._discard_stored()
            return 0
        if not isinstance(parsed, list):
            logger.warning("[Analytics] Invalid data format in storage, clearing")
            await self._discard_stored()
            return 0
        if not parsed:
            await self._discard_stored()
            return 0

        valid = [entry for entry in parsed if is_valid_event(entry)]
        invalid_count = len(parsed) - len(valid)
        if invalid_count > len(parsed) * self.load_corruption_threshold:
            logger.warning(
                f"[Analytics] High corruption rate ({invalid_count}/{len(parsed)}), clearing storage"
            )
            await self._discard_stored()
            return 0
        if invalid_count:
            logger.warning(f"[Analytics] Removed {invalid_count} invalid events from storage")

        restored = [AnalyticsEvent.from_dict(entry) for entry in valid]
        self._queue = restored + self._queue
        self._apply_bound()
        await self._persist()
        logger.info(f"[Analytics] Restored {len(restored)} events from storage")
        return len(restored)

    async def clear(self) -> None:
        self._queue = []
        await self._persist()

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def update_online_status(self, online: bool) -> None:
        """Record connectivity; coming back online schedules a flush."""
        was_online, self._online = self._online, online
        if online and not was_online and self._queue:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            task = loop.create_task(self.flush())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def flush(self) -> int:
        """
        Send queued events. Only one flush runs at a time; a flush
        requested while another is running is skipped.

        Returns:
            Number of events delivered
        """
        if self._flush_lock.locked():
            return 0
        async with self._flush_lock:
            return await self._flush()

    async def _flush(self) -> int:
        if not self._queue or not self._online:
            return 0
        if self.transmitter is None:
            logger.debug("[Analytics] No transmitter configured, keeping queue")
            return 0

        if not self._flushed_once:
            self._flushed_once = True
            invalid_count = sum(1 for event in self._queue if not is_valid_event(event))
            if invalid_count > len(self._queue) * self.flush_corruption_threshold:
                logger.warning(
                    f"[Analytics] High invalidity rate ({invalid_count}/{len(self._queue)}), "
                    "discarding queue"
                )
                self._queue = []
                await self._persist()
                return 0

        valid = [event for event in self._queue if is_valid_event(event)]
        removed = len(self._queue) - len(valid)
        if removed:
            logger.warning(f"[Analytics] Removed {removed} invalid events from queue")
        self._queue = []
        if not valid:
            await self._persist()
            return 0

        batch = [_as_event(event) for event in valid]
        self._in_flight = list(batch)
        await self._persist()

        sent = 0
        try:
            for start in range(0, len(batch), self.batch_size):
                chunk = batch[start:start + self.batch_size]
                await self.transmitter.track_events(chunk)
                sent += len(chunk)
                self._in_flight = batch[sent:]
                await self._persist()
        except ValidationError as e:
            logger.error(f"[Analytics] Validation error detected, clearing queue: {e}")
            self._in_flight = []
            self._queue = []
            await self._persist()
            return sent
        except Exception as e:
            remainder = [event for event in batch[sent:] if is_valid_event(event)]
            self._in_flight = []
            self._queue = remainder + self._queue
            self._apply_bound()
            await self._persist()
            logger.warning(
                f"[Analytics] Failed to flush queue, re-queued {len(remainder)} events: {e}"
            )
            return sent

        self._in_flight = []
        await self._persist()
        logger.debug(f"[Analytics] Flushed {sent} events")
        return sent


def _as_dict(event: Any) -> Dict[str, Any]:
    if isinstance(event, AnalyticsEvent):
        return event.to_dict()
    return dict(event)


def _as_event(event: Any) -> AnalyticsEvent:
    if isinstance(event, AnalyticsEvent):
        return event
    return AnalyticsEvent.from_dict(event)
