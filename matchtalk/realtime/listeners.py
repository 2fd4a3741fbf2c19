"""
Listener registry for the realtime connection.

Handlers are registered once and attached to whichever transport is
live. Each entry is either pending (waiting for a connected transport)
or attached (registered on the current transport).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from matchtalk.realtime.transport import Handler, RealtimeTransport


@dataclass
class Listener:
    event: str
    handler: Handler
    attached: bool = False


class ListenerRegistry:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def _find(self, event: str, handler: Handler) -> Optional[Listener]:
        for listener in self._listeners:
            if listener.event == event and listener.handler == handler:
                return listener
        return None

    def add(self, event: str, handler: Handler) -> Listener:
        """Register a handler; registering the same pair twice is a no-op."""
        listener = self._find(event, handler)
        if listener is None:
            listener = Listener(event, handler)
            self._listeners.append(listener)
        return listener

    def remove(self, event: str, handler: Optional[Handler] = None) -> List[Listener]:
        """Remove one handler, or every handler for ``event`` when none given."""
        removed: List[Listener] = []
        kept: List[Listener] = []
        for listener in self._listeners:
            if listener.event == event and (handler is None or listener.handler == handler):
                removed.append(listener)
            else:
                kept.append(listener)
        self._listeners = kept
        return removed

    def pending(self) -> List[Tuple[str, Handler]]:
        return [(l.event, l.handler) for l in self._listeners if not l.attached]

    def attached(self) -> List[Tuple[str, Handler]]:
        return [(l.event, l.handler) for l in self._listeners if l.attached]

    def attach_pending(self, transport: RealtimeTransport) -> int:
        """Attach every pending handler to ``transport``. Returns the count."""
        count = 0
        for listener in self._listeners:
            if listener.attached:
                continue
            transport.on(listener.event, listener.handler)
            listener.attached = True
            count += 1
        return count

    def detach_all(self) -> None:
        """Mark every handler pending again (transport was torn down)."""
        for listener in self._listeners:
            listener.attached = False

    def clear(self) -> None:
        self._listeners.clear()
