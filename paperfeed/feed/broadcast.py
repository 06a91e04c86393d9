"""
In-process event broadcaster.

Delivers feed events to registered async listeners, keyed by event name
(see ``paperfeed.feed.topics``). Listener failures are logged and isolated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from paperfeed.ports.broadcaster import Broadcaster

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Awaitable[None]]
CatchAllListener = Callable[[str, Any], Awaitable[None]]


@dataclass
class BroadcastStats:
    """Statistics for event delivery."""

    emitted: int = 0
    delivered: int = 0
    listener_errors: int = 0
    by_event: dict[str, int] = field(default_factory=dict)


class EventBroadcaster(Broadcaster):
    """
    Fans out named events to async listeners.

    Multiple listeners can be registered for the same event; they are called
    in registration order. A catch-all listener receives every event with its
    name, useful for bridging to an external socket layer.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._catch_all: Optional[CatchAllListener] = None
        self._stats = BroadcastStats()

    @property
    def stats(self) -> BroadcastStats:
        return self._stats

    def on(self, event: str, listener: Listener) -> None:
        """Register a listener for one event name."""
        self._listeners.setdefault(event, []).append(listener)
        logger.debug(f"Registered listener for {event}")

    def off(self, event: str, listener: Optional[Listener] = None) -> None:
        """Remove one listener, or all listeners for ``event`` when None."""
        if listener is None:
            self._listeners.pop(event, None)
            return
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            self._listeners.pop(event, None)

    def on_any(self, listener: CatchAllListener) -> None:
        """Register a catch-all listener for all events."""
        self._catch_all = listener

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    async def emit(self, event: str, payload: Any = None) -> None:
        self._stats.emitted += 1
        self._stats.by_event[event] = self._stats.by_event.get(event, 0) + 1

        if self._catch_all:
            try:
                await self._catch_all(event, payload)
            except Exception as e:
                self._stats.listener_errors += 1
                logger.error(f"Catch-all listener error for {event}: {e}")

        # Copy so listeners may unregister themselves while being called
        for listener in list(self._listeners.get(event, [])):
            try:
                await listener(payload)
                self._stats.delivered += 1
            except Exception as e:
                self._stats.listener_errors += 1
                logger.error(f"Listener error for {event}: {e}", exc_info=True)

    def clear(self) -> None:
        """Clear all registered listeners."""
        self._listeners.clear()
        self._catch_all = None
