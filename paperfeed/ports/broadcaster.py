"""Broadcaster Port Interface.

Contract: Fan out named events (price updates, depth updates, connection status)
to collaborators outside the feed core, e.g. a socket.io or SSE layer.
"""

from __future__ import annotations

from typing import Any, Protocol


class Broadcaster(Protocol):
    async def emit(self, event: str, payload: Any = None) -> None:
        """Deliver ``payload`` to every listener registered for ``event``."""
        ...
