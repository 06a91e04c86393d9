"""
Subscription registry.

Maps each token to its one subscriber callback and decides where the
token's prices come from: the live socket, or MockFeed once mock mode is
on. Mock mode is one-way for the lifetime of the registry.
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional

from paperfeed.feed.connection import FeedConnection
from paperfeed.feed.context import FeedContext
from paperfeed.feed.errors import SocketError
from paperfeed.feed.result import Err, price_or_fallback
from paperfeed.feed.types import PriceCallback

logger = logging.getLogger(__name__)


class SubscriptionRegistry:
    """
    token -> callback, with live/mock routing.

    Registry and cache mutations happen on the event loop between awaits,
    so no locking is needed.
    """

    def __init__(self, ctx: FeedContext, name: str = "registry") -> None:
        self._ctx = ctx
        self._name = name
        self._callbacks: dict[str, PriceCallback] = {}
        self._mock_mode = False
        self._connection: Optional[FeedConnection] = None

    def bind_connection(self, connection: Optional[FeedConnection]) -> None:
        self._connection = connection

    @property
    def is_mock(self) -> bool:
        return self._mock_mode

    def tokens(self) -> list[str]:
        """Currently subscribed tokens, in subscription order."""
        return list(self._callbacks)

    def callback_for(self, token: str) -> Optional[PriceCallback]:
        return self._callbacks.get(token)

    def __contains__(self, token: object) -> bool:
        return token in self._callbacks

    def __len__(self) -> int:
        return len(self._callbacks)

    def __iter__(self) -> Iterator[str]:
        return iter(self.tokens())

    def _live_connection(self) -> Optional[FeedConnection]:
        conn = self._connection
        if conn is not None and conn.is_open:
            return conn
        return None

    async def subscribe(self, token: str, callback: PriceCallback) -> Optional[float]:
        """
        Register ``callback`` for ``token``, replacing any previous one.

        Returns the seed price in mock mode (already delivered to the
        callback), otherwise None. When the socket is not open the
        subscription is sent on the next successful open.
        """
        token = str(token)
        if token in self._callbacks:
            logger.debug(f"[{self._name}] Replacing callback for {token}")
        self._callbacks[token] = callback

        if self._mock_mode:
            return await self._ctx.mock.start(token, callback)

        conn = self._live_connection()
        if conn is None:
            logger.debug(f"[{self._name}] Socket not open, {token} will subscribe on open")
            return None

        try:
            await conn.send_subscribe([token])
        except SocketError as e:
            logger.warning(f"[{self._name}] Subscribe frame for {token} failed: {e}")
        return None

    async def unsubscribe(self, token: str) -> bool:
        """
        Remove the subscription and its cached price.

        Returns True if the token was subscribed. Ticks already delivered are
        unaffected.
        """
        token = str(token)
        existed = self._callbacks.pop(token, None) is not None

        if self._mock_mode:
            self._ctx.mock.stop(token)
        else:
            conn = self._live_connection()
            if conn is not None:
                try:
                    await conn.send_unsubscribe([token])
                except SocketError as e:
                    logger.warning(f"[{self._name}] Unsubscribe frame for {token} failed: {e}")

        self._ctx.cache.purge(token)
        return existed

    async def get_current_price(self, token: str, fallback: Optional[float] = None) -> float:
        """
        Best available price for ``token``. Never raises.

        Order: cached price, then in mock mode the token's generator (started
        on demand for subscribed tokens), then a one-shot REST quote. A failed
        quote, or a mock lookup for an unsubscribed token, resolves to
        ``fallback`` or a fresh synthetic price.
        """
        token = str(token)
        cached = self._ctx.cache.get(token)
        if cached is not None:
            return cached

        if self._mock_mode:
            current = self._ctx.mock.current_price(token)
            if current is not None:
                return current
            callback = self._callbacks.get(token)
            if callback is None:
                # unregistered: no generator, nothing cached
                return fallback if fallback is not None else self._ctx.mock.generate_price()
            return await self._ctx.mock.start(token, callback)

        if self._connection is None:
            result = Err("not_connected", "No live connection")
        else:
            result = await self._connection.request_quote(token)
        return price_or_fallback(result, fallback, self._ctx.mock.generate_price)

    async def switch_to_mock(self) -> None:
        """Route every current and future subscription to MockFeed."""
        if self._mock_mode:
            return
        self._mock_mode = True
        logger.warning(
            f"[{self._name}] Switching {len(self._callbacks)} subscription(s) to mock data"
        )
        for token, callback in list(self._callbacks.items()):
            await self._ctx.mock.start(token, callback)

    async def clear(self) -> None:
        """Drop every subscription and stop all generators."""
        await self._ctx.mock.stop_all()
        for token in list(self._callbacks):
            self._ctx.cache.purge(token)
        self._callbacks.clear()
