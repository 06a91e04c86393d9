"""
Message normalizer for the provider WebSocket.

Parses raw text frames, decodes them with the configured provider, and
applies the side effects of price messages: PriceCache update, the token's
subscriber callback, and the outward broadcast. Malformed messages are logged
and dropped; they never close the connection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

import orjson

from paperfeed.feed.context import FeedContext
from paperfeed.feed.errors import DecodeError
from paperfeed.feed.topics import depth_update_topic, market_update_topic
from paperfeed.feed.types import (
    ControlMessage,
    DecodedMessage,
    DepthSnapshot,
    MessageKind,
    PriceCallback,
    Tick,
)

logger = logging.getLogger(__name__)


class SubscriptionView(Protocol):
    """Read-only view of the subscription registry."""

    @property
    def is_mock(self) -> bool: ...

    def callback_for(self, token: str) -> Optional[PriceCallback]: ...


@dataclass
class NormalizerStats:
    """Statistics for message handling."""

    total_messages: int = 0
    ticks_delivered: int = 0
    broadcasts: int = 0
    dropped_messages: int = 0
    parse_errors: int = 0
    callback_errors: int = 0
    by_kind: dict[str, int] = field(default_factory=dict)


class MessageNormalizer:
    """Turns provider frames into cache updates, callbacks and broadcasts."""

    def __init__(self, ctx: FeedContext, subscriptions: SubscriptionView) -> None:
        self._ctx = ctx
        self._subscriptions = subscriptions
        self._stats = NormalizerStats()

    @property
    def stats(self) -> NormalizerStats:
        return self._stats

    def reset_stats(self) -> None:
        self._stats = NormalizerStats()

    async def handle(self, raw: Union[str, bytes]) -> Optional[DecodedMessage]:
        """
        Process one raw frame.

        Returns the decoded message, or None when it was dropped.
        """
        self._stats.total_messages += 1

        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            self._stats.parse_errors += 1
            logger.warning(f"[normalizer] Invalid JSON frame dropped: {e}")
            return None

        try:
            decoded = self._ctx.provider.decode(data)
        except DecodeError as e:
            self._stats.parse_errors += 1
            logger.warning(f"[normalizer] Malformed message dropped: {e}")
            return None

        if decoded is None:
            self._stats.dropped_messages += 1
            return None

        if isinstance(decoded, Tick):
            self._count(MessageKind.TICK)
            await self._on_tick(decoded)
        elif isinstance(decoded, DepthSnapshot):
            self._count(MessageKind.DEPTH)
            await self._on_depth(decoded)
        else:
            self._count(decoded.kind)
            self._on_control(decoded)
        return decoded

    def _count(self, kind: MessageKind) -> None:
        self._stats.by_kind[kind.value] = self._stats.by_kind.get(kind.value, 0) + 1

    async def _on_tick(self, tick: Tick) -> None:
        if self._subscriptions.is_mock:
            # Mock generators own every token once switched
            self._stats.dropped_messages += 1
            return

        callback = self._subscriptions.callback_for(tick.token)
        if callback is not None:
            self._ctx.cache.update(tick.token, tick.last_price)
            try:
                await callback(tick.last_price)
                self._stats.ticks_delivered += 1
            except Exception as e:
                self._stats.callback_errors += 1
                logger.error(
                    f"[normalizer] Callback error for {tick.token}: {e}",
                    exc_info=True,
                )

        await self._ctx.broadcaster.emit(market_update_topic(tick.token), tick.to_payload())
        self._stats.broadcasts += 1

    async def _on_depth(self, depth: DepthSnapshot) -> None:
        await self._ctx.broadcaster.emit(depth_update_topic(depth.token), depth)
        self._stats.broadcasts += 1

    def _on_control(self, message: ControlMessage) -> None:
        if message.kind == MessageKind.ERROR:
            logger.warning(f"[normalizer] Provider error message: {message.payload}")
        elif message.kind == MessageKind.ACK:
            logger.debug(f"[normalizer] Ack: {message.payload}")
        elif message.kind == MessageKind.UNKNOWN:
            self._stats.dropped_messages += 1
