"""
Provider-specific message decoders.

Decoders turn a parsed JSON message into one of the canonical records:
- Tick: last traded price update
- DepthSnapshot: bid/ask levels
- ControlMessage: ack, heartbeat echo, order update, error

A decoder returns None for messages that must be dropped silently (e.g. a
tick without token or price) and raises DecodeError for malformed payloads.
"""

from __future__ import annotations

import logging
from abc import ABC
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from paperfeed.feed.errors import DecodeError
from paperfeed.feed.types import (
    ControlMessage,
    DecodedMessage,
    DepthLevel,
    DepthSnapshot,
    MessageKind,
    Tick,
    TickSource,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickFields:
    """Wire field names of a provider's tick payload."""

    token: str
    price: str
    quantity: str
    trade_time: str
    volume: str
    open_interest: str


def _safe_float(value: Any, field_name: str) -> float:
    """Safely convert a value to float."""
    try:
        if isinstance(value, float):
            return value
        if isinstance(value, bool):
            raise TypeError("bool is not a price")
        return float(value)
    except (ValueError, TypeError) as e:
        raise DecodeError(
            f"Invalid float value for {field_name}: {value}",
            expected_type="float",
        ) from e


def _safe_int(value: Any, field_name: str) -> int:
    """Safely convert a value to int."""
    try:
        return int(value)
    except (ValueError, TypeError) as e:
        raise DecodeError(
            f"Invalid integer value for {field_name}: {value}",
            expected_type="int",
        ) from e


def _optional_float(data: Mapping[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if value is None or value == "":
        return None
    return _safe_float(value, key)


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


class BaseDecoder(ABC):
    """
    Decodes one provider's message envelopes.

    Subclasses declare the envelope tag map and tick/depth field names;
    the parsing itself is shared.
    """

    name: str = "decoder"
    TYPE_MAP: dict[str, MessageKind] = {}
    TICK_FIELDS: TickFields
    BID_KEY: str = "bids"
    ASK_KEY: str = "asks"

    def classify(self, message: Mapping[str, Any]) -> tuple[MessageKind, Any]:
        """Return the message kind and its inner payload."""
        msg_type = message.get("type")
        if msg_type is None:
            return MessageKind.UNKNOWN, message
        return self.TYPE_MAP.get(str(msg_type), MessageKind.UNKNOWN), message.get("data")

    def decode(self, message: Any) -> Optional[DecodedMessage]:
        if not isinstance(message, Mapping):
            raise DecodeError(
                f"Expected a JSON object, got {type(message).__name__}",
                expected_type="object",
                component=self.name,
            )

        kind, payload = self.classify(message)

        if kind == MessageKind.TICK:
            return self.parse_tick(payload)
        if kind == MessageKind.DEPTH:
            return self.parse_depth(payload)
        if kind == MessageKind.UNKNOWN:
            logger.debug(f"[{self.name}] Unknown message type: {message.get('type')}")
        return ControlMessage(kind=kind, payload=payload)

    def parse_tick(self, data: Any) -> Optional[Tick]:
        """Parse a tick payload. None when token or price is absent."""
        if not isinstance(data, Mapping):
            raise DecodeError(
                "Tick payload must be an object",
                expected_type="tick",
                component=self.name,
            )

        f = self.TICK_FIELDS
        token_raw = data.get(f.token)
        price_raw = data.get(f.price)
        if _is_missing(token_raw) or _is_missing(price_raw):
            return None

        price = _safe_float(price_raw, f.price)
        if price <= 0:
            # A zero price is treated as absent
            return None

        trade_time = data.get(f.trade_time)
        return Tick(
            token=str(token_raw),
            last_price=price,
            last_quantity=_optional_float(data, f.quantity),
            last_trade_time=None if _is_missing(trade_time) else str(trade_time),
            volume=_optional_float(data, f.volume),
            open_interest=_optional_float(data, f.open_interest),
            source=TickSource.LIVE,
        )

    def parse_depth(self, data: Any) -> Optional[DepthSnapshot]:
        """Parse a depth payload. None when token or either side is absent."""
        if not isinstance(data, Mapping):
            raise DecodeError(
                "Depth payload must be an object",
                expected_type="depth",
                component=self.name,
            )

        token_raw = data.get(self.TICK_FIELDS.token)
        bids_raw = data.get(self.BID_KEY)
        asks_raw = data.get(self.ASK_KEY)
        if _is_missing(token_raw) or bids_raw is None or asks_raw is None:
            return None

        return DepthSnapshot(
            token=str(token_raw),
            bids=self._parse_levels(bids_raw, "bid"),
            asks=self._parse_levels(asks_raw, "ask"),
        )

    def _parse_levels(self, levels: Any, side: str) -> tuple[DepthLevel, ...]:
        if not isinstance(levels, list):
            raise DecodeError(
                f"{side} levels must be a list",
                expected_type="depth",
                component=self.name,
            )

        parsed: list[DepthLevel] = []
        for level in levels:
            if isinstance(level, Mapping):
                qty = level.get("quantity", level.get("qty"))
                orders = level.get("orders")
                parsed.append(
                    DepthLevel(
                        price=_safe_float(level.get("price"), f"{side}_price"),
                        qty=_safe_float(qty, f"{side}_qty"),
                        orders=None if orders is None else _safe_int(orders, f"{side}_orders"),
                    )
                )
            elif isinstance(level, (list, tuple)) and len(level) >= 2:
                parsed.append(
                    DepthLevel(
                        price=_safe_float(level[0], f"{side}_price"),
                        qty=_safe_float(level[1], f"{side}_qty"),
                        orders=_safe_int(level[2], f"{side}_orders") if len(level) > 2 else None,
                    )
                )
            else:
                raise DecodeError(
                    f"Invalid {side} level: {level!r}",
                    expected_type="depth",
                    component=self.name,
                )
        return tuple(parsed)


class KotakDecoder(BaseDecoder):
    """
    Kotak feed messages.

    Envelope: {"type": "tick" | "depth" | "ack" | "heartbeat" | "error", "data": {...}}

    Tick:
    {
        "token": "43854",
        "ltp": 152.35,       // Last traded price
        "ltq": 75,           // Last traded quantity
        "ltt": "14:32:05",   // Last traded time
        "vol": 1250000,      // Volume
        "oi": 845000         // Open interest
    }

    Depth: {"token": "43854", "bids": [...], "asks": [...]}
    """

    name = "KotakDecoder"
    TYPE_MAP = {
        "tick": MessageKind.TICK,
        "depth": MessageKind.DEPTH,
        "ack": MessageKind.ACK,
        "heartbeat": MessageKind.HEARTBEAT,
        "error": MessageKind.ERROR,
    }
    TICK_FIELDS = TickFields(
        token="token",
        price="ltp",
        quantity="ltq",
        trade_time="ltt",
        volume="vol",
        open_interest="oi",
    )


class DhanDecoder(BaseDecoder):
    """
    Dhan feed messages.

    Envelope: {"type": "quote" | "depth" | "success" | "order_update" | "error", "data": {...}}
    Subscribe acks may also arrive as {"action": "subscribe", "params": {...}}.

    Quote:
    {
        "token": "43854",
        "lastPrice": 152.35,
        "lastQuantity": 75,
        "lastTradeTime": "2024-01-25T14:32:05",
        "volume": 1250000,
        "openInterest": 845000
    }

    Depth: {"token": "43854", "buyDepth": [...], "sellDepth": [...]}
    """

    name = "DhanDecoder"
    TYPE_MAP = {
        "quote": MessageKind.TICK,
        "depth": MessageKind.DEPTH,
        "success": MessageKind.ACK,
        "heartbeat": MessageKind.HEARTBEAT,
        "order_update": MessageKind.ORDER_UPDATE,
        "error": MessageKind.ERROR,
    }
    TICK_FIELDS = TickFields(
        token="token",
        price="lastPrice",
        quantity="lastQuantity",
        trade_time="lastTradeTime",
        volume="volume",
        open_interest="openInterest",
    )
    BID_KEY = "buyDepth"
    ASK_KEY = "sellDepth"

    def classify(self, message: Mapping[str, Any]) -> tuple[MessageKind, Any]:
        if "type" not in message and "action" in message:
            return MessageKind.ACK, message.get("params")
        return super().classify(message)
