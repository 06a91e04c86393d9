"""
Shared types, enums, and data structures for the market data feed.

This module contains types that are used across multiple components
of the feed system.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union


class Provider(str, Enum):
    """Supported brokerage feed providers."""

    KOTAK = "kotak"
    DHAN = "dhan"


class ManagerState(str, Enum):
    """State machine for MarketDataManager."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ConnectionState(str, Enum):
    """State machine for the provider WebSocket."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    EXHAUSTED = "exhausted"


class MessageKind(str, Enum):
    """Kinds of messages received from the provider WebSocket."""

    TICK = "tick"
    DEPTH = "depth"
    ACK = "ack"
    HEARTBEAT = "heartbeat"
    ORDER_UPDATE = "order_update"
    ERROR = "error"
    UNKNOWN = "unknown"


class TickSource(str, Enum):
    """Where a tick came from."""

    LIVE = "live"
    MOCK = "mock"


PriceCallback = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Credential:
    """Secret material for one provider. Read at authentication time only."""

    provider: Provider
    user_id: Optional[str] = None
    password: Optional[str] = None
    totp_code: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    def __repr__(self) -> str:
        # Never render secrets
        return f"Credential(provider={self.provider.value!r})"


@dataclass(frozen=True)
class Session:
    """Access token issued by a provider, with a locally computed expiry."""

    provider: Provider
    access_token: str
    expires_at: datetime
    client_id: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class Tick:
    """Normalized last-traded-price update for one token."""

    token: str
    last_price: float
    last_quantity: Optional[float] = None
    last_trade_time: Optional[str] = None
    volume: Optional[float] = None
    open_interest: Optional[float] = None
    source: TickSource = TickSource.LIVE

    def to_payload(self) -> dict[str, Any]:
        """Broadcast payload using the dashboard's short field names."""
        return {
            "token": self.token,
            "ltp": self.last_price,
            "ltq": self.last_quantity,
            "ltt": self.last_trade_time,
            "vol": self.volume,
            "oi": self.open_interest,
        }


@dataclass(frozen=True, slots=True)
class DepthLevel:
    """Single price level of a depth snapshot."""

    price: float
    qty: float
    orders: Optional[int] = None


@dataclass(frozen=True, slots=True)
class DepthSnapshot:
    """Aggregated bid/ask levels for one token."""

    token: str
    bids: tuple[DepthLevel, ...]  # Best bid first
    asks: tuple[DepthLevel, ...]  # Best ask first

    @property
    def best_bid(self) -> Optional[float]:
        """Best bid price, or None if empty."""
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        """Best ask price, or None if empty."""
        return self.asks[0].price if self.asks else None

    @property
    def spread(self) -> Optional[float]:
        """Best ask minus best bid, or None if either side is empty."""
        if self.bids and self.asks:
            return self.asks[0].price - self.bids[0].price
        return None


@dataclass(frozen=True, slots=True)
class ControlMessage:
    """Non-price message (ack, heartbeat echo, order update, error)."""

    kind: MessageKind
    payload: Any = None


DecodedMessage = Union[Tick, DepthSnapshot, ControlMessage]


@dataclass(frozen=True, slots=True)
class Contract:
    """Tradable instrument returned by a contract search."""

    token: str
    symbol: str
    strike: float
    option_type: str
    expiry: Optional[dt.date]
    exchange: str


@dataclass(frozen=True, slots=True)
class HistoricalCandle:
    """One OHLCV bar from a historical data fetch."""

    timestamp: datetime  # UTC
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class LogEvent:
    """
    Audit record for feed lifecycle events.
    Published on the ``log.event`` topic.
    """

    level: str  # DEBUG, INFO, WARNING, ERROR
    component: str
    msg: str
    payload: dict[str, Any] = field(default_factory=dict)
    wall_time: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class ConnectionHealth:
    """Health snapshot for the provider WebSocket."""

    state: ConnectionState
    url: str
    provider: Provider
    connected_since: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    reconnect_attempt: int = 0
    reconnect_count: int = 0
    message_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    session_expires_at: Optional[datetime] = None

    @property
    def uptime_s(self) -> Optional[float]:
        """Connection uptime in seconds, or None if not connected."""
        if self.connected_since is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.connected_since).total_seconds()

    @property
    def is_healthy(self) -> bool:
        """Check if connection is in a healthy state."""
        return self.state == ConnectionState.OPEN

    @property
    def seconds_since_message(self) -> Optional[float]:
        """Seconds since last message, or None if no messages yet."""
        if self.last_message_at is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.last_message_at).total_seconds()


@dataclass
class ConnectionMetrics:
    """Counters for the provider WebSocket."""

    messages_received: int = 0
    bytes_received: int = 0
    frames_sent: int = 0
    heartbeats_sent: int = 0
    reconnections: int = 0
    errors: int = 0

    # Timing
    connected_at: Optional[float] = None  # monotonic time
    last_message_at: Optional[float] = None  # monotonic time
