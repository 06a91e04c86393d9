"""
Market Data Feed Module.

Streams live option prices from a brokerage WebSocket (Kotak or Dhan) to
per-token subscribers, with a synthetic fallback when the live feed is
unavailable.

Components:
- MarketDataManager: Top-level coordinator and lifecycle management
- FeedConnection: WebSocket lifecycle, heartbeat, reconnection, exhaustion
- SubscriptionRegistry: token -> callback, live/mock routing, current price
- MessageNormalizer: Decoding, price cache, callbacks and broadcast
- FeedProvider: Provider-specific auth, frames, decoding and REST endpoints
- MockFeed: Per-token random walk used in mock mode
- EventBroadcaster: Outward per-token and status events

Usage:
    from paperfeed.feed import FeedConfig, MarketDataManager

    manager = MarketDataManager(FeedConfig.from_env())
    await manager.initialize()
    await manager.subscribe("43854", on_price)
"""

from paperfeed.feed.broadcast import EventBroadcaster
from paperfeed.feed.config import ConnectionConfig, FeedConfig, MockFeedConfig
from paperfeed.feed.errors import (
    ApiError,
    AuthError,
    ConfigurationError,
    ConnectTimeout,
    ContractNotFoundError,
    DecodeError,
    FeedError,
    QuoteLookupError,
    SocketError,
)
from paperfeed.feed.manager import MarketDataManager
from paperfeed.feed.types import (
    ConnectionHealth,
    ConnectionState,
    Contract,
    DepthSnapshot,
    HistoricalCandle,
    ManagerState,
    Provider,
    Tick,
)

__all__ = [
    # Main entry point
    "MarketDataManager",
    "FeedConfig",
    "ConnectionConfig",
    "MockFeedConfig",
    "EventBroadcaster",
    # Types
    "Provider",
    "ConnectionState",
    "ManagerState",
    "ConnectionHealth",
    "Tick",
    "DepthSnapshot",
    "Contract",
    "HistoricalCandle",
    # Errors
    "FeedError",
    "AuthError",
    "SocketError",
    "ConnectTimeout",
    "DecodeError",
    "ApiError",
    "QuoteLookupError",
    "ContractNotFoundError",
    "ConfigurationError",
]
