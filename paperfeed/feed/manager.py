"""
Market Data Manager - Top-level orchestration.

Coordinates all feed components:
- FeedConnection for the provider WebSocket and Session
- SubscriptionRegistry for token -> callback routing
- MessageNormalizer for decoding and fan-out
- MockFeed as the fallback price source
- FeedProvider for quote, contract search and historical REST calls
"""

from __future__ import annotations

import logging
import random
from dataclasses import asdict
from datetime import date, datetime, timezone
from typing import Any, Optional

from paperfeed.feed.auth import ProviderAuthenticator, env_secrets, load_credential
from paperfeed.feed.broadcast import EventBroadcaster
from paperfeed.feed.config import FeedConfig
from paperfeed.feed.connection import FeedConnection
from paperfeed.feed.context import FeedContext
from paperfeed.feed.errors import ContractNotFoundError, FeedError
from paperfeed.feed.mock import mock_contracts
from paperfeed.feed.normalizer import MessageNormalizer
from paperfeed.feed.registry import SubscriptionRegistry
from paperfeed.feed.rest import JsonApi, RestClient
from paperfeed.feed.topics import T_LOG, T_MARKET_DATA_ERROR
from paperfeed.feed.transport import TransportFactory, open_aiohttp_transport
from paperfeed.feed.types import (
    ConnectionHealth,
    Contract,
    HistoricalCandle,
    LogEvent,
    ManagerState,
    PriceCallback,
)
from paperfeed.ports.broadcaster import Broadcaster
from paperfeed.ports.secrets_provider import SecretsProvider

logger = logging.getLogger(__name__)


class MarketDataManager:
    """
    Top-level coordinator for market data.

    State Machine:
        [STOPPED] --initialize()--> [STARTING] --> [RUNNING]
                                                       |
                                   [STOPPED] <-- [STOPPING]

    ``initialize()`` never fails over a feed problem: if the live feed cannot
    be reached (or USE_MOCK_DATA is set) every subscription is served by
    MockFeed instead.

    Usage:
        manager = MarketDataManager(FeedConfig.from_env())
        await manager.initialize()

        async def on_price(price: float) -> None:
            print(price)

        await manager.subscribe("43854", on_price)
        # ... later ...
        await manager.stop()
    """

    def __init__(
        self,
        config: Optional[FeedConfig] = None,
        broadcaster: Optional[Broadcaster] = None,
        secrets: Optional[SecretsProvider] = None,
        rest: Optional[JsonApi] = None,
        transport_factory: TransportFactory = open_aiohttp_transport,
        rng: Optional[random.Random] = None,
        name: str = "market_data",
    ) -> None:
        """
        Initialize the market data manager.

        Args:
            config: Feed configuration, read from the environment when None
            broadcaster: Outward event sink, an EventBroadcaster when None
            secrets: Credential source, environment variables when None
            rest: REST client, an aiohttp RestClient when None
            transport_factory: Opens the provider WebSocket
            rng: Random source for mock prices
            name: Name for logging purposes
        """
        self._config = config or FeedConfig.from_env()
        self._name = name
        self._owns_rest = rest is None

        self._ctx = FeedContext.create(
            self._config,
            broadcaster=broadcaster,
            rest=rest if rest is not None else RestClient(name=self._config.provider.value),
            rng=rng,
        )
        self._secrets = secrets or env_secrets(self._config.provider)

        self._registry = SubscriptionRegistry(self._ctx)
        self._normalizer = MessageNormalizer(self._ctx, self._registry)
        self._connection = FeedConnection(
            self._ctx,
            ProviderAuthenticator(self._ctx.rest),
            credential_loader=lambda: load_credential(self._config.provider, self._secrets),
            tokens_provider=self._registry.tokens,
            on_message=self._normalizer.handle,
            on_exhausted=self._registry.switch_to_mock,
            transport_factory=transport_factory,
        )
        self._registry.bind_connection(self._connection)

        # State
        self._state = ManagerState.STOPPED
        self._started_at: Optional[datetime] = None

    # --- Broadcast-based logging for lifecycle events ---

    async def _emit_log(
        self,
        level: str,
        msg: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Emit a LogEvent for lifecycle events (initialize, mode switch, stop).

        Do NOT use for high-frequency operational logs (use logger instead).
        """
        log_event = LogEvent(
            level=level,
            component=self._name,
            msg=msg,
            payload=payload or {},
        )
        await self._ctx.broadcaster.emit(T_LOG, log_event)

    @property
    def state(self) -> ManagerState:
        """Current manager state."""
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ManagerState.RUNNING

    @property
    def is_mock(self) -> bool:
        """True once prices come from MockFeed."""
        return self._registry.is_mock

    @property
    def config(self) -> FeedConfig:
        return self._config

    @property
    def context(self) -> FeedContext:
        return self._ctx

    @property
    def broadcaster(self) -> Broadcaster:
        return self._ctx.broadcaster

    @property
    def connection(self) -> FeedConnection:
        return self._connection

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    async def initialize(self) -> None:
        """
        Connect to the live feed, or fall back to mock data.

        Safe to call once per manager; later calls are ignored.
        """
        if self._state != ManagerState.STOPPED:
            logger.warning(f"[{self._name}] Cannot initialize from state: {self._state}")
            return

        logger.info(f"[{self._name}] Initializing market data ({self._config.provider.value})")
        self._state = ManagerState.STARTING

        if self._config.use_mock_data:
            logger.info(f"[{self._name}] Mock data forced by configuration")
            await self._registry.switch_to_mock()
        else:
            try:
                await self._connection.connect()
            except FeedError as e:
                logger.error(f"[{self._name}] Live feed unavailable, using mock data: {e}")
                await self._ctx.broadcaster.emit(
                    T_MARKET_DATA_ERROR,
                    {
                        "provider": self._config.provider.value,
                        "reason": "connect_failed",
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                await self._registry.switch_to_mock()

        self._state = ManagerState.RUNNING
        self._started_at = datetime.now(timezone.utc)
        logger.info(f"[{self._name}] Market data ready (mode={self._mode})")

        await self._emit_log(
            "INFO",
            "Market data initialized",
            {
                "event": "FEED_STARTED",
                "provider": self._config.provider.value,
                "mode": self._mode,
            },
        )

    @property
    def _mode(self) -> str:
        return "mock" if self._registry.is_mock else "live"

    async def stop(self) -> None:
        """Close the socket, stop every generator and release HTTP resources."""
        if self._state in (ManagerState.STOPPED, ManagerState.STOPPING):
            return

        logger.info(f"[{self._name}] Stopping market data...")
        self._state = ManagerState.STOPPING

        await self._emit_log(
            "INFO",
            "Market data stopping",
            {
                "event": "FEED_STOPPING",
                "subscriptions": len(self._registry),
                "messages": self._normalizer.stats.total_messages,
            },
        )

        await self._connection.close()
        await self._registry.clear()
        if self._owns_rest and isinstance(self._ctx.rest, RestClient):
            await self._ctx.rest.close()

        self._state = ManagerState.STOPPED
        logger.info(f"[{self._name}] Market data stopped")

    # --- Subscriptions ---

    async def subscribe(self, token: str, callback: PriceCallback) -> Optional[float]:
        """Subscribe ``callback`` to ``token``. Returns the seed price in mock mode."""
        return await self._registry.subscribe(token, callback)

    async def unsubscribe(self, token: str) -> bool:
        return await self._registry.unsubscribe(token)

    async def get_current_price(self, token: str, fallback: Optional[float] = None) -> float:
        """Best available price for ``token``. Never raises."""
        return await self._registry.get_current_price(token, fallback)

    # --- Contracts and history ---

    async def search_contracts(self, query: str) -> list[Contract]:
        """
        Search tradable contracts, e.g. ``"NIFTY 24000 CE"``.

        Raises:
            AuthError: If a session cannot be established
            ApiError: If the search request fails
        """
        provider = self._ctx.provider
        if self._registry.is_mock:
            return mock_contracts(query, provider.default_exchange)

        session = await self._connection.ensure_session()
        contracts = await provider.search_contracts(self._ctx.rest, session, query)
        logger.debug(f"[{self._name}] Search '{query}' returned {len(contracts)} contract(s)")
        return contracts

    async def resolve_symbol_to_token(
        self,
        symbol: str,
        strike: float,
        option_type: str,
        expiry: date,
    ) -> str:
        """
        Find the token of one option contract.

        Raises:
            ContractNotFoundError: If no search result matches every field
        """
        query = f"{symbol} {float(strike):g} {option_type}"
        contracts = await self.search_contracts(query)

        provider = self._ctx.provider
        for contract in contracts:
            if provider.matches_contract(contract, symbol, strike, option_type, expiry):
                logger.info(f"[{self._name}] Found token {contract.token} for {query}")
                return contract.token

        raise ContractNotFoundError(
            f"No matching contract found for {query} with expiry {expiry.isoformat()}",
            query=query,
            component=self._name,
        )

    async def fetch_historical(
        self,
        token: str,
        interval: str,
        start: date,
        end: date,
    ) -> list[HistoricalCandle]:
        """
        Single OHLCV fetch for ``token`` over [start, end] (whole days).

        Raises:
            FeedError: In mock mode, or if authentication or the request fails
        """
        if self._registry.is_mock:
            raise FeedError(
                "Historical data is unavailable in mock mode",
                component=self._name,
            )

        session = await self._connection.ensure_session()
        return await self._ctx.provider.fetch_historical(
            self._ctx.rest, session, str(token), interval, start, end
        )

    # --- Health ---

    def get_health(self) -> ConnectionHealth:
        """Get current connection health snapshot."""
        return self._connection.get_health()

    def get_stats(self) -> dict[str, Any]:
        """Get statistics from all components."""
        stats: dict[str, Any] = {
            "state": self._state.value,
            "mode": self._mode,
            "provider": self._config.provider.value,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "subscriptions": len(self._registry),
            "cached_prices": len(self._ctx.cache),
            "mock_generators": len(self._ctx.mock.tokens),
            "connection": {
                "state": self._connection.state.value,
                "reconnect_attempt": self._connection.reconnect_attempt,
                **asdict(self._connection.metrics),
            },
            "normalizer": asdict(self._normalizer.stats),
        }
        if isinstance(self._ctx.broadcaster, EventBroadcaster):
            stats["broadcast"] = asdict(self._ctx.broadcaster.stats)
        return stats
