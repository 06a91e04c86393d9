"""
Configuration types for the market data feed.

Provides immutable, validated configuration dataclasses for all feed components,
plus loading from environment-style configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal, Mapping, Optional

from paperfeed.feed.errors import ConfigurationError
from paperfeed.feed.types import Provider

# Provider REST endpoints
DEFAULT_API_URLS: dict[Provider, str] = {
    Provider.KOTAK: "https://tradeapi.kotaksecurities.com/apim",
    Provider.DHAN: "https://api.dhan.co",
}

# Provider WebSocket endpoints
DEFAULT_WS_URLS: dict[Provider, str] = {
    Provider.KOTAK: "wss://websocket.kotaksecurities.com/feed",
    Provider.DHAN: "wss://stream.dhan.co",
}

# NIFTY 50, BANK NIFTY, NIFTY MIDCAP 50, INDIA VIX
MARKET_INDEX_TOKENS: tuple[str, ...] = ("26000", "26009", "26017", "26025")

SubscribeMode = Literal["full", "quote"]

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ConnectionConfig:
    """Configuration for the provider WebSocket."""

    connect_timeout_s: float = 10.0
    heartbeat_interval_s: float = 30.0
    reconnect_delay_s: float = 5.0  # Fixed delay, no growth between attempts
    max_reconnect_attempts: int = 5

    def __post_init__(self) -> None:
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "connect_timeout_s must be positive",
                field="connect_timeout_s",
                value=self.connect_timeout_s,
            )
        if self.heartbeat_interval_s <= 0:
            raise ConfigurationError(
                "heartbeat_interval_s must be positive",
                field="heartbeat_interval_s",
                value=self.heartbeat_interval_s,
            )
        if self.reconnect_delay_s < 0:
            raise ConfigurationError(
                "reconnect_delay_s must be non-negative",
                field="reconnect_delay_s",
                value=self.reconnect_delay_s,
            )
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError(
                "max_reconnect_attempts must be non-negative",
                field="max_reconnect_attempts",
                value=self.max_reconnect_attempts,
            )


@dataclass(frozen=True)
class MockFeedConfig:
    """Configuration for the synthetic price generator."""

    tick_interval_s: float = 5.0
    seed_low: float = 100.0
    seed_high: float = 1100.0  # Exclusive
    max_step_pct: float = 0.005  # ±0.5% per tick
    price_floor: float = 0.05
    seed: Optional[int] = None  # RNG seed, None for nondeterministic

    def __post_init__(self) -> None:
        if self.tick_interval_s <= 0:
            raise ConfigurationError(
                "tick_interval_s must be positive",
                field="tick_interval_s",
                value=self.tick_interval_s,
            )
        if not (0 < self.seed_low < self.seed_high):
            raise ConfigurationError(
                "seed band must satisfy 0 < seed_low < seed_high",
                field="seed_low",
                value=(self.seed_low, self.seed_high),
            )
        if not (0 <= self.max_step_pct < 1):
            raise ConfigurationError(
                "max_step_pct must be between 0 and 1",
                field="max_step_pct",
                value=self.max_step_pct,
            )
        if self.price_floor <= 0:
            raise ConfigurationError(
                "price_floor must be positive",
                field="price_floor",
                value=self.price_floor,
            )


@dataclass(frozen=True)
class FeedConfig:
    """
    Immutable top-level configuration for the feed system.

    Example:
        config = FeedConfig(provider=Provider.DHAN)
        config = FeedConfig.from_env()
    """

    # Provider selection
    provider: Provider = Provider.KOTAK
    use_mock_data: bool = False

    # Endpoints (None -> provider default)
    api_url: Optional[str] = None
    ws_url: Optional[str] = None

    # Subscription behavior
    subscribe_mode: SubscribeMode = "full"
    index_tokens: tuple[str, ...] = MARKET_INDEX_TOKENS
    index_mode: SubscribeMode = "quote"

    # Component configs
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    mock: MockFeedConfig = field(default_factory=MockFeedConfig)

    def __post_init__(self) -> None:
        if not isinstance(self.provider, Provider):
            try:
                # Need to use object.__setattr__ for frozen dataclass
                object.__setattr__(self, "provider", Provider(str(self.provider).lower()))
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid market data provider: {self.provider}",
                    field="provider",
                    value=self.provider,
                ) from e

        if self.api_url is None:
            object.__setattr__(self, "api_url", DEFAULT_API_URLS[self.provider])
        if self.ws_url is None:
            object.__setattr__(self, "ws_url", DEFAULT_WS_URLS[self.provider])

        if not str(self.ws_url).startswith(("ws://", "wss://")):
            raise ConfigurationError(
                "ws_url must be a ws:// or wss:// URL",
                field="ws_url",
                value=self.ws_url,
            )
        for mode_field in ("subscribe_mode", "index_mode"):
            if getattr(self, mode_field) not in ("full", "quote"):
                raise ConfigurationError(
                    f"{mode_field} must be 'full' or 'quote'",
                    field=mode_field,
                    value=getattr(self, mode_field),
                )

    @property
    def rest_base(self) -> str:
        """REST base URL without a trailing slash."""
        return str(self.api_url).rstrip("/")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> FeedConfig:
        """
        Build a config from environment-style keys.

        Recognized keys: MARKET_DATA_PROVIDER, USE_MOCK_DATA,
        <PROVIDER>_API_URL, <PROVIDER>_WS_URL, MOCK_SEED.
        """
        env = os.environ if environ is None else environ

        provider_raw = env.get("MARKET_DATA_PROVIDER", Provider.KOTAK.value)
        try:
            provider = Provider(provider_raw.strip().lower())
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid market data provider: {provider_raw}",
                field="MARKET_DATA_PROVIDER",
                value=provider_raw,
            ) from e

        prefix = provider.value.upper()
        use_mock = env.get("USE_MOCK_DATA", "false").strip().lower() in _TRUTHY

        seed_raw = env.get("MOCK_SEED")
        try:
            mock = MockFeedConfig(seed=int(seed_raw)) if seed_raw else MockFeedConfig()
        except ValueError as e:
            raise ConfigurationError(
                "MOCK_SEED must be an integer",
                field="MOCK_SEED",
                value=seed_raw,
            ) from e

        return cls(
            provider=provider,
            use_mock_data=use_mock,
            api_url=env.get(f"{prefix}_API_URL") or None,
            ws_url=env.get(f"{prefix}_WS_URL") or None,
            mock=mock,
        )
