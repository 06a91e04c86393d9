"""
Feed provider implementations.

A FeedProvider bundles everything that differs between brokerages:
authentication steps, WebSocket/REST headers, frame shapes, message
decoding, and the quote/search/historical endpoints. Callers depend on the
FeedProvider interface only; ``create_provider`` is the single place that
selects an implementation.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, ClassVar, Literal, Mapping, Optional, Sequence

from paperfeed.feed.config import FeedConfig, SubscribeMode
from paperfeed.feed.decoders import BaseDecoder, DhanDecoder, KotakDecoder
from paperfeed.feed.errors import ApiError, ConfigurationError, DecodeError, QuoteLookupError
from paperfeed.feed.rest import JsonApi
from paperfeed.feed.types import (
    Contract,
    Credential,
    DecodedMessage,
    HistoricalCandle,
    Provider,
    Session,
)

logger = logging.getLogger(__name__)

Interval = Literal["minute", "hour", "day"]
INTERVALS: tuple[str, ...] = ("minute", "hour", "day")

_DAY_MS = 24 * 60 * 60 * 1000


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _parse_expiry(value: Any) -> Optional[date]:
    """Parse an ISO date or datetime string; None when absent or unparseable."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        logger.debug(f"Unparseable expiry: {value!r}")
        return None


def _parse_timestamp(value: Any, *, unit_ms: bool) -> datetime:
    """Epoch number (ms or s) or ISO string to an aware UTC datetime."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if unit_ms else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as e:
        raise DecodeError(f"Invalid timestamp: {value!r}", expected_type="timestamp") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require_list(data: Any, url: str) -> list[Any]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ApiError("Expected a list in response data", url=url, component="FeedProvider")
    return data


class FeedProvider(ABC):
    """Uniform capability surface of a market data provider."""

    provider: ClassVar[Provider]
    session_ttl: ClassVar[timedelta]
    default_exchange: ClassVar[str]
    intervals: ClassVar[Mapping[str, str]]

    def __init__(self, config: FeedConfig, decoder: BaseDecoder) -> None:
        self._config = config
        self._base = config.rest_base
        self._decoder = decoder

    @property
    def name(self) -> str:
        return self.provider.value

    @property
    def ws_url(self) -> str:
        return str(self._config.ws_url)

    def url(self, path: str) -> str:
        return f"{self._base}{path}"

    # --- authentication -------------------------------------------------

    @abstractmethod
    async def authenticate(self, rest: JsonApi, credential: Credential) -> str:
        """Run the provider's login steps and return the access token."""

    @abstractmethod
    def auth_headers(self, session: Session) -> dict[str, str]:
        """Headers authorizing both the WebSocket handshake and REST calls."""

    # --- frames ---------------------------------------------------------

    @abstractmethod
    def subscribe_frame(self, tokens: Sequence[str], mode: SubscribeMode) -> dict[str, Any]: ...

    @abstractmethod
    def unsubscribe_frame(self, tokens: Sequence[str]) -> dict[str, Any]: ...

    def heartbeat_frame(self) -> dict[str, Any]:
        return {"type": "heartbeat"}

    def decode(self, message: Any) -> Optional[DecodedMessage]:
        return self._decoder.decode(message)

    # --- quotes ---------------------------------------------------------

    @abstractmethod
    def quote_path(self) -> str: ...

    @abstractmethod
    def quote_price(self, data: Any) -> Any:
        """Extract the last traded price from a quote response."""

    async def fetch_quote(self, rest: JsonApi, session: Session, token: str) -> float:
        """
        One-shot REST quote.

        Raises:
            QuoteLookupError: On any failure, including a missing price
        """
        url = self.url(self.quote_path())
        try:
            data = await rest.get(url, params={"token": token}, headers=self.auth_headers(session))
        except ApiError as e:
            raise QuoteLookupError(
                f"Failed to get quote: {e.args[0]}",
                url=url,
                status=e.status,
                token=token,
                component=self.name,
            ) from e

        raw = self.quote_price(data) if isinstance(data, Mapping) else None
        try:
            price = float(raw)
        except (TypeError, ValueError) as e:
            raise QuoteLookupError(
                "Quote response has no price",
                url=url,
                token=token,
                component=self.name,
            ) from e
        return price

    # --- contracts ------------------------------------------------------

    @abstractmethod
    def search_request(self, query: str) -> tuple[str, dict[str, str]]:
        """Path and query params of the contract search endpoint."""

    @abstractmethod
    def parse_contract(self, raw: Mapping[str, Any]) -> Contract: ...

    @abstractmethod
    def symbol_matches(self, contract: Contract, symbol: str) -> bool: ...

    async def search_contracts(
        self, rest: JsonApi, session: Session, query: str
    ) -> list[Contract]:
        path, params = self.search_request(query)
        url = self.url(path)
        data = await rest.get(url, params=params, headers=self.auth_headers(session))
        return [self.parse_contract(raw) for raw in _require_list(data, url)]

    def matches_contract(
        self,
        contract: Contract,
        symbol: str,
        strike: float,
        option_type: str,
        expiry: date,
    ) -> bool:
        return (
            self.symbol_matches(contract, symbol)
            and contract.strike == float(strike)
            and contract.option_type == option_type
            and contract.expiry == expiry
        )

    # --- historical -----------------------------------------------------

    @abstractmethod
    def historical_request(
        self, token: str, interval: str, start: date, end: date
    ) -> tuple[str, dict[str, Any]]:
        """Path and query params of the historical endpoint."""

    @abstractmethod
    def parse_candles(self, data: Any, url: str) -> list[HistoricalCandle]: ...

    def map_interval(self, interval: str) -> str:
        try:
            return self.intervals[interval]
        except KeyError as e:
            raise ConfigurationError(
                f"Unsupported interval: {interval}",
                field="interval",
                value=interval,
            ) from e

    async def fetch_historical(
        self,
        rest: JsonApi,
        session: Session,
        token: str,
        interval: str,
        start: date,
        end: date,
    ) -> list[HistoricalCandle]:
        """Single OHLCV fetch; ``end`` is inclusive through the end of its day."""
        if end < start:
            raise ConfigurationError(
                "Historical range end precedes start",
                field="end",
                value=(start.isoformat(), end.isoformat()),
            )
        path, params = self.historical_request(token, interval, start, end)
        url = self.url(path)
        data = await rest.get(url, params=params, headers=self.auth_headers(session))
        return self.parse_candles(data, url)


class KotakProvider(FeedProvider):
    """Kotak Securities: two-step login with TOTP, bearer auth."""

    provider = Provider.KOTAK
    session_ttl = timedelta(hours=8)
    default_exchange = "NSE_FO"
    intervals = {"minute": "1", "hour": "60", "day": "D"}

    def __init__(self, config: FeedConfig) -> None:
        super().__init__(config, KotakDecoder())

    async def authenticate(self, rest: JsonApi, credential: Credential) -> str:
        login = await rest.post(
            self.url("/session/1.0/session/login/userid"),
            json={"userid": credential.user_id, "password": credential.password},
        )
        session_token = login.get("session_token") if isinstance(login, Mapping) else None
        if not session_token:
            raise ApiError("Login response has no session_token", component=self.name)

        twofa = await rest.post(
            self.url("/session/1.0/session/2fa/totp"),
            json={"userid": credential.user_id, "accessCode": credential.totp_code},
            headers={"Authorization": f"Bearer {session_token}"},
        )
        access_token = twofa.get("access_token") if isinstance(twofa, Mapping) else None
        if not access_token:
            raise ApiError("2FA response has no access_token", component=self.name)
        return str(access_token)

    def auth_headers(self, session: Session) -> dict[str, str]:
        return {"Authorization": f"Bearer {session.access_token}"}

    def subscribe_frame(self, tokens: Sequence[str], mode: SubscribeMode) -> dict[str, Any]:
        return {"type": "subscribe", "data": {"mode": mode, "tokens": list(tokens)}}

    def unsubscribe_frame(self, tokens: Sequence[str]) -> dict[str, Any]:
        return {"type": "unsubscribe", "data": {"tokens": list(tokens)}}

    def quote_path(self) -> str:
        return "/market/1.0/quote"

    def quote_price(self, data: Any) -> Any:
        return data.get("ltp")

    def search_request(self, query: str) -> tuple[str, dict[str, str]]:
        return "/market/1.0/search", {"search": query, "exchange": "nse_fo"}

    def parse_contract(self, raw: Mapping[str, Any]) -> Contract:
        return Contract(
            token=str(raw.get("token")),
            symbol=str(raw.get("symbol", "")),
            strike=float(raw.get("strike") or 0),
            option_type=str(raw.get("option_type") or "N/A"),
            expiry=_parse_expiry(raw.get("expiry")),
            exchange=str(raw.get("exchange") or self.default_exchange),
        )

    def symbol_matches(self, contract: Contract, symbol: str) -> bool:
        return contract.symbol == symbol

    def historical_request(
        self, token: str, interval: str, start: date, end: date
    ) -> tuple[str, dict[str, Any]]:
        start_ms = int(_day_start(start).timestamp() * 1000)
        end_ms = int(_day_start(end).timestamp() * 1000) + _DAY_MS - 1
        return "/market/1.0/historical", {
            "token": token,
            "interval": self.map_interval(interval),
            "from": start_ms,
            "to": end_ms,
        }

    def parse_candles(self, data: Any, url: str) -> list[HistoricalCandle]:
        candles = []
        for raw in _require_list(data, url):
            candles.append(
                HistoricalCandle(
                    timestamp=_parse_timestamp(raw["timestamp"], unit_ms=True),
                    open=float(raw["open"]),
                    high=float(raw["high"]),
                    low=float(raw["low"]),
                    close=float(raw["close"]),
                    volume=float(raw.get("volume") or 0),
                )
            )
        return candles


class DhanProvider(FeedProvider):
    """Dhan: login + token exchange, access token and client id headers."""

    provider = Provider.DHAN
    session_ttl = timedelta(hours=24)
    default_exchange = "NFO"
    intervals = {"minute": "1m", "hour": "1h", "day": "1d"}

    def __init__(self, config: FeedConfig) -> None:
        super().__init__(config, DhanDecoder())

    async def authenticate(self, rest: JsonApi, credential: Credential) -> str:
        login = await rest.post(
            self.url("/auth/login"),
            json={"client_id": credential.client_id, "client_secret": credential.client_secret},
        )
        request_token = login.get("request_token") if isinstance(login, Mapping) else None
        if not request_token:
            raise ApiError("Login response has no request_token", component=self.name)

        exchange = await rest.post(
            self.url("/auth/token"),
            json={"request_token": request_token, "client_id": credential.client_id},
        )
        access_token = exchange.get("access_token") if isinstance(exchange, Mapping) else None
        if not access_token:
            raise ApiError("Token response has no access_token", component=self.name)
        return str(access_token)

    def auth_headers(self, session: Session) -> dict[str, str]:
        return {
            "X-Access-Token": session.access_token,
            "X-Client-Id": session.client_id or "",
        }

    def subscribe_frame(self, tokens: Sequence[str], mode: SubscribeMode) -> dict[str, Any]:
        return {"action": "subscribe", "params": {"mode": mode, "tokens": list(tokens)}}

    def unsubscribe_frame(self, tokens: Sequence[str]) -> dict[str, Any]:
        return {"action": "unsubscribe", "params": {"tokens": list(tokens)}}

    def quote_path(self) -> str:
        return "/quotes"

    def quote_price(self, data: Any) -> Any:
        return data.get("lastPrice")

    def search_request(self, query: str) -> tuple[str, dict[str, str]]:
        return "/contracts/search", {"query": query, "exchange": "NFO"}

    def parse_contract(self, raw: Mapping[str, Any]) -> Contract:
        return Contract(
            token=str(raw.get("token")),
            symbol=str(raw.get("tradingSymbol", "")),
            strike=float(raw.get("strikePrice") or 0),
            option_type=str(raw.get("optionType") or "N/A"),
            expiry=_parse_expiry(raw.get("expiry")),
            exchange=str(raw.get("exchange") or self.default_exchange),
        )

    def symbol_matches(self, contract: Contract, symbol: str) -> bool:
        # Trading symbols embed the expiry, e.g. NIFTY2412524000CE
        return symbol in contract.symbol

    def historical_request(
        self, token: str, interval: str, start: date, end: date
    ) -> tuple[str, dict[str, Any]]:
        start_s = int(_day_start(start).timestamp())
        end_s = int(_day_start(end).timestamp()) + 24 * 60 * 60 - 1
        return "/charts/history", {
            "token": token,
            "resolution": self.map_interval(interval),
            "from": start_s,
            "to": end_s,
        }

    def parse_candles(self, data: Any, url: str) -> list[HistoricalCandle]:
        if not data:
            return []
        if not isinstance(data, Mapping):
            raise ApiError("Expected column arrays in response data", url=url, component=self.name)

        columns = [data.get(key) or [] for key in ("t", "o", "h", "l", "c", "v")]
        if len({len(col) for col in columns}) != 1:
            raise ApiError("Historical columns differ in length", url=url, component=self.name)

        return [
            HistoricalCandle(
                timestamp=_parse_timestamp(t, unit_ms=False),
                open=float(o),
                high=float(h),
                low=float(low),
                close=float(c),
                volume=float(v or 0),
            )
            for t, o, h, low, c, v in zip(*columns)
        ]


def create_provider(config: FeedConfig) -> FeedProvider:
    """Build the provider selected by ``config.provider``."""
    if config.provider == Provider.KOTAK:
        return KotakProvider(config)
    if config.provider == Provider.DHAN:
        return DhanProvider(config)
    raise ConfigurationError(
        f"Invalid market data provider: {config.provider}",
        field="provider",
        value=config.provider,
    )
