"""
Shared fakes for feed tests: an in-memory WebSocket transport, a scripted
REST client, and configs with short timers. No network is used.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import orjson
import pytest

from paperfeed.feed.auth import env_secrets
from paperfeed.feed.broadcast import EventBroadcaster
from paperfeed.feed.config import ConnectionConfig, FeedConfig, MockFeedConfig
from paperfeed.feed.errors import ApiError, SocketError
from paperfeed.feed.manager import MarketDataManager
from paperfeed.feed.types import Provider

KOTAK_ENV = {
    "KOTAK_USER_ID": "AB1234",
    "KOTAK_PASSWORD": "secret",
    "KOTAK_TOTP_CODE": "123456",
}
DHAN_ENV = {
    "DHAN_CLIENT_ID": "1000012345",
    "DHAN_CLIENT_SECRET": "dhan-secret",
}


class FakeTransport:
    """In-memory socket. ``push`` delivers a frame, ``drop`` closes from the server side."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, frame: dict[str, Any]) -> None:
        if self.closed:
            raise SocketError("closed")
        self.sent.append(dict(frame))

    async def messages(self):
        while True:
            item = await self._inbox.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def push(self, message: Any) -> None:
        raw = message if isinstance(message, str) else orjson.dumps(message).decode()
        self._inbox.put_nowait(raw)

    def drop(self) -> None:
        self._inbox.put_nowait(None)

    def fail(self, error: Exception) -> None:
        self._inbox.put_nowait(error)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def subscribed_tokens(self) -> list[list[str]]:
        """Token lists of every subscribe frame, in send order."""
        tokens = []
        for frame in self.sent:
            if frame.get("type") == "subscribe":
                tokens.append(frame["data"]["tokens"])
            elif frame.get("action") == "subscribe":
                tokens.append(frame["params"]["tokens"])
        return tokens


class FakeTransportFactory:
    """Records connection attempts; raises queued errors before opening sockets."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.transports: list[FakeTransport] = []
        self.errors: list[Exception] = []
        self.fail_with: Optional[Exception] = None
        self.delay = 0.0

    async def __call__(self, url: str, headers: Any, timeout_s: float) -> FakeTransport:
        self.calls.append((url, dict(headers)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        if self.fail_with is not None:
            raise self.fail_with
        transport = FakeTransport()
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]


@dataclass
class RestCall:
    method: str
    url: str
    body: Any
    headers: dict[str, str]


class FakeRest:
    """
    Scripted JsonApi. Routes match on method and URL suffix; a response may
    be data, an exception to raise, or a callable taking the request body.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Any] = {}
        self.calls: list[RestCall] = []

    def on(self, method: str, path: str, response: Any) -> None:
        self.routes[(method, path)] = response

    def calls_to(self, path: str) -> list[RestCall]:
        return [c for c in self.calls if c.url.endswith(path)]

    async def get(self, url: str, *, params=None, headers=None) -> Any:
        return self._respond("GET", url, params, headers)

    async def post(self, url: str, *, json=None, headers=None) -> Any:
        return self._respond("POST", url, json, headers)

    def _respond(self, method: str, url: str, body: Any, headers: Any) -> Any:
        self.calls.append(RestCall(method, url, dict(body or {}), dict(headers or {})))
        for (route_method, path), response in self.routes.items():
            if route_method == method and url.endswith(path):
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(body)
                return response
        raise ApiError("No route", url=url, status=404)


def kotak_auth_routes(rest: FakeRest) -> None:
    rest.on("POST", "/session/1.0/session/login/userid", {"session_token": "sess-1"})
    rest.on("POST", "/session/1.0/session/2fa/totp", {"access_token": "kotak-access"})


def dhan_auth_routes(rest: FakeRest) -> None:
    rest.on("POST", "/auth/login", {"request_token": "req-1"})
    rest.on("POST", "/auth/token", {"access_token": "dhan-access"})


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the running loop until true or ``timeout``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_config(provider: Provider = Provider.KOTAK, **overrides: Any) -> FeedConfig:
    connection = overrides.pop(
        "connection",
        ConnectionConfig(
            connect_timeout_s=1.0,
            heartbeat_interval_s=30.0,
            reconnect_delay_s=0.01,
            max_reconnect_attempts=5,
        ),
    )
    mock = overrides.pop("mock", MockFeedConfig(tick_interval_s=0.05, seed=42))
    return FeedConfig(provider=provider, connection=connection, mock=mock, **overrides)


class PriceRecorder:
    """Async price callback that records every price it receives."""

    def __init__(self) -> None:
        self.prices: list[float] = []

    async def __call__(self, price: float) -> None:
        self.prices.append(price)


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def fake_rest() -> FakeRest:
    rest = FakeRest()
    kotak_auth_routes(rest)
    dhan_auth_routes(rest)
    return rest


@pytest.fixture
def rest_factory() -> Callable[[], FakeRest]:
    """Unscripted REST fakes, with no auth routes."""
    return FakeRest


@pytest.fixture
def auth_routes() -> dict[Provider, Callable[[FakeRest], None]]:
    return {Provider.KOTAK: kotak_auth_routes, Provider.DHAN: dhan_auth_routes}


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def events(broadcaster: EventBroadcaster) -> list[tuple[str, Any]]:
    """Every broadcast event, in emission order."""
    seen: list[tuple[str, Any]] = []

    async def record(event: str, payload: Any) -> None:
        seen.append((event, payload))

    broadcaster.on_any(record)
    return seen


@pytest.fixture
def recorder() -> Callable[[], PriceRecorder]:
    return PriceRecorder


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    return wait_until


@pytest.fixture
def make_manager(
    fake_rest: FakeRest,
    transport_factory: FakeTransportFactory,
    broadcaster: EventBroadcaster,
):
    """Build managers wired to the fakes."""

    def _make(provider: Provider = Provider.KOTAK, **overrides: Any) -> MarketDataManager:
        config = overrides.pop("config", None) or make_config(provider)
        env = KOTAK_ENV if config.provider == Provider.KOTAK else DHAN_ENV
        manager = MarketDataManager(
            config=config,
            broadcaster=overrides.pop("broadcaster", broadcaster),
            secrets=overrides.pop(
                "secrets", env_secrets(config.provider, environ=env)
            ),
            rest=fake_rest,
            transport_factory=transport_factory,
            rng=random.Random(7),
            **overrides,
        )
        return manager

    return _make


@pytest.fixture
def config_factory() -> Callable[..., FeedConfig]:
    return make_config
