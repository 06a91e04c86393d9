"""
Unit tests for SubscriptionRegistry.
"""

import pytest

from paperfeed.feed.context import FeedContext
from paperfeed.feed.errors import ApiError
from paperfeed.feed.registry import SubscriptionRegistry
from paperfeed.feed.topics import market_update_topic


@pytest.fixture
def ctx(config_factory, broadcaster, fake_rest) -> FeedContext:
    return FeedContext.create(config_factory(), broadcaster=broadcaster, rest=fake_rest)


@pytest.fixture
def registry(ctx: FeedContext) -> SubscriptionRegistry:
    return SubscriptionRegistry(ctx)


class TestSubscribe:
    """Tests for subscribe/unsubscribe without a connection."""

    @pytest.mark.asyncio
    async def test_latent_subscription(self, registry, recorder) -> None:
        assert await registry.subscribe("43854", recorder()) is None
        assert "43854" in registry
        assert registry.tokens() == ["43854"]

    @pytest.mark.asyncio
    async def test_resubscribe_replaces_callback(self, registry, recorder) -> None:
        first, second = recorder(), recorder()
        await registry.subscribe("43854", first)
        await registry.subscribe("43854", second)

        assert len(registry) == 1
        assert registry.callback_for("43854") is second

    @pytest.mark.asyncio
    async def test_numeric_token_normalized(self, registry, recorder) -> None:
        await registry.subscribe(43854, recorder())  # type: ignore[arg-type]
        assert "43854" in registry

    @pytest.mark.asyncio
    async def test_unsubscribe_purges_cache(self, registry, ctx, recorder) -> None:
        await registry.subscribe("43854", recorder())
        ctx.cache.update("43854", 150.0)

        assert await registry.unsubscribe("43854") is True
        assert ctx.cache.get("43854") is None
        assert "43854" not in registry

    @pytest.mark.asyncio
    async def test_unsubscribe_unknown(self, registry) -> None:
        assert await registry.unsubscribe("nope") is False


class TestMockMode:
    """Tests for the one-way switch to mock data."""

    @pytest.mark.asyncio
    async def test_switch_starts_generators(self, registry, ctx, recorder, events) -> None:
        a, b = recorder(), recorder()
        await registry.subscribe("A", a)
        await registry.subscribe("B", b)

        await registry.switch_to_mock()

        assert registry.is_mock
        assert sorted(ctx.mock.tokens) == ["A", "B"]
        assert len(a.prices) == 1 and 100.0 <= a.prices[0] < 1100.0
        assert len(b.prices) == 1
        assert market_update_topic("A") in [name for name, _ in events]

        await registry.clear()

    @pytest.mark.asyncio
    async def test_subscribe_in_mock_returns_seed(self, registry, ctx, recorder) -> None:
        await registry.switch_to_mock()
        prices = recorder()

        seed = await registry.subscribe("43854", prices)

        assert prices.prices == [seed]
        assert ctx.cache.get("43854") == seed

        await registry.clear()

    @pytest.mark.asyncio
    async def test_unsubscribe_in_mock_stops_generator(self, registry, ctx, recorder) -> None:
        await registry.switch_to_mock()
        await registry.subscribe("43854", recorder())

        await registry.unsubscribe("43854")

        assert not ctx.mock.has("43854")
        assert ctx.cache.get("43854") is None

    @pytest.mark.asyncio
    async def test_switch_is_idempotent(self, registry, ctx, recorder) -> None:
        prices = recorder()
        await registry.subscribe("A", prices)
        await registry.switch_to_mock()
        await registry.switch_to_mock()

        assert len(prices.prices) == 1

        await registry.clear()

    @pytest.mark.asyncio
    async def test_clear_stops_everything(self, registry, ctx, recorder) -> None:
        await registry.switch_to_mock()
        await registry.subscribe("A", recorder())

        await registry.clear()

        assert len(registry) == 0
        assert ctx.mock.tokens == []
        assert len(ctx.cache) == 0


class TestGetCurrentPrice:
    """Tests for price lookup order."""

    @pytest.mark.asyncio
    async def test_cached_price_wins(self, registry, ctx) -> None:
        ctx.cache.update("43854", 152.35)
        assert await registry.get_current_price("43854", fallback=1.0) == 152.35

    @pytest.mark.asyncio
    async def test_no_connection_uses_fallback(self, registry) -> None:
        assert await registry.get_current_price("43854", fallback=99.5) == 99.5

    @pytest.mark.asyncio
    async def test_no_connection_synthesizes(self, registry) -> None:
        price = await registry.get_current_price("43854")
        assert 100.0 <= price < 1100.0

    @pytest.mark.asyncio
    async def test_mock_mode_starts_generator_on_demand(self, registry, ctx, recorder) -> None:
        await registry.subscribe("43854", recorder())
        await registry.switch_to_mock()
        ctx.mock.stop("43854")
        ctx.cache.purge("43854")

        price = await registry.get_current_price("43854")

        assert 100.0 <= price < 1100.0
        assert ctx.mock.has("43854")
        assert await registry.get_current_price("43854") == price

        await registry.clear()

    @pytest.mark.asyncio
    async def test_mock_mode_unsubscribed_token_not_cached(self, registry, ctx) -> None:
        await registry.switch_to_mock()

        price = await registry.get_current_price("99999")

        assert 100.0 <= price < 1100.0
        assert ctx.mock.tokens == []
        assert ctx.cache.get("99999") is None
        assert registry.tokens() == []
        assert await registry.get_current_price("99999", fallback=42.0) == 42.0

    @pytest.mark.asyncio
    async def test_rest_quote(self, make_manager, fake_rest) -> None:
        fake_rest.on("GET", "/market/1.0/quote", {"ltp": 152.35})
        manager = make_manager()

        price = await manager.registry.get_current_price("43854")

        assert price == 152.35
        # Second lookup is served from the cache
        assert await manager.registry.get_current_price("43854") == 152.35
        assert len(fake_rest.calls_to("/market/1.0/quote")) == 1

    @pytest.mark.asyncio
    async def test_failed_quote_uses_fallback(self, make_manager, fake_rest) -> None:
        fake_rest.on("GET", "/market/1.0/quote", ApiError("HTTP 503", status=503))
        manager = make_manager()

        assert await manager.registry.get_current_price("43854", fallback=150.0) == 150.0
