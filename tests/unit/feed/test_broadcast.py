"""
Unit tests for the EventBroadcaster.
"""

from typing import Any

import pytest

from paperfeed.feed.broadcast import EventBroadcaster
from paperfeed.feed.topics import depth_update_topic, market_update_topic


class TestTopics:
    def test_per_token_topics(self) -> None:
        assert market_update_topic("43854") == "market-update:43854"
        assert depth_update_topic("43854") == "depth-update:43854"


class TestEventBroadcaster:
    """Tests for EventBroadcaster."""

    @pytest.fixture
    def broadcaster(self) -> EventBroadcaster:
        """Create a fresh broadcaster for each test."""
        return EventBroadcaster()

    @pytest.mark.asyncio
    async def test_emit_to_listeners_in_order(self, broadcaster: EventBroadcaster) -> None:
        received: list[tuple[str, Any]] = []

        async def first(payload: Any) -> None:
            received.append(("first", payload))

        async def second(payload: Any) -> None:
            received.append(("second", payload))

        broadcaster.on("market-update:1", first)
        broadcaster.on("market-update:1", second)

        await broadcaster.emit("market-update:1", {"ltp": 1.0})

        assert received == [("first", {"ltp": 1.0}), ("second", {"ltp": 1.0})]
        assert broadcaster.stats.delivered == 2
        assert broadcaster.stats.by_event == {"market-update:1": 1}

    @pytest.mark.asyncio
    async def test_emit_without_listeners(self, broadcaster: EventBroadcaster) -> None:
        await broadcaster.emit("market-data-connected")
        assert broadcaster.stats.emitted == 1
        assert broadcaster.stats.delivered == 0

    @pytest.mark.asyncio
    async def test_listener_error_isolated(self, broadcaster: EventBroadcaster) -> None:
        received: list[Any] = []

        async def failing(payload: Any) -> None:
            raise ValueError("listener failure")

        async def healthy(payload: Any) -> None:
            received.append(payload)

        broadcaster.on("e", failing)
        broadcaster.on("e", healthy)

        await broadcaster.emit("e", 1)

        assert received == [1]
        assert broadcaster.stats.listener_errors == 1

    @pytest.mark.asyncio
    async def test_catch_all_sees_every_event(self, broadcaster: EventBroadcaster) -> None:
        seen: list[str] = []

        async def catch_all(event: str, payload: Any) -> None:
            seen.append(event)

        broadcaster.on_any(catch_all)
        await broadcaster.emit("a")
        await broadcaster.emit("b", 2)

        assert seen == ["a", "b"]

    @pytest.mark.asyncio
    async def test_off_single_listener(self, broadcaster: EventBroadcaster) -> None:
        received: list[Any] = []

        async def listener(payload: Any) -> None:
            received.append(payload)

        broadcaster.on("e", listener)
        broadcaster.off("e", listener)
        await broadcaster.emit("e", 1)

        assert received == []
        assert broadcaster.listener_count("e") == 0

    @pytest.mark.asyncio
    async def test_listener_may_unregister_itself(self, broadcaster: EventBroadcaster) -> None:
        calls: list[int] = []

        async def once(payload: Any) -> None:
            calls.append(payload)
            broadcaster.off("e", once)

        broadcaster.on("e", once)
        await broadcaster.emit("e", 1)
        await broadcaster.emit("e", 2)

        assert calls == [1]

    def test_clear(self, broadcaster: EventBroadcaster) -> None:
        async def listener(payload: Any) -> None:
            return None

        broadcaster.on("a", listener)
        broadcaster.on("b", listener)
        broadcaster.clear()

        assert broadcaster.listener_count("a") == 0
        assert broadcaster.listener_count("b") == 0
