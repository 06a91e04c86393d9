"""
Per-instance feed state.

The price cache, mock generators, broadcaster and REST client hang off one
FeedContext, built by the manager and injected into each component. Two
managers never share state.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

from paperfeed.feed.broadcast import EventBroadcaster
from paperfeed.feed.cache import PriceCache
from paperfeed.feed.config import FeedConfig
from paperfeed.feed.mock import MockFeed
from paperfeed.feed.providers import FeedProvider, create_provider
from paperfeed.feed.rest import JsonApi, RestClient
from paperfeed.ports.broadcaster import Broadcaster


@dataclass
class FeedContext:
    config: FeedConfig
    provider: FeedProvider
    cache: PriceCache
    broadcaster: Broadcaster
    rest: JsonApi
    mock: MockFeed

    @classmethod
    def create(
        cls,
        config: FeedConfig,
        broadcaster: Optional[Broadcaster] = None,
        rest: Optional[JsonApi] = None,
        rng: Optional[random.Random] = None,
    ) -> FeedContext:
        broadcaster = broadcaster if broadcaster is not None else EventBroadcaster()
        cache = PriceCache()
        return cls(
            config=config,
            provider=create_provider(config),
            cache=cache,
            broadcaster=broadcaster,
            rest=rest if rest is not None else RestClient(name=config.provider.value),
            mock=MockFeed(config.mock, broadcaster, cache=cache, rng=rng),
        )
