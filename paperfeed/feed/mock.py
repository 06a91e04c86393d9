"""
Synthetic price generator.

Used whenever the live feed is unavailable. Subscribers see the same
contract as live data: an immediate callback with the seed price, then one
callback and one ``market-update:<token>`` broadcast per step.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from datetime import date
from typing import Optional

from paperfeed.feed.cache import PriceCache
from paperfeed.feed.config import MockFeedConfig
from paperfeed.feed.topics import market_update_topic
from paperfeed.feed.types import Contract, PriceCallback, Tick, TickSource
from paperfeed.ports.broadcaster import Broadcaster

logger = logging.getLogger(__name__)

MOCK_TOKEN_BASE = 43054


class MockFeed:
    """
    Per-token random walk.

    Each token has its own asyncio task; tokens never influence each other.
    Step: ``price += price * U(-max_step_pct, +max_step_pct)``, floored at
    ``price_floor``.
    """

    def __init__(
        self,
        config: MockFeedConfig,
        broadcaster: Broadcaster,
        cache: Optional[PriceCache] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config
        self._broadcaster = broadcaster
        self._cache = cache
        self._rng = rng or random.Random(config.seed)
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._prices: dict[str, float] = {}

    def generate_price(self) -> float:
        """Fresh seed price in [seed_low, seed_high), rounded down to 2 decimals."""
        low, high = self._config.seed_low, self._config.seed_high
        price = math.floor((low + (high - low) * self._rng.random()) * 100) / 100
        return min(price, math.floor(high * 100 - 1) / 100)

    def step(self, price: float) -> float:
        pct = self._config.max_step_pct
        moved = price + price * self._rng.uniform(-pct, pct)
        return max(self._config.price_floor, moved)

    def has(self, token: str) -> bool:
        return token in self._tasks

    def current_price(self, token: str) -> Optional[float]:
        return self._prices.get(token)

    @property
    def tokens(self) -> list[str]:
        return list(self._tasks)

    async def start(self, token: str, callback: PriceCallback) -> float:
        """
        Start (or restart) the generator for ``token``.

        Returns the seed price, which has already been delivered to
        ``callback`` when this returns.
        """
        self.stop(token)

        price = self.generate_price()
        self._prices[token] = price
        self._tasks[token] = asyncio.create_task(
            self._run(token, callback), name=f"mock_{token}"
        )
        logger.info(f"[mock] Started generator for {token} at {price:.2f}")
        await self._publish(token, callback, price)
        return price

    def stop(self, token: str) -> bool:
        """Cancel and discard the generator for ``token``."""
        task = self._tasks.pop(token, None)
        self._prices.pop(token, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        logger.debug(f"[mock] Stopped generator for {token}")
        return True

    async def stop_all(self) -> None:
        tasks = list(self._tasks.values())
        for token in list(self._tasks):
            self.stop(token)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, token: str, callback: PriceCallback) -> None:
        try:
            while True:
                await asyncio.sleep(self._config.tick_interval_s)
                current = self._prices.get(token)
                if current is None:
                    break
                price = self.step(current)
                self._prices[token] = price
                await self._publish(token, callback, price)
        except asyncio.CancelledError:
            logger.debug(f"[mock] Generator for {token} cancelled")
            raise

    async def _publish(self, token: str, callback: PriceCallback, price: float) -> None:
        if self._cache is not None:
            self._cache.update(token, price)
        try:
            await callback(price)
        except Exception as e:
            logger.error(f"[mock] Callback error for {token}: {e}", exc_info=True)
        tick = Tick(token=token, last_price=price, source=TickSource.MOCK)
        await self._broadcaster.emit(market_update_topic(token), tick.to_payload())


def _add_months(day: date, months: int, day_of_month: int) -> date:
    month_index = day.month - 1 + months
    return date(day.year + month_index // 12, month_index % 12 + 1, day_of_month)


def mock_contracts(query: str, exchange: str, today: Optional[date] = None) -> list[Contract]:
    """
    Synthetic search results for ``"<symbol> <strike> <option_type>"``.

    Three monthly expiries (around the 25th), each with the exact strike and
    the strikes 500 above and below.
    """
    parts = query.split()
    symbol = parts[0] if parts else ""
    try:
        strike = float(parts[1]) if len(parts) > 1 else 0.0
    except ValueError:
        strike = 0.0
    option_type = parts[2] if len(parts) > 2 else ""
    today = today or date.today()

    contracts: list[Contract] = []
    for i in range(3):
        expiry = _add_months(today, i, 25)
        base = MOCK_TOKEN_BASE + i * 100
        for offset, strike_delta in enumerate((0.0, 500.0, -500.0)):
            contracts.append(
                Contract(
                    token=str(base + offset),
                    symbol=symbol,
                    strike=strike + strike_delta,
                    option_type=option_type,
                    expiry=expiry,
                    exchange=exchange,
                )
            )
    return contracts
