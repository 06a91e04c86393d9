"""
Last-known-price cache.

Maps token -> latest observed price. No history is kept.
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class PriceCache:
    """Token to latest price. Owned by one FeedContext."""

    def __init__(self) -> None:
        self._prices: dict[str, float] = {}

    def get(self, token: str) -> Optional[float]:
        return self._prices.get(token)

    def update(self, token: str, price: float) -> None:
        self._prices[token] = price

    def purge(self, token: str) -> bool:
        """Remove a token. Returns True if an entry existed."""
        existed = self._prices.pop(token, None) is not None
        if existed:
            logger.debug(f"Purged cached price for {token}")
        return existed

    def clear(self) -> None:
        self._prices.clear()

    def snapshot(self) -> dict[str, float]:
        """Copy of the current prices."""
        return dict(self._prices)

    def __contains__(self, token: object) -> bool:
        return token in self._prices

    def __len__(self) -> int:
        return len(self._prices)

    def __iter__(self) -> Iterator[str]:
        return iter(self._prices)
