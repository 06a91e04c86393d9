"""
Explicit result values for lookups that must never fail outward.

REST quote calls return ``Ok(price)`` or ``Err(kind, message)``; the decision to
substitute a synthetic value is made once, in :func:`price_or_fallback`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class Err:
    kind: str  # e.g. "quote_lookup", "not_connected"
    message: str = ""


QuoteResult = Union[Ok[float], Err]


def price_or_fallback(
    result: QuoteResult,
    fallback: Optional[float],
    synthesize: Callable[[], float],
) -> float:
    """
    Resolve a quote result to a price.

    Ok -> its value. Err -> ``fallback`` when supplied, else ``synthesize()``.
    """
    if isinstance(result, Ok):
        return result.value

    logger.warning(f"Quote unavailable ({result.kind}): {result.message}")
    if fallback is not None:
        return fallback
    return synthesize()
