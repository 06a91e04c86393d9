"""
Centralized event names for the outward broadcast.

Per-token events are suffixed with the instrument token, e.g.
``market-update:43854``.
"""

# Per-token market data events
MARKET_UPDATE_PREFIX = "market-update"
DEPTH_UPDATE_PREFIX = "depth-update"

# Connection status events
T_MARKET_DATA_CONNECTED = "market-data-connected"
T_MARKET_DATA_DISCONNECTED = "market-data-disconnected"
T_MARKET_DATA_ERROR = "market-data-error"

# Audit trail
T_LOG = "log.event"


def market_update_topic(token: str) -> str:
    return f"{MARKET_UPDATE_PREFIX}:{token}"


def depth_update_topic(token: str) -> str:
    return f"{DEPTH_UPDATE_PREFIX}:{token}"
