"""Polymarket client for order books, orders, positions and series events."""

from duration_hedger.clients.polymarket.client import PolymarketClient
from duration_hedger.clients.polymarket.exceptions import (
    OrderRejectedError,
    PolymarketAPIError,
    PolymarketError,
)
from duration_hedger.clients.polymarket.models import (
    Market,
    MarketToken,
    OrderBook,
    OrderLevel,
    OrderRequest,
    OrderResponse,
    Position,
)

__all__ = [
    "Market",
    "MarketToken",
    "OrderBook",
    "OrderLevel",
    "OrderRejectedError",
    "OrderRequest",
    "OrderResponse",
    "PolymarketAPIError",
    "PolymarketClient",
    "PolymarketError",
    "Position",
]
