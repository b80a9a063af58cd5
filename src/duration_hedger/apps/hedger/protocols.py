"""Collaborator interfaces consumed by the hedger.

The hedging core never talks to a concrete client.  It depends on these
protocols, which ``PolymarketClient`` satisfies for live trading and
``PaperVenue`` satisfies for dry runs and tests.
"""

from collections.abc import Collection
from decimal import Decimal
from typing import Protocol, runtime_checkable

from duration_hedger.apps.hedger.models import HedgeMarket
from duration_hedger.clients.polymarket.models import (
    OrderBook,
    OrderRequest,
    OrderResponse,
    Position,
)


@runtime_checkable
class QuoteSource(Protocol):
    """Pull source for order books, used when pushed quotes go stale."""

    async def get_order_book(self, token_id: str) -> OrderBook:
        """Return the current order book for a token."""
        ...


@runtime_checkable
class OrderVenue(Protocol):
    """Venue accepting, cancelling and reporting on orders."""

    async def place_order(self, request: OrderRequest) -> OrderResponse:
        """Submit an order and return the venue's acknowledgement."""
        ...

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel an order; ``False`` when it was no longer cancellable."""
        ...

    async def get_order(self, order_id: str) -> OrderResponse | None:
        """Return the order's current state, or ``None`` if unknown."""
        ...

    async def find_order(
        self,
        token_id: str,
        side: str,
        price: Decimal,
        placed_after: float,
        *,
        exclude: Collection[str] = (),
    ) -> OrderResponse | None:
        """Locate an order whose placement acknowledgement was lost.

        Args:
            token_id: Token the order was for.
            side: ``"BUY"`` or ``"SELL"``.
            price: Limit price of the order.
            placed_after: Unix epoch seconds just before placement.
            exclude: Order ids already known, which cannot be the lost one.

        Returns:
            The matching order, or ``None`` if no order correlates.

        """
        ...


@runtime_checkable
class PositionSource(Protocol):
    """Authoritative, higher-latency record of wallet positions."""

    async def get_positions(self, user: str) -> list[Position]:
        """Return all positions held by ``user``."""
        ...


@runtime_checkable
class MarketRotator(Protocol):
    """Supplier of the market that should currently be traded.

    A different ``condition_id`` from one call to the next is the rotation
    signal; ``None`` means nothing is tradable right now.
    """

    async def current_market(self, now: float) -> HedgeMarket | None:
        """Return the market to trade at time ``now``."""
        ...
