"""Simulated order venue and position store for dry runs.

Match orders against the quote cache instead of a real order book: a buy
fills in full once the best ask is at or below its price, a sell once the
best bid is at or above its price.  Depth is not modelled.  Resting orders
are re-checked every time their status is polled, which is when the state
machine would notice a fill on the real venue too.
"""

import itertools
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass
from decimal import Decimal

from duration_hedger.apps.hedger.quote_feed import QuoteFeed
from duration_hedger.clients.polymarket.models import OrderRequest, OrderResponse, Position
from duration_hedger.core.models import ZERO

_CORRELATION_SLACK_SECONDS = 5


@dataclass
class _PaperOrder:
    order_id: str
    request: OrderRequest
    created_at: int
    status: str = "live"
    filled: Decimal = ZERO

    def response(self) -> OrderResponse:
        return OrderResponse(
            order_id=self.order_id,
            status=self.status,
            token_id=self.request.token_id,
            side=self.request.side,
            price=self.request.price,
            size=self.request.size,
            filled=self.filled,
            created_at=self.created_at,
        )


@dataclass
class _Holding:
    size: Decimal = ZERO
    avg_price: Decimal = ZERO


class PaperVenue:
    """Order venue and position source backed by simulated fills.

    Satisfies both ``OrderVenue`` and ``PositionSource``, so a dry run
    exercises the same gateway and ledger code paths as live trading.

    Args:
        quotes: Quote cache the simulated matching reads from.
        clock: Returns the current Unix time in seconds.

    """

    def __init__(self, quotes: QuoteFeed, *, clock: Callable[[], float] = time.time) -> None:
        """Initialize an empty venue.

        Args:
            quotes: Quote cache the simulated matching reads from.
            clock: Returns the current Unix time in seconds.

        """
        self._quotes = quotes
        self._clock = clock
        self._ids = itertools.count(1)
        self._orders: dict[str, _PaperOrder] = {}
        self._holdings: dict[str, _Holding] = {}

    async def place_order(self, request: OrderRequest) -> OrderResponse:
        """Accept an order and match it against the current quote."""
        order = _PaperOrder(
            order_id=f"paper-{next(self._ids)}",
            request=request,
            created_at=int(self._clock()),
        )
        self._orders[order.order_id] = order
        self._match(order)
        if request.order_type == "fak" and order.status == "live":
            order.status = "canceled"
        return order.response()

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel a live order; ``False`` if it already filled or was cancelled."""
        order = self._orders.get(order_id)
        if order is None or order.status != "live":
            return False
        order.status = "canceled"
        return True

    async def get_order(self, order_id: str) -> OrderResponse | None:
        """Return an order's state after re-checking it against the quote."""
        order = self._orders.get(order_id)
        if order is None:
            return None
        self._match(order)
        return order.response()

    async def find_order(
        self,
        token_id: str,
        side: str,
        price: Decimal,
        placed_after: float,
        *,
        exclude: Collection[str] = (),
    ) -> OrderResponse | None:
        """Return the latest order matching token, side and price, skipping ``exclude``."""
        earliest = int(placed_after) - _CORRELATION_SLACK_SECONDS
        for order in reversed(self._orders.values()):
            request = order.request
            if (
                order.order_id not in exclude
                and request.token_id == token_id
                and request.side == side
                and request.price == price
                and order.created_at >= earliest
            ):
                return order.response()
        return None

    async def get_positions(self, user: str) -> list[Position]:  # noqa: ARG002
        """Return every non-empty simulated holding."""
        return [
            Position(
                condition_id="",
                token_id=token_id,
                outcome="",
                size=holding.size,
                avg_price=holding.avg_price,
            )
            for token_id, holding in self._holdings.items()
            if holding.size > ZERO
        ]

    def _match(self, order: _PaperOrder) -> None:
        """Fill a live order in full if the quote crosses its price."""
        if order.status != "live":
            return
        request = order.request
        quote = self._quotes.current_quote(request.token_id)
        if request.side == "BUY":
            crosses = ZERO < quote.best_ask <= request.price
        else:
            crosses = quote.best_bid >= request.price and quote.best_bid > ZERO
        if not crosses:
            return
        order.filled = request.size
        order.status = "matched"
        self._apply(request.token_id, request.side, request.size, request.price)

    def _apply(self, token_id: str, side: str, size: Decimal, price: Decimal) -> None:
        holding = self._holdings.setdefault(token_id, _Holding())
        if side == "BUY":
            total = holding.size + size
            holding.avg_price = (holding.size * holding.avg_price + size * price) / total
            holding.size = total
        else:
            holding.size = max(ZERO, holding.size - size)
