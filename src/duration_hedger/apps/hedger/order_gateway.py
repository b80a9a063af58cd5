"""Order gateway: resting and immediate orders against the venue.

Own every order the state machine sends.  Placement, cancellation and
status polling errors are caught and logged here; a failed call returns
``None`` (or a zero fill) instead of raising, so the driver loop simply
retries on its next tick.  Every fill the gateway learns about is written
to the position ledger before the caller sees it.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal

import httpx

from duration_hedger.apps.hedger.ledger import PositionLedger
from duration_hedger.apps.hedger.models import (
    HedgeMarket,
    Leg,
    OrderHandle,
    OrderReport,
    OrderStatus,
    OrderStyle,
)
from duration_hedger.apps.hedger.protocols import OrderVenue
from duration_hedger.clients.polymarket.exceptions import OrderRejectedError, PolymarketAPIError
from duration_hedger.clients.polymarket.models import OrderRequest, OrderResponse
from duration_hedger.core.models import ZERO, Side

logger = logging.getLogger(__name__)

_ORDER_TYPES = {OrderStyle.RESTING: "limit", OrderStyle.IMMEDIATE: "fak"}
_FINISHED_STATUSES = frozenset({"matched", "unmatched", "expired"})


class OrderGateway:
    """Place, poll and cancel orders for one market.

    Args:
        venue: Order venue (live client or paper venue).
        market: Market whose legs the orders trade.
        ledger: Ledger that receives every observed fill.
        fill_ratio: Fraction of the order size counted as a complete fill.
        settle_seconds: Wait before reading an immediate order back.
        clock: Returns the current Unix time in seconds.
        sleep: Coroutine used for the settle wait.

    """

    def __init__(  # noqa: PLR0913
        self,
        venue: OrderVenue,
        market: HedgeMarket,
        ledger: PositionLedger,
        *,
        fill_ratio: Decimal = Decimal("0.99"),
        settle_seconds: float = 0.5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the gateway.

        Args:
            venue: Order venue.
            market: Market whose legs the orders trade.
            ledger: Ledger that receives every observed fill.
            fill_ratio: Fraction of the size counted as a complete fill.
            settle_seconds: Wait before reading an immediate order back.
            clock: Returns the current Unix time in seconds.
            sleep: Coroutine used for the settle wait.

        """
        self._venue = venue
        self._market = market
        self._ledger = ledger
        self._fill_ratio = fill_ratio
        self._settle_seconds = settle_seconds
        self._clock = clock
        self._sleep = sleep
        self._fill_prices: dict[str, Decimal] = {}

    async def place_resting(
        self,
        leg: Leg,
        price: Decimal,
        size: Decimal,
        side: Side = Side.BUY,
    ) -> OrderHandle | None:
        """Place an order that rests on the book until filled or cancelled.

        Args:
            leg: Leg to trade.
            price: Tick-aligned limit price.
            size: Shares to trade.
            side: BUY or SELL.

        Returns:
            Handle of the acknowledged order, or ``None`` when the order
            was not placed (the caller retries on a later tick).

        """
        return await self._submit(leg, side, price, size, OrderStyle.RESTING)

    async def place_immediate(
        self,
        leg: Leg,
        price: Decimal,
        size: Decimal,
        side: Side = Side.BUY,
    ) -> Decimal:
        """Fill what is available at ``price`` or better and kill the rest.

        After a short settle the matched size is read back from the venue,
        and any remainder still reported open is cancelled so nothing is
        left resting.

        Args:
            leg: Leg to trade.
            price: Worst acceptable price.
            size: Shares wanted.
            side: BUY or SELL.

        Returns:
            Shares actually filled (possibly zero).

        """
        handle = await self._submit(leg, side, price, size, OrderStyle.IMMEDIATE)
        if handle is None:
            return ZERO
        if self._settle_seconds > 0:
            await self._sleep(self._settle_seconds)
        report = await self.poll(handle)
        if report is not None and report.is_open:
            logger.warning(
                "[ORDER] immediate order %s left a remainder, cancelling", handle.order_id[:12]
            )
            await self.cancel(handle)
        filled = self._ledger.order_filled(handle.order_id)
        logger.info(
            "[ORDER] immediate %s %s %s @ %s filled %s/%s",
            side.value,
            leg.name,
            handle.order_id[:12],
            price,
            filled,
            size,
        )
        return filled

    async def poll(self, handle: OrderHandle) -> OrderReport | None:
        """Fetch an order's status and record any new fills.

        Args:
            handle: Order to poll.

        Returns:
            The order's report, or ``None`` when the status is unknown this
            tick.  An order the venue no longer knows is reported cancelled
            with whatever fills were already recorded.

        """
        try:
            response = await self._venue.get_order(handle.order_id)
        except (PolymarketAPIError, httpx.HTTPError):
            logger.warning("Status poll failed for order %s", handle.order_id[:12], exc_info=True)
            return None
        if response is None:
            return self._report(handle, "canceled")
        self._note_fill_price(handle.order_id, response)
        self._ledger.apply_order_fill(handle.order_id, response.filled)
        return self._report(handle, response.status)

    async def cancel(self, handle: OrderHandle) -> OrderReport | None:
        """Cancel an order and return its final state.

        Already-filled and already-cancelled orders are normal outcomes,
        so cancelling twice leaves the ledger exactly as cancelling once.

        Args:
            handle: Order to cancel.

        Returns:
            The order's report after the cancel, or ``None`` when the
            outcome is unknown.  A report that is still open means the
            venue refused the cancel; callers retry on the next tick.

        """
        try:
            confirmed = await self._venue.cancel_order(handle.order_id)
        except (PolymarketAPIError, httpx.HTTPError):
            logger.warning(
                "Cancel failed for order %s, will retry", handle.order_id[:12], exc_info=True
            )
            return None
        report = await self.poll(handle)
        if report is None:
            return None
        if confirmed and report.is_open:
            return OrderReport(
                order_id=report.order_id,
                status=OrderStatus.CANCELLED,
                filled=report.filled,
                avg_fill_price=report.avg_fill_price,
            )
        return report

    async def _submit(
        self,
        leg: Leg,
        side: Side,
        price: Decimal,
        size: Decimal,
        style: OrderStyle,
    ) -> OrderHandle | None:
        """Send one order, correlating when the acknowledgement is lost."""
        request = OrderRequest(
            token_id=self._market.token_for(leg),
            side=side.value,
            price=price,
            size=size,
            order_type=_ORDER_TYPES[style],
            tick_size=str(self._market.tick_size),
            neg_risk=self._market.neg_risk,
        )
        placed_at = self._clock()
        response: OrderResponse | None
        try:
            response = await self._venue.place_order(request)
        except OrderRejectedError as exc:
            logger.warning(
                "[ORDER] %s %s %s @ %s rejected: %s", side.value, size, leg.name, price, exc.msg
            )
            return None
        except PolymarketAPIError as exc:
            if not exc.is_transient:
                logger.warning(
                    "[ORDER] %s %s %s @ %s failed: %s (status=%s)",
                    side.value,
                    size,
                    leg.name,
                    price,
                    exc.msg,
                    exc.status_code,
                )
                return None
            logger.warning("[ORDER] placement outcome unknown (%s), correlating", exc.msg)
            response = await self._correlate(request, placed_at)
        except httpx.HTTPError as exc:
            logger.warning("[ORDER] placement outcome unknown (%s), correlating", exc)
            response = await self._correlate(request, placed_at)
        else:
            if not response.order_id:
                logger.warning("[ORDER] placement returned no order id, correlating")
                response = await self._correlate(request, placed_at)

        if response is None or not response.order_id:
            return None
        handle = OrderHandle(
            order_id=response.order_id,
            leg=leg,
            side=side,
            price=price,
            size=size,
            style=style,
            placed_at=placed_at,
        )
        self._note_fill_price(handle.order_id, response)
        self._ledger.track_order(handle.order_id, leg, side, response.avg_price or price)
        if response.filled > ZERO:
            self._ledger.apply_order_fill(handle.order_id, response.filled)
        logger.info(
            "[ORDER] %s %s %s %s @ %s -> %s",
            style.value,
            side.value,
            size,
            leg.name,
            price,
            handle.order_id[:12],
        )
        return handle

    async def _correlate(self, request: OrderRequest, placed_at: float) -> OrderResponse | None:
        """Look for an order matching ``request`` before assuming it failed."""
        try:
            found = await self._venue.find_order(
                request.token_id,
                request.side,
                request.price,
                placed_at,
                exclude=self._ledger.tracked_orders,
            )
        except (PolymarketAPIError, httpx.HTTPError):
            logger.warning("Order correlation failed, assuming not placed", exc_info=True)
            return None
        if found is None:
            logger.warning("[ORDER] no matching order found, assuming not placed")
        else:
            logger.info("[ORDER] correlated lost acknowledgement to %s", found.order_id[:12])
        return found

    def _report(self, handle: OrderHandle, status: str) -> OrderReport:
        """Normalise a venue status into an ``OrderReport``."""
        filled = self._ledger.order_filled(handle.order_id)
        status = status.lower()
        if filled >= handle.size * self._fill_ratio:
            normalized = OrderStatus.FILLED
        elif "cancel" in status or status in _FINISHED_STATUSES:
            normalized = OrderStatus.CANCELLED
        elif filled > ZERO:
            normalized = OrderStatus.PARTIALLY_FILLED
        else:
            normalized = OrderStatus.OPEN
        return OrderReport(
            order_id=handle.order_id,
            status=normalized,
            filled=filled,
            avg_fill_price=(
                self._fill_prices.get(handle.order_id, handle.price) if filled > ZERO else None
            ),
        )

    def _note_fill_price(self, order_id: str, response: OrderResponse) -> None:
        """Remember the average fill price when the venue reports one."""
        if response.avg_price is not None and response.avg_price > ZERO:
            self._fill_prices[order_id] = response.avg_price
