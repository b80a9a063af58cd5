"""Position ledger reconciling optimistic local fills with the remote store.

Fills reach the hedger three ways with different latencies: a push on the
user WebSocket, the synchronous result of an immediate order, and a later
order-status poll.  Each one bumps the ``local`` view the moment it is
seen.  The Data API is the authoritative ``remote`` view but lags fills by
several seconds.  Every trading decision reads ``reconciled``, which takes
the larger of the two per leg, so a lagging remote never hides a fresh
fill while fills made outside this process are still picked up.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

import httpx

from duration_hedger.apps.hedger.models import FillNotice, HedgeMarket, Leg, LegPosition
from duration_hedger.apps.hedger.protocols import PositionSource
from duration_hedger.clients.polymarket.exceptions import PolymarketAPIError
from duration_hedger.clients.polymarket.models import Position
from duration_hedger.core.models import ZERO, Side

logger = logging.getLogger(__name__)

_LEG_BY_OUTCOME = {"up": Leg.A, "yes": Leg.A, "down": Leg.B, "no": Leg.B}


@dataclass
class _OrderFills:
    """Fill observations for one of our orders, per channel."""

    leg: Leg
    side: Side
    price: Decimal
    pushed: Decimal = ZERO
    polled: Decimal = ZERO
    recorded: Decimal = ZERO


class PositionLedger:
    """Local, remote and reconciled share counts for one market.

    Args:
        market: Market whose two legs are tracked.
        source: Authoritative position store, or ``None`` to run on local
            fills only.
        account: Wallet address passed to ``source.get_positions``.

    """

    def __init__(
        self,
        market: HedgeMarket,
        source: PositionSource | None,
        account: str,
    ) -> None:
        """Initialize an empty ledger for ``market``.

        Args:
            market: Market whose two legs are tracked.
            source: Authoritative position store.
            account: Wallet address whose positions are fetched.

        """
        self._market = market
        self._source = source
        self._account = account
        self._local: dict[Leg, LegPosition] = {Leg.A: LegPosition(), Leg.B: LegPosition()}
        self._remote: dict[Leg, LegPosition] = {Leg.A: LegPosition(), Leg.B: LegPosition()}
        self._pending_sales: dict[Leg, Decimal] = {Leg.A: ZERO, Leg.B: ZERO}
        self._unclaimed_drops: dict[Leg, Decimal] = {Leg.A: ZERO, Leg.B: ZERO}
        self._orders: dict[str, _OrderFills] = {}
        self._seen_trades: set[str] = set()

    def local(self, leg: Leg) -> LegPosition:
        """Return the optimistic local view of a leg."""
        return self._local[leg]

    def remote(self, leg: Leg) -> LegPosition:
        """Return the last fetched remote view of a leg."""
        return self._remote[leg]

    def reconciled(self, leg: Leg) -> LegPosition:
        """Return the position every trading decision is based on.

        The size is the larger of the local count and the remote count
        (less any of our own sales the remote has not reflected yet).  The
        average cost is the remote one when the remote holds shares, since
        it reflects true fill prices, and the locally recorded cost basis
        otherwise.

        Args:
            leg: Leg to read.

        Returns:
            Reconciled size and average cost.

        """
        local = self._local[leg]
        remote = self._remote[leg]
        size = max(local.size, self._effective_remote_size(leg))
        has_remote_cost = remote.size > ZERO and remote.avg_cost > ZERO
        avg_cost = remote.avg_cost if has_remote_cost else local.avg_cost
        return LegPosition(size=size, avg_cost=avg_cost)

    @property
    def imbalance(self) -> Decimal:
        """Return reconciled A shares minus reconciled B shares."""
        return self.reconciled(Leg.A).size - self.reconciled(Leg.B).size

    @property
    def excess_leg(self) -> Leg | None:
        """Return the leg holding more shares, or ``None`` when balanced."""
        imbalance = self.imbalance
        if imbalance > ZERO:
            return Leg.A
        if imbalance < ZERO:
            return Leg.B
        return None

    def track_order(self, order_id: str, leg: Leg, side: Side, price: Decimal) -> None:
        """Register an order so fills reported for it can be attributed.

        ``price`` becomes the optimistic cost basis of its fills: the limit
        price, or the venue's average fill price when it reported one.
        Registering the same order again is a no-op.

        Args:
            order_id: Venue order identifier.
            leg: Leg the order trades.
            side: BUY or SELL.
            price: Cost basis for the order's fills.

        """
        if order_id and order_id not in self._orders:
            self._orders[order_id] = _OrderFills(leg=leg, side=side, price=price)

    @property
    def tracked_orders(self) -> frozenset[str]:
        """Return the ids of every order registered with the ledger."""
        return frozenset(self._orders)

    def order_filled(self, order_id: str) -> Decimal:
        """Return the shares already recorded for an order."""
        fills = self._orders.get(order_id)
        return fills.recorded if fills is not None else ZERO

    def apply_order_fill(self, order_id: str, filled_total: Decimal) -> Decimal:
        """Record an order's cumulative matched size from a result or poll.

        Cumulative totals make repeated observations harmless: only the
        part above what was already recorded moves the local position.

        Args:
            order_id: Venue order identifier (must have been tracked).
            filled_total: Cumulative shares matched according to the venue.

        Returns:
            Shares newly applied to the local position.

        """
        fills = self._orders.get(order_id)
        if fills is None:
            logger.debug("Ignoring fill for untracked order %s", order_id[:12])
            return ZERO
        fills.polled = max(fills.polled, filled_total)
        return self._settle(fills)

    def apply_fill_notice(self, notice: FillNotice) -> Decimal:
        """Record a fill pushed by the user channel.

        Pushes are incremental and can repeat, so they are de-duplicated by
        trade id and summed per order before being merged with polled
        totals.

        Args:
            notice: Fill pushed by the user WebSocket.

        Returns:
            Shares newly applied to the local position.

        """
        if notice.trade_id in self._seen_trades:
            return ZERO
        fills = self._orders.get(notice.order_id)
        if fills is None:
            return ZERO
        self._seen_trades.add(notice.trade_id)
        fills.pushed += notice.size
        return self._settle(fills)

    def _settle(self, fills: _OrderFills) -> Decimal:
        """Apply the unrecorded part of an order's best-known fill total."""
        observed = max(fills.pushed, fills.polled)
        delta = observed - fills.recorded
        if delta <= ZERO:
            return ZERO
        fills.recorded = observed
        self._record(fills.leg, fills.side, delta, fills.price)
        return delta

    def _record(self, leg: Leg, side: Side, quantity: Decimal, price: Decimal) -> None:
        """Move the local position of a leg by a fill."""
        current = self._local[leg]
        if side is Side.BUY:
            size = current.size + quantity
            avg_cost = (current.size * current.avg_cost + quantity * price) / size
            self._local[leg] = LegPosition(size=size, avg_cost=avg_cost)
        else:
            self._local[leg] = LegPosition(
                size=max(ZERO, current.size - quantity), avg_cost=current.avg_cost
            )
            already_reflected = min(quantity, self._unclaimed_drops[leg])
            self._unclaimed_drops[leg] -= already_reflected
            self._pending_sales[leg] += quantity - already_reflected
        logger.info(
            "[FILL] %s %s %s @ %s -> local A=%s B=%s",
            side.value,
            quantity,
            leg.name,
            price,
            self._local[Leg.A].size,
            self._local[Leg.B].size,
        )

    async def refresh(self) -> bool:
        """Fetch the remote positions and reconcile against them.

        A failed fetch is not fatal: the previous remote snapshot is kept
        and decisions continue on the reconciled view.

        Returns:
            ``True`` when fresh remote positions were applied.

        """
        if self._source is None:
            return False
        try:
            positions = await self._source.get_positions(self._account)
        except (PolymarketAPIError, httpx.HTTPError):
            logger.warning("Position refresh failed, using last known positions", exc_info=True)
            return False
        self.reconcile(self._positions_by_leg(positions))
        return True

    def reconcile(self, remote: dict[Leg, LegPosition]) -> None:
        """Replace the remote view and converge the local view onto it.

        After this call ``reconciled(leg)`` equals the larger of the local
        and remote counts, and the local count is never below the remote
        one.  A drop in the remote count confirms that many pending sales;
        any drop beyond them is kept as unclaimed, so a sale of ours that the
        remote shows before we record it is not held back a second time.

        Args:
            remote: Freshly fetched remote position per leg.

        """
        for leg in Leg:
            fresh = remote.get(leg, LegPosition())
            drop = self._remote[leg].size - fresh.size
            if drop > ZERO:
                confirmed = min(drop, self._pending_sales[leg])
                self._pending_sales[leg] -= confirmed
                self._unclaimed_drops[leg] += drop - confirmed
            self._remote[leg] = fresh
            effective = self._effective_remote_size(leg)
            local = self._local[leg]
            if effective > local.size:
                avg_cost = local.avg_cost if local.avg_cost > ZERO else fresh.avg_cost
                self._local[leg] = LegPosition(size=effective, avg_cost=avg_cost)

    def _effective_remote_size(self, leg: Leg) -> Decimal:
        """Return the remote size less our own sales it has not caught up with."""
        return max(ZERO, self._remote[leg].size - self._pending_sales[leg])

    def _positions_by_leg(self, positions: list[Position]) -> dict[Leg, LegPosition]:
        """Pick this market's rows out of a wallet-wide position listing.

        Rows are matched by token id; rows for this condition whose token is
        not recognised fall back to their outcome label.

        Args:
            positions: Every position the wallet holds.

        Returns:
            Remote position per leg (legs without a row are empty).

        """
        target = _normalize_condition(self._market.condition_id)
        result: dict[Leg, LegPosition] = {}
        for position in positions:
            leg = self._market.leg_for_token(position.token_id)
            if leg is None and _normalize_condition(position.condition_id) == target:
                leg = _LEG_BY_OUTCOME.get(position.outcome.strip().lower())
            if leg is None:
                continue
            result[leg] = LegPosition(size=position.size, avg_cost=position.avg_price)
        return result


def _normalize_condition(condition_id: str) -> str:
    """Normalise a condition id for comparison (lower case, no ``0x``)."""
    lowered = condition_id.strip().lower()
    return lowered.removeprefix("0x")
