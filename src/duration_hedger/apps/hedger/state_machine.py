"""Hedging state machine: enter one leg, hedge the other, bound the gap.

One instance drives one ``MarketSession``.  Each call to ``step`` runs a
single tick:

1. refresh the position ledger,
2. ask the risk governor what is allowed,
3. dispatch to the handler of the current ``HedgeState``.

Handlers issue at most one order action per leg per tick and never raise
for venue failures; anything that did not happen this tick is retried on
the next one.  Every path that leaves a leg unhedged ends, within bounded
time, in a hedge or an unwind.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal

from duration_hedger.apps.hedger.models import (
    HedgeConfig,
    HedgeState,
    Leg,
    OrderReport,
    OrderStatus,
    Quote,
)
from duration_hedger.apps.hedger.pricing import bump_price, edge_price
from duration_hedger.apps.hedger.quote_feed import QuoteFeed
from duration_hedger.apps.hedger.risk import RiskAction, assess_risk
from duration_hedger.apps.hedger.session import (
    MarketSession,
    OrderPurpose,
    ProfitTracker,
    Unwind,
    WorkingOrder,
)
from duration_hedger.core.models import ONE, ZERO, Side

logger = logging.getLogger(__name__)


class HedgingStateMachine:
    """Drive one market session through the six hedging states.

    Args:
        session: Per-market state, mutated in place.
        quotes: Quote cache for the market's tokens.
        config: Strategy parameters.
        profits: Cumulative counters shared across sessions.
        clock: Returns the current Unix time in seconds.

    """

    def __init__(
        self,
        session: MarketSession,
        quotes: QuoteFeed,
        config: HedgeConfig,
        *,
        profits: ProfitTracker | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the state machine for a fresh session.

        Args:
            session: Per-market state, mutated in place.
            quotes: Quote cache for the market's tokens.
            config: Strategy parameters.
            profits: Cumulative counters shared across sessions.
            clock: Returns the current Unix time in seconds.

        """
        self._session = session
        self._quotes = quotes
        self._config = config
        self._profits = profits if profits is not None else ProfitTracker()
        self._clock = clock
        self._hedge_only = False
        self._handlers: dict[HedgeState, Callable[[float], Awaitable[None]]] = {
            HedgeState.SCANNING: self._scanning,
            HedgeState.FIRST_LEG_BIDDING: self._first_leg_bidding,
            HedgeState.WAITING_FOR_HEDGE: self._waiting_for_hedge,
            HedgeState.HEDGE_BIDDING: self._hedge_bidding,
            HedgeState.CLOSING_POSITION: self._closing_position,
            HedgeState.PAUSED: self._paused,
        }

    @property
    def session(self) -> MarketSession:
        """Return the session being driven."""
        return self._session

    @property
    def state(self) -> HedgeState:
        """Return the current state."""
        return self._session.state

    def tick_interval(self) -> float:
        """Return how long the driver should wait before the next step."""
        cfg = self._config
        state = self._session.state
        if state is HedgeState.FIRST_LEG_BIDDING:
            return cfg.first_leg_poll_seconds
        if state in (HedgeState.WAITING_FOR_HEDGE, HedgeState.HEDGE_BIDDING):
            return cfg.hedge_poll_seconds
        if state is HedgeState.CLOSING_POSITION:
            return cfg.force_close_poll_seconds
        return cfg.idle_poll_seconds

    async def step(self, now: float | None = None) -> HedgeState:
        """Run one tick of the state machine.

        Args:
            now: Current Unix time in seconds (defaults to the clock).

        Returns:
            The state after the tick.

        """
        now = self._clock() if now is None else now
        s = self._session
        await s.ledger.refresh()
        action = assess_risk(s.ledger.imbalance, s.market.seconds_to_expiry(now), self._config)
        self._hedge_only = action is not RiskAction.ALLOW_NEW_EXPOSURE

        if action is RiskAction.FORCE_CLOSE or (s.unwind is not None and s.unwind.forced):
            await self._force_close(now)
            return s.state
        if action is RiskAction.PAUSE_NO_IMBALANCE:
            self._transition(HedgeState.PAUSED, "market closing with no imbalance")
            await self._paused(now)
            return s.state

        if s.state is HedgeState.PAUSED:
            self._transition(HedgeState.SCANNING, "trading allowed again")
        if self._hedge_only and s.state is HedgeState.FIRST_LEG_BIDDING:
            await self._abandon_entry()
            if s.state is HedgeState.FIRST_LEG_BIDDING:
                return s.state
        await self._handlers[s.state](now)
        return s.state

    async def shutdown(self) -> bool:
        """Cancel every working order; ``True`` when none remain."""
        return await self._retire_all()

    def status_line(self, now: float) -> str:
        """Return a one-line summary of the session for status logging."""
        s = self._session
        a = s.ledger.reconciled(Leg.A)
        b = s.ledger.reconciled(Leg.B)
        return (
            f"{s.market.slug or s.market.condition_id[:12]} {s.state.value} "
            f"A={a.size}@{a.avg_cost:.3f} B={b.size}@{b.avg_cost:.3f} "
            f"imb={s.ledger.imbalance} ttl={s.market.seconds_to_expiry(now):.0f}s "
            f"pairs={s.completed_pairs} pnl={s.realized_profit - s.realized_loss:.4f}"
        )

    # -- states --------------------------------------------------------------

    async def _scanning(self, now: float) -> None:
        s = self._session
        if s.ledger.imbalance != ZERO:
            await self._hedge_imbalance(now)
            return
        s.clear_cycle()
        if not self._hedge_only:
            await self._try_entry(now)

    async def _first_leg_bidding(self, now: float) -> None:
        s = self._session
        cfg = self._config
        work = s.working.get(s.first_leg) if s.first_leg is not None else None
        if work is None or work.purpose is not OrderPurpose.ENTRY:
            self._transition(HedgeState.SCANNING, "no entry order working")
            return
        leg = work.handle.leg

        report = await self._poll_working(work)
        if report is None:
            return
        if report.filled > ZERO and s.committed_at is None:
            s.committed_at = now
        if report.status is OrderStatus.FILLED:
            del s.working[leg]
            await self._on_first_leg_filled(now, work.handle.price, report)
            return
        if report.status is OrderStatus.CANCELLED:
            del s.working[leg]
            self._transition(HedgeState.SCANNING, "entry order cancelled externally")
            return

        if now - work.opened_at >= cfg.first_leg_timeout_seconds:
            final = await self._retire(leg)
            if final is None:
                return
            if final.status is OrderStatus.FILLED:
                await self._on_first_leg_filled(now, work.handle.price, final)
                return
            self._transition(HedgeState.SCANNING, "entry order timed out")
            return
        if now - work.last_priced_at >= cfg.first_leg_bump_seconds:
            await self._bump_entry(now, work)

    async def _waiting_for_hedge(self, now: float) -> None:
        s = self._session
        if s.ledger.imbalance == ZERO:
            s.clear_cycle()
            self._transition(HedgeState.SCANNING, "imbalance closed")
            return
        await self._hedge_imbalance(now)

    async def _hedge_bidding(self, now: float) -> None:
        s = self._session
        cfg = self._config
        work = s.working_for(OrderPurpose.HEDGE)
        if work is None:
            self._transition(HedgeState.WAITING_FOR_HEDGE, "no hedge order working")
            return
        leg = work.handle.leg

        report = await self._poll_working(work)
        if report is None:
            return
        if report.status is OrderStatus.FILLED:
            del s.working[leg]
            self._hedge_completed("hedge order filled")
            return
        if report.status is OrderStatus.CANCELLED:
            del s.working[leg]
            self._transition(HedgeState.WAITING_FOR_HEDGE, "hedge order cancelled externally")
            return

        if self._unhedged_expired(now):
            final = await self._retire(leg)
            if final is None:
                return
            if final.status is OrderStatus.FILLED:
                self._hedge_completed("hedge order filled")
                return
            self._begin_unwind("hedge not filled before the unhedged timeout")
            return
        if now - work.last_priced_at >= cfg.hedge_bump_seconds:
            await self._bump_hedge(now, work)

    async def _closing_position(self, now: float) -> None:
        s = self._session
        if s.unwind is None:
            if not await self._retire_all():
                return
            self._begin_unwind("closing position")
            if s.unwind is None:
                return
        await self._work_unwind(now)

    async def _paused(self, now: float) -> None:  # noqa: ARG002
        s = self._session
        await self._retire_all()
        if s.unwind is not None and not s.unwind.forced:
            s.unwind = None
        s.clear_cycle()

    async def _force_close(self, now: float) -> None:
        """Sell a snapshotted excess once, ignoring later fills on the other leg."""
        s = self._session
        if s.force_close_done:
            await self._retire_all()
            self._transition(HedgeState.PAUSED, "force close already completed")
            return

        if s.unwind is None or not s.unwind.forced:
            if not await self._retire_all():
                return
            if s.unwind is not None:
                s.unwind.forced = True
            else:
                excess = s.ledger.excess_leg
                if excess is None:
                    self._transition(HedgeState.PAUSED, "nothing to force close")
                    return
                s.unwind = Unwind(
                    leg=excess,
                    target=abs(s.ledger.imbalance),
                    cost_basis=self._cost_basis(excess),
                    forced=True,
                )
            logger.warning(
                "[FORCE-CLOSE] selling %s %s before expiry (%.0fs left)",
                s.unwind.remaining,
                s.unwind.leg.name,
                s.market.seconds_to_expiry(now),
            )
            self._transition(HedgeState.CLOSING_POSITION, "force close")
        await self._work_unwind(now)

    # -- entry ---------------------------------------------------------------

    async def _try_entry(self, now: float) -> None:
        """Rest one entry bid on the leg priced closer to the anchor."""
        s = self._session
        cfg = self._config
        tick = s.market.tick_size
        quote_a = await self._quotes.fresh_quote(s.market.token_for(Leg.A))
        quote_b = await self._quotes.fresh_quote(s.market.token_for(Leg.B))
        price_a = edge_price(quote_a.best_bid, tick, cfg.min_bid, cfg.max_bid)
        price_b = edge_price(quote_b.best_bid, tick, cfg.min_bid, cfg.max_bid)

        if abs(price_a - cfg.entry_anchor) <= abs(price_b - cfg.entry_anchor):
            leg, quote, price, opposite = Leg.A, quote_a, price_a, quote_b
        else:
            leg, quote, price, opposite = Leg.B, quote_b, price_b, quote_a

        if quote.best_bid < cfg.min_bid:
            logger.debug(
                "Entry skipped: %s best bid %s below %s", leg.name, quote.best_bid, cfg.min_bid
            )
            return
        if price > cfg.max_entry_price:
            logger.debug(
                "Entry skipped: %s price %s above %s", leg.name, price, cfg.max_entry_price
            )
            return
        if opposite.best_ask <= ZERO or price + opposite.best_ask > cfg.max_combined:
            logger.debug(
                "Entry skipped: %s @ %s + opposite ask %s cannot be hedged",
                leg.name,
                price,
                opposite.best_ask,
            )
            return

        handle = await s.gateway.place_resting(leg, price, cfg.bid_size)
        if handle is None:
            return
        s.working[leg] = WorkingOrder(
            handle=handle, purpose=OrderPurpose.ENTRY, opened_at=now, last_priced_at=now
        )
        s.first_leg = leg
        self._transition(HedgeState.FIRST_LEG_BIDDING, f"entry bid {leg.name} @ {price}")

    async def _bump_entry(self, now: float, work: WorkingOrder) -> None:
        s = self._session
        leg = work.handle.leg
        new_price = bump_price(work.handle.price, s.market.tick_size, self._config.max_entry_price)
        if new_price is None:
            work.last_priced_at = now
            return
        final = await self._retire(leg)
        if final is None:
            return
        if final.status is OrderStatus.FILLED:
            await self._on_first_leg_filled(now, work.handle.price, final)
            return
        remaining = work.handle.size - final.filled
        handle = None
        if remaining > ZERO:
            handle = await s.gateway.place_resting(leg, new_price, remaining)
        if handle is None:
            self._transition(HedgeState.SCANNING, "entry reprice not placed")
            return
        s.working[leg] = WorkingOrder(
            handle=handle,
            purpose=OrderPurpose.ENTRY,
            opened_at=work.opened_at,
            last_priced_at=now,
        )
        logger.info("[BUMP] entry %s %s -> %s", leg.name, work.handle.price, new_price)

    async def _abandon_entry(self) -> None:
        """Withdraw the entry bid when new exposure is no longer allowed."""
        s = self._session
        if s.first_leg is None or s.first_leg not in s.working:
            self._transition(HedgeState.SCANNING, "no entry order working")
            return
        if await self._retire(s.first_leg) is None:
            return
        self._transition(HedgeState.SCANNING, "new exposure blocked, entry withdrawn")

    async def _on_first_leg_filled(self, now: float, price: Decimal, report: OrderReport) -> None:
        s = self._session
        s.first_leg_price = report.avg_fill_price or price
        if s.committed_at is None:
            s.committed_at = now
        leg_name = s.first_leg.name if s.first_leg is not None else "?"
        logger.info("[FILL] first leg %s %s @ %s", leg_name, report.filled, price)
        if s.ledger.imbalance == ZERO:
            s.clear_cycle()
            self._transition(HedgeState.SCANNING, "first leg already balanced")
            return
        if await self._try_immediate_hedge(inclusive=True):
            self._hedge_completed("hedged immediately after first leg")
            return
        self._transition(HedgeState.WAITING_FOR_HEDGE, "first leg filled, hedge pending")

    # -- hedging -------------------------------------------------------------

    async def _hedge_imbalance(self, now: float) -> None:
        """Hedge the reconciled imbalance immediately, by resting bid, or unwind."""
        s = self._session
        cfg = self._config
        excess = s.ledger.excess_leg
        if excess is None:
            return
        if s.committed_at is None:
            s.committed_at = now
        if s.first_leg is None:
            s.first_leg = excess

        if await self._try_immediate_hedge(inclusive=False):
            self._hedge_completed("imbalance hedged immediately")
            return

        excess = s.ledger.excess_leg
        if excess is None:
            return
        hedge_leg = excess.opposite
        cost = self._cost_basis(excess)
        quote = self._quotes.current_quote(s.market.token_for(hedge_leg))
        price = edge_price(quote.best_bid, s.market.tick_size, cfg.min_bid, cfg.max_bid)
        if cost + price <= cfg.target_combined:
            handle = await s.gateway.place_resting(hedge_leg, price, abs(s.ledger.imbalance))
            if handle is not None:
                s.working[hedge_leg] = WorkingOrder(
                    handle=handle, purpose=OrderPurpose.HEDGE, opened_at=now, last_priced_at=now
                )
                self._transition(
                    HedgeState.HEDGE_BIDDING, f"hedge bid {hedge_leg.name} @ {price} (cost {cost})"
                )
                return

        if self._unhedged_expired(now):
            self._begin_unwind("no profitable hedge before the unhedged timeout")

    async def _try_immediate_hedge(self, *, inclusive: bool) -> bool:
        """Buy the opposite leg at its best ask if the combined cost allows.

        Args:
            inclusive: Accept a combined cost equal to the ceiling.

        Returns:
            ``True`` when the imbalance is fully closed.

        """
        s = self._session
        cfg = self._config
        excess = s.ledger.excess_leg
        if excess is None:
            return True
        hedge_leg = excess.opposite
        cost = self._cost_basis(excess)
        quote = await self._quotes.fresh_quote(s.market.token_for(hedge_leg))
        if not self._crossable(quote, cost, inclusive=inclusive):
            return False
        combined = cost + quote.best_ask
        filled = await s.gateway.place_immediate(hedge_leg, quote.best_ask, abs(s.ledger.imbalance))
        if filled > ZERO:
            self._book_spread(filled, combined)
        return s.ledger.imbalance == ZERO

    def _crossable(self, quote: Quote, cost: Decimal, *, inclusive: bool) -> bool:
        """Return whether crossing to ``quote.best_ask`` keeps the pair profitable."""
        cfg = self._config
        if quote.stale or quote.best_ask <= ZERO or quote.best_ask > cfg.max_bid:
            return False
        combined = cost + quote.best_ask
        return combined <= cfg.max_combined if inclusive else combined < cfg.max_combined

    async def _bump_hedge(self, now: float, work: WorkingOrder) -> None:
        s = self._session
        cfg = self._config
        leg = work.handle.leg
        cost = self._cost_basis(leg.opposite)
        new_price = bump_price(work.handle.price, s.market.tick_size, cfg.max_bid)
        if new_price is None or cost + new_price > cfg.target_combined:
            work.last_priced_at = now
            logger.info("[BUMP] hedge %s held at %s (cost %s)", leg.name, work.handle.price, cost)
            return
        final = await self._retire(leg)
        if final is None:
            return
        if final.status is OrderStatus.FILLED:
            self._hedge_completed("hedge order filled")
            return
        if s.ledger.excess_leg is not leg.opposite:
            self._transition(HedgeState.SCANNING, "imbalance changed during reprice")
            return
        handle = await s.gateway.place_resting(leg, new_price, abs(s.ledger.imbalance))
        if handle is None:
            self._transition(HedgeState.WAITING_FOR_HEDGE, "hedge reprice not placed")
            return
        s.working[leg] = WorkingOrder(
            handle=handle,
            purpose=OrderPurpose.HEDGE,
            opened_at=work.opened_at,
            last_priced_at=now,
        )
        logger.info("[BUMP] hedge %s %s -> %s", leg.name, work.handle.price, new_price)

    def _hedge_completed(self, reason: str) -> None:
        s = self._session
        s.completed_pairs += 1
        self._profits.add_pair()
        s.clear_cycle()
        self._transition(HedgeState.SCANNING, reason)

    # -- unwinding -----------------------------------------------------------

    def _begin_unwind(self, reason: str) -> None:
        s = self._session
        excess = s.ledger.excess_leg
        if excess is None:
            s.clear_cycle()
            self._transition(HedgeState.SCANNING, "nothing left to unwind")
            return
        s.unwind = Unwind(
            leg=excess,
            target=abs(s.ledger.imbalance),
            cost_basis=self._cost_basis(excess),
        )
        logger.warning("[UNWIND] selling %s %s: %s", s.unwind.target, excess.name, reason)
        self._transition(HedgeState.CLOSING_POSITION, reason)

    async def _work_unwind(self, now: float) -> None:
        """Sell the remaining target: at the best bid, then rest at the floor."""
        s = self._session
        unwind = s.unwind
        if unwind is None:
            return
        if unwind.leg in s.working and await self._retire(unwind.leg) is None:
            return
        if not unwind.forced:
            self._shrink_target(unwind)
        if unwind.remaining <= ZERO:
            self._finish_unwind()
            return

        quote = await self._quotes.fresh_quote(s.market.token_for(unwind.leg))
        if not quote.stale and quote.best_bid > ZERO:
            sold = await s.gateway.place_immediate(
                unwind.leg, quote.best_bid, unwind.remaining, Side.SELL
            )
            if sold > ZERO:
                unwind.sold += sold
                self._book_unwind(unwind, sold, quote.best_bid)
        if unwind.remaining <= ZERO:
            self._finish_unwind()
            return

        handle = await s.gateway.place_resting(
            unwind.leg, self._config.unwind_floor_price, unwind.remaining, Side.SELL
        )
        if handle is not None:
            s.working[unwind.leg] = WorkingOrder(
                handle=handle, purpose=OrderPurpose.UNWIND, opened_at=now, last_priced_at=now
            )

    def _shrink_target(self, unwind: Unwind) -> None:
        """Lower a normal unwind's target when the imbalance closed by other means."""
        imbalance = self._session.ledger.imbalance
        still_excess = imbalance if unwind.leg is Leg.A else -imbalance
        unwind.target = min(unwind.target, unwind.sold + max(ZERO, still_excess))

    def _finish_unwind(self) -> None:
        s = self._session
        unwind = s.unwind
        s.unwind = None
        s.clear_cycle()
        if unwind is not None and unwind.forced:
            s.force_close_done = True
            self._transition(HedgeState.PAUSED, "force close complete")
        else:
            self._transition(HedgeState.SCANNING, "unwind complete")

    # -- order bookkeeping ---------------------------------------------------

    async def _poll_working(self, work: WorkingOrder) -> OrderReport | None:
        report = await self._session.gateway.poll(work.handle)
        if report is not None:
            self._account_fills(work, report)
        return report

    async def _retire(self, leg: Leg) -> OrderReport | None:
        """Cancel the working order on ``leg`` and forget it once confirmed.

        Returns:
            The order's final report, or ``None`` when the cancel must be
            retried on a later tick (the order stays in ``working``).

        """
        s = self._session
        work = s.working[leg]
        final = await s.gateway.cancel(work.handle)
        if final is None or final.is_open:
            logger.warning(
                "[CANCEL] %s order %s not confirmed, retrying", leg.name, work.handle.order_id[:12]
            )
            return None
        self._account_fills(work, final)
        del s.working[leg]
        return final

    async def _retire_all(self) -> bool:
        retired = True
        for leg in list(self._session.working):
            if await self._retire(leg) is None:
                retired = False
        return retired

    def _account_fills(self, work: WorkingOrder, report: OrderReport) -> None:
        """Book fills of a working order not yet seen by the state machine."""
        new = report.filled - work.filled_seen
        if new <= ZERO:
            return
        work.filled_seen = report.filled
        price = report.avg_fill_price or work.handle.price
        if work.purpose is OrderPurpose.HEDGE:
            self._book_spread(new, self._cost_basis(work.handle.leg.opposite) + price)
        elif work.purpose is OrderPurpose.UNWIND and self._session.unwind is not None:
            self._session.unwind.sold += new
            self._book_unwind(self._session.unwind, new, price)

    def _cost_basis(self, leg: Leg) -> Decimal:
        """Return the average cost of ``leg``, falling back to the first-leg fill price."""
        position = self._session.ledger.reconciled(leg)
        if position.avg_cost > ZERO:
            return position.avg_cost
        return self._session.first_leg_price

    def _book_spread(self, size: Decimal, combined: Decimal) -> None:
        self._book_pnl((ONE - combined) * size)
        logger.info("[PAIR] hedged %s at combined %s", size, combined)

    def _book_unwind(self, unwind: Unwind, size: Decimal, price: Decimal) -> None:
        self._book_pnl((price - unwind.cost_basis) * size)
        logger.info(
            "[UNWIND] sold %s %s @ %s (%s/%s)",
            size,
            unwind.leg.name,
            price,
            unwind.sold,
            unwind.target,
        )

    def _book_pnl(self, pnl: Decimal) -> None:
        s = self._session
        if pnl >= ZERO:
            s.realized_profit += pnl
            self._profits.add_profit(pnl)
        else:
            s.realized_loss -= pnl
            self._profits.add_loss(-pnl)

    def _unhedged_expired(self, now: float) -> bool:
        committed_at = self._session.committed_at
        if committed_at is None:
            return False
        return now - committed_at >= self._config.unhedged_timeout_seconds

    def _transition(self, state: HedgeState, reason: str) -> None:
        s = self._session
        if s.state is state:
            return
        logger.info("[STATE] %s -> %s (%s)", s.state.value, state.value, reason)
        s.state = state
