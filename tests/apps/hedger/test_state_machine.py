"""Tests for the hedging state machine, driven against a paper venue."""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from duration_hedger.apps.hedger.ledger import PositionLedger
from duration_hedger.apps.hedger.models import (
    HedgeConfig,
    HedgeMarket,
    HedgeState,
    Leg,
    LegPosition,
)
from duration_hedger.apps.hedger.order_gateway import OrderGateway
from duration_hedger.apps.hedger.paper_venue import PaperVenue
from duration_hedger.apps.hedger.quote_feed import QuoteFeed
from duration_hedger.apps.hedger.session import MarketSession, OrderPurpose, ProfitTracker
from duration_hedger.apps.hedger.state_machine import HedgingStateMachine
from duration_hedger.clients.polymarket.exceptions import PolymarketAPIError
from duration_hedger.core.models import ZERO, Side

_END = 1_000_900
_OPEN = _END - 840.0
_CONFIG = HedgeConfig(unhedged_timeout_seconds=60, hedge_bump_seconds=10)
_SIZE = Decimal(10)
_COST = Decimal("0.45")


def _make_market() -> HedgeMarket:
    """Create a 15-minute market with 840 seconds left at ``_OPEN``."""
    return HedgeMarket(
        condition_id="0xcond",
        question="Bitcoin Up or Down?",
        leg_a_token="token-up",
        leg_b_token="token-down",
        tick_size=Decimal("0.01"),
        end_ts=_END,
        slug="btc-updown-15m-1000000",
    )


class _Harness:
    """One state machine trading against simulated fills with a settable clock."""

    def __init__(self, config: HedgeConfig = _CONFIG) -> None:
        self.now = _OPEN
        self.market = _make_market()
        self.quotes = QuoteFeed(None, clock=self.clock)
        self.venue = PaperVenue(self.quotes, clock=self.clock)
        self.ledger = PositionLedger(self.market, None, "")
        gateway = OrderGateway(
            self.venue, self.market, self.ledger, settle_seconds=0, clock=self.clock
        )
        self.session = MarketSession(market=self.market, ledger=self.ledger, gateway=gateway)
        self.profits = ProfitTracker()
        self.machine = HedgingStateMachine(
            self.session, self.quotes, config, profits=self.profits, clock=self.clock
        )
        self._books: dict[Leg, tuple[Decimal, Decimal]] = {}

    def clock(self) -> float:
        return self.now

    def book(self, leg: Leg, bid: str, ask: str) -> None:
        """Set the top of book a leg will show from the next step on."""
        self._books[leg] = (Decimal(bid), Decimal(ask))

    def hold(self, a: str, b: str = "0") -> None:
        """Make the wallet report positions as if filled outside this session."""
        self.ledger.reconcile(
            {
                Leg.A: LegPosition(size=Decimal(a), avg_cost=_COST),
                Leg.B: LegPosition(size=Decimal(b), avg_cost=Decimal("0.50")),
            }
        )

    async def step(self, advance: float = 1.0) -> HedgeState:
        """Advance the clock, republish every book and run one tick."""
        self.now += advance
        for leg, (bid, ask) in self._books.items():
            self.quotes.apply_update(self.market.token_for(leg), bid, ask)
        return await self.machine.step()


async def _rest_entry_on_a(h: _Harness) -> None:
    """Rest an entry bid on leg A at 0.45."""
    h.book(Leg.A, "0.44", "0.47")
    h.book(Leg.B, "0.30", "0.52")
    assert await h.step() is HedgeState.FIRST_LEG_BIDDING


async def _fill_entry_with_dear_hedge(h: _Harness) -> None:
    """Fill the leg A entry while leg B is too expensive to cross."""
    await _rest_entry_on_a(h)
    h.book(Leg.A, "0.44", "0.45")
    h.book(Leg.B, "0.48", "0.56")
    assert await h.step() is HedgeState.WAITING_FOR_HEDGE


class TestEntry:
    """Test placing, repricing and withdrawing the first-leg bid."""

    @pytest.mark.asyncio
    async def test_entry_rests_on_leg_nearest_anchor(self) -> None:
        """Bid one tick above the best bid on the leg priced closer to 0.50."""
        h = _Harness()
        await _rest_entry_on_a(h)
        work = h.session.working[Leg.A]
        assert work.purpose is OrderPurpose.ENTRY
        assert work.handle.price == Decimal("0.45")
        assert work.handle.size == _SIZE
        assert h.session.first_leg is Leg.A

    @pytest.mark.asyncio
    async def test_no_entry_when_pair_cannot_be_hedged(self) -> None:
        """Skip the entry when entry price plus opposite ask exceeds the ceiling."""
        h = _Harness()
        h.book(Leg.A, "0.44", "0.47")
        h.book(Leg.B, "0.30", "0.60")
        assert await h.step() is HedgeState.SCANNING
        assert h.session.working == {}

    @pytest.mark.asyncio
    async def test_no_entry_below_min_bid(self) -> None:
        """Skip the entry when the chosen leg's best bid is under the floor."""
        h = _Harness()
        h.book(Leg.A, "0.05", "0.47")
        h.book(Leg.B, "0.05", "0.52")
        assert await h.step() is HedgeState.SCANNING
        assert h.session.working == {}

    @pytest.mark.asyncio
    async def test_entry_bump_never_exceeds_max_entry_price(self) -> None:
        """Reprice one tick at a time and hold at the entry ceiling."""
        h = _Harness()
        h.book(Leg.A, "0.43", "0.50")
        h.book(Leg.B, "0.30", "0.52")
        assert await h.step() is HedgeState.FIRST_LEG_BIDDING
        assert h.session.working[Leg.A].handle.price == Decimal("0.44")

        await h.step(advance=10)
        assert h.session.working[Leg.A].handle.price == Decimal("0.45")

        await h.step(advance=10)
        assert h.session.working[Leg.A].handle.price == Decimal("0.45")
        assert h.machine.state is HedgeState.FIRST_LEG_BIDDING

    @pytest.mark.asyncio
    async def test_entry_times_out(self) -> None:
        """Withdraw an unfilled entry after the first-leg timeout."""
        h = _Harness()
        await _rest_entry_on_a(h)
        order_id = h.session.working[Leg.A].handle.order_id

        assert await h.step(advance=60) is HedgeState.SCANNING
        assert h.session.working == {}
        report = await h.venue.get_order(order_id)
        assert report is not None
        assert report.status == "canceled"

    @pytest.mark.asyncio
    async def test_stop_window_pauses_and_withdraws_entry(self) -> None:
        """Cancel the entry and pause once the window closes on a flat book."""
        h = _Harness()
        await _rest_entry_on_a(h)
        h.now = _END - 300.0

        assert await h.step(advance=0) is HedgeState.PAUSED
        assert h.session.working == {}
        assert h.ledger.imbalance == ZERO


class TestHedging:
    """Test closing the imbalance after the first leg fills."""

    @pytest.mark.asyncio
    async def test_entry_fill_hedged_immediately(self) -> None:
        """Cross the spread on the other leg when the pair stays under the ceiling."""
        h = _Harness()
        await _rest_entry_on_a(h)
        h.book(Leg.A, "0.44", "0.45")
        h.book(Leg.B, "0.48", "0.52")

        assert await h.step() is HedgeState.SCANNING
        assert h.ledger.reconciled(Leg.A).size == _SIZE
        assert h.ledger.reconciled(Leg.B).size == _SIZE
        assert h.session.completed_pairs == 1
        assert h.session.realized_profit == Decimal("0.30")
        assert h.profits.snapshot() == (1, Decimal("0.30"), ZERO)

    @pytest.mark.asyncio
    async def test_dear_hedge_rests_then_fills(self) -> None:
        """Rest a profitable hedge bid when crossing is too expensive."""
        h = _Harness()
        await _fill_entry_with_dear_hedge(h)

        assert await h.step() is HedgeState.HEDGE_BIDDING
        work = h.session.working[Leg.B]
        assert work.purpose is OrderPurpose.HEDGE
        assert work.handle.price == Decimal("0.49")
        assert work.handle.size == _SIZE

        h.book(Leg.B, "0.48", "0.49")
        assert await h.step() is HedgeState.SCANNING
        assert h.ledger.imbalance == ZERO
        assert h.session.completed_pairs == 1
        assert h.session.realized_profit == Decimal("0.60")

    @pytest.mark.asyncio
    async def test_hedge_bump_respects_target_combined(self) -> None:
        """Raise the hedge bid only while cost plus price stays at or under target."""
        h = _Harness()
        await _fill_entry_with_dear_hedge(h)
        assert await h.step() is HedgeState.HEDGE_BIDDING

        await h.step(advance=10)
        assert h.session.working[Leg.B].handle.price == Decimal("0.50")
        await h.step(advance=10)
        assert h.session.working[Leg.B].handle.price == Decimal("0.51")
        await h.step(advance=10)
        assert h.session.working[Leg.B].handle.price == Decimal("0.51")
        assert h.machine.state is HedgeState.HEDGE_BIDDING

    @pytest.mark.asyncio
    async def test_unprofitable_hedge_unwinds_after_timeout(self) -> None:
        """Sell the first leg once the unhedged timeout passes without a hedge."""
        h = _Harness()
        await _fill_entry_with_dear_hedge(h)
        h.book(Leg.A, "0.40", "0.47")
        h.book(Leg.B, "0.55", "0.60")

        assert await h.step() is HedgeState.WAITING_FOR_HEDGE
        assert await h.step(advance=60) is HedgeState.CLOSING_POSITION
        assert h.session.unwind is not None
        assert h.session.unwind.target == _SIZE

        assert await h.step() is HedgeState.SCANNING
        assert h.ledger.imbalance == ZERO
        assert h.session.unwind is None
        assert h.session.realized_loss == Decimal("0.50")
        assert h.session.completed_pairs == 0

    @pytest.mark.asyncio
    async def test_foreign_imbalance_is_hedged(self) -> None:
        """Hedge an imbalance that appeared without an entry order."""
        h = _Harness()
        h.hold("10")
        h.book(Leg.A, "0.44", "0.47")
        h.book(Leg.B, "0.48", "0.52")

        assert await h.step() is HedgeState.SCANNING
        assert h.ledger.imbalance == ZERO
        assert h.session.completed_pairs == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("opposite_bid", "expected"),
        [("0.50", HedgeState.HEDGE_BIDDING), ("0.51", HedgeState.WAITING_FOR_HEDGE)],
    )
    async def test_resting_hedge_allowed_up_to_target_combined(
        self, opposite_bid: str, expected: HedgeState
    ) -> None:
        """Rest a hedge whose combined cost equals the target, never one tick above it."""
        h = _Harness()
        await _rest_entry_on_a(h)
        h.book(Leg.A, "0.44", "0.45")
        h.book(Leg.B, opposite_bid, "0.60")
        assert await h.step() is HedgeState.WAITING_FOR_HEDGE

        assert await h.step() is expected
        if expected is HedgeState.HEDGE_BIDDING:
            work = h.session.working[Leg.B]
            assert work.purpose is OrderPurpose.HEDGE
            assert work.handle.price == Decimal("0.51")
            assert _COST + work.handle.price == _CONFIG.target_combined
        else:
            assert h.session.working == {}

    @pytest.mark.asyncio
    async def test_excess_imbalance_only_hedges(self) -> None:
        """Above the imbalance cap, bid only the short leg and open nothing new."""
        h = _Harness()
        h.hold("12")
        h.book(Leg.A, "0.44", "0.47")
        h.book(Leg.B, "0.48", "0.56")
        h.now = _END - 361.0

        assert await h.step() is HedgeState.HEDGE_BIDDING
        assert set(h.session.working) == {Leg.B}
        work = h.session.working[Leg.B]
        assert work.purpose is OrderPurpose.HEDGE
        assert work.handle.size == Decimal(12)

        assert await h.step() is HedgeState.HEDGE_BIDDING
        assert Leg.A not in h.session.working

        h.book(Leg.B, "0.48", "0.49")
        assert await h.step() is HedgeState.SCANNING
        assert h.ledger.imbalance == ZERO
        assert h.session.working == {}


class TestUnwind:
    """Test selling down the excess leg."""

    @pytest.mark.asyncio
    async def test_unwind_target_only_shrinks(self) -> None:
        """Lower the target when the other leg fills during a normal unwind."""
        h = _Harness()
        h.hold("10")
        h.book(Leg.A, "0", "0.47")
        h.book(Leg.B, "0.55", "0.60")
        assert await h.step() is HedgeState.SCANNING
        assert await h.step(advance=60) is HedgeState.CLOSING_POSITION

        assert await h.step() is HedgeState.CLOSING_POSITION
        assert h.session.working[Leg.A].purpose is OrderPurpose.UNWIND
        assert h.session.working[Leg.A].handle.price == _CONFIG.unwind_floor_price

        h.hold("10", "4")
        h.book(Leg.A, "0.40", "0.47")
        assert await h.step() is HedgeState.SCANNING
        assert h.ledger.local(Leg.A).size == Decimal(4)
        assert h.ledger.imbalance == ZERO
        assert h.session.realized_loss == Decimal("0.30")

    @pytest.mark.asyncio
    async def test_partial_sells_then_rest_at_floor(self) -> None:
        """Work the target down with partial sells and rest what is left at the floor."""
        h = _Harness()
        h.hold("8")
        h.book(Leg.A, "0.40", "0.47")
        h.book(Leg.B, "0.55", "0.60")
        assert await h.step() is HedgeState.SCANNING
        assert await h.step(advance=60) is HedgeState.CLOSING_POSITION

        gateway = h.session.gateway
        sell_immediately = gateway.place_immediate
        caps = iter([Decimal(3), Decimal(2), ZERO])

        async def thin_book(
            leg: Leg, price: Decimal, size: Decimal, side: Side = Side.BUY
        ) -> Decimal:
            cap = min(size, next(caps))
            sold = await sell_immediately(leg, price, cap, side) if cap > ZERO else ZERO
            h.quotes.apply_update(h.market.token_for(Leg.A), ZERO, Decimal("0.47"))
            return sold

        targets: list[Decimal] = []
        with patch.object(gateway, "place_immediate", thin_book):
            assert await h.step() is HedgeState.CLOSING_POSITION
            assert h.session.unwind is not None
            targets.append(h.session.unwind.target)
            h.hold("10")
            for _ in range(2):
                assert await h.step() is HedgeState.CLOSING_POSITION
                targets.append(h.session.unwind.target)

        unwind = h.session.unwind
        assert unwind is not None
        assert targets == [Decimal(8)] * 3
        assert unwind.sold == Decimal(5)
        assert unwind.remaining == Decimal(3)
        work = h.session.working[Leg.A]
        assert work.purpose is OrderPurpose.UNWIND
        assert work.handle.side is Side.SELL
        assert work.handle.price == _CONFIG.unwind_floor_price
        assert work.handle.size == Decimal(3)
        assert h.session.realized_loss == Decimal("0.25")


class TestForceClose:
    """Test flattening the book just before expiry."""

    @pytest.mark.asyncio
    async def test_force_close_sells_excess_and_pauses(self) -> None:
        """Sell the whole excess once and stop trading the market."""
        h = _Harness()
        h.hold("10")
        h.book(Leg.A, "0.40", "0.47")
        h.book(Leg.B, "0.55", "0.60")
        h.now = _END - 260.0

        assert await h.step(advance=0) is HedgeState.PAUSED
        assert h.session.force_close_done
        assert h.ledger.imbalance == ZERO
        assert h.session.realized_loss == Decimal("0.50")

        assert await h.step() is HedgeState.PAUSED
        assert h.session.working == {}

    @pytest.mark.asyncio
    async def test_force_close_target_is_snapshotted(self) -> None:
        """Keep selling the snapshotted excess after the other leg fills."""
        h = _Harness()
        h.hold("10")
        h.book(Leg.A, "0", "0.47")
        h.book(Leg.B, "0.55", "0.60")
        h.now = _END - 260.0

        assert await h.step(advance=0) is HedgeState.CLOSING_POSITION
        assert h.session.working[Leg.A].purpose is OrderPurpose.UNWIND

        h.hold("10", "10")
        h.book(Leg.A, "0.30", "0.47")
        assert await h.step() is HedgeState.PAUSED
        assert h.session.force_close_done
        assert h.ledger.local(Leg.A).size == ZERO

    @pytest.mark.asyncio
    async def test_flat_book_in_force_window_pauses(self) -> None:
        """Pause without placing orders when nothing needs closing."""
        h = _Harness()
        h.book(Leg.A, "0.44", "0.47")
        h.book(Leg.B, "0.30", "0.52")
        h.now = _END - 200.0

        assert await h.step(advance=0) is HedgeState.PAUSED
        assert h.session.working == {}
        assert not h.session.force_close_done


class TestShutdown:
    """Test cancelling working orders on stop."""

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self) -> None:
        """Cancel the entry once and succeed again with nothing left."""
        h = _Harness()
        await _rest_entry_on_a(h)

        assert await h.machine.shutdown()
        assert h.session.working == {}
        assert await h.machine.shutdown()
        assert h.ledger.local(Leg.A).size == ZERO

    @pytest.mark.asyncio
    async def test_unconfirmed_cancel_keeps_order(self) -> None:
        """Keep the order as working when the venue cancel fails."""
        h = _Harness()
        await _rest_entry_on_a(h)
        failing = AsyncMock(side_effect=PolymarketAPIError("unavailable", 503))

        with patch.object(h.venue, "cancel_order", failing):
            assert not await h.machine.shutdown()
        assert Leg.A in h.session.working


class TestReporting:
    """Test the poll cadence and status line."""

    @pytest.mark.asyncio
    async def test_tick_interval_follows_state(self) -> None:
        """Poll faster while an entry bid is working."""
        h = _Harness()
        assert h.machine.tick_interval() == _CONFIG.idle_poll_seconds
        await _rest_entry_on_a(h)
        assert h.machine.tick_interval() == _CONFIG.first_leg_poll_seconds

    def test_status_line(self) -> None:
        """Summarise market, state and time left."""
        h = _Harness()
        line = h.machine.status_line(_OPEN)
        assert line.startswith("btc-updown-15m-1000000 scanning")
        assert "ttl=840s" in line
