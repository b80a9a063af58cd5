"""Per-market mutable state of the hedger.

Everything the state machine mutates while trading one market lives on a
``MarketSession``: the active state, the working order per leg, the first
leg's fill details, the unwind in progress and this market's profit
counters.  A fresh session is built on every market rotation, so nothing
leaks from one window into the next.  The only state shared between
sessions is the ``ProfitTracker``.
"""

import threading
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from duration_hedger.apps.hedger.ledger import PositionLedger
from duration_hedger.apps.hedger.models import HedgeMarket, HedgeState, Leg, OrderHandle
from duration_hedger.apps.hedger.order_gateway import OrderGateway
from duration_hedger.core.models import ZERO


class OrderPurpose(Enum):
    """Why a working order was placed."""

    ENTRY = "entry"
    HEDGE = "hedge"
    UNWIND = "unwind"


@dataclass
class WorkingOrder:
    """A resting order the state machine is currently managing.

    Args:
        handle: Gateway handle of the live order.
        purpose: Entry, hedge or unwind.
        opened_at: When the first order of this chain was placed; carried
            over when the order is repriced.
        last_priced_at: When the current price was set.
        filled_seen: Fills already accounted for by the state machine.

    """

    handle: OrderHandle
    purpose: OrderPurpose
    opened_at: float
    last_priced_at: float
    filled_seen: Decimal = ZERO


@dataclass
class Unwind:
    """A committed sell-down of the excess leg.

    ``target`` is fixed when the unwind starts and never raised; progress
    is tracked by ``sold``.
    """

    leg: Leg
    target: Decimal
    cost_basis: Decimal
    forced: bool = False
    sold: Decimal = ZERO

    @property
    def remaining(self) -> Decimal:
        """Return shares still to sell."""
        return max(ZERO, self.target - self.sold)


class ProfitTracker:
    """Cumulative results shared by every market session.

    Increments are guarded by a lock so parallel sessions can share one
    tracker safely.
    """

    def __init__(self) -> None:
        """Initialize zeroed counters."""
        self._lock = threading.Lock()
        self._pairs = 0
        self._profit = ZERO
        self._loss = ZERO

    def add_pair(self) -> None:
        """Count one completed hedged pair."""
        with self._lock:
            self._pairs += 1

    def add_profit(self, amount: Decimal) -> None:
        """Add realised profit."""
        with self._lock:
            self._profit += amount

    def add_loss(self, amount: Decimal) -> None:
        """Add a realised loss (as a positive amount)."""
        with self._lock:
            self._loss += amount

    def snapshot(self) -> tuple[int, Decimal, Decimal]:
        """Return ``(completed_pairs, realized_profit, realized_loss)``."""
        with self._lock:
            return self._pairs, self._profit, self._loss


@dataclass
class MarketSession:
    """Working state for one traded market.

    Args:
        market: Market being traded.
        ledger: Position ledger for the market.
        gateway: Order gateway bound to the market.
        state: Current hedging state.
        working: At most one working order per leg.
        first_leg: Leg acquired first in the current cycle.
        first_leg_price: Recorded fill price of the first leg.
        committed_at: When the current cycle's exposure was first taken on.
        unwind: Sell-down in progress, if any.
        force_close_done: Whether the one-time force close has completed.
        completed_pairs: Hedged pairs completed in this market.
        realized_profit: Profit locked in this market.
        realized_loss: Losses realised unwinding in this market.

    """

    market: HedgeMarket
    ledger: PositionLedger
    gateway: OrderGateway
    state: HedgeState = HedgeState.SCANNING
    working: dict[Leg, WorkingOrder] = field(default_factory=dict)
    first_leg: Leg | None = None
    first_leg_price: Decimal = ZERO
    committed_at: float | None = None
    unwind: Unwind | None = None
    force_close_done: bool = False
    completed_pairs: int = 0
    realized_profit: Decimal = ZERO
    realized_loss: Decimal = ZERO

    def clear_cycle(self) -> None:
        """Forget the current entry/hedge cycle once it is resolved."""
        self.first_leg = None
        self.first_leg_price = ZERO
        self.committed_at = None

    def working_for(self, purpose: OrderPurpose) -> WorkingOrder | None:
        """Return the working order placed for ``purpose``, if any."""
        return next((w for w in self.working.values() if w.purpose is purpose), None)
