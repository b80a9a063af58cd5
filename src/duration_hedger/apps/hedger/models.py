"""Data models for the duration hedger.

Define the immutable value objects that flow through the hedger: the
market being traded, quotes, order handles and status reports, leg
positions, push notifications, the strategy configuration and the run
summary.  Mutable per-market state lives in ``session.MarketSession``.
"""

from collections.abc import Mapping
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from duration_hedger.core.config import ConfigError
from duration_hedger.core.models import ONE, ZERO, Side

_DEFAULT_BID_SIZE = Decimal(10)
_DEFAULT_MIN_BID = Decimal("0.10")
_DEFAULT_MAX_BID = Decimal("0.90")
_DEFAULT_MAX_ENTRY_PRICE = Decimal("0.45")
_DEFAULT_ENTRY_ANCHOR = Decimal("0.50")
_DEFAULT_TARGET_COMBINED = Decimal("0.96")
_DEFAULT_MAX_COMBINED = Decimal("0.98")
_DEFAULT_MAX_IMBALANCE = Decimal(10)
_DEFAULT_UNWIND_FLOOR = Decimal("0.01")
_DEFAULT_FILL_RATIO = Decimal("0.99")
_DEFAULT_SERIES = ("btc", "eth", "sol", "xrp")
_FIFTEEN_MINUTES = 900


class Leg(Enum):
    """One of the two complementary outcome tokens of a binary market."""

    A = "A"
    B = "B"

    @property
    def opposite(self) -> "Leg":
        """Return the complementary leg."""
        return Leg.B if self is Leg.A else Leg.A


class HedgeState(Enum):
    """Explicit states of the hedging state machine."""

    SCANNING = "scanning"
    FIRST_LEG_BIDDING = "first_leg_bidding"
    WAITING_FOR_HEDGE = "waiting_for_hedge"
    HEDGE_BIDDING = "hedge_bidding"
    CLOSING_POSITION = "closing_position"
    PAUSED = "paused"


class OrderStyle(Enum):
    """Resting orders stay on the book; immediate orders fill or die."""

    RESTING = "resting"
    IMMEDIATE = "immediate"


class OrderStatus(Enum):
    """Lifecycle status of an order as seen by the gateway."""

    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class HedgeMarket:
    """A binary market tradable for one window of the series.

    Args:
        condition_id: Unique market identifier.
        question: Human-readable market question.
        leg_a_token: Token ID of the first outcome ("Up"/"Yes").
        leg_b_token: Token ID of the second outcome ("Down"/"No").
        tick_size: Minimum price increment.
        end_ts: Unix epoch seconds when trading ends.
        neg_risk: Whether orders go through the neg-risk exchange.
        slug: Event slug the market was resolved from.

    Raises:
        ValueError: If the tokens are missing or identical, or the tick is
            not positive.

    """

    condition_id: str
    question: str
    leg_a_token: str
    leg_b_token: str
    tick_size: Decimal
    end_ts: int
    neg_risk: bool = False
    slug: str = ""

    def __post_init__(self) -> None:
        """Validate token identifiers and tick size."""
        if not self.leg_a_token or not self.leg_b_token:
            msg = f"market {self.condition_id} is missing an outcome token"
            raise ValueError(msg)
        if self.leg_a_token == self.leg_b_token:
            msg = f"market {self.condition_id} lists the same token for both legs"
            raise ValueError(msg)
        if self.tick_size <= ZERO:
            msg = f"tick_size must be positive, got {self.tick_size}"
            raise ValueError(msg)

    def token_for(self, leg: Leg) -> str:
        """Return the token ID trading the given leg."""
        return self.leg_a_token if leg is Leg.A else self.leg_b_token

    def leg_for_token(self, token_id: str) -> Leg | None:
        """Return the leg a token belongs to, or ``None`` for foreign tokens."""
        if token_id == self.leg_a_token:
            return Leg.A
        if token_id == self.leg_b_token:
            return Leg.B
        return None

    def seconds_to_expiry(self, now: float) -> float:
        """Return seconds left until ``end_ts`` (negative once expired)."""
        return self.end_ts - now


@dataclass(frozen=True)
class Quote:
    """Best bid/ask for one token as last known by the quote feed.

    Args:
        best_bid: Highest bid, zero when the bid side is empty or unknown.
        best_ask: Lowest ask, zero when the ask side is empty or unknown.
        age_ms: Milliseconds since the values were captured.
        stale: Whether the values are too old to act on aggressively.

    """

    best_bid: Decimal
    best_ask: Decimal
    age_ms: int
    stale: bool


@dataclass(frozen=True)
class BookUpdate:
    """Top-of-book change pushed by the market WebSocket channel."""

    token_id: str
    best_bid: Decimal
    best_ask: Decimal
    timestamp: float


@dataclass(frozen=True)
class FillNotice:
    """Fill pushed by the authenticated user WebSocket channel.

    Args:
        trade_id: Venue trade identifier, used for de-duplication.
        order_id: Our order that participated in the trade.
        token_id: Token traded.
        size: Shares matched for this order in this trade.
        price: Match price.

    """

    trade_id: str
    order_id: str
    token_id: str
    size: Decimal
    price: Decimal


@dataclass(frozen=True)
class OrderHandle:
    """Acknowledged order owned by the order gateway.

    Args:
        order_id: Venue order identifier.
        leg: Outcome leg the order trades.
        side: BUY or SELL.
        price: Requested limit price.
        size: Requested size in shares.
        style: Resting or immediate.
        placed_at: Unix epoch seconds when the placement was sent.

    """

    order_id: str
    leg: Leg
    side: Side
    price: Decimal
    size: Decimal
    style: OrderStyle
    placed_at: float


@dataclass(frozen=True)
class OrderReport:
    """Status of an order as reported by the venue.

    Args:
        order_id: Venue order identifier.
        status: Normalised order status.
        filled: Cumulative shares matched.
        avg_fill_price: Average match price when known.

    """

    order_id: str
    status: OrderStatus
    filled: Decimal
    avg_fill_price: Decimal | None = None

    @property
    def is_open(self) -> bool:
        """Return whether the order can still fill."""
        return self.status in (OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED)


@dataclass(frozen=True)
class LegPosition:
    """Share count and average cost of one leg."""

    size: Decimal = ZERO
    avg_cost: Decimal = ZERO


@dataclass(frozen=True)
class HedgeConfig:
    """Strategy parameters for the hedging state machine.

    Prices are probabilities in ``[0, 1]``; durations are seconds.  The
    numeric defaults are tuning choices, not structural requirements:
    only the existence of each ceiling and timeout matters.

    Attributes:
        bid_size: Shares per entry order.
        min_bid: Lowest price an order may rest at; also the minimum best
            bid for a side to count as having real liquidity.
        max_bid: Highest price any resting order may be bumped to, and the
            highest ask an immediate hedge may cross.
        max_entry_price: Ceiling for first-leg entry prices and bumps.
        entry_anchor: Price the entry side heuristic measures distance from.
        target_combined: Combined-cost ceiling for resting hedges.
        max_combined: Combined-cost ceiling for immediate hedges and for
            deciding whether a hedge is achievable at entry.
        max_imbalance: Share imbalance above which new exposure is refused.
        first_leg_bump_seconds: Interval between first-leg reprices.
        first_leg_timeout_seconds: Lifetime of an unfilled entry order.
        hedge_bump_seconds: Interval between hedge reprices.
        unhedged_timeout_seconds: Deadline, from the first leg filling, to
            achieve a hedge before unwinding.
        stop_new_trades_seconds: No new entries when less time remains.
        force_close_seconds: Force-close imbalances when less time remains.
        unwind_floor_price: Price of fallback resting sells when unwinding.
        fill_ratio: Fraction of the order size treated as a complete fill.
        quote_staleness_seconds: Age beyond which a quote is stale.
        immediate_settle_seconds: Wait before reading an immediate order's
            matched size back from the venue.
        first_leg_poll_seconds: Tick interval while chasing a first leg.
        hedge_poll_seconds: Tick interval while waiting on a hedge.
        force_close_poll_seconds: Tick interval while unwinding.
        idle_poll_seconds: Tick interval while scanning or paused.
        rotation_check_seconds: Interval between market rotation checks.
        series: Asset prefixes of the Up/Down series to rotate through.
        window_seconds: Length of one market window.

    """

    bid_size: Decimal = _DEFAULT_BID_SIZE
    min_bid: Decimal = _DEFAULT_MIN_BID
    max_bid: Decimal = _DEFAULT_MAX_BID
    max_entry_price: Decimal = _DEFAULT_MAX_ENTRY_PRICE
    entry_anchor: Decimal = _DEFAULT_ENTRY_ANCHOR
    target_combined: Decimal = _DEFAULT_TARGET_COMBINED
    max_combined: Decimal = _DEFAULT_MAX_COMBINED
    max_imbalance: Decimal = _DEFAULT_MAX_IMBALANCE
    first_leg_bump_seconds: float = 10.0
    first_leg_timeout_seconds: float = 60.0
    hedge_bump_seconds: float = 120.0
    unhedged_timeout_seconds: float = 600.0
    stop_new_trades_seconds: float = 330.0
    force_close_seconds: float = 270.0
    unwind_floor_price: Decimal = _DEFAULT_UNWIND_FLOOR
    fill_ratio: Decimal = _DEFAULT_FILL_RATIO
    quote_staleness_seconds: float = 5.0
    immediate_settle_seconds: float = 0.5
    first_leg_poll_seconds: float = 1.0
    hedge_poll_seconds: float = 2.0
    force_close_poll_seconds: float = 1.0
    idle_poll_seconds: float = 2.0
    rotation_check_seconds: float = 30.0
    series: tuple[str, ...] = _DEFAULT_SERIES
    window_seconds: int = _FIFTEEN_MINUTES

    def __post_init__(self) -> None:
        """Validate that the parameters describe a coherent strategy."""
        if self.bid_size <= ZERO:
            msg = f"bid_size must be positive, got {self.bid_size}"
            raise ValueError(msg)
        if not (ZERO < self.min_bid < self.max_bid < ONE):
            msg = f"expected 0 < min_bid < max_bid < 1, got {self.min_bid}, {self.max_bid}"
            raise ValueError(msg)
        if not (self.min_bid <= self.max_entry_price <= self.max_bid):
            msg = f"max_entry_price {self.max_entry_price} must lie within [min_bid, max_bid]"
            raise ValueError(msg)
        if not (ZERO < self.target_combined <= self.max_combined <= ONE):
            msg = (
                "expected 0 < target_combined <= max_combined <= 1, got "
                f"{self.target_combined}, {self.max_combined}"
            )
            raise ValueError(msg)
        if self.force_close_seconds >= self.stop_new_trades_seconds:
            msg = "force_close_seconds must be below stop_new_trades_seconds"
            raise ValueError(msg)
        if not (ZERO < self.unwind_floor_price < self.min_bid):
            msg = f"unwind_floor_price must lie in (0, min_bid), got {self.unwind_floor_price}"
            raise ValueError(msg)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "HedgeConfig":
        """Build a config from a settings mapping such as ``settings.yaml``.

        Values are coerced to each field's type, so strings produced by
        environment substitution are accepted.

        Args:
            raw: Mapping of field names to raw values.

        Returns:
            Validated configuration.

        Raises:
            ConfigError: On unknown keys, unparseable values, or values that
                fail validation.

        """
        known = {f.name: f.default for f in fields(cls)}
        unknown = sorted(set(raw) - set(known))
        if unknown:
            msg = f"Unknown hedger settings: {', '.join(unknown)}"
            raise ConfigError(msg)
        values: dict[str, Any] = {}
        for name, value in raw.items():
            try:
                values[name] = _coerce(value, known[name])
            except (InvalidOperation, TypeError, ValueError) as exc:
                msg = f"Invalid value for hedger.{name}: {value!r}"
                raise ConfigError(msg) from exc
        try:
            return cls(**values)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc


def _coerce(value: Any, default: Any) -> Any:
    """Convert a raw settings value to the type of a field's default.

    Args:
        value: Raw value from YAML or the environment.
        default: The field's default, whose type is the target type.

    Returns:
        The converted value.

    """
    if isinstance(default, Decimal):
        return Decimal(str(value))
    if isinstance(default, tuple):
        items = value.split(",") if isinstance(value, str) else list(value)
        return tuple(str(item).strip() for item in items if str(item).strip())
    if isinstance(default, int):
        return int(value)
    return float(value)


@dataclass(frozen=True)
class HedgeRunResult:
    """Summary of a completed hedger run.

    Args:
        markets_traded: Number of market windows a session was opened for.
        completed_pairs: Hedged pairs completed across all markets.
        realized_profit: Locked-in spread from completed pairs.
        realized_loss: Losses realised by unwinding unhedged legs.
        ticks: Driver loop iterations executed.

    """

    markets_traded: int
    completed_pairs: int
    realized_profit: Decimal
    realized_loss: Decimal
    ticks: int

    @property
    def net_profit(self) -> Decimal:
        """Return profit minus loss."""
        return self.realized_profit - self.realized_loss
