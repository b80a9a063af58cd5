"""Frozen records for the venue payloads the hedger reads.

The CLOB, Gamma and Data APIs all answer with loosely typed JSON; the
facade parses them into these dataclasses before anything else sees them.
Prices and sizes are ``Decimal``.
"""

from dataclasses import dataclass
from decimal import Decimal

from duration_hedger.core.models import ZERO


@dataclass(frozen=True)
class OrderLevel:
    """Resting size at one price."""

    price: Decimal
    size: Decimal


@dataclass(frozen=True)
class OrderBook:
    """Book snapshot for one outcome token, each side sorted best first."""

    token_id: str
    bids: tuple[OrderLevel, ...]
    asks: tuple[OrderLevel, ...]

    @property
    def best_bid(self) -> Decimal:
        """Top bid, or zero when nobody is bidding."""
        return self.bids[0].price if self.bids else ZERO

    @property
    def best_ask(self) -> Decimal:
        """Top ask, or zero when nobody is offering."""
        return self.asks[0].price if self.asks else ZERO


@dataclass(frozen=True)
class MarketToken:
    """An outcome token with its label (``Up``/``Down``) and Gamma's last price."""

    token_id: str
    outcome: str
    price: Decimal


@dataclass(frozen=True)
class Market:
    """One binary market as listed inside a Gamma event.

    Args:
        condition_id: Condition the two outcome tokens settle on.
        question: Human-readable title.
        slug: Gamma slug, e.g. ``btc-updown-15m-1771758000``.
        tokens: Outcome tokens in Gamma's listing order.
        end_date: ISO-8601 resolution time.
        tick_size: Price increment the CLOB accepts.
        neg_risk: Orders must be signed for the neg-risk exchange.
        active: Gamma still lists the market as trading.
        accepting_orders: The CLOB is taking orders right now.

    """

    condition_id: str
    question: str
    slug: str
    tokens: tuple[MarketToken, ...]
    end_date: str
    tick_size: Decimal
    neg_risk: bool
    active: bool
    accepting_orders: bool


@dataclass(frozen=True)
class OrderRequest:
    """An order to submit.

    ``order_type`` is ``"limit"`` for a good-till-cancelled order that
    rests, or ``"fak"`` for fill-and-kill.  ``side`` is ``"BUY"`` or
    ``"SELL"``; ``tick_size`` and ``neg_risk`` are passed through to
    signing.
    """

    token_id: str
    side: str
    price: Decimal
    size: Decimal
    order_type: str
    tick_size: str = "0.01"
    neg_risk: bool = False


@dataclass(frozen=True)
class OrderResponse:
    """The venue's view of one order, from placement or a later lookup.

    Args:
        order_id: CLOB order id; empty if the placement came back without one.
        status: Lower-cased venue status: ``live``, ``matched``,
            ``canceled``, ``unmatched`` and so on.
        token_id: Outcome token.
        side: ``"BUY"`` or ``"SELL"``.
        price: Limit price.
        size: Shares originally requested.
        filled: Shares matched so far.
        created_at: Venue creation time in epoch seconds, ``0`` if unknown.
        avg_price: Average price of the matched shares when the venue
            reports what was exchanged, ``None`` otherwise.

    """

    order_id: str
    status: str
    token_id: str
    side: str
    price: Decimal
    size: Decimal
    filled: Decimal
    created_at: int = 0
    avg_price: Decimal | None = None


@dataclass(frozen=True)
class Balance:
    """USDC (``COLLATERAL``) or token (``CONDITIONAL``) balance and exchange allowance."""

    asset_type: str
    balance: Decimal
    allowance: Decimal


@dataclass(frozen=True)
class Position:
    """A holding as the Data API reports it.

    The Data API is the record of what the wallet owns, but it trails the
    CLOB by a few seconds after each fill.  ``token_id`` comes from the
    ``asset`` field and ``avg_price`` is the API's own average entry.
    """

    condition_id: str
    token_id: str
    outcome: str
    size: Decimal
    avg_price: Decimal
