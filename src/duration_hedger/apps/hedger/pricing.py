"""Tick arithmetic for order prices.

Every price the state machine sends to the venue passes through these
helpers, so each one is a whole number of ticks and stays inside the
configured ``[min_bid, max_bid]`` band.
"""

from decimal import ROUND_HALF_UP, Decimal

_WHOLE = Decimal(1)


def round_to_tick(price: Decimal, tick: Decimal) -> Decimal:
    """Round a price to the nearest multiple of ``tick``.

    Args:
        price: Raw price.
        tick: Minimum price increment of the market.

    Returns:
        The price expressed as a whole number of ticks.

    """
    return (price / tick).quantize(_WHOLE, rounding=ROUND_HALF_UP) * tick


def clamp(price: Decimal, low: Decimal, high: Decimal) -> Decimal:
    """Bound a price to ``[low, high]``."""
    return max(low, min(high, price))


def edge_price(best_bid: Decimal, tick: Decimal, low: Decimal, high: Decimal) -> Decimal:
    """Return the price one tick above the best bid, bounded to the band.

    Bidding one tick over the current best bid puts the order at the front
    of the queue without crossing the spread.

    Args:
        best_bid: Current best bid of the token.
        tick: Minimum price increment.
        low: Lowest allowed price.
        high: Highest allowed price.

    Returns:
        The bounded, tick-aligned bid price.

    """
    return clamp(round_to_tick(best_bid + tick, tick), low, high)


def bump_price(price: Decimal, tick: Decimal, ceiling: Decimal) -> Decimal | None:
    """Return the next price one tick higher, or ``None`` past the ceiling.

    Args:
        price: Current resting price.
        tick: Minimum price increment.
        ceiling: Highest price the order may be moved to.

    Returns:
        The bumped price, or ``None`` when it would exceed ``ceiling``.

    """
    bumped = round_to_tick(price + tick, tick)
    return bumped if bumped <= ceiling else None
