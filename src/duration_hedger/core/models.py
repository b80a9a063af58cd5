"""Core value types shared across the hedger.

Define the decimal constants and the order direction enum used by both the
Polymarket client layer and the hedging application.  All prices and share
counts in the project are ``Decimal`` so that tick arithmetic is exact.
"""

from decimal import Decimal
from enum import Enum

ZERO = Decimal(0)
ONE = Decimal(1)
ONE_CENT = Decimal("0.01")


class Side(Enum):
    """Direction of an order: BUY acquires outcome shares, SELL releases them."""

    BUY = "BUY"
    SELL = "SELL"
