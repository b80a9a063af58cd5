"""Bounded-staleness cache of best bid/ask per outcome token.

Quotes arrive asynchronously from the market WebSocket (``BookFeed``) and
are merged into the cache without blocking the driver loop.  Reading a
quote is a dictionary lookup; when the cached value is older than the
staleness window the caller can ask for a one-off REST refresh before
trusting it for a trade decision.
"""

import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from decimal import Decimal

import httpx

from duration_hedger.apps.hedger.models import BookUpdate, Quote
from duration_hedger.apps.hedger.protocols import QuoteSource
from duration_hedger.clients.polymarket.exceptions import PolymarketAPIError
from duration_hedger.core.models import ZERO

logger = logging.getLogger(__name__)

_MS_PER_SECOND = 1000


@dataclass
class _CachedQuote:
    best_bid: Decimal
    best_ask: Decimal
    captured_at: float


class QuoteFeed:
    """Most recent known best bid/ask for each token, with staleness tracking.

    Args:
        source: Pull source used by ``refresh``; ``None`` disables pulls.
        staleness_seconds: Age beyond which a cached quote is stale.
        clock: Returns the current Unix time in seconds.

    """

    def __init__(
        self,
        source: QuoteSource | None,
        *,
        staleness_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize an empty cache.

        Args:
            source: Pull source used by ``refresh``.
            staleness_seconds: Age beyond which a cached quote is stale.
            clock: Returns the current Unix time in seconds.

        """
        self._source = source
        self._staleness_seconds = staleness_seconds
        self._clock = clock
        self._cache: dict[str, _CachedQuote] = {}

    def apply_update(
        self,
        token_id: str,
        best_bid: Decimal,
        best_ask: Decimal,
        timestamp: float | None = None,
    ) -> None:
        """Merge a new top-of-book observation into the cache.

        Updates older than the cached entry are ignored, so a slow REST
        response cannot overwrite a fresher push.

        Args:
            token_id: Token the quote belongs to.
            best_bid: Highest bid, zero for an empty bid side.
            best_ask: Lowest ask, zero for an empty ask side.
            timestamp: Capture time in Unix seconds (defaults to now).

        """
        captured_at = self._clock() if timestamp is None else timestamp
        cached = self._cache.get(token_id)
        if cached is not None and captured_at < cached.captured_at:
            return
        self._cache[token_id] = _CachedQuote(best_bid, best_ask, captured_at)

    def current_quote(self, token_id: str) -> Quote:
        """Return the cached quote for a token without any I/O.

        Args:
            token_id: Token to look up.

        Returns:
            The cached quote, flagged stale when older than the staleness
            window.  An unknown token yields a zero quote flagged stale.

        """
        cached = self._cache.get(token_id)
        if cached is None:
            return Quote(best_bid=ZERO, best_ask=ZERO, age_ms=0, stale=True)
        age = max(0.0, self._clock() - cached.captured_at)
        return Quote(
            best_bid=cached.best_bid,
            best_ask=cached.best_ask,
            age_ms=int(age * _MS_PER_SECOND),
            stale=age > self._staleness_seconds,
        )

    async def refresh(self, token_id: str) -> Quote:
        """Pull the order book once and update the cache.

        Pull failures are logged and the last known quote is returned
        (still flagged stale), so callers treat liquidity as unknown.

        Args:
            token_id: Token to refresh.

        Returns:
            The quote after the refresh attempt.

        """
        if self._source is None:
            return self.current_quote(token_id)
        try:
            book = await self._source.get_order_book(token_id)
        except (PolymarketAPIError, httpx.HTTPError):
            logger.warning("Quote refresh failed for %s", token_id[:16], exc_info=True)
            return self.current_quote(token_id)
        self.apply_update(token_id, book.best_bid, book.best_ask)
        return self.current_quote(token_id)

    async def fresh_quote(self, token_id: str) -> Quote:
        """Return the cached quote, pulling once first if it is stale.

        Args:
            token_id: Token to read.

        Returns:
            The freshest quote obtainable right now.

        """
        quote = self.current_quote(token_id)
        if not quote.stale:
            return quote
        return await self.refresh(token_id)

    async def consume(self, updates: AsyncIterator[BookUpdate]) -> None:
        """Apply pushed top-of-book updates until the stream ends.

        Args:
            updates: Async iterator of book updates, typically
                ``BookFeed.stream()``.

        """
        async for update in updates:
            self.apply_update(update.token_id, update.best_bid, update.best_ask, update.timestamp)

    def clear(self) -> None:
        """Drop every cached quote (used when the traded market rotates)."""
        self._cache.clear()
