"""Market rotation across the 15-minute Up/Down series.

Each asset in the series lists one market per 15-minute window, under an
event slug of the form ``{asset}-updown-15m-{window_start}``.  The rotator
keeps returning the market it picked until that market's window ends,
then moves on to the next asset in round-robin order, skipping windows
with too little time left to open new exposure.
"""

import logging
import time
from collections.abc import Callable

import httpx

from duration_hedger.apps.hedger.models import HedgeConfig, HedgeMarket
from duration_hedger.clients.polymarket.client import PolymarketClient
from duration_hedger.clients.polymarket.exceptions import PolymarketAPIError
from duration_hedger.clients.polymarket.models import Market

logger = logging.getLogger(__name__)

_MIN_TOKENS = 2
_UP_OUTCOMES = frozenset({"up", "yes"})
_DOWN_OUTCOMES = frozenset({"down", "no"})


def window_start(now: float, window_seconds: int) -> int:
    """Return the Unix start of the window containing ``now``."""
    return int(now // window_seconds) * window_seconds


def series_slug(asset: str, start: int) -> str:
    """Return the event slug of an asset's market for the window starting at ``start``."""
    return f"{asset.lower()}-updown-15m-{start}"


def to_hedge_market(market: Market, end_ts: int) -> HedgeMarket | None:
    """Map a Gamma market onto the two legs the hedger trades.

    Leg A is the "Up"/"Yes" token and leg B the "Down"/"No" token; when the
    outcome labels are unrecognised the listing order is used.

    Args:
        market: Market returned by the Gamma API.
        end_ts: Unix time the market's window ends.

    Returns:
        The hedge market, or ``None`` if the market lacks two tokens.

    """
    if len(market.tokens) < _MIN_TOKENS:
        return None
    up = next((t for t in market.tokens if t.outcome.lower() in _UP_OUTCOMES), market.tokens[0])
    down = next((t for t in market.tokens if t.outcome.lower() in _DOWN_OUTCOMES), market.tokens[1])
    try:
        return HedgeMarket(
            condition_id=market.condition_id,
            question=market.question,
            leg_a_token=up.token_id,
            leg_b_token=down.token_id,
            tick_size=market.tick_size,
            end_ts=end_ts,
            neg_risk=market.neg_risk,
            slug=market.slug,
        )
    except ValueError:
        logger.warning("Market %s has an unusable definition", market.condition_id, exc_info=True)
        return None


class SeriesRotator:
    """Pick the market to trade from the configured Up/Down series.

    Args:
        client: Polymarket client used for Gamma event lookups.
        config: Supplies the asset series, window length and stop threshold.
        clock: Returns the current Unix time in seconds.

    """

    def __init__(
        self,
        client: PolymarketClient,
        config: HedgeConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the rotator.

        Args:
            client: Polymarket client used for Gamma event lookups.
            config: Series, window length and stop threshold.
            clock: Returns the current Unix time in seconds.

        """
        self._client = client
        self._config = config
        self._clock = clock
        self._current: HedgeMarket | None = None
        self._last_index = -1

    async def current_market(self, now: float | None = None) -> HedgeMarket | None:
        """Return the market to trade at ``now``.

        The previous market is kept until its window ends.  After that the
        series is searched again, starting with the asset after the one
        traded last.

        Args:
            now: Unix time in seconds (defaults to the clock).

        Returns:
            The market to trade, or ``None`` when no window is tradable.

        """
        now = self._clock() if now is None else now
        if self._current is not None and now < self._current.end_ts:
            return self._current
        self._current = await self._discover(now)
        return self._current

    async def _discover(self, now: float) -> HedgeMarket | None:
        cfg = self._config
        start = window_start(now, cfg.window_seconds)
        end = start + cfg.window_seconds
        if end - now < cfg.stop_new_trades_seconds:
            logger.debug("Only %.0fs left in the window, waiting for the next one", end - now)
            return None

        count = len(cfg.series)
        for offset in range(count):
            index = (self._last_index + 1 + offset) % count
            slug = series_slug(cfg.series[index], start)
            try:
                markets = await self._client.get_series_markets(slug)
            except (PolymarketAPIError, httpx.HTTPError):
                logger.warning("Market lookup failed for %s", slug, exc_info=True)
                continue
            for market in markets:
                if not market.active or not market.accepting_orders:
                    continue
                hedge_market = to_hedge_market(market, end)
                if hedge_market is None:
                    continue
                self._last_index = index
                logger.info(
                    "Found %s (%s) with %.0fs to expiry",
                    slug,
                    market.question,
                    hedge_market.seconds_to_expiry(now),
                )
                return hedge_market
            logger.info("No tradable market for %s", slug)
        logger.warning("No active market found across %d series", count)
        return None

