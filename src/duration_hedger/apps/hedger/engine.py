"""Driver loop for the duration hedger.

Poll the market rotator, build a fresh session and state machine for each
new market, and step the machine at the tick interval of its current
state.  Book updates and fill notices stream in on background tasks that
only touch the quote cache and the ledger, so the driver never waits on
them.

On rotation the previous market's working orders are cancelled before the
next session starts.  On shutdown (SIGINT or ``max_ticks``) working orders
are cancelled and the run's results are returned.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from duration_hedger.apps.hedger.ledger import PositionLedger
from duration_hedger.apps.hedger.models import HedgeConfig, HedgeMarket, HedgeRunResult
from duration_hedger.apps.hedger.order_gateway import OrderGateway
from duration_hedger.apps.hedger.protocols import MarketRotator, OrderVenue, PositionSource
from duration_hedger.apps.hedger.quote_feed import QuoteFeed
from duration_hedger.apps.hedger.session import MarketSession, ProfitTracker
from duration_hedger.apps.hedger.state_machine import HedgingStateMachine
from duration_hedger.apps.hedger.ws_client import BookFeed, UserFeed
from duration_hedger.core.models import ZERO

logger = logging.getLogger(__name__)

_STATUS_INTERVAL_SECONDS = 30.0


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Log unhandled exceptions from background tasks.

    Attach as a ``done_callback`` so that a crashed feed task is surfaced
    in the logs rather than silently swallowed.

    Args:
        task: The completed asyncio task.

    """
    if not task.cancelled() and task.exception() is not None:
        logger.error(
            "Background task %s failed: %s",
            task.get_name(),
            task.exception(),
            exc_info=task.exception(),
        )


class HedgeEngine:
    """Trade one market at a time from a rotator, one state machine per market.

    Args:
        venue: Order venue (live client or paper venue).
        rotator: Supplier of the market to trade.
        quotes: Quote cache shared with the book feed.
        config: Strategy parameters.
        positions: Authoritative position store, ``None`` for local fills only.
        account: Wallet address whose positions are reconciled.
        book_feed: Market channel feeding ``quotes``.
        user_feed: User channel feeding fills into the ledger.
        profits: Cumulative counters, shared when engines run in parallel.
        clock: Returns the current Unix time in seconds.
        sleep: Coroutine used between ticks.

    """

    def __init__(  # noqa: PLR0913
        self,
        venue: OrderVenue,
        rotator: MarketRotator,
        quotes: QuoteFeed,
        config: HedgeConfig,
        *,
        positions: PositionSource | None = None,
        account: str = "",
        book_feed: BookFeed | None = None,
        user_feed: UserFeed | None = None,
        profits: ProfitTracker | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the engine with no active market.

        Args:
            venue: Order venue.
            rotator: Supplier of the market to trade.
            quotes: Quote cache shared with the book feed.
            config: Strategy parameters.
            positions: Authoritative position store.
            account: Wallet address whose positions are reconciled.
            book_feed: Market channel feeding ``quotes``.
            user_feed: User channel feeding fills into the ledger.
            profits: Cumulative counters shared across engines.
            clock: Returns the current Unix time in seconds.
            sleep: Coroutine used between ticks.

        """
        self._venue = venue
        self._rotator = rotator
        self._quotes = quotes
        self._config = config
        self._positions = positions
        self._account = account
        self._book_feed = book_feed
        self._user_feed = user_feed
        self._profits = profits if profits is not None else ProfitTracker()
        self._clock = clock
        self._sleep = sleep
        self._machine: HedgingStateMachine | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._shutdown = False
        self._last_rotation_check = 0.0
        self._last_status = 0.0
        self._markets_traded = 0
        self._closed_pairs = 0
        self._closed_profit = ZERO
        self._closed_loss = ZERO
        self._ticks = 0

    @property
    def machine(self) -> HedgingStateMachine | None:
        """Return the state machine of the market being traded, if any."""
        return self._machine

    def stop(self) -> None:
        """Ask the driver loop to exit after the current tick."""
        self._shutdown = True

    async def run(self, *, max_ticks: int | None = None) -> HedgeRunResult:
        """Drive the hedger until stopped or ``max_ticks`` is reached.

        Args:
            max_ticks: Stop after this many loop iterations (``None`` for
                unlimited).

        Returns:
            Summary of the run.

        """
        try:
            while not self._shutdown:
                now = self._clock()
                await self._maybe_rotate(now)
                if self._machine is None:
                    interval = self._config.rotation_check_seconds
                else:
                    await self._machine.step(now)
                    self._log_status(now)
                    interval = self._machine.tick_interval()
                self._ticks += 1
                if max_ticks is not None and self._ticks >= max_ticks:
                    break
                if self._shutdown:
                    logger.info("Shutdown signal received, cancelling working orders...")
                    break
                await self._sleep(interval)
        finally:
            await self._close()
        return self.result()

    def result(self) -> HedgeRunResult:
        """Return the results so far, including the market in progress."""
        pairs, profit, loss = self._closed_pairs, self._closed_profit, self._closed_loss
        if self._machine is not None:
            session = self._machine.session
            pairs += session.completed_pairs
            profit += session.realized_profit
            loss += session.realized_loss
        return HedgeRunResult(
            markets_traded=self._markets_traded,
            completed_pairs=pairs,
            realized_profit=profit,
            realized_loss=loss,
            ticks=self._ticks,
        )

    async def _maybe_rotate(self, now: float) -> None:
        """Switch sessions when the rotator supersedes the current market."""
        machine = self._machine
        due = now - self._last_rotation_check >= self._config.rotation_check_seconds
        expired = machine is not None and now >= machine.session.market.end_ts
        if machine is not None and not due and not expired:
            return
        self._last_rotation_check = now
        market = await self._rotator.current_market(now)

        if machine is not None:
            current = machine.session.market
            if market is not None and market.condition_id == current.condition_id:
                return
            if not await machine.shutdown():
                logger.warning("[ROTATE] orders on %s still open, retrying", current.slug)
                return
            self._close_session(machine.session)
            self._machine = None

        if market is not None:
            await self._open_session(market)

    async def _open_session(self, market: HedgeMarket) -> None:
        cfg = self._config
        ledger = PositionLedger(market, self._positions, self._account)
        gateway = OrderGateway(
            self._venue,
            market,
            ledger,
            fill_ratio=cfg.fill_ratio,
            settle_seconds=cfg.immediate_settle_seconds,
            clock=self._clock,
        )
        session = MarketSession(market=market, ledger=ledger, gateway=gateway)
        self._quotes.clear()
        self._machine = HedgingStateMachine(
            session, self._quotes, cfg, profits=self._profits, clock=self._clock
        )
        self._markets_traded += 1
        logger.info(
            "[ROTATE] trading %s: %s (%.0fs to expiry)",
            market.slug or market.condition_id[:12],
            market.question,
            market.seconds_to_expiry(self._clock()),
        )
        await self._subscribe_feeds(market)

    def _close_session(self, session: MarketSession) -> None:
        self._closed_pairs += session.completed_pairs
        self._closed_profit += session.realized_profit
        self._closed_loss += session.realized_loss
        logger.info(
            "[ROTATE] closed %s: pairs=%d profit=%s loss=%s imbalance=%s",
            session.market.slug or session.market.condition_id[:12],
            session.completed_pairs,
            session.realized_profit,
            session.realized_loss,
            session.ledger.imbalance,
        )

    async def _subscribe_feeds(self, market: HedgeMarket) -> None:
        """Point the feeds at the new market, starting their tasks on first use."""
        if self._book_feed is not None:
            await self._book_feed.subscribe([market.leg_a_token, market.leg_b_token])
            if not self._has_task("book-feed"):
                self._start_task(self._quotes.consume(self._book_feed.stream()), "book-feed")
        if self._user_feed is not None:
            await self._user_feed.subscribe([market.condition_id])
            if not self._has_task("user-feed"):
                self._start_task(self._consume_fills(self._user_feed), "user-feed")

    def _has_task(self, name: str) -> bool:
        return any(task.get_name() == name for task in self._tasks)

    def _start_task(self, coro: Awaitable[None], name: str) -> None:
        task: asyncio.Task[None] = asyncio.ensure_future(coro)
        task.set_name(name)
        task.add_done_callback(_log_task_exception)
        self._tasks.append(task)

    async def _consume_fills(self, feed: UserFeed) -> None:
        async for notice in feed.stream():
            machine = self._machine
            if machine is not None:
                machine.session.ledger.apply_fill_notice(notice)

    def _log_status(self, now: float) -> None:
        if self._machine is None or now - self._last_status < _STATUS_INTERVAL_SECONDS:
            return
        self._last_status = now
        pairs, profit, loss = self._profits.snapshot()
        logger.info(
            "[STATUS] %s | total pairs=%d net=%s",
            self._machine.status_line(now),
            pairs,
            profit - loss,
        )

    async def _close(self) -> None:
        if self._machine is not None and not await self._machine.shutdown():
            logger.warning("Some working orders could not be cancelled on exit")
        for task in self._tasks:
            task.cancel()
        for feed in (self._book_feed, self._user_feed):
            if feed is not None:
                await feed.close()


def combine_results(results: list[HedgeRunResult]) -> HedgeRunResult:
    """Sum the results of engines that ran in parallel."""
    return HedgeRunResult(
        markets_traded=sum(r.markets_traded for r in results),
        completed_pairs=sum(r.completed_pairs for r in results),
        realized_profit=sum((r.realized_profit for r in results), ZERO),
        realized_loss=sum((r.realized_loss for r in results), ZERO),
        ticks=sum(r.ticks for r in results),
    )
