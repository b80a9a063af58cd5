"""Async WebSocket clients for the Polymarket CLOB market and user channels.

``BookFeed`` streams top-of-book changes for the traded tokens into the
quote cache; ``UserFeed`` streams this account's fills into the position
ledger.  Both reconnect with exponential backoff, keep the connection alive
with pings and shut down gracefully.  Reconnection never surfaces to the
state machine: it only ever reads the caches these feeds fill.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, cast

from websockets import ConnectionClosed
from websockets.asyncio.client import ClientConnection, connect

from duration_hedger.apps.hedger.models import BookUpdate, FillNotice
from duration_hedger.core.models import ZERO

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = logging.getLogger(__name__)

MARKET_WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
USER_WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/user"
_RECONNECT_MAX_DELAY = 60.0
_PING_INTERVAL = 20
_PING_TIMEOUT = 10


class _ReconnectingFeed[T](ABC):
    """Reconnect loop shared by the market and user channel clients.

    Subclasses supply the subscription message and the message parser.

    Args:
        url: WebSocket endpoint.
        reconnect_base_delay: Initial reconnect wait in seconds, doubled on
            each consecutive failure up to 60 seconds.

    """

    def __init__(self, url: str, *, reconnect_base_delay: float) -> None:
        """Initialize the feed.

        Args:
            url: WebSocket endpoint.
            reconnect_base_delay: Initial delay between reconnect attempts.

        """
        self._url = url
        self._reconnect_base_delay = reconnect_base_delay
        self._ws: ClientConnection | None = None
        self._closed = False
        self._reconnect_requested = False

    async def stream(self) -> AsyncIterator[T]:
        """Connect and yield parsed events until ``close`` is called.

        When ``resubscribe()`` triggers an intentional reconnect, the backoff
        delay is skipped so the fresh connection is established immediately.

        Yields:
            Parsed events.

        """
        delay = self._reconnect_base_delay
        while not self._closed:
            try:
                async for event in self._connect_and_listen():
                    yield event
                    delay = self._reconnect_base_delay
            except ConnectionClosed as exc:
                if self._closed:
                    return
                if not self._reconnect_requested:
                    logger.warning("WebSocket %s closed: %s", self._url, exc)
            except OSError as exc:
                if self._closed:
                    return
                logger.warning("WebSocket %s error: %s", self._url, exc)

            if self._closed:
                return

            if self._reconnect_requested:
                self._reconnect_requested = False
                delay = self._reconnect_base_delay
                logger.info("Reconnecting immediately for subscription update")
                continue

            logger.info("Reconnecting in %.1fs...", delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, _RECONNECT_MAX_DELAY)

    async def resubscribe(self) -> None:
        """Drop the current connection so ``stream`` reconnects with a fresh subscription.

        The server ignores further subscribe messages on an open
        connection, so changing the subscription means reconnecting.
        """
        if self._ws is not None:
            self._reconnect_requested = True
            await self._ws.close()

    async def close(self) -> None:
        """Gracefully close the WebSocket connection."""
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        logger.info("%s closed", type(self).__name__)

    async def _connect_and_listen(self) -> AsyncIterator[T]:
        async with connect(
            self._url,
            ping_interval=_PING_INTERVAL,
            ping_timeout=_PING_TIMEOUT,
        ) as ws:
            self._ws = ws
            await ws.send(json.dumps(self._subscribe_message()))
            logger.info("Connected to %s", self._url)
            async for raw in ws:
                for event in self._parse(raw):
                    yield event

    @abstractmethod
    def _subscribe_message(self) -> dict[str, object]:
        """Return the message sent right after connecting."""

    @abstractmethod
    def _parse(self, raw: str | bytes) -> list[T]:
        """Turn one raw message into zero or more events."""


class BookFeed(_ReconnectingFeed[BookUpdate]):
    """Stream best bid/ask changes for a set of outcome tokens.

    Args:
        url: Market channel endpoint.
        reconnect_base_delay: Initial reconnect wait in seconds.
        clock: Returns the local receive time stamped on each update.

    """

    def __init__(
        self,
        url: str = MARKET_WS_URL,
        *,
        reconnect_base_delay: float = 3.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the book feed with no subscribed tokens.

        Args:
            url: Market channel endpoint.
            reconnect_base_delay: Initial reconnect wait in seconds.
            clock: Returns the local receive time.

        """
        super().__init__(url, reconnect_base_delay=reconnect_base_delay)
        self._clock = clock
        self._asset_ids: list[str] = []

    async def subscribe(self, asset_ids: list[str]) -> None:
        """Replace the subscribed tokens, reconnecting if already connected."""
        self._asset_ids = list(asset_ids)
        logger.info("Book feed subscribing to %d tokens", len(self._asset_ids))
        await self.resubscribe()

    def _subscribe_message(self) -> dict[str, object]:
        return {
            "type": "market",
            "assets_ids": self._asset_ids,
            "custom_feature_enabled": True,
        }

    def _parse(self, raw: str | bytes) -> list[BookUpdate]:
        return parse_book_message(raw, self._clock(), set(self._asset_ids))


class UserFeed(_ReconnectingFeed[FillNotice]):
    """Stream fills of this account's orders from the authenticated user channel.

    Args:
        credentials: ``(api_key, api_secret, api_passphrase)`` for the CLOB.
        url: User channel endpoint.
        reconnect_base_delay: Initial reconnect wait in seconds.

    """

    def __init__(
        self,
        credentials: tuple[str, str, str],
        url: str = USER_WS_URL,
        *,
        reconnect_base_delay: float = 3.0,
    ) -> None:
        """Initialize the user feed.

        Args:
            credentials: CLOB API key, secret and passphrase.
            url: User channel endpoint.
            reconnect_base_delay: Initial reconnect wait in seconds.

        """
        super().__init__(url, reconnect_base_delay=reconnect_base_delay)
        self._credentials = credentials
        self._markets: list[str] = []

    async def subscribe(self, condition_ids: list[str]) -> None:
        """Restrict the feed to the given markets, reconnecting if connected."""
        self._markets = list(condition_ids)
        await self.resubscribe()

    def _subscribe_message(self) -> dict[str, object]:
        api_key, secret, passphrase = self._credentials
        return {
            "auth": {"apiKey": api_key, "secret": secret, "passphrase": passphrase},
            "type": "user",
            "markets": self._markets,
        }

    def _parse(self, raw: str | bytes) -> list[FillNotice]:
        return parse_user_message(raw)


def parse_book_message(
    raw: str | bytes,
    received_at: float,
    asset_ids: set[str] | None = None,
) -> list[BookUpdate]:
    """Extract top-of-book updates from a market channel message.

    Handles full ``book`` snapshots, ``price_change`` deltas carrying the
    resulting best bid/ask, and ``best_bid_ask`` events.  Updates are
    stamped with the local receive time so staleness is measured against
    the local clock.

    Args:
        raw: Raw WebSocket message.
        received_at: Local Unix time the message arrived.
        asset_ids: Only keep updates for these tokens when given.

    Returns:
        Parsed updates; empty for other message types or malformed input.

    """
    updates: list[BookUpdate] = []
    for event in _load_events(raw):
        event_type = event.get("event_type")
        if event_type == "book":
            bids = [_to_decimal(level.get("price")) for level in _levels(event.get("bids"))]
            asks = [_to_decimal(level.get("price")) for level in _levels(event.get("asks"))]
            positive_asks = [ask for ask in asks if ask > ZERO]
            updates.append(
                BookUpdate(
                    token_id=str(event.get("asset_id", "")),
                    best_bid=max(bids, default=ZERO),
                    best_ask=min(positive_asks, default=ZERO),
                    timestamp=received_at,
                )
            )
        elif event_type == "price_change":
            for change in _levels(event.get("price_changes")):
                if "best_bid" not in change and "best_ask" not in change:
                    continue
                updates.append(
                    BookUpdate(
                        token_id=str(change.get("asset_id", "")),
                        best_bid=_to_decimal(change.get("best_bid")),
                        best_ask=_to_decimal(change.get("best_ask")),
                        timestamp=received_at,
                    )
                )
        elif event_type == "best_bid_ask":
            updates.append(
                BookUpdate(
                    token_id=str(event.get("asset_id", "")),
                    best_bid=_to_decimal(event.get("best_bid")),
                    best_ask=_to_decimal(event.get("best_ask")),
                    timestamp=received_at,
                )
            )
    return [
        update
        for update in updates
        if update.token_id and (asset_ids is None or update.token_id in asset_ids)
    ]


def parse_user_message(raw: str | bytes) -> list[FillNotice]:
    """Extract per-order fills from a user channel ``trade`` message.

    One trade can fill our taker order and any number of our maker orders;
    each participating order yields its own notice.  The same trade is
    re-sent as it moves through matched, mined and confirmed, so notices
    carry a ``trade_id`` unique per trade and order for de-duplication.

    Args:
        raw: Raw WebSocket message.

    Returns:
        Parsed fill notices; empty for non-trade messages.

    """
    notices: list[FillNotice] = []
    for event in _load_events(raw):
        if event.get("event_type") != "trade":
            continue
        trade_id = str(event.get("id", ""))
        if not trade_id:
            continue
        taker_order_id = str(event.get("taker_order_id", ""))
        if taker_order_id:
            notices.append(
                FillNotice(
                    trade_id=f"{trade_id}:{taker_order_id}",
                    order_id=taker_order_id,
                    token_id=str(event.get("asset_id", "")),
                    size=_to_decimal(event.get("size")),
                    price=_to_decimal(event.get("price")),
                )
            )
        for maker in _levels(event.get("maker_orders")):
            order_id = str(maker.get("order_id", ""))
            if not order_id:
                continue
            notices.append(
                FillNotice(
                    trade_id=f"{trade_id}:{order_id}",
                    order_id=order_id,
                    token_id=str(maker.get("asset_id", event.get("asset_id", ""))),
                    size=_to_decimal(maker.get("matched_amount")),
                    price=_to_decimal(maker.get("price")),
                )
            )
    return [notice for notice in notices if notice.size > ZERO]


def _load_events(raw: str | bytes) -> list[dict[str, Any]]:
    """Decode a message into a list of event dictionaries."""
    try:
        data: Any = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.debug("Ignoring unparseable message: %s", raw[:100] if raw else raw)
        return []
    if isinstance(data, dict):
        return [cast("dict[str, Any]", data)]
    if isinstance(data, list):
        items = cast("list[Any]", data)
        return [cast("dict[str, Any]", item) for item in items if isinstance(item, dict)]
    return []


def _levels(value: Any) -> list[dict[str, Any]]:
    """Return the dictionaries of a JSON list field, ignoring anything else."""
    if not isinstance(value, list):
        return []
    items = cast("list[Any]", value)
    return [cast("dict[str, Any]", item) for item in items if isinstance(item, dict)]


def _to_decimal(value: Any) -> Decimal:
    """Convert a JSON price or size to ``Decimal``, zero when missing or malformed."""
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return ZERO
