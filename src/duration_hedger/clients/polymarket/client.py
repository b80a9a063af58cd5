"""Typed async facade for Polymarket trading and position data.

Compose the synchronous CLOB adapter, the async Gamma client and the Data
API into a single async interface.  Synchronous CLOB calls are wrapped in
``asyncio.to_thread()`` behind a lock so the event loop never blocks and
the underlying ``requests`` session is never used concurrently.
"""

import asyncio
import json
import logging
from collections.abc import Callable, Collection
from decimal import Decimal, InvalidOperation
from typing import Any, cast

import httpx

from duration_hedger.clients.polymarket import _clob_adapter
from duration_hedger.clients.polymarket._constants import HTTP_BAD_REQUEST, HTTP_UNAUTHORIZED
from duration_hedger.clients.polymarket._gamma_client import GammaClient
from duration_hedger.clients.polymarket.exceptions import (
    OrderRejectedError,
    PolymarketAPIError,
)
from duration_hedger.clients.polymarket.models import (
    Balance,
    Market,
    MarketToken,
    OrderBook,
    OrderLevel,
    OrderRequest,
    OrderResponse,
    Position,
)

logger = logging.getLogger(__name__)

_ZERO = Decimal(0)
_USDC_DECIMALS = Decimal("1e6")
_DEFAULT_TICK = Decimal("0.01")
_CORRELATION_SLACK_SECONDS = 5


class PolymarketClient:
    """Typed async client for Polymarket prediction markets.

    Serve the three collaborator roles the hedger needs from the venue:
    order books (quote source), order placement and status (order venue),
    and wallet positions (position source of truth).

    Args:
        host: Base URL for the Polymarket CLOB API.
        gamma_base_url: Base URL for the Gamma metadata API.
        data_api_url: Base URL for the Data API serving positions.

    """

    CLOB_HOST = "https://clob.polymarket.com"
    GAMMA_URL = "https://gamma-api.polymarket.com"
    DATA_API_URL = "https://data-api.polymarket.com"

    def __init__(  # noqa: PLR0913
        self,
        host: str = CLOB_HOST,
        gamma_base_url: str = GAMMA_URL,
        data_api_url: str = DATA_API_URL,
        private_key: str | None = None,
        api_key: str | None = None,
        api_secret: str | None = None,
        api_passphrase: str | None = None,
        funder_address: str | None = None,
    ) -> None:
        """Connect read-only, or with trading rights when a key is given.

        The three API credential parts are used only when all are present;
        otherwise they are derived from ``private_key``.  ``funder_address``
        is the proxy wallet holding collateral and positions and defaults
        to the key's own address.
        """
        self._authenticated = private_key is not None
        if private_key is not None:
            creds = None
            if api_key and api_secret and api_passphrase:
                creds = (api_key, api_secret, api_passphrase)
            self._clob_client: Any = _clob_adapter.create_authenticated_clob_client(
                host, private_key, creds=creds, funder=funder_address
            )
            self._funder_address = funder_address or _clob_adapter.derive_funder_address(
                private_key
            )
        else:
            self._clob_client = _clob_adapter.create_clob_client(host)
            self._funder_address = funder_address or ""
        self._data_api_url = data_api_url.rstrip("/")
        self._gamma = GammaClient(base_url=gamma_base_url)
        self._data_client = httpx.AsyncClient(timeout=30.0)
        self._clob_lock = asyncio.Lock()

    @property
    def funder_address(self) -> str:
        """Return the wallet address whose positions are traded."""
        return self._funder_address

    def api_credentials(self) -> tuple[str, str, str] | None:
        """Return the Level 2 API credentials, or ``None`` when read-only."""
        if not self._authenticated:
            return None
        return _clob_adapter.get_api_creds(self._clob_client)

    async def _clob(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking adapter call in a worker thread under the CLOB lock.

        Args:
            fn: Adapter function taking the CLOB client as first argument.
            *args: Further positional arguments for *fn*.
            **kwargs: Keyword arguments for *fn*.

        Returns:
            Whatever *fn* returns.

        """
        async with self._clob_lock:
            return await asyncio.to_thread(fn, self._clob_client, *args, **kwargs)

    def _require_auth(self) -> None:
        """Raise an error if the client is not authenticated.

        Raises:
            PolymarketAPIError: When no private key was provided at init.

        """
        if not self._authenticated:
            raise PolymarketAPIError(
                msg="Authentication required. Provide a private key to enable trading.",
                status_code=HTTP_UNAUTHORIZED,
            )

    async def get_order_book(self, token_id: str) -> OrderBook:
        """Fetch a typed order book for a token.

        Args:
            token_id: CLOB token identifier.

        Returns:
            Typed order book with bids best-first and asks best-first.  A
            token without a book yields an empty book.

        Raises:
            PolymarketAPIError: When the CLOB API call fails.

        """
        raw = await self._clob(_clob_adapter.fetch_order_book, token_id)
        if raw is None:
            return OrderBook(token_id=token_id, bids=(), asks=())
        return _parse_order_book(token_id, raw)

    async def get_series_markets(self, slug: str) -> list[Market]:
        """Resolve an event slug into the markets it contains.

        Args:
            slug: Fully timestamped event slug
                (e.g. ``eth-updown-15m-1771758000``).

        Returns:
            Markets of the matching event, empty when the slug is unknown.

        Raises:
            PolymarketAPIError: When the Gamma API request fails.

        """
        events = await self._gamma.get_events(slug=slug, active=True, limit=5)
        markets: list[Market] = []
        for event in events:
            for raw in event.get("markets", []):
                markets.append(_parse_market(cast("dict[str, Any]", raw)))
        return markets

    async def place_order(self, request: OrderRequest) -> OrderResponse:
        """Place a resting limit or fill-and-kill order.

        Args:
            request: Typed order request with token, side, price, and size.

        Returns:
            Typed order response.  For fill-and-kill orders ``filled``
            carries the shares matched by the placement itself.

        Raises:
            OrderRejectedError: When the venue answers ``success: false``.
            PolymarketAPIError: When not authenticated or the call fails.

        """
        self._require_auth()
        place = (
            _clob_adapter.place_fak_order
            if request.order_type == "fak"
            else _clob_adapter.place_limit_order
        )
        raw: dict[str, Any] = await self._clob(
            place,
            request.token_id,
            request.side,
            float(request.price),
            float(request.size),
            tick_size=request.tick_size,
            neg_risk=request.neg_risk,
        )
        if raw.get("success") is False:
            raise OrderRejectedError(
                msg=str(raw.get("errorMsg") or "order rejected"),
                status_code=HTTP_BAD_REQUEST,
            )
        return _parse_order_response(raw, request)

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel an open order.

        Args:
            order_id: Identifier of the order to cancel.

        Returns:
            ``True`` when the venue confirmed the cancellation, ``False``
            when it reported the order as not cancellable (typically
            because it already filled or was already cancelled).

        Raises:
            PolymarketAPIError: When not authenticated or the request fails.

        """
        self._require_auth()
        raw: dict[str, Any] = await self._clob(_clob_adapter.cancel_order, order_id)
        canceled = cast("list[str]", raw.get("canceled") or [])
        if order_id in canceled:
            return True
        not_canceled = cast("dict[str, Any]", raw.get("not_canceled") or {})
        if order_id in not_canceled:
            logger.debug("Order %s not cancelled: %s", order_id, not_canceled[order_id])
        return False

    async def get_order(self, order_id: str) -> OrderResponse | None:
        """Fetch the current state of an order.

        Args:
            order_id: Identifier of the order.

        Returns:
            Typed order with matched size, or ``None`` if unknown to the venue.

        Raises:
            PolymarketAPIError: When not authenticated or the query fails.

        """
        self._require_auth()
        raw = await self._clob(_clob_adapter.get_order, order_id)
        return _parse_raw_order(raw) if raw is not None else None

    async def get_open_orders(self, token_id: str | None = None) -> list[OrderResponse]:
        """Fetch open orders for the authenticated user.

        Args:
            token_id: Restrict to one token when given.

        Returns:
            List of typed order responses.

        Raises:
            PolymarketAPIError: When not authenticated or the query fails.

        """
        self._require_auth()
        raw_list: list[dict[str, Any]] = await self._clob(_clob_adapter.get_open_orders, token_id)
        return [_parse_raw_order(raw) for raw in raw_list]

    async def find_order(
        self,
        token_id: str,
        side: str,
        price: Decimal,
        placed_after: float,
        *,
        exclude: Collection[str] = (),
    ) -> OrderResponse | None:
        """Find an order this account placed whose acknowledgement was lost.

        Look first for a matching open order (a resting order that was
        accepted), then for taker trades at the limit price or better
        (an order that matched on arrival and left the book).  Orders the
        caller already knows about are skipped, and the most recent
        candidate wins.

        Args:
            token_id: Token the order was for.
            side: ``"BUY"`` or ``"SELL"``.
            price: Limit price of the order.
            placed_after: Unix epoch seconds just before the placement call.
            exclude: Order ids that cannot be the lost order.

        Returns:
            The matching order, or ``None`` when nothing correlates.

        Raises:
            PolymarketAPIError: When not authenticated or a query fails.

        """
        earliest = int(placed_after) - _CORRELATION_SLACK_SECONDS
        open_matches = [
            order
            for order in await self.get_open_orders(token_id)
            if order.order_id not in exclude
            and order.side == side
            and order.price == price
            and order.created_at >= earliest
        ]
        if open_matches:
            return max(open_matches, key=lambda order: order.created_at)

        raw_trades: list[dict[str, Any]] = await self._clob(
            _clob_adapter.get_trades, token_id, earliest
        )
        matched: dict[str, Decimal] = {}
        notional: dict[str, Decimal] = {}
        matched_at: dict[str, int] = {}
        for trade in raw_trades:
            order_id = str(trade.get("taker_order_id", ""))
            if not order_id or order_id in exclude or str(trade.get("side", "")) != side:
                continue
            trade_price = _safe_decimal(trade.get("price"))
            if (side == "BUY" and trade_price > price) or (side == "SELL" and trade_price < price):
                continue
            trade_size = _safe_decimal(trade.get("size"))
            matched[order_id] = matched.get(order_id, _ZERO) + trade_size
            notional[order_id] = notional.get(order_id, _ZERO) + trade_size * trade_price
            match_time = str(trade.get("match_time", ""))
            seen_at = int(match_time) if match_time.isdigit() else 0
            matched_at[order_id] = max(matched_at.get(order_id, 0), seen_at)
        if not matched:
            return None
        order_id = max(matched, key=lambda oid: matched_at[oid])
        filled = matched[order_id]
        return OrderResponse(
            order_id=order_id,
            status="matched",
            token_id=token_id,
            side=side,
            price=price,
            size=filled,
            filled=filled,
            created_at=matched_at[order_id],
            avg_price=notional[order_id] / filled if filled > _ZERO else None,
        )

    async def get_positions(self, user: str) -> list[Position]:
        """Return the wallet's non-empty token holdings from the Data API.

        Raises:
            PolymarketAPIError: If the request fails or returns an error status.

        """
        try:
            response = await self._data_client.get(
                f"{self._data_api_url}/positions", params={"user": user, "sizeThreshold": "0"}
            )
        except httpx.HTTPError as exc:
            raise PolymarketAPIError(msg=f"Data API request failed: {exc}", status_code=0) from exc
        if response.status_code >= HTTP_BAD_REQUEST:
            raise PolymarketAPIError(
                msg=f"Data API error: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        positions = (
            Position(
                condition_id=str(row.get("conditionId", "")),
                token_id=str(row.get("asset", "")),
                outcome=str(row.get("outcome", "")),
                size=_safe_decimal(row.get("size")),
                avg_price=_safe_decimal(row.get("avgPrice")),
            )
            for row in cast("list[dict[str, Any]]", response.json())
        )
        return [p for p in positions if p.size > _ZERO]

    async def get_balance(self, asset_type: str = "COLLATERAL") -> Balance:
        """Fetch the balance and allowance for an asset.

        Args:
            asset_type: ``"COLLATERAL"`` for USDC or ``"CONDITIONAL"`` for tokens.

        Returns:
            Typed balance with balance and allowance amounts.

        Raises:
            PolymarketAPIError: When not authenticated or the query fails.

        """
        self._require_auth()
        raw: dict[str, Any] = await self._clob(_clob_adapter.get_balance, asset_type)
        return Balance(
            asset_type=asset_type,
            balance=_safe_decimal(raw.get("balance")) / _USDC_DECIMALS,
            allowance=_safe_decimal(raw.get("allowance")) / _USDC_DECIMALS,
        )

    async def close(self) -> None:
        """Close underlying HTTP clients."""
        await self._gamma.close()
        await self._data_client.aclose()

    async def __aenter__(self) -> "PolymarketClient":
        """Enter async context manager."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        await self.close()


def _levels(raw_levels: Any, *, best_first_descending: bool) -> tuple[OrderLevel, ...]:
    """Parse one side of a book and sort it best price first."""
    levels = [
        OrderLevel(price=_safe_decimal(lvl.get("price")), size=_safe_decimal(lvl.get("size")))
        for lvl in cast("list[dict[str, Any]]", raw_levels or [])
    ]
    levels.sort(key=lambda lvl: lvl.price, reverse=best_first_descending)
    return tuple(levels)


def _parse_order_book(token_id: str, raw: dict[str, Any]) -> OrderBook:
    """Build an ``OrderBook`` from the CLOB payload.

    The CLOB lists bids ascending and asks descending; both are re-sorted
    so index 0 is the best level.
    """
    return OrderBook(
        token_id=token_id,
        bids=_levels(raw.get("bids"), best_first_descending=True),
        asks=_levels(raw.get("asks"), best_first_descending=False),
    )


def _parse_market(raw: dict[str, Any]) -> Market:
    """Build a ``Market`` from one entry of a Gamma event's ``markets``."""
    outcomes = _json_list(raw.get("outcomes"))
    prices = _json_list(raw.get("outcomePrices"))
    token_ids = _json_list(raw.get("clobTokenIds"))
    tokens: list[MarketToken] = []
    for index, outcome in enumerate(outcomes):
        token_id = token_ids[index] if index < len(token_ids) else ""
        price = _safe_decimal(prices[index]) if index < len(prices) else _ZERO
        tokens.append(MarketToken(token_id=token_id, outcome=outcome, price=price))
    tick = _safe_decimal(raw.get("orderPriceMinTickSize"))
    return Market(
        condition_id=str(raw.get("conditionId") or raw.get("condition_id") or ""),
        question=str(raw.get("question", "")),
        slug=str(raw.get("slug", "")),
        tokens=tuple(tokens),
        end_date=str(raw.get("endDate") or raw.get("end_date") or ""),
        tick_size=tick if tick > _ZERO else _DEFAULT_TICK,
        neg_risk=bool(raw.get("negRisk", False)),
        active=bool(raw.get("active", False)),
        accepting_orders=bool(raw.get("acceptingOrders", True)),
    )


def _json_list(value: Any) -> list[str]:
    """Decode a Gamma list field that may arrive JSON-encoded; ``[]`` if malformed."""
    decoded: Any = value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return []
    if not isinstance(decoded, list):
        return []
    return [str(item) for item in cast("list[Any]", decoded)]


def _safe_decimal(value: Any) -> Decimal:
    """Parse a venue number, reading ``None`` and blank strings as zero.

    Raises:
        PolymarketAPIError: If a non-blank value is not a number.

    """
    if value is None or str(value).strip() == "":
        return _ZERO
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        msg = f"Cannot convert {value!r} to Decimal"
        raise PolymarketAPIError(msg=msg, status_code=0) from exc


def _parse_order_response(raw: dict[str, Any], request: OrderRequest) -> OrderResponse:
    """Build an ``OrderResponse`` from a ``post_order`` answer.

    A placement that matched on arrival reports exchanged amounts instead
    of a share count: a buy makes USDC and takes shares, a sell makes
    shares and takes USDC.  Their ratio is the average fill price, which
    can be better than the limit.  The fill never exceeds the request size.

    Args:
        raw: The venue's placement response.
        request: The order as submitted.

    Returns:
        The typed response.

    """
    status = str(raw.get("status", "unknown")).lower()
    avg_price = None
    if status == "matched":
        making = _safe_decimal(raw.get("makingAmount"))
        taking = _safe_decimal(raw.get("takingAmount"))
        shares, usdc = (taking, making) if request.side == "BUY" else (making, taking)
        filled = shares
        if shares > _ZERO and usdc > _ZERO:
            avg_price = usdc / shares
    else:
        filled = _safe_decimal(raw.get("filled"))
    return OrderResponse(
        order_id=str(raw.get("orderID") or raw.get("id") or ""),
        status=status,
        token_id=request.token_id,
        side=request.side,
        price=request.price,
        size=request.size,
        filled=min(filled, request.size),
        avg_price=avg_price,
    )


def _parse_raw_order(raw: dict[str, Any]) -> OrderResponse:
    """Build an ``OrderResponse`` from a ``get_order``/``get_orders`` entry."""
    created_at = str(raw.get("created_at", ""))
    return OrderResponse(
        order_id=str(raw.get("id") or raw.get("orderID") or ""),
        status=str(raw.get("status", "unknown")).lower(),
        token_id=str(raw.get("asset_id") or raw.get("token_id") or ""),
        side=str(raw.get("side", "")),
        price=_safe_decimal(raw.get("price")),
        size=_safe_decimal(raw.get("original_size", raw.get("size"))),
        filled=_safe_decimal(raw.get("size_matched", raw.get("filled"))),
        created_at=int(created_at) if created_at.isdigit() else 0,
    )
