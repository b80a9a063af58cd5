"""Tests for the Polymarket client facade."""

import json
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from duration_hedger.clients.polymarket import _clob_adapter
from duration_hedger.clients.polymarket.client import PolymarketClient, _safe_decimal
from duration_hedger.clients.polymarket.exceptions import OrderRejectedError, PolymarketAPIError
from duration_hedger.clients.polymarket.models import OrderRequest

_TOKEN_UP = "token_up"
_TOKEN_DOWN = "token_down"
_ORDER_ID = "order-1"
_FUNDER = "0xfunder"
_SLUG = "btc-updown-15m-1771758000"
_STATUS_UNAUTHORIZED = 401
_STATUS_SERVER_ERROR = 503
_PLACED_AT = 1_771_758_100
_BID_SIZE = Decimal(10)


def _make_gamma_market(condition_id: str = "0xcond", **overrides: Any) -> dict[str, Any]:
    """Create a Gamma market dictionary as embedded in an event.

    Args:
        condition_id: Market condition identifier.
        **overrides: Fields replacing the defaults.

    Returns:
        Dictionary matching the Gamma event market format.

    """
    market: dict[str, Any] = {
        "conditionId": condition_id,
        "question": "Bitcoin Up or Down?",
        "slug": _SLUG,
        "outcomes": json.dumps(["Up", "Down"]),
        "outcomePrices": json.dumps(["0.52", "0.48"]),
        "clobTokenIds": json.dumps([_TOKEN_UP, _TOKEN_DOWN]),
        "endDate": "2026-02-22T11:15:00Z",
        "orderPriceMinTickSize": 0.01,
        "negRisk": False,
        "active": True,
        "acceptingOrders": True,
    }
    market.update(overrides)
    return market


def _make_request(order_type: str = "fak", side: str = "BUY") -> OrderRequest:
    """Create an order request for the up token."""
    return OrderRequest(
        token_id=_TOKEN_UP,
        side=side,
        price=Decimal("0.45"),
        size=_BID_SIZE,
        order_type=order_type,
    )


@pytest.fixture
def client() -> PolymarketClient:
    """Create a read-only PolymarketClient with a mocked CLOB client."""
    with patch("duration_hedger.clients.polymarket.client._clob_adapter.create_clob_client"):
        return PolymarketClient()


@pytest.fixture
def auth_client() -> PolymarketClient:
    """Create an authenticated PolymarketClient with a mocked CLOB client."""
    with patch(
        "duration_hedger.clients.polymarket.client._clob_adapter.create_authenticated_clob_client"
    ):
        return PolymarketClient(private_key="0xkey", funder_address=_FUNDER)


class TestOrderBooks:
    """Test order book retrieval."""

    @pytest.mark.asyncio
    async def test_sorts_levels_best_first(self, client: PolymarketClient) -> None:
        """Sort bids descending and asks ascending whatever the CLOB order."""
        raw = {
            "bids": [{"price": "0.40", "size": "5"}, {"price": "0.44", "size": "3"}],
            "asks": [{"price": "0.52", "size": "2"}, {"price": "0.47", "size": "9"}],
        }
        with patch.object(_clob_adapter, "fetch_order_book", return_value=raw):
            book = await client.get_order_book(_TOKEN_UP)

        assert book.best_bid == Decimal("0.44")
        assert book.best_ask == Decimal("0.47")

    @pytest.mark.asyncio
    async def test_missing_book_is_empty(self, client: PolymarketClient) -> None:
        """Return an empty book when the token has no book."""
        with patch.object(_clob_adapter, "fetch_order_book", return_value=None):
            book = await client.get_order_book(_TOKEN_UP)

        assert book.bids == ()
        assert book.best_ask == Decimal(0)


class TestSeriesMarkets:
    """Test series event resolution via Gamma."""

    @pytest.mark.asyncio
    async def test_parses_event_markets(self, client: PolymarketClient) -> None:
        """Decode JSON-encoded outcome fields into typed tokens."""
        events = [{"slug": _SLUG, "markets": [_make_gamma_market()]}]
        with patch.object(client._gamma, "get_events", new=AsyncMock(return_value=events)):
            markets = await client.get_series_markets(_SLUG)

        assert len(markets) == 1
        market = markets[0]
        assert market.condition_id == "0xcond"
        assert [t.token_id for t in market.tokens] == [_TOKEN_UP, _TOKEN_DOWN]
        assert [t.outcome for t in market.tokens] == ["Up", "Down"]
        assert market.tick_size == Decimal("0.01")
        assert market.accepting_orders

    @pytest.mark.asyncio
    async def test_missing_tick_defaults(self, client: PolymarketClient) -> None:
        """Fall back to a one-cent tick when Gamma omits it."""
        events = [{"markets": [_make_gamma_market(orderPriceMinTickSize=None)]}]
        with patch.object(client._gamma, "get_events", new=AsyncMock(return_value=events)):
            markets = await client.get_series_markets(_SLUG)

        assert markets[0].tick_size == Decimal("0.01")

    @pytest.mark.asyncio
    async def test_unknown_slug_is_empty(self, client: PolymarketClient) -> None:
        """Return no markets when no event matches."""
        with patch.object(client._gamma, "get_events", new=AsyncMock(return_value=[])):
            assert await client.get_series_markets(_SLUG) == []


class TestPlaceOrder:
    """Test order placement."""

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client: PolymarketClient) -> None:
        """Refuse to trade without a private key."""
        with pytest.raises(PolymarketAPIError) as exc_info:
            await client.place_order(_make_request())
        assert exc_info.value.status_code == _STATUS_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_matched_buy_reports_taking_amount(self, auth_client: PolymarketClient) -> None:
        """Report shares received by a matched buy as filled."""
        raw = {"success": True, "orderID": _ORDER_ID, "status": "matched", "takingAmount": "7"}
        with patch.object(_clob_adapter, "place_fak_order", return_value=raw) as place:
            response = await auth_client.place_order(_make_request())

        place.assert_called_once()
        assert response.order_id == _ORDER_ID
        assert response.filled == Decimal(7)

    @pytest.mark.asyncio
    async def test_matched_sell_reports_making_amount(self, auth_client: PolymarketClient) -> None:
        """Report shares given by a matched sell as filled."""
        raw = {"orderID": _ORDER_ID, "status": "MATCHED", "makingAmount": "4", "takingAmount": "2"}
        with patch.object(_clob_adapter, "place_fak_order", return_value=raw):
            response = await auth_client.place_order(_make_request(side="SELL"))

        assert response.status == "matched"
        assert response.filled == Decimal(4)

    @pytest.mark.asyncio
    async def test_matched_order_reports_average_price(
        self, auth_client: PolymarketClient
    ) -> None:
        """Derive the average fill price from the amounts exchanged."""
        buy = {"status": "matched", "makingAmount": "4.3", "takingAmount": "10"}
        sell = {"status": "matched", "makingAmount": "10", "takingAmount": "4.7"}
        with patch.object(_clob_adapter, "place_fak_order", side_effect=[buy, sell]):
            bought = await auth_client.place_order(_make_request())
            sold = await auth_client.place_order(_make_request(side="SELL"))

        assert bought.filled == _BID_SIZE
        assert bought.avg_price == Decimal("0.43")
        assert sold.avg_price == Decimal("0.47")

    @pytest.mark.asyncio
    async def test_resting_order_has_no_average_price(
        self, auth_client: PolymarketClient
    ) -> None:
        """Leave the average unset when nothing was exchanged."""
        raw = {"orderID": _ORDER_ID, "status": "live"}
        with patch.object(_clob_adapter, "place_limit_order", return_value=raw):
            response = await auth_client.place_order(_make_request(order_type="limit"))

        assert response.avg_price is None

    @pytest.mark.asyncio
    async def test_limit_uses_resting_placement(self, auth_client: PolymarketClient) -> None:
        """Route limit orders through the GTC placement."""
        raw = {"orderID": _ORDER_ID, "status": "live"}
        with patch.object(_clob_adapter, "place_limit_order", return_value=raw) as place:
            response = await auth_client.place_order(_make_request(order_type="limit"))

        place.assert_called_once()
        assert response.filled == Decimal(0)

    @pytest.mark.asyncio
    async def test_rejection_raises(self, auth_client: PolymarketClient) -> None:
        """Raise OrderRejectedError when the venue answers success false."""
        raw = {"success": False, "errorMsg": "not enough balance"}
        with (
            patch.object(_clob_adapter, "place_fak_order", return_value=raw),
            pytest.raises(OrderRejectedError, match="not enough balance"),
        ):
            await auth_client.place_order(_make_request())


class TestCancelAndLookup:
    """Test cancellation and order lookups."""

    @pytest.mark.asyncio
    async def test_cancel_confirmed(self, auth_client: PolymarketClient) -> None:
        """Return True when the order is listed as cancelled."""
        raw = {"canceled": [_ORDER_ID], "not_canceled": {}}
        with patch.object(_clob_adapter, "cancel_order", return_value=raw):
            assert await auth_client.cancel_order(_ORDER_ID) is True

    @pytest.mark.asyncio
    async def test_cancel_refused(self, auth_client: PolymarketClient) -> None:
        """Return False when the order could not be cancelled."""
        raw = {"canceled": [], "not_canceled": {_ORDER_ID: "order already matched"}}
        with patch.object(_clob_adapter, "cancel_order", return_value=raw):
            assert await auth_client.cancel_order(_ORDER_ID) is False

    @pytest.mark.asyncio
    async def test_get_order_parses_matched_size(self, auth_client: PolymarketClient) -> None:
        """Parse size_matched and original_size from an order record."""
        raw = {
            "id": _ORDER_ID,
            "status": "LIVE",
            "asset_id": _TOKEN_UP,
            "side": "BUY",
            "price": "0.45",
            "original_size": "10",
            "size_matched": "3",
            "created_at": _PLACED_AT,
        }
        with patch.object(_clob_adapter, "get_order", return_value=raw):
            order = await auth_client.get_order(_ORDER_ID)

        assert order is not None
        assert order.status == "live"
        assert order.size == _BID_SIZE
        assert order.filled == Decimal(3)
        assert order.created_at == _PLACED_AT

    @pytest.mark.asyncio
    async def test_get_order_unknown(self, auth_client: PolymarketClient) -> None:
        """Return None for an unknown order."""
        with patch.object(_clob_adapter, "get_order", return_value=None):
            assert await auth_client.get_order(_ORDER_ID) is None

    @pytest.mark.asyncio
    async def test_find_order_in_open_orders(self, auth_client: PolymarketClient) -> None:
        """Correlate a lost acknowledgement with a matching open order."""
        open_orders = [
            {
                "id": _ORDER_ID,
                "status": "live",
                "asset_id": _TOKEN_UP,
                "side": "BUY",
                "price": "0.45",
                "original_size": "10",
                "size_matched": "0",
                "created_at": _PLACED_AT,
            }
        ]
        with patch.object(_clob_adapter, "get_open_orders", return_value=open_orders):
            order = await auth_client.find_order(_TOKEN_UP, "BUY", Decimal("0.45"), _PLACED_AT)

        assert order is not None
        assert order.order_id == _ORDER_ID

    @pytest.mark.asyncio
    async def test_find_order_in_trades(self, auth_client: PolymarketClient) -> None:
        """Correlate an order that matched on arrival through its taker trades."""
        trades = [
            {"taker_order_id": _ORDER_ID, "side": "BUY", "price": "0.44", "size": "6"},
            {"taker_order_id": _ORDER_ID, "side": "BUY", "price": "0.45", "size": "4"},
            {"taker_order_id": "other", "side": "BUY", "price": "0.50", "size": "4"},
        ]
        with (
            patch.object(_clob_adapter, "get_open_orders", return_value=[]),
            patch.object(_clob_adapter, "get_trades", return_value=trades),
        ):
            order = await auth_client.find_order(_TOKEN_UP, "BUY", Decimal("0.45"), _PLACED_AT)

        assert order is not None
        assert order.order_id == _ORDER_ID
        assert order.filled == _BID_SIZE
        assert order.avg_price == Decimal("0.444")

    @pytest.mark.asyncio
    async def test_find_order_skips_known_and_prefers_latest(
        self, auth_client: PolymarketClient
    ) -> None:
        """Ignore orders the caller already tracks and pick the newest remaining match."""
        trades = [
            {"taker_order_id": "known", "side": "BUY", "price": "0.45", "size": "10"},
            {
                "taker_order_id": "older",
                "side": "BUY",
                "price": "0.45",
                "size": "10",
                "match_time": str(_PLACED_AT),
            },
            {
                "taker_order_id": _ORDER_ID,
                "side": "BUY",
                "price": "0.45",
                "size": "7",
                "match_time": str(_PLACED_AT + 2),
            },
        ]
        with (
            patch.object(_clob_adapter, "get_open_orders", return_value=[]),
            patch.object(_clob_adapter, "get_trades", return_value=trades),
        ):
            order = await auth_client.find_order(
                _TOKEN_UP, "BUY", Decimal("0.45"), _PLACED_AT, exclude={"known"}
            )

        assert order is not None
        assert order.order_id == _ORDER_ID
        assert order.filled == Decimal(7)

    @pytest.mark.asyncio
    async def test_find_order_open_orders_skip_known(self, auth_client: PolymarketClient) -> None:
        """A tracked resting order at the same price is not mistaken for the lost one."""
        open_orders = [
            {
                "id": order_id,
                "status": "live",
                "asset_id": _TOKEN_UP,
                "side": "BUY",
                "price": "0.45",
                "original_size": "10",
                "size_matched": "0",
                "created_at": _PLACED_AT + offset,
            }
            for order_id, offset in (("known", 3), ("stale", 0), (_ORDER_ID, 1))
        ]
        with patch.object(_clob_adapter, "get_open_orders", return_value=open_orders):
            order = await auth_client.find_order(
                _TOKEN_UP, "BUY", Decimal("0.45"), _PLACED_AT, exclude={"known"}
            )

        assert order is not None
        assert order.order_id == _ORDER_ID

    @pytest.mark.asyncio
    async def test_find_order_nothing(self, auth_client: PolymarketClient) -> None:
        """Return None when nothing correlates."""
        with (
            patch.object(_clob_adapter, "get_open_orders", return_value=[]),
            patch.object(_clob_adapter, "get_trades", return_value=[]),
        ):
            assert await auth_client.find_order(_TOKEN_UP, "BUY", Decimal("0.45"), 0) is None


class TestPositionsAndBalance:
    """Test wallet positions and balance."""

    @pytest.mark.asyncio
    async def test_positions_skip_empty(self, client: PolymarketClient) -> None:
        """Parse Data API positions and drop zero sizes."""
        payload = [
            {
                "conditionId": "0xcond",
                "asset": _TOKEN_UP,
                "outcome": "Up",
                "size": "10",
                "avgPrice": "0.45",
            },
            {"conditionId": "0xcond", "asset": _TOKEN_DOWN, "outcome": "Down", "size": "0"},
        ]
        response = MagicMock(status_code=200)
        response.json.return_value = payload
        with patch.object(client._data_client, "get", new=AsyncMock(return_value=response)):
            positions = await client.get_positions(_FUNDER)

        assert len(positions) == 1
        assert positions[0].token_id == _TOKEN_UP
        assert positions[0].avg_price == Decimal("0.45")

    @pytest.mark.asyncio
    async def test_positions_http_failure_is_transient(self, client: PolymarketClient) -> None:
        """Wrap transport failures as transient API errors."""
        failing = AsyncMock(side_effect=httpx.ConnectError("down"))
        with (
            patch.object(client._data_client, "get", new=failing),
            pytest.raises(PolymarketAPIError) as exc_info,
        ):
            await client.get_positions(_FUNDER)
        assert exc_info.value.is_transient

    @pytest.mark.asyncio
    async def test_positions_server_error(self, client: PolymarketClient) -> None:
        """Raise with the HTTP status of a failed Data API call."""
        response = MagicMock(status_code=_STATUS_SERVER_ERROR)
        with (
            patch.object(client._data_client, "get", new=AsyncMock(return_value=response)),
            pytest.raises(PolymarketAPIError) as exc_info,
        ):
            await client.get_positions(_FUNDER)
        assert exc_info.value.status_code == _STATUS_SERVER_ERROR

    @pytest.mark.asyncio
    async def test_balance_in_usdc(self, auth_client: PolymarketClient) -> None:
        """Scale raw six-decimal amounts to USDC."""
        raw = {"balance": "12500000", "allowance": "0"}
        with patch.object(_clob_adapter, "get_balance", return_value=raw):
            balance = await auth_client.get_balance()

        assert balance.balance == Decimal("12.5")

    def test_funder_address(self, auth_client: PolymarketClient) -> None:
        """Expose the funder address positions are queried for."""
        assert auth_client.funder_address == _FUNDER


class TestSafeDecimal:
    """Test the numeric parser used for venue payloads."""

    def test_empty_is_zero(self) -> None:
        """Treat missing values as zero."""
        assert _safe_decimal(None) == Decimal(0)
        assert _safe_decimal("  ") == Decimal(0)

    def test_malformed_raises(self) -> None:
        """Reject present but malformed numbers."""
        with pytest.raises(PolymarketAPIError, match="Cannot convert"):
            _safe_decimal("abc")
