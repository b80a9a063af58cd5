"""Thin synchronous layer over ``py-clob-client``.

Nothing else in the package imports ``py_clob_client``; the untyped
imports are silenced here once.  Every call goes through
``_safe_clob_call`` so that the facade only ever sees
``PolymarketAPIError``, and results are handed back as plain dicts and
lists for the facade to parse.  The facade runs these functions in a
worker thread.
"""

import logging
from typing import Any, cast

from eth_account import Account  # type: ignore[import-untyped]
from py_clob_client.client import ClobClient  # type: ignore[import-untyped]
from py_clob_client.clob_types import (  # type: ignore[import-untyped]
    ApiCreds,
    AssetType,
    BalanceAllowanceParams,
    OpenOrderParams,
    OrderArgs,
    OrderType,
    PartialCreateOrderOptions,
    TradeParams,
)
from py_clob_client.exceptions import PolyApiException  # type: ignore[import-untyped]

from duration_hedger.clients.polymarket._constants import (
    HTTP_INTERNAL_ERROR,
    HTTP_NOT_FOUND,
)
from duration_hedger.clients.polymarket.exceptions import PolymarketAPIError

_POLYGON_CHAIN_ID = 137
_POLYGON_PROXY_WALLET = 1

_logger = logging.getLogger(__name__)


def _safe_clob_call(
    action: str,
    fn: Any,
    *args: Any,
    allow_404: bool = False,
    **kwargs: Any,
) -> Any:
    """Run one CLOB call, translating its failures into ``PolymarketAPIError``.

    Args:
        action: What was being attempted, used in the error message.
        fn: The ``ClobClient`` method (or closure) to call.
        *args: Positional arguments for ``fn``.
        allow_404: Return ``None`` instead of raising when the venue answers 404.
        **kwargs: Keyword arguments for ``fn``.

    Returns:
        Whatever ``fn`` returned.

    Raises:
        PolymarketAPIError: Carrying the venue's status code when it sent
            one, otherwise 500.

    """
    try:
        return fn(*args, **kwargs)
    except PolyApiException as exc:
        status_code = getattr(exc, "status_code", None)
        if allow_404 and status_code == HTTP_NOT_FOUND:
            _logger.debug("CLOB 404 while trying to %s", action)
            return None
        code = status_code if isinstance(status_code, int) else HTTP_INTERNAL_ERROR
        raise PolymarketAPIError(msg=f"Failed to {action}: {exc}", status_code=code) from exc
    except Exception as exc:
        raise PolymarketAPIError(
            msg=f"Failed to {action}: {exc}", status_code=HTTP_INTERNAL_ERROR
        ) from exc


def _as_dict(result: Any) -> dict[str, Any]:
    return cast("dict[str, Any]", result) if isinstance(result, dict) else {}


def _as_list(result: Any) -> list[dict[str, Any]]:
    return cast("list[dict[str, Any]]", result) if isinstance(result, list) else []


def create_clob_client(host: str) -> ClobClient:  # type: ignore[no-any-unimported]
    """Return an unauthenticated client for public endpoints."""
    return ClobClient(host)  # type: ignore[no-any-return]


def derive_funder_address(private_key: str) -> str:
    """Return the wallet address that signs with ``private_key``."""
    return Account.from_key(private_key).address  # type: ignore[no-any-return]


def create_authenticated_clob_client(
    host: str,
    private_key: str,
    chain_id: int = _POLYGON_CHAIN_ID,
    creds: tuple[str, str, str] | None = None,
    funder: str | None = None,
) -> ClobClient:  # type: ignore[no-any-unimported]
    """Build a Level 2 client able to place and cancel orders.

    API credentials are installed from ``creds`` when given; otherwise
    they are derived from the key, which creates them on first use.

    Args:
        host: CLOB base URL.
        private_key: Hex wallet key with ``0x`` prefix.
        chain_id: Polygon chain id.
        creds: ``(api_key, api_secret, api_passphrase)``.
        funder: Proxy wallet holding the collateral.  Defaults to the
            key's own address.

    Returns:
        The authenticated client.

    Raises:
        PolymarketAPIError: If credential derivation fails.

    """
    client = ClobClient(
        host,
        chain_id=chain_id,
        key=private_key,
        signature_type=_POLYGON_PROXY_WALLET,
        funder=funder or derive_funder_address(private_key),
    )
    if creds is None:
        api_creds = _safe_clob_call("derive API credentials", client.create_or_derive_api_creds)
    else:
        key, secret, passphrase = creds
        api_creds = ApiCreds(api_key=key, api_secret=secret, api_passphrase=passphrase)
    client.set_api_creds(api_creds)
    return client  # type: ignore[no-any-return]


def get_api_creds(client: Any) -> tuple[str, str, str] | None:
    """Read back the credentials installed on ``client``.

    The user websocket channel signs its subscription with them.  Returns
    ``None`` for a read-only client.
    """
    creds = getattr(client, "creds", None)
    if creds is None:
        return None
    return (str(creds.api_key), str(creds.api_secret), str(creds.api_passphrase))


def fetch_order_book(client: Any, token_id: str) -> dict[str, Any] | None:
    """Return ``{"bids": [...], "asks": [...]}`` for a token.

    ``None`` means the CLOB keeps no book for the token (404).

    Raises:
        PolymarketAPIError: For any other failure.

    """
    raw = _safe_clob_call(
        f"fetch order book for {token_id}", client.get_order_book, token_id, allow_404=True
    )
    if raw is None:
        return None
    if isinstance(raw, dict):
        return cast("dict[str, Any]", raw)
    # OrderBookSummary objects expose levels as attributes.
    return {
        side: [
            {"price": str(level.price), "size": str(level.size)}
            for level in (getattr(raw, side, None) or [])
        ]
        for side in ("bids", "asks")
    }


def _post_order(  # noqa: PLR0913
    client: Any,
    token_id: str,
    side: str,
    price: float,
    size: float,
    *,
    tick_size: str,
    neg_risk: bool,
    order_type: Any,
) -> dict[str, Any]:
    """Sign a priced order and submit it with ``order_type`` as time-in-force."""
    signed = client.create_order(
        order_args=OrderArgs(token_id=token_id, price=price, size=size, side=side),
        options=PartialCreateOrderOptions(tick_size=tick_size, neg_risk=neg_risk),
    )
    return client.post_order(signed, orderType=order_type)  # type: ignore[no-any-return]


def place_limit_order(  # noqa: PLR0913
    client: Any,
    token_id: str,
    side: str,
    price: float,
    size: float,
    *,
    tick_size: str = "0.01",
    neg_risk: bool = False,
) -> dict[str, Any]:
    """Post a good-till-cancelled order that rests at ``price``.

    Args:
        client: Level 2 client.
        token_id: Outcome token.
        side: ``"BUY"`` or ``"SELL"``.
        price: Limit price in ``(0, 1)``.
        size: Shares.
        tick_size: Market tick size, e.g. ``"0.01"``.
        neg_risk: Route through the neg-risk exchange.

    Returns:
        The venue's placement response (``orderID``, ``status``, ...).

    Raises:
        PolymarketAPIError: If signing or submission fails.

    """
    return _safe_clob_call(
        "place limit order",
        _post_order,
        client,
        token_id,
        side,
        price,
        size,
        tick_size=tick_size,
        neg_risk=neg_risk,
        order_type=OrderType.GTC,
    )


def place_fak_order(  # noqa: PLR0913
    client: Any,
    token_id: str,
    side: str,
    price: float,
    size: float,
    *,
    tick_size: str = "0.01",
    neg_risk: bool = False,
) -> dict[str, Any]:
    """Post a fill-and-kill order: match at ``price`` or better, drop the rest.

    Takes the same arguments as ``place_limit_order``.  The response carries
    ``makingAmount``/``takingAmount`` for whatever matched.

    Raises:
        PolymarketAPIError: If signing or submission fails.

    """
    return _safe_clob_call(
        "place fill-and-kill order",
        _post_order,
        client,
        token_id,
        side,
        price,
        size,
        tick_size=tick_size,
        neg_risk=neg_risk,
        order_type=OrderType.FAK,
    )


def cancel_order(client: Any, order_id: str) -> dict[str, Any]:
    """Cancel one order; the response lists ``canceled`` and ``not_canceled`` ids."""
    return _as_dict(_safe_clob_call(f"cancel order {order_id}", client.cancel, order_id))


def get_order(client: Any, order_id: str) -> dict[str, Any] | None:
    """Return one order with its ``size_matched``, or ``None`` if unknown."""
    result = _safe_clob_call(f"fetch order {order_id}", client.get_order, order_id, allow_404=True)
    return _as_dict(result) or None


def get_open_orders(client: Any, asset_id: str | None = None) -> list[dict[str, Any]]:
    """List the user's open orders, optionally for one token only."""
    params = OpenOrderParams(asset_id=asset_id) if asset_id else OpenOrderParams()
    return _as_list(_safe_clob_call("fetch open orders", client.get_orders, params=params))


def get_trades(client: Any, asset_id: str, after: int) -> list[dict[str, Any]]:
    """List the user's trades on ``asset_id`` newer than ``after`` (epoch seconds)."""
    params = TradeParams(asset_id=asset_id, after=after)
    return _as_list(
        _safe_clob_call(f"fetch trades for {asset_id}", client.get_trades, params=params)
    )


def get_balance(client: Any, asset_type: str = "COLLATERAL") -> dict[str, Any]:
    """Return ``balance`` and ``allowance`` for USDC or conditional tokens.

    Args:
        client: Level 2 client.
        asset_type: ``"COLLATERAL"`` or ``"CONDITIONAL"``.

    Raises:
        PolymarketAPIError: If the query fails.

    """
    resolved = AssetType.COLLATERAL if asset_type == "COLLATERAL" else AssetType.CONDITIONAL
    params = BalanceAllowanceParams(asset_type=resolved)  # type: ignore[reportArgumentType]
    return _safe_clob_call("fetch balance", client.get_balance_allowance, params=params)
