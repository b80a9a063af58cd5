r"""Async HTTP client for the Polymarket Gamma API.

Only event lookup is used: each 15-minute Up/Down window is one Gamma
event, addressed by a slug such as ``btc-updown-15m-1771758000``, holding
a single binary market.

Note:
    Gamma encodes ``outcomes`` and ``clobTokenIds`` as JSON strings
    (``"[\"Up\",\"Down\"]"``); decoding is left to the caller.

"""

from typing import Any, cast

import httpx

from duration_hedger.clients.polymarket._constants import HTTP_BAD_REQUEST
from duration_hedger.clients.polymarket.exceptions import PolymarketAPIError


class GammaClient:
    """Read-only access to Gamma events.

    Args:
        base_url: Gamma API root; a trailing slash is ignored.
        timeout: Per-request timeout in seconds.

    """

    BASE_URL = "https://gamma-api.polymarket.com"

    def __init__(self, base_url: str = BASE_URL, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._http_client = httpx.AsyncClient(timeout=timeout)

    async def get_events(
        self, *, slug: str = "", active: bool = True, limit: int = 20
    ) -> list[dict[str, Any]]:
        """List events, narrowed to one slug when given.

        Args:
            slug: Exact event slug to match.
            active: Restrict to events still trading.
            limit: Maximum number of events returned.

        Returns:
            Raw event objects; empty when Gamma answers with anything but a
            list.

        Raises:
            PolymarketAPIError: On an error status or a failed request.

        """
        params: dict[str, str | int | bool] = {"limit": limit, "active": active}
        if slug:
            params["slug"] = slug
        payload = await self._get_json("/events", params)
        if not isinstance(payload, list):
            return []
        return cast("list[dict[str, Any]]", payload)

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        """GET ``path`` and decode the body.

        A transport failure is reported with status code ``0`` so callers
        treat it as transient.
        """
        try:
            response = await self._http_client.request(
                "GET", f"{self.base_url}{path}", params=params
            )
        except httpx.HTTPError as exc:
            raise PolymarketAPIError(msg=f"HTTP request failed: {exc}", status_code=0) from exc
        if response.status_code >= HTTP_BAD_REQUEST:
            raise PolymarketAPIError(
                msg=_error_message(response), status_code=response.status_code
            )
        return response.json()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._http_client.aclose()

    async def __aenter__(self) -> "GammaClient":
        """Enter async context manager."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        await self.close()


def _error_message(response: httpx.Response) -> str:
    """Pull Gamma's ``message`` field out of an error body, if it has one."""
    fallback = f"HTTP {response.status_code}"
    try:
        body: Any = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        return str(cast("dict[str, Any]", body).get("message", fallback))
    return fallback
