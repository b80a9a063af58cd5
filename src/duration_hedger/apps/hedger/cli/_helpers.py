"""Shared helpers for hedger CLI commands.

Centralise the pieces reused across command modules: series parsing,
verbose logging setup, client construction from the environment, and
loading the strategy parameters from the settings file.
"""

import logging
import os

import typer

from duration_hedger.apps.hedger.models import HedgeConfig
from duration_hedger.clients.polymarket.client import PolymarketClient
from duration_hedger.core.config import ConfigError, get_config


def parse_series(series: str) -> tuple[str, ...]:
    """Turn ``"BTC, eth-updown-15m"`` into ``("btc", "eth")``.

    Full series slugs are accepted and cut back to their asset prefix;
    blank entries are ignored.
    """
    entries = (entry.strip().lower() for entry in series.split(","))
    return tuple(entry.removesuffix("-updown-15m") for entry in entries if entry)


def configure_verbose_logging() -> None:
    """Show the engine's INFO lines (orders, fills, state changes) on stderr."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s", datefmt="%H:%M:%S")


def _fail(message: str) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(code=1)


def load_hedge_config() -> HedgeConfig:
    """Read and validate the ``hedger`` settings section, exiting 1 if it is unusable."""
    try:
        return HedgeConfig.from_mapping(get_config().get_section("hedger"))
    except ConfigError as exc:
        raise _fail(f"invalid configuration: {exc}") from exc


def _endpoints() -> dict[str, str]:
    """Collect the CLOB, Gamma and Data API URLs, falling back to the public hosts."""
    try:
        section = get_config().get_section("polymarket")
    except ConfigError as exc:
        raise _fail(f"invalid configuration: {exc}") from exc
    return {
        "host": str(section.get("clob_host") or PolymarketClient.CLOB_HOST),
        "gamma_base_url": str(section.get("gamma_url") or PolymarketClient.GAMMA_URL),
        "data_api_url": str(section.get("data_api_url") or PolymarketClient.DATA_API_URL),
    }


def _env(name: str) -> str | None:
    return os.environ.get(name) or None


def build_public_client() -> PolymarketClient:
    """Build a read-only client for market previews and dry runs."""
    return PolymarketClient(**_endpoints())


def build_authenticated_client() -> PolymarketClient:
    """Build a trading client from the ``POLYMARKET_*`` environment variables.

    Only the private key is required; the API credentials are derived from
    it when any of the three is missing, and the funder defaults to the
    key's address.

    Raises:
        typer.Exit: If ``POLYMARKET_PRIVATE_KEY`` is unset.

    """
    private_key = _env("POLYMARKET_PRIVATE_KEY")
    if private_key is None:
        raise _fail("POLYMARKET_PRIVATE_KEY environment variable is required for live trading.")
    return PolymarketClient(
        **_endpoints(),
        private_key=private_key,
        api_key=_env("POLYMARKET_API_KEY"),
        api_secret=_env("POLYMARKET_API_SECRET"),
        api_passphrase=_env("POLYMARKET_API_PASSPHRASE"),
        funder_address=_env("POLYMARKET_FUNDER_ADDRESS"),
    )
