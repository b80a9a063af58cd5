"""CLI command for previewing the market the hedger would trade now.

Resolve the current 15-minute window across the configured series and
show both legs with their best bid and ask.
"""

import asyncio
import dataclasses
import time
from typing import Annotated

import typer

from duration_hedger.apps.hedger.cli._helpers import (
    build_public_client,
    load_hedge_config,
    parse_series,
)
from duration_hedger.apps.hedger.models import HedgeConfig, Leg
from duration_hedger.apps.hedger.quote_feed import QuoteFeed
from duration_hedger.apps.hedger.rotator import SeriesRotator
from duration_hedger.clients.polymarket.exceptions import PolymarketAPIError


def market(
    series: Annotated[
        str, typer.Option(help="Comma-separated assets to search (e.g. btc,eth)")
    ] = "",
) -> None:
    """Show the market the rotator would trade now with both legs' quotes."""
    config = load_hedge_config()
    assets = parse_series(series)
    if assets:
        config = dataclasses.replace(config, series=assets)
    asyncio.run(_market(config))


async def _market(config: HedgeConfig) -> None:
    """Look up and display the current market.

    Args:
        config: Strategy parameters supplying the series and window length.

    """
    now = time.time()
    try:
        async with build_public_client() as client:
            rotator = SeriesRotator(client, config)
            hedge_market = await rotator.current_market(now)
            if hedge_market is None:
                typer.echo("No tradable market in the current window.")
                return
            quotes = QuoteFeed(client)
            typer.echo(f"\n{hedge_market.question}")
            typer.echo(f"Slug: {hedge_market.slug}")
            typer.echo(f"Condition: {hedge_market.condition_id}")
            typer.echo(f"Expires in: {hedge_market.seconds_to_expiry(now):.0f}s")
            typer.echo(f"Tick size: {hedge_market.tick_size}")
            typer.echo("")
            typer.echo(f"{'Leg':<5} {'Bid':>8} {'Ask':>8}  Token")
            typer.echo("-" * 60)
            for leg in Leg:
                token_id = hedge_market.token_for(leg)
                quote = await quotes.refresh(token_id)
                typer.echo(
                    f"{leg.value:<5} {quote.best_bid:>8.4f} {quote.best_ask:>8.4f}  "
                    f"{token_id[:20]}..."
                )
    except PolymarketAPIError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
