"""CLI command for running the duration hedger.

Rotate through the 15-minute Up/Down series and run the hedging state
machine on each window.  Orders are simulated against live quotes unless
``--confirm-live`` is given, in which case a warning banner and the USDC
balance are shown before real orders are sent.  Ctrl-C cancels working
orders and prints the results.
"""

import asyncio
import dataclasses
import signal
from decimal import Decimal
from typing import Annotated

import typer

from duration_hedger.apps.hedger.cli._helpers import (
    build_authenticated_client,
    build_public_client,
    configure_verbose_logging,
    load_hedge_config,
    parse_series,
)
from duration_hedger.apps.hedger.engine import HedgeEngine, combine_results
from duration_hedger.apps.hedger.models import HedgeConfig, HedgeRunResult
from duration_hedger.apps.hedger.paper_venue import PaperVenue
from duration_hedger.apps.hedger.quote_feed import QuoteFeed
from duration_hedger.apps.hedger.rotator import SeriesRotator
from duration_hedger.apps.hedger.session import ProfitTracker
from duration_hedger.apps.hedger.ws_client import BookFeed, UserFeed
from duration_hedger.clients.polymarket.client import PolymarketClient
from duration_hedger.clients.polymarket.exceptions import PolymarketAPIError


def run(  # noqa: PLR0913
    series: Annotated[
        str, typer.Option(help="Comma-separated assets to rotate through (e.g. btc,eth)")
    ] = "",
    bid_size: Annotated[
        float | None, typer.Option(help="Shares per entry order (overrides settings)")
    ] = None,
    max_imbalance: Annotated[
        float | None, typer.Option(help="Share imbalance that blocks new entries")
    ] = None,
    parallel: Annotated[
        int, typer.Option(min=1, help="Number of markets traded concurrently")
    ] = 1,
    max_ticks: Annotated[
        int | None, typer.Option(help="Stop after N ticks (None = unlimited)")
    ] = None,
    confirm_live: Annotated[  # noqa: FBT002
        bool,
        typer.Option(
            "--confirm-live/--dry-run",
            help="Send real orders (default: simulate fills against live quotes)",
        ),
    ] = False,
    verbose: Annotated[  # noqa: FBT002
        bool, typer.Option("--verbose", "-v", help="Enable tick-by-tick logging")
    ] = False,
) -> None:
    """Run the hedging state machine across the rotating Up/Down series.

    Without ``--confirm-live`` every order is matched against live quotes
    by a paper venue, so the full strategy can be observed risk free.
    """
    if verbose:
        configure_verbose_logging()

    config = _apply_overrides(
        load_hedge_config(),
        series=series,
        bid_size=bid_size,
        max_imbalance=max_imbalance,
    )
    if len(config.series) < parallel:
        typer.echo(
            f"Error: --parallel {parallel} needs at least {parallel} series, "
            f"got {len(config.series)}.",
            err=True,
        )
        raise typer.Exit(code=1)

    client = build_authenticated_client() if confirm_live else build_public_client()
    result = asyncio.run(
        _run(client, config, parallel=parallel, max_ticks=max_ticks, live=confirm_live)
    )
    _display_results(result)


def _apply_overrides(
    config: HedgeConfig,
    *,
    series: str,
    bid_size: float | None,
    max_imbalance: float | None,
) -> HedgeConfig:
    """Return ``config`` with the command-line overrides applied.

    Args:
        config: Parameters loaded from the settings file.
        series: Comma-separated assets, empty to keep the configured ones.
        bid_size: Entry size override.
        max_imbalance: Imbalance limit override.

    Returns:
        The updated, re-validated parameters.

    """
    changes: dict[str, object] = {}
    assets = parse_series(series)
    if assets:
        changes["series"] = assets
    if bid_size is not None:
        changes["bid_size"] = Decimal(str(bid_size))
    if max_imbalance is not None:
        changes["max_imbalance"] = Decimal(str(max_imbalance))
    try:
        return dataclasses.replace(config, **changes)  # pyright: ignore[reportArgumentType]
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _display_banner(config: HedgeConfig, *, parallel: int, live: bool) -> None:
    """Display the mode banner and the key strategy parameters.

    Args:
        config: Strategy parameters in effect.
        parallel: Number of concurrent engines.
        live: Whether real orders are sent.

    """
    typer.echo("")
    typer.echo("=" * 60)
    if live:
        typer.echo("  LIVE TRADING MODE -- real money at risk")
    else:
        typer.echo("  DRY RUN -- orders are simulated against live quotes")
    typer.echo("=" * 60)
    typer.echo("")
    typer.echo(f"Series: {', '.join(config.series)}")
    typer.echo(f"Parallel markets: {parallel}")
    typer.echo(f"Bid size: {config.bid_size} shares")
    typer.echo(f"Max entry price: {config.max_entry_price}")
    typer.echo(
        f"Combined ceilings: target {config.target_combined} / max {config.max_combined}"
    )
    typer.echo(f"Max imbalance: {config.max_imbalance}")
    typer.echo(
        f"No new trades below {config.stop_new_trades_seconds:.0f}s, "
        f"force close below {config.force_close_seconds:.0f}s"
    )


def _display_results(result: HedgeRunResult) -> None:
    """Display the run results summary.

    Args:
        result: Combined results of all engines.

    """
    typer.echo("\n--- Hedger Results ---")
    typer.echo(f"Markets traded: {result.markets_traded}")
    typer.echo(f"Completed pairs: {result.completed_pairs}")
    typer.echo(f"Realized profit: ${result.realized_profit:.4f}")
    typer.echo(f"Realized loss:   ${result.realized_loss:.4f}")
    typer.echo(f"Net:             ${result.net_profit:.4f}")
    typer.echo(f"Ticks: {result.ticks}")


def _build_engine(
    client: PolymarketClient,
    config: HedgeConfig,
    profits: ProfitTracker,
    *,
    live: bool,
) -> HedgeEngine:
    """Wire one engine trading the assets in ``config.series``.

    Args:
        client: Polymarket client for quotes, discovery and (live) orders.
        config: Strategy parameters for this engine.
        profits: Counters shared by all engines.
        live: Send real orders when true, simulate them otherwise.

    Returns:
        The engine, ready to run.

    """
    quotes = QuoteFeed(client, staleness_seconds=config.quote_staleness_seconds)
    rotator = SeriesRotator(client, config)
    if not live:
        paper = PaperVenue(quotes)
        return HedgeEngine(
            paper,
            rotator,
            quotes,
            config,
            positions=paper,
            book_feed=BookFeed(),
            profits=profits,
        )
    credentials = client.api_credentials()
    return HedgeEngine(
        client,
        rotator,
        quotes,
        config,
        positions=client,
        account=client.funder_address,
        book_feed=BookFeed(),
        user_feed=UserFeed(credentials) if credentials is not None else None,
        profits=profits,
    )


async def _run(
    client: PolymarketClient,
    config: HedgeConfig,
    *,
    parallel: int,
    max_ticks: int | None,
    live: bool,
) -> HedgeRunResult:
    """Run ``parallel`` engines over disjoint slices of the series.

    Args:
        client: Polymarket client shared by all engines.
        config: Strategy parameters.
        parallel: Number of concurrent engines.
        max_ticks: Per-engine tick limit.
        live: Send real orders when true.

    Returns:
        The combined results.

    """
    _display_banner(config, parallel=parallel, live=live)
    profits = ProfitTracker()
    try:
        async with client:
            if live:
                bal = await client.get_balance("COLLATERAL")
                typer.echo(f"USDC Balance: {bal.balance}")
            typer.echo("")

            engines = [
                _build_engine(
                    client,
                    dataclasses.replace(config, series=config.series[i::parallel]),
                    profits,
                    live=live,
                )
                for i in range(parallel)
            ]

            loop = asyncio.get_running_loop()

            def _handle_sigint() -> None:
                typer.echo("\nStopping, cancelling working orders...")
                for engine in engines:
                    engine.stop()

            loop.add_signal_handler(signal.SIGINT, _handle_sigint)
            try:
                results = await asyncio.gather(
                    *(engine.run(max_ticks=max_ticks) for engine in engines)
                )
            finally:
                loop.remove_signal_handler(signal.SIGINT)
    except PolymarketAPIError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    return combine_results(list(results))
