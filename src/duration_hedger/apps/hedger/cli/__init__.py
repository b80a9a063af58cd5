"""CLI subpackage for the duration hedger.

Create the Typer application and register all command modules.
"""

import typer

from duration_hedger.apps.hedger.cli.market_cmd import market
from duration_hedger.apps.hedger.cli.run_cmd import run

app = typer.Typer(help="Duration-bounded hedging of Polymarket Up/Down markets")

app.command()(run)
app.command()(market)

__all__ = ["app"]
