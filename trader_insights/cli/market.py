"""Market data CLI commands."""

import time
from typing import List

import typer
from rich.console import Console
from rich.table import Table

from trader_insights.data.market import QuoteProvider, QuoteStream

console = Console()
app = typer.Typer()


@app.command("quote")
def quote(symbols: List[str] = typer.Argument(..., help="Ticker symbols")):
    """Show the last trade for one or more symbols."""
    quotes = QuoteProvider.from_settings().get_last_trades(symbols)
    if not quotes:
        console.print("[yellow]No quotes available.[/yellow] Is POLYGON_API_KEY set?")
        raise typer.Exit(1)

    table = Table(title="Last Trades")
    table.add_column("Symbol", style="cyan")
    table.add_column("Price", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Time")

    for q in quotes.values():
        table.add_row(
            q.symbol,
            f"${q.price:,.2f}",
            f"{q.size:g}" if q.size is not None else "-",
            q.traded_at.strftime("%Y-%m-%d %H:%M:%S") if q.traded_at else "-",
        )

    console.print(table)


@app.command("watch")
def watch(symbols: List[str] = typer.Argument(..., help="Ticker symbols")):
    """Stream trades until Ctrl+C."""
    stream = QuoteStream.from_settings()

    def show(event: dict) -> None:
        console.print(f"[cyan]{event.get('sym')}[/cyan] {event.get('p')} x {event.get('s')}")

    for symbol in symbols:
        stream.subscribe(symbol, show)
    stream.open()
    console.print(f"Watching {', '.join(s.upper() for s in symbols)} (Ctrl+C to stop)")

    try:
        while True:
            time.sleep(1)
            if stream.gave_up:
                console.print(f"[red]{stream.last_error}[/red]")
                raise typer.Exit(1)
    except KeyboardInterrupt:
        pass
    finally:
        stream.close()
