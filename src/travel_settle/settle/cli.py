"""CLI commands for computing project settlements."""

import logging
import sys
from decimal import Decimal, InvalidOperation

import typer
from rich.console import Console
from rich.table import Table

from ..config import load_settings
from ..db import Database
from ..exceptions import TravelSettleError
from ..models import SettlementResult, normalize_currency_code
from .planner import apply_settlements
from .rounding import is_effectively_zero
from .service import SettlementService

app = typer.Typer(
    name="settle",
    help="Compute balances and settlement plans",
)

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Downgrade httpx logging to DEBUG (network requests are too noisy at INFO)
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def parse_amount(value: str) -> Decimal:
    """Parse a CLI amount argument into a Decimal."""
    try:
        amount = Decimal(value)
    except InvalidOperation as e:
        raise typer.BadParameter(f"Invalid amount: {value}") from e
    if not amount.is_finite():
        raise typer.BadParameter(f"Invalid amount: {value}")
    return amount


def parse_currency(value: str) -> str:
    """Parse a CLI currency argument into a normalized ISO code."""
    try:
        return normalize_currency_code(value)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


def format_money(
    amount: Decimal, currency: str, precision: int, use_color: bool = True
) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: (TWD 85.02)
    Positive amounts have spaces:      TWD 85.02
    """
    formatted = f"{currency} {abs(amount):,.{precision}f}"
    if amount < 0:
        return f"([red]{formatted}[/red])" if use_color else f"({formatted})"
    return f" [green]{formatted}[/green] " if use_color else f" {formatted} "


def display_result(result: SettlementResult):
    """Display balances, settlements and summary as tables."""
    summary = result.summary
    currency, precision = summary.currency, summary.precision

    table = Table(title="Balances", show_header=True, header_style="bold magenta")
    table.add_column("Member", style="cyan")
    table.add_column("Paid", justify="right")
    table.add_column("Share", justify="right")
    table.add_column("Balance", justify="right")

    for record in result.balances:
        name = record.member.display_name
        if record.member.is_placeholder:
            name = f"{name} [dim](placeholder)[/dim]"
        table.add_row(
            name,
            format_money(record.total_paid, currency, precision, use_color=False),
            format_money(record.total_share, currency, precision, use_color=False),
            format_money(record.balance, currency, precision),
        )

    console.print()
    console.print(table)

    if result.settlements:
        plan = Table(title="Settlements", show_header=True, header_style="bold magenta")
        plan.add_column("From", style="cyan")
        plan.add_column("", justify="center")
        plan.add_column("To", style="cyan")
        plan.add_column("Amount", justify="right")
        for settlement in result.settlements:
            plan.add_row(
                settlement.from_member.display_name,
                "→",
                settlement.to_member.display_name,
                format_money(settlement.amount, currency, precision),
            )
        console.print()
        console.print(plan)
    else:
        console.print("\n[green]Everyone is settled up.[/green]")

    console.print()
    console.print("[bold]Summary:[/bold]")
    console.print(f"  Expenses: {summary.total_expenses}")
    console.print(
        f"  Total: {format_money(summary.total_amount, currency, precision)}"
    )
    if summary.custom_currencies:
        console.print(f"  Custom rates: {', '.join(summary.custom_currencies)}")
    if summary.live_currencies:
        console.print(f"  Live rates: {', '.join(summary.live_currencies)}")

    if summary.using_fallback_rates:
        console.print(
            "\n[yellow]⚠️  Live exchange rates were unavailable; some amounts use "
            "fallback rates and may be stale.[/yellow]"
        )
    if not summary.is_balanced:
        console.print(
            "\n[bold red]⚠️  Ledger does not balance; check expense shares "
            "and members.[/bold red]"
        )


@app.command()
def show(
    project_id: str = typer.Argument(..., help="Project ID"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw JSON result"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Show balances and the settlement plan for a project.

    Expenses in other currencies are converted into the project currency
    using custom rates first, then live rates.
    """
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = SettlementService(settings, db)

        result = service.compute_settlement(project_id)

        if as_json:
            console.print_json(result.model_dump_json(by_alias=True))
            return

        display_result(result)

        # Sanity check: the plan must clear every balance
        remaining = apply_settlements(result.balances, result.settlements)
        if not all(
            is_effectively_zero(amount, result.summary.precision)
            for amount in remaining.values()
        ):
            console.print("[yellow]Settlement plan leaves residual balances.[/yellow]")

    except TravelSettleError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if "service" in locals():
            service.close()
        if "db" in locals():
            db.close()


@app.command()
def convert(
    amount: str = typer.Argument(..., help="Amount to convert"),
    from_currency: str = typer.Argument(..., help="Source currency (e.g. JPY)"),
    to_currency: str = typer.Argument(..., help="Target currency (e.g. TWD)"),
    precision: int | None = typer.Option(
        None, "--precision", "-p", min=0, help="Decimal places of the result"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Convert an amount between currencies using live rates."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = SettlementService(settings, db)

        value = parse_amount(amount)
        source, target = parse_currency(from_currency), parse_currency(to_currency)
        converted, quote = service.convert(value, source, target, precision=precision)

        console.print(
            f"{value} {quote.currency} = [bold]{converted}[/bold] "
            f"{target} (rate {quote.rate:.6f})"
        )
        if quote.is_fallback:
            console.print(
                "[yellow]⚠️  Live rates unavailable; fallback rate used.[/yellow]"
            )

    except TravelSettleError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if "service" in locals():
            service.close()
        if "db" in locals():
            db.close()
