"""CLI for Travel Settle."""

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal

import pydantic
import typer
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .db import Database, new_id
from .exceptions import TravelSettleError
from .models import Expense, ParticipantShare
from .settle.cli import app as settle_app
from .settle.cli import format_money, parse_amount, parse_currency, setup_logging
from .settle.rounding import (
    currency_precision,
    round_money,
    split_equally,
    tolerance,
)

app = typer.Typer(
    name="travel-settle",
    help="Shared travel expenses across currencies, settled in few transfers",
)
project_app = typer.Typer(help="Manage projects")
member_app = typer.Typer(help="Manage project members")
expense_app = typer.Typer(help="Manage project expenses")

app.add_typer(project_app, name="project")
app.add_typer(member_app, name="member")
app.add_typer(expense_app, name="expense")
app.add_typer(settle_app, name="settle", help="Balances and settlement plans")

console = Console()


@contextmanager
def _database(verbose: bool) -> Iterator[Database]:
    """Open the configured database and report Travel Settle errors."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        db = Database(settings.database_path)
        yield db
    except TravelSettleError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if db is not None:
            db.close()


# ============================================================================
# Projects
# ============================================================================


@project_app.command("create")
def project_create(
    name: str = typer.Argument(..., help="Project name"),
    currency: str | None = typer.Option(
        None, "--currency", "-c", help="Reporting currency (default from settings)"
    ),
    precision: int | None = typer.Option(
        None, "--precision", "-p", min=0, help="Decimal places for balances"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a travel project."""
    with _database(verbose) as db:
        settings = load_settings()
        project = db.create_project(
            name=name,
            currency=parse_currency(currency or settings.default_currency),
            precision=(
                precision if precision is not None else settings.default_precision
            ),
        )
        console.print(
            f"[green]Created project {project.name}[/green] "
            f"(id: [cyan]{project.project_id}[/cyan], currency: {project.currency})"
        )


@project_app.command("rate")
def project_rate(
    project_id: str = typer.Argument(..., help="Project ID"),
    currency: str = typer.Argument(..., help="Foreign currency (e.g. JPY)"),
    rate: str | None = typer.Argument(
        None, help="Units of project currency per 1 unit of CURRENCY"
    ),
    clear: bool = typer.Option(False, "--clear", help="Remove the custom rate"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Set or clear a custom exchange rate for a project."""
    if not clear and rate is None:
        raise typer.BadParameter("Give a RATE or use --clear")

    code = parse_currency(currency)
    with _database(verbose) as db:
        value = None if clear else parse_amount(rate or "")
        if value is not None and value <= 0:
            raise typer.BadParameter("Rate must be positive")
        db.set_custom_rate(project_id, code, value)
        if value is None:
            console.print(f"[green]Cleared custom rate for {code}[/green]")
        else:
            console.print(f"[green]Custom rate set: 1 {code} = {value}[/green]")


# ============================================================================
# Members
# ============================================================================


@member_app.command("add")
def member_add(
    project_id: str = typer.Argument(..., help="Project ID"),
    display_name: str = typer.Argument(..., help="Member display name"),
    user_id: str | None = typer.Option(
        None, "--user-id", help="Linked user account (omit for a placeholder)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add a member to a project."""
    with _database(verbose) as db:
        member = db.add_member(project_id, display_name, user_id=user_id)
        console.print(
            f"[green]Added {member.display_name}[/green] "
            f"(id: [cyan]{member.member_id}[/cyan])"
        )


@member_app.command("list")
def member_list(
    project_id: str = typer.Argument(..., help="Project ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List the members of a project."""
    with _database(verbose) as db:
        table = Table(title="Members", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("User")
        for member in db.get_members(project_id):
            table.add_row(
                member.member_id,
                member.display_name,
                member.user_id or "[dim]placeholder[/dim]",
            )
        console.print(table)


# ============================================================================
# Expenses
# ============================================================================


def _parse_shares(values: list[str]) -> list[ParticipantShare]:
    """Parse MEMBER=AMOUNT share options."""
    shares = []
    for value in values:
        member_id, sep, amount = value.partition("=")
        if not sep or not member_id:
            raise typer.BadParameter(f"Share must look like MEMBER=AMOUNT: {value}")
        try:
            share = ParticipantShare(
                member_id=member_id, share_amount=parse_amount(amount)
            )
        except pydantic.ValidationError as e:
            raise typer.BadParameter(f"Invalid share {value}: {e}") from e
        shares.append(share)
    return shares


@expense_app.command("add")
def expense_add(
    project_id: str = typer.Argument(..., help="Project ID"),
    amount: str = typer.Argument(..., help="Expense amount"),
    payer: str = typer.Option(..., "--payer", help="Member ID of the payer"),
    currency: str | None = typer.Option(
        None, "--currency", "-c", help="Expense currency (default: project currency)"
    ),
    split_with: list[str] | None = typer.Option(
        None, "--with", help="Member ID sharing equally (repeatable)"
    ),
    shares: list[str] | None = typer.Option(
        None, "--share", help="Exact share as MEMBER=AMOUNT (repeatable)"
    ),
    description: str = typer.Option("", "--description", "-d", help="Description"),
    expense_date: datetime | None = typer.Option(
        None, "--date", formats=["%Y-%m-%d"], help="Expense date (default: today)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Log an expense.

    Use --with to split equally (all members when neither --with nor --share
    is given), or --share for exact amounts that must add up to AMOUNT.
    """
    if split_with and shares:
        raise typer.BadParameter("Use either --with or --share, not both")

    with _database(verbose) as db:
        policy = db.get_policy(project_id)
        member_ids = [member.member_id for member in db.get_members(project_id)]
        code = parse_currency(currency or policy.currency)
        decimals = currency_precision(code)
        value = round_money(parse_amount(amount), decimals)
        if value <= 0:
            raise typer.BadParameter("Amount must be positive")

        if shares:
            participants = _parse_shares(shares)
            share_total = sum((p.share_amount for p in participants), Decimal("0"))
            if abs(share_total - value) > tolerance(decimals):
                raise typer.BadParameter(
                    f"Shares add up to {share_total}, expected {value}"
                )
        else:
            participants = split_equally(value, split_with or member_ids, decimals)

        unknown = {payer} | {p.member_id for p in participants}
        unknown -= set(member_ids)
        if unknown:
            raise typer.BadParameter(
                f"Unknown member(s): {', '.join(sorted(unknown))}"
            )

        try:
            expense = Expense(
                expense_id=new_id(),
                amount=value,
                currency=code,
                payer_member_id=payer,
                expense_date=expense_date.date() if expense_date else date.today(),
                description=description,
                participants=participants,
            )
        except pydantic.ValidationError as e:
            raise typer.BadParameter(f"Invalid expense: {e}") from e
        db.add_expense(project_id, expense)
        console.print(
            f"[green]Logged expense[/green] {format_money(value, code, decimals)} "
            f"(id: [cyan]{expense.expense_id}[/cyan])"
        )


@expense_app.command("list")
def expense_list(
    project_id: str = typer.Argument(..., help="Project ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List active expenses of a project."""
    with _database(verbose) as db:
        names = {m.member_id: m.display_name for m in db.get_members(project_id)}
        table = Table(title="Expenses", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Date")
        table.add_column("Description", style="cyan")
        table.add_column("Paid by")
        table.add_column("Amount", justify="right")
        for expense in db.get_expenses(project_id):
            table.add_row(
                expense.expense_id,
                expense.expense_date.isoformat(),
                expense.description,
                names.get(expense.payer_member_id, expense.payer_member_id),
                format_money(
                    expense.amount,
                    expense.currency,
                    currency_precision(expense.currency),
                    use_color=False,
                ),
            )
        console.print(table)


@expense_app.command("delete")
def expense_delete(
    project_id: str = typer.Argument(..., help="Project ID"),
    expense_id: str = typer.Argument(..., help="Expense ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Delete an expense (it stays in the database, hidden from settlements)."""
    with _database(verbose) as db:
        if db.delete_expense(project_id, expense_id):
            console.print(f"[green]Deleted expense {expense_id}[/green]")
        else:
            console.print(f"[yellow]No active expense {expense_id}[/yellow]")


if __name__ == "__main__":
    app()
