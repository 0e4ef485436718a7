"""CLI for split-ledger using Typer."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal

import typer
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .db import Database
from .exceptions import SplitLedgerError
from .models import BudgetPeriod, BudgetSnapshot, Category, Transaction
from .service import LedgerService
from .ui import confirm, select_category_interactive

app = typer.Typer(
    name="split-ledger",
    help="Track shared expenses, balances, settlements and budgets",
)
group_app = typer.Typer(help="Create and inspect groups")
tx_app = typer.Typer(help="Record and manage transactions")
budget_app = typer.Typer(help="Manage category budgets")

app.add_typer(group_app, name="group")
app.add_typer(tx_app, name="tx")
app.add_typer(budget_app, name="budget")

console = Console()

MEMBER_OPTION = typer.Option(
    ..., "--member", "-m", envvar="SPLIT_LEDGER_MEMBER", help="Acting member id"
)
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Verbose output")


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@contextmanager
def open_service(verbose: bool) -> Iterator[LedgerService]:
    """Load settings, open the database and yield a service.

    Domain errors are printed and turn into exit code 1; --verbose re-raises.
    """
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        db = Database(settings.database_path, timeout=settings.busy_timeout)
        yield LedgerService(settings, db)
    except SplitLedgerError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if db is not None:
            db.close()


def format_money(amount: Decimal, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: ($85.02)
    Positive amounts have spaces:      $85.02
    The spaces ensure decimal points align in tables.
    """
    abs_amount = abs(amount)
    if amount < 0:
        if use_color:
            formatted = f"($[red]{abs_amount:,.2f}[/red])"
        else:
            formatted = f"(${abs_amount:,.2f})"
    else:
        if use_color:
            formatted = f" [green]${abs_amount:,.2f}[/green] "
        else:
            formatted = f" ${abs_amount:,.2f} "
    return formatted


# ============================================================================
# Display helpers
# ============================================================================


def display_balances(service: LedgerService, group_id: int):
    """Display member balances of a group."""
    table = Table(title="Balances", show_header=True, header_style="bold magenta")
    table.add_column("Member", style="cyan")
    table.add_column("Balance", justify="right")
    table.add_column("Status", style="dim")

    for balance in service.get_balances(group_id):
        if balance.balance > 0:
            status = "is owed"
        elif balance.balance < 0:
            status = "owes"
        else:
            status = "settled up"
        table.add_row(balance.member_id, format_money(balance.balance), status)

    console.print(table)


def display_transactions(transactions: list[Transaction]):
    """Display transactions, newest first."""
    table = Table(title="Transactions", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", width=6)
    table.add_column("Date", width=10)
    table.add_column("Description", style="cyan", width=32)
    table.add_column("Paid By")
    table.add_column("Amount", justify="right", width=12)
    table.add_column("Category", style="yellow")
    table.add_column("Split", style="dim")
    table.add_column("Settled", justify="center")

    for tx in transactions:
        if tx.is_settlement:
            split = "settlement"
        elif tx.owed_to_purchaser:
            split = "owed to payer"
        else:
            split = "even"
        table.add_row(
            str(tx.id),
            tx.date.strftime("%Y-%m-%d"),
            tx.description,
            tx.paid_by,
            format_money(tx.amount),
            tx.category.value,
            split,
            "✓" if tx.has_been_settled else "",
        )

    console.print(table)


def display_budgets(snapshots: list[BudgetSnapshot]):
    """Display budgets with their spending."""
    table = Table(title="Budgets", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", width=6)
    table.add_column("Category", style="yellow")
    table.add_column("Period")
    table.add_column("Window", style="dim")
    table.add_column("Budget", justify="right")
    table.add_column("Spent", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Used", justify="right")

    for snapshot in snapshots:
        budget = snapshot.budget
        if snapshot.is_over_budget:
            used = f"[bold red]{snapshot.percentage_used}%[/bold red]"
        elif snapshot.should_alert:
            used = f"[yellow]{snapshot.percentage_used}%[/yellow]"
        else:
            used = f"{snapshot.percentage_used}%"
        period = budget.period.value + ("" if budget.is_repeating else " (once)")
        table.add_row(
            str(budget.id),
            budget.category.value,
            period,
            f"{budget.current_period_start.date()} - {budget.current_period_end.date()}",
            format_money(budget.amount),
            format_money(snapshot.spending),
            format_money(snapshot.remaining),
            used,
        )

    console.print(table)


# ============================================================================
# Groups
# ============================================================================


@group_app.command("create")
def group_create(
    name: str = typer.Argument(..., help="Unique group name"),
    member: str = MEMBER_OPTION,
    description: str = typer.Option("", "--description", "-d"),
    verbose: bool = VERBOSE_OPTION,
):
    """Create a group with yourself as the first member."""
    with open_service(verbose) as service:
        group = service.create_group(name, member, description)
        console.print(f"[bold green]✓ Created group {group.id} ({group.name})[/bold green]")


@group_app.command("join")
def group_join(
    group_id: int = typer.Argument(...),
    member: str = MEMBER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Join an existing group."""
    with open_service(verbose) as service:
        group = service.add_member(group_id, member)
        console.print(
            f"[bold green]✓ {member} joined {group.name} "
            f"({len(group.member_ids)} members)[/bold green]"
        )


@group_app.command("show")
def group_show(
    group_id: int = typer.Argument(...),
    verbose: bool = VERBOSE_OPTION,
):
    """Show a group's members and balances."""
    with open_service(verbose) as service:
        group = service.get_group(group_id)
        console.print(f"\n[bold]{group.name}[/bold] (id {group.id})")
        if group.description:
            console.print(f"  {group.description}")
        console.print(f"  Members: {', '.join(group.member_ids)}")
        if group.settled_at:
            console.print(f"  Last settled: {group.settled_at:%Y-%m-%d %H:%M}")
        console.print()
        display_balances(service, group_id)


# ============================================================================
# Transactions
# ============================================================================


@tx_app.command("add")
def tx_add(
    group_id: int = typer.Argument(...),
    amount: str = typer.Argument(..., help="Amount paid, e.g. 42.50"),
    member: str = MEMBER_OPTION,
    category: Category | None = typer.Option(
        None, "--category", "-c", case_sensitive=False, help="Expense category"
    ),
    owed_to_me: bool = typer.Option(
        False, "--owed-to-me", help="The whole amount is owed back to you"
    ),
    description: str = typer.Option("", "--description", "-d"),
    notes: str | None = typer.Option(None, "--notes"),
    date: datetime | None = typer.Option(
        None, "--date", formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]
    ),
    verbose: bool = VERBOSE_OPTION,
):
    """Record an expense you paid."""
    with open_service(verbose) as service:
        if category is None and sys.stdin.isatty():
            category = select_category_interactive(
                service.get_categories(), description
            )
        tx = service.record_transaction(
            group_id=group_id,
            payer_id=member,
            amount=amount,
            category=category or Category.MISCELLANEOUS,
            owed_to_purchaser=owed_to_me,
            description=description,
            notes=notes,
            date=date,
        )
        console.print(
            f"[bold green]✓ Recorded transaction {tx.id}: "
            f"{format_money(tx.amount, use_color=False).strip()} "
            f"({tx.category.value})[/bold green]"
        )
        display_balances(service, group_id)


@tx_app.command("edit")
def tx_edit(
    transaction_id: int = typer.Argument(...),
    member: str = MEMBER_OPTION,
    amount: str | None = typer.Option(None, "--amount", "-a"),
    category: Category | None = typer.Option(
        None, "--category", "-c", case_sensitive=False
    ),
    description: str | None = typer.Option(None, "--description", "-d"),
    notes: str | None = typer.Option(None, "--notes"),
    verbose: bool = VERBOSE_OPTION,
):
    """Edit one of your unsettled transactions."""
    with open_service(verbose) as service:
        tx = service.update_transaction(
            transaction_id,
            member,
            amount=amount,
            description=description,
            notes=notes,
            category=category,
        )
        console.print(f"[bold green]✓ Updated transaction {tx.id}[/bold green]")


@tx_app.command("delete")
def tx_delete(
    transaction_id: int = typer.Argument(...),
    member: str = MEMBER_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    verbose: bool = VERBOSE_OPTION,
):
    """Delete one of your unsettled transactions."""
    with open_service(verbose) as service:
        tx = service.get_transaction(transaction_id)
        if not yes and not confirm(
            f"Delete {tx.description or 'transaction'} "
            f"({format_money(tx.amount, use_color=False).strip()})?"
        ):
            console.print("[yellow]Nothing deleted.[/yellow]")
            return
        service.delete_transaction(transaction_id, member)
        console.print(f"[bold green]✓ Deleted transaction {transaction_id}[/bold green]")


@tx_app.command("list")
def tx_list(
    group_id: int = typer.Argument(...),
    verbose: bool = VERBOSE_OPTION,
):
    """List a group's transactions."""
    with open_service(verbose) as service:
        transactions = service.list_transactions(group_id)
        if not transactions:
            console.print("[yellow]No transactions found.[/yellow]")
            return
        display_transactions(transactions)


@tx_app.command("total")
def tx_total(
    group_id: int = typer.Argument(...),
    verbose: bool = VERBOSE_OPTION,
):
    """Show spending since the last settlement."""
    with open_service(verbose) as service:
        total = service.get_unsettled_total(group_id)
        console.print(
            f"Since last settlement: {format_money(total.total)} "
            f"across {total.transaction_count} transactions"
        )


# ============================================================================
# Balances and settlement
# ============================================================================


@app.command()
def balances(
    group_id: int = typer.Argument(...),
    verbose: bool = VERBOSE_OPTION,
):
    """Show member balances of a group."""
    with open_service(verbose) as service:
        display_balances(service, group_id)


@app.command()
def recalc(
    group_id: int = typer.Argument(...),
    verbose: bool = VERBOSE_OPTION,
):
    """Rebuild a group's balances from its transaction history."""
    with open_service(verbose) as service:
        service.recalculate_balances(group_id)
        console.print("[bold green]✓ Balances recalculated[/bold green]")
        display_balances(service, group_id)


@app.command()
def settle(
    group_id: int = typer.Argument(...),
    member: str = MEMBER_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    verbose: bool = VERBOSE_OPTION,
):
    """Settle up a two-member group."""
    with open_service(verbose) as service:
        display_balances(service, group_id)
        if not yes and not confirm("Settle these balances?"):
            console.print("[yellow]Nothing settled.[/yellow]")
            return

        result = service.settle(group_id, requester_id=member)
        if result.status == "already_settled":
            console.print("[yellow]All balances are already settled.[/yellow]")
            return

        console.print(
            f"\n[bold green]✓ Settled: {result.payer_id} pays {result.recipient_id} "
            f"{format_money(result.amount, use_color=False).strip()}[/bold green]"
        )
        console.print(
            f"[dim]{len(result.settled_transaction_ids)} transactions marked "
            f"settled[/dim]"
        )


@app.command()
def categories(verbose: bool = VERBOSE_OPTION):
    """List expense categories."""
    with open_service(verbose) as service:
        for category in service.get_categories():
            console.print(f"  {category.value}")


# ============================================================================
# Budgets
# ============================================================================


@budget_app.command("create")
def budget_create(
    group_id: int = typer.Argument(...),
    category: Category = typer.Argument(..., case_sensitive=False),
    amount: str = typer.Argument(...),
    member: str = MEMBER_OPTION,
    period: BudgetPeriod = typer.Option(BudgetPeriod.MONTHLY, "--period", "-p"),
    repeat: bool = typer.Option(True, "--repeat/--no-repeat"),
    alert_at: int | None = typer.Option(
        None, "--alert-at", min=0, max=100, help="Alert threshold in percent"
    ),
    verbose: bool = VERBOSE_OPTION,
):
    """Create a budget for a category."""
    with open_service(verbose) as service:
        budget = service.create_budget(
            group_id,
            member,
            category,
            amount,
            period=period,
            is_repeating=repeat,
            alert_at=alert_at,
        )
        console.print(
            f"[bold green]✓ Created {budget.period.value} budget {budget.id} for "
            f"{budget.category.value}: "
            f"{format_money(budget.amount, use_color=False).strip()}[/bold green]"
        )


@budget_app.command("list")
def budget_list(
    group_id: int = typer.Argument(...),
    verbose: bool = VERBOSE_OPTION,
):
    """List a group's active budgets."""
    with open_service(verbose) as service:
        snapshots = service.list_budgets(group_id)
        if not snapshots:
            console.print("[yellow]No active budgets.[/yellow]")
            return
        display_budgets(snapshots)


@budget_app.command("show")
def budget_show(
    group_id: int = typer.Argument(...),
    category: Category = typer.Argument(..., case_sensitive=False),
    verbose: bool = VERBOSE_OPTION,
):
    """Show the active budget of a category."""
    with open_service(verbose) as service:
        snapshot = service.get_budget_snapshot(group_id, category)
        display_budgets([snapshot])
        if snapshot.is_over_budget:
            console.print("[bold red]Over budget![/bold red]")
        elif snapshot.should_alert:
            console.print(
                f"[yellow]Alert threshold of {snapshot.budget.alert_at}% reached[/yellow]"
            )


@budget_app.command("update")
def budget_update(
    budget_id: int = typer.Argument(...),
    member: str = MEMBER_OPTION,
    amount: str | None = typer.Option(None, "--amount", "-a"),
    period: BudgetPeriod | None = typer.Option(None, "--period", "-p"),
    alert_at: int | None = typer.Option(None, "--alert-at", min=0, max=100),
    repeat: bool | None = typer.Option(None, "--repeat/--no-repeat"),
    active: bool | None = typer.Option(None, "--active/--inactive"),
    verbose: bool = VERBOSE_OPTION,
):
    """Change a budget's amount, period, threshold or status."""
    with open_service(verbose) as service:
        budget = service.update_budget(
            budget_id,
            member,
            amount=amount,
            period=period,
            alert_at=alert_at,
            is_active=active,
            is_repeating=repeat,
        )
        console.print(f"[bold green]✓ Updated budget {budget.id}[/bold green]")


@budget_app.command("delete")
def budget_delete(
    budget_id: int = typer.Argument(...),
    member: str = MEMBER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Delete a budget."""
    with open_service(verbose) as service:
        service.delete_budget(budget_id, member)
        console.print(f"[bold green]✓ Deleted budget {budget_id}[/bold green]")


@budget_app.command("overview")
def budget_overview(
    group_id: int = typer.Argument(...),
    verbose: bool = VERBOSE_OPTION,
):
    """Show totals across a group's budgets."""
    with open_service(verbose) as service:
        overview = service.get_budget_overview(group_id)
        console.print("\n[bold]Budget Overview:[/bold]")
        console.print(f"  Budgets:   {overview.budget_count}")
        console.print(f"  Budgeted:  {format_money(overview.total_budgeted)}")
        console.print(f"  Spent:     {format_money(overview.total_spent)}")
        console.print(f"  Remaining: {format_money(overview.total_remaining)}")
        if overview.alert_count:
            console.print(f"  [yellow]Alerts:    {overview.alert_count}[/yellow]")


@budget_app.command("sweep")
def budget_sweep(verbose: bool = VERBOSE_OPTION):
    """Roll over or deactivate every expired budget."""
    with open_service(verbose) as service:
        updates = service.sweep_budget_periods()
        for update in updates:
            console.print(
                f"  {update.category.value}: {update.action.replace('_', ' ')} "
                f"({update.period_start.date()} - {update.period_end.date()})"
            )
        console.print(f"[bold green]✓ {len(updates)} budgets updated[/bold green]")


if __name__ == "__main__":
    app()
