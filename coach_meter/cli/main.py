"""
CLI interface for Coach Meter.

Provides administrative access to limits, quotas and usage analytics.
"""

import sqlite3
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from coach_meter.config.loader import default_config, load_metering_config
from coach_meter.core.analytics import Period
from coach_meter.core.engine import MeteringEngine
from coach_meter.storage.repository import UsageRepository

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1


def _engine(ctx: typer.Context) -> MeteringEngine:
    return ctx.obj


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML metering configuration"
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite database path (overrides the configuration)"
    )
):
    """Coach Meter CLI."""
    try:
        metering_config = load_metering_config(config) if config else default_config()
        repository = None
        if db is not None:
            repository = UsageRepository(db, metering_config.timeout_seconds)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    ctx.obj = MeteringEngine(metering_config, repository=repository)

    if ctx.invoked_subcommand is None:
        console.print("Coach Meter - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the metering database."""
    try:
        _engine(ctx).initialize()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_OK)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def check(ctx: typer.Context, user_id: int = typer.Argument(..., help="User to check")):
    """Show a user's daily token cap status."""
    status = _engine(ctx).check_daily_limit(user_id)
    verdict = "[green]ALLOWED[/]" if status.can_proceed else "[red]LIMIT REACHED[/]"

    console.print(f"\n[bold]Daily limit for user {user_id}:[/bold] {verdict}")
    console.print(f"Tokens used today: {status.tokens_used_today:,}")
    console.print(f"Tokens remaining: {status.remaining:,}")


@app.command()
def quota(ctx: typer.Context, user_id: int = typer.Argument(..., help="User to check")):
    """Show a user's monthly quota status."""
    status = _engine(ctx).check_quota(user_id)

    console.print(f"\n[bold]Monthly quota for user {user_id}[/bold]")
    console.print(f"Quota: {status.monthly_quota:,}")
    console.print(f"Used: {status.current_usage:,}")
    console.print(f"Remaining: {status.remaining:,}")
    if not status.has_quota:
        console.print("[red]Quota exhausted[/]")


@app.command("set-quota")
def set_quota(
    ctx: typer.Context,
    user_id: int = typer.Argument(..., help="User to update"),
    tokens: int = typer.Argument(..., help="New monthly quota in tokens")
):
    """Override a user's monthly token quota."""
    try:
        _engine(ctx).update_quota(user_id, tokens)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error updating quota:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Monthly quota for user {user_id} set to {tokens:,} tokens")


@app.command("register-user")
def register_user(
    ctx: typer.Context,
    user_id: int = typer.Argument(..., help="User id in the host application"),
    username: str = typer.Argument(..., help="Display name")
):
    """Add or rename a registered user."""
    try:
        _engine(ctx).register_user(user_id, username)
    except sqlite3.Error as e:
        console.print(f"[red]Error registering user:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Registered user {user_id} ({username})")


@app.command()
def stats(
    ctx: typer.Context,
    user: Optional[int] = typer.Option(None, "--user", "-u", help="Only show this user"),
    top: Optional[int] = typer.Option(
        None, "--top", "-t", min=1, help="Only show the N heaviest users"
    )
):
    """Show per-user token usage and quota statistics."""
    if top is not None and user is not None:
        console.print("[red]Error:[/] --top and --user cannot be combined")
        sys.exit(EXIT_CODE_FAIL)

    if top is not None:
        rows = _engine(ctx).get_top_users(top)
        title = f"Top {top} Token Users"
    else:
        rows = _engine(ctx).get_user_token_stats(user)
        title = "Token Usage by User"

    if not rows:
        console.print("\n[bold yellow]No users found[/]")
        return

    table = Table(title=title)
    table.add_column("User")
    table.add_column("Today", justify="right")
    table.add_column("Month", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Monthly left", justify="right")
    table.add_column("Daily left", justify="right")

    for row in rows:
        name = row.username or str(row.user_id)
        table.add_row(
            name,
            f"{row.tokens_today:,}",
            f"{row.tokens_this_month:,}",
            f"{row.total_tokens:,}",
            _format_currency(row.total_cost_dollars),
            f"{row.quota_remaining:,}",
            f"{row.daily_quota_remaining:,}"
        )

    console.print(table)


@app.command()
def usage(
    ctx: typer.Context,
    period: Period = typer.Option(Period.MONTH, "--period", "-p", help="Bucket size"),
    user: Optional[int] = typer.Option(None, "--user", "-u", help="Only count this user"),
    days: Optional[int] = typer.Option(
        None, "--days", "-d", min=1, help="Only count the last N days"
    )
):
    """Show token usage over time."""
    rows = _engine(ctx).get_token_usage_by_period(user, period, days)
    if not rows:
        console.print("\n[bold yellow]No usage recorded[/]")
        return

    table = Table(title=f"Token Usage per {period.value}")
    table.add_column("Period")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for row in rows:
        table.add_row(row.date, f"{row.tokens:,}", _format_currency(row.cost_dollars))

    console.print(table)


@app.command()
def summary(ctx: typer.Context):
    """Show global token usage totals."""
    totals = _engine(ctx).get_aggregated_token_stats()

    console.print("\n[bold]Token Usage Summary[/bold]")
    console.print("-" * 40)
    console.print(f"Total tokens: {totals.total_tokens:,}")
    console.print(f"Total cost: {_format_currency(totals.total_cost_dollars)}")
    console.print(f"Active users: {totals.active_users:,}")
    console.print(f"Average tokens per user: {totals.avg_tokens_per_user:,.1f}")


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


if __name__ == "__main__":
    app()
