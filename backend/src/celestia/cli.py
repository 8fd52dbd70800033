"""Command-line interface for Celestia referral operations."""

from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from celestia.logging_config import configure_logging, get_logger
from celestia.referral.activation import ActivationStatus, ReferralActivationService
from celestia.referral.errors import LedgerWriteError, ReferralError
from celestia.referral.service import ReferralService
from celestia.referral.tiers import REFERRAL_TIERS
from celestia.storage.db import db

# Configure logging
configure_logging()
logger = get_logger(__name__)

app = typer.Typer(
    name="celestia",
    help="Celestia - referral rewards administration",
    no_args_is_help=True,
)

console = Console()


@app.command("init")
def init_database() -> None:
    """Initialize the database and create tables."""
    console.print("[bold blue]Initializing database...[/bold blue]")
    db.create_tables()
    console.print("[bold green]✓[/bold green] Database initialized successfully")


@app.command("attach")
def attach_referral(
    user_id: Annotated[str, typer.Argument(help="Referred user ID")],
    code: Annotated[str, typer.Argument(help="Referral code used at signup")],
) -> None:
    """Attach a user to the owner of a referral code."""
    try:
        referral = ReferralService().attach_referral(user_id, code)
    except ReferralError as e:
        console.print(f"[bold red]✗[/bold red] {e} ({e.code})")
        raise typer.Exit(1)

    console.print(
        f"[bold green]✓[/bold green] Referral {referral.id}: "
        f"{referral.referrer_user_id} → {referral.referred_user_id}"
    )


@app.command("activate")
def activate(
    user_id: Annotated[str, typer.Argument(help="Referred user ID")],
    action_type: Annotated[str, typer.Option("--action", "-a", help="Action that triggered activation")] = "manual",
) -> None:
    """Run the activation pipeline for a referred user."""
    try:
        result = ReferralActivationService().process_activation(user_id, action_type)
    except LedgerWriteError as e:
        console.print(f"[bold red]✗[/bold red] Ledger write failed: {e.reason}")
        raise typer.Exit(1)

    if result.status is not ActivationStatus.ACTIVATED:
        reason = result.reason.value if result.reason else result.status.value
        console.print(f"[yellow]Not activated:[/yellow] {reason}")
        return

    console.print(f"[bold green]✓[/bold green] Referral {result.referral_id} activated")

    table = Table(title="Reward legs")
    table.add_column("Party", style="cyan")
    table.add_column("User")
    table.add_column("Days", justify="right")
    table.add_column("Action", style="green")
    table.add_column("Period end")
    for leg in result.outcome.legs:
        table.add_row(
            leg.party.value,
            leg.user_id,
            str(leg.extension_days),
            leg.action.value if leg.succeeded else f"[red]{leg.action.value}[/red]",
            leg.period_end.strftime("%Y-%m-%d %H:%M") if leg.period_end else (leg.error or "-"),
        )
    console.print(table)


@app.command("stats")
def show_stats(
    user_id: Annotated[str, typer.Argument(help="Referrer user ID")],
) -> None:
    """Show referral statistics and tier progress for a user."""
    stats = ReferralService().get_referral_stats(user_id)

    console.print(f"[bold]Code:[/bold] {stats['code']}  ({stats['link']})")
    console.print(f"[bold]Clicks:[/bold] {stats['clicks']}")
    console.print(f"[bold]Referrals:[/bold] {stats['referrals_count']} "
                  f"({stats['activated_count']} activated, {stats['pending_count']} pending)")
    console.print(f"[bold]Tier:[/bold] {stats['current_tier'] or '-'}")
    if stats["next_tier"]:
        console.print(f"[bold]Next:[/bold] {stats['next_tier']} in {stats['referrals_to_next_tier']}")


@app.command("tiers")
def list_tiers() -> None:
    """List referral tiers and their bonuses."""
    table = Table(title="Referral tiers")
    table.add_column("Threshold", justify="right", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Bonus days", justify="right")
    for tier in REFERRAL_TIERS:
        table.add_row(str(tier.threshold), tier.name, str(tier.bonus_days or "-"))
    console.print(table)


if __name__ == "__main__":
    app()
