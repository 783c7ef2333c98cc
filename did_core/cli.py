"""DID engine CLI - batch jobs and maintenance commands."""

import asyncio
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Settings, get_settings
from .core.logging import setup_logging
from .database.base import DatabaseManager
from .engine import DidEngine
from .errors import DidEngineError

console = Console()

T = TypeVar("T")

NOW_FORMATS = ["%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"]


def _print_counters(title: str, data: Dict[str, Any]) -> None:
    table = Table(title=title)
    table.add_column("Counter", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)


def _run_with_engine(settings: Settings, job: Callable[[DidEngine], Awaitable[T]]) -> T:
    """Build a database-backed engine, run one job and close it."""

    async def runner() -> T:
        engine = DidEngine.from_database(DatabaseManager.from_settings(settings), settings)
        try:
            return await job(engine)
        finally:
            await engine.close()

    return asyncio.run(runner())


@click.group()
@click.version_option(version=__version__, prog_name="did-engine")
@click.option("--database-url", envvar="DID_DATABASE_URL", default=None,
              help="Database URL (overrides settings)")
@click.option("--log-level", default=None, help="Log level (overrides settings)")
@click.pass_context
def cli(ctx: click.Context, database_url: Optional[str], log_level: Optional[str]):
    """DID inventory and billing engine.

    \b
    Examples:
      did-engine init-db
      did-engine renew --date 2026-02-01 --dry-run
      did-engine cleanup-reservations --no-email
      did-engine sync-run
    """
    ctx.ensure_object(dict)

    overrides = {}
    if database_url:
        overrides["database_url"] = database_url
    if log_level:
        overrides["log_level"] = log_level
    settings = Settings(**overrides) if overrides else get_settings()

    setup_logging(settings.log_level, settings.log_format, settings.service_name)
    ctx.obj["settings"] = settings


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context):
    """Create the database tables."""
    settings: Settings = ctx.obj["settings"]

    async def create() -> None:
        db = DatabaseManager.from_settings(settings)
        try:
            await db.create_all()
        finally:
            await db.close()

    asyncio.run(create())
    console.print(f"[green]✓[/green] Database initialized: {settings.database_url}")


@cli.command("renew")
@click.option("--date", "run_date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Bill renewals due on or before this date (default: today)")
@click.option("--dry-run", is_flag=True, help="Count without changing anything")
@click.option("--company-id", default=None, help="Only process this company")
@click.pass_context
def renew(ctx: click.Context, run_date: Optional[datetime], dry_run: bool, company_id: Optional[str]):
    """Run monthly DID renewals."""
    now = datetime.utcnow()
    target = (run_date or now).date()

    result = _run_with_engine(
        ctx.obj["settings"],
        lambda engine: engine.renewals.run(target, now, dry_run=dry_run, company_id=company_id),
    )

    _print_counters(f"DID renewals for {target.isoformat()}", result.to_dict())
    if not result.success:
        sys.exit(1)


@cli.command("cleanup-reservations")
@click.option("--now", "now", type=click.DateTime(formats=NOW_FORMATS), default=None,
              help="Reference time (default: current UTC time)")
@click.option("--dry-run", is_flag=True, help="Count without changing anything")
@click.option("--no-email", is_flag=True, help="Do not notify customers")
@click.option("--company-id", default=None, help="Only process this company")
@click.pass_context
def cleanup_reservations(
    ctx: click.Context,
    now: Optional[datetime],
    dry_run: bool,
    no_email: bool,
    company_id: Optional[str],
):
    """Expire DID orders whose reservation has lapsed."""
    reference = now or datetime.utcnow()

    result = _run_with_engine(
        ctx.obj["settings"],
        lambda engine: engine.reaper.run(
            reference,
            dry_run=dry_run,
            send_notifications=not no_email,
            company_id=company_id,
        ),
    )

    _print_counters("Reservation cleanup", result.to_dict())
    if not result.success:
        sys.exit(1)


@cli.command("sync-run")
@click.option("--now", "now", type=click.DateTime(formats=NOW_FORMATS), default=None,
              help="Reference time (default: current UTC time)")
@click.pass_context
def sync_run(ctx: click.Context, now: Optional[datetime]):
    """Run due invoice syncs once."""
    settings: Settings = ctx.obj["settings"]
    if not settings.billing_api_configured:
        console.print("[red]✗[/red] Billing API credentials are not configured")
        sys.exit(1)

    reference = now or datetime.utcnow()

    async def run_once(engine: DidEngine) -> Dict[str, Any]:
        requeued = await engine.sync_worker.requeue_orphans(reference)
        outcome = await engine.sync_worker.run_due(reference)
        data = outcome.to_dict()
        data["requeued"] = requeued
        return data

    data = _run_with_engine(settings, run_once)

    _print_counters("Invoice sync", data)
    if not data["success"]:
        sys.exit(1)


@cli.command("sync-retry")
@click.argument("invoice_id")
@click.pass_context
def sync_retry(ctx: click.Context, invoice_id: str):
    """Re-arm a permanently failed invoice sync and run it."""
    settings: Settings = ctx.obj["settings"]
    if not settings.billing_api_configured:
        console.print("[red]✗[/red] Billing API credentials are not configured")
        sys.exit(1)

    try:
        result = _run_with_engine(
            settings,
            lambda engine: engine.sync_engine.retry_failed(invoice_id, datetime.utcnow()),
        )
    except DidEngineError as e:
        console.print(f"[red]✗[/red] {e.message}")
        sys.exit(1)

    _print_counters(f"Sync retry {invoice_id}", result.to_dict())
    if not result.success:
        sys.exit(1)


def main():
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
