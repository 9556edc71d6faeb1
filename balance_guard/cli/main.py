"""
CLI interface for balance_guard.

Provides command-line access to scanning, review and reconciliation of the
balance series.
"""

import sys
from dataclasses import dataclass
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from balance_guard.config.loader import AppConfig, load_config, validate_log_level
from balance_guard.core.classifier import FlaggedReading
from balance_guard.core.errors import ReadingNotFound, ReconciliationError, StoreUnavailable
from balance_guard.core.price_cache import PriceCache, annotate_price
from balance_guard.core.ranges import purge_anomalous_ranges
from balance_guard.core.reconciler import ReconcileReport, reconcile as run_reconcile
from balance_guard.core.reports import (
    DEFAULT_PREVIEW_LIMIT,
    delete_reading,
    describe,
    preview as run_preview,
    review as run_review,
    scan_report,
)
from balance_guard.demo.seed_demo_data import seed_demo_data
from balance_guard.logging_config import configure_logging
from balance_guard.sdk import PriceClient
from balance_guard.storage.repository import (
    SnapshotRepository,
    fetch_recent_readings,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@dataclass(frozen=True)
class CLIContext:
    """Resolved configuration shared by all commands."""
    config: AppConfig
    db_path: str

    def repository(self) -> SnapshotRepository:
        return SnapshotRepository(self.db_path)


def _context(ctx: typer.Context) -> CLIContext:
    return ctx.obj


def _fail_store(error: StoreUnavailable) -> None:
    """Print a store failure and exit with the failure code."""
    if "no such table" in str(error).lower():
        console.print("\n[bold yellow]No balance data found[/]")
        console.print("Run `balance-guard init` to initialize the database.\n")
    else:
        console.print(f"[red]Store unavailable:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level"),
):
    """balance_guard CLI."""
    try:
        app_config = load_config(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if log_level is not None:
        try:
            log_level = validate_log_level(log_level)
        except ValueError as e:
            console.print(f"[red]Invalid --log-level:[/] {e}")
            sys.exit(EXIT_CODE_FAIL)

    configure_logging(log_level or app_config.log_level)
    ctx.obj = CLIContext(config=app_config, db_path=db or app_config.database)

    if ctx.invoked_subcommand is None:
        console.print("balance_guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the balance database."""
    try:
        initialize_schema(_context(ctx).db_path)
    except StoreUnavailable as e:
        console.print(f"[red]Error initializing database:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Database initialized successfully")


@app.command()
def status(ctx: typer.Context):
    """Show how many readings are stored."""
    try:
        count = _context(ctx).repository().count()
    except StoreUnavailable as e:
        _fail_store(e)
    console.print(f"[green]✓[/] {count} readings in {_context(ctx).db_path}")


@app.command()
def scan(
    ctx: typer.Context,
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Stop after this many anomalies"),
):
    """List anomalous readings without changing anything."""
    context = _context(ctx)
    try:
        flagged = scan_report(
            context.repository(),
            context.config.reconcile_thresholds,
            page_size=context.config.scan.page_size,
            reversion_ratio=context.config.scan.reversion_ratio,
            limit=limit,
        )
    except StoreUnavailable as e:
        _fail_store(e)
    _display_flagged("Anomaly Scan", flagged)


@app.command()
def preview(
    ctx: typer.Context,
    limit: int = typer.Option(DEFAULT_PREVIEW_LIMIT, "--limit", "-l", help="Maximum anomalies to list"),
):
    """
    Show anomalies currently visible, capped at --limit.

    This does not run the reconciliation loop, so the count can differ from
    what `reconcile` deletes. Use `reconcile --dry-run` for an exact preview.
    """
    context = _context(ctx)
    try:
        flagged = run_preview(
            context.repository(),
            context.config.reconcile_thresholds,
            limit=limit,
            page_size=context.config.scan.page_size,
            reversion_ratio=context.config.scan.reversion_ratio,
        )
    except StoreUnavailable as e:
        _fail_store(e)
    _display_flagged("Reconcile Preview", flagged)
    console.print("Use `reconcile` to clear them.")


@app.command()
def review(ctx: typer.Context):
    """List every jump over the review thresholds, for manual inspection."""
    context = _context(ctx)
    try:
        entries = run_review(
            context.repository(),
            context.config.review_thresholds,
            page_size=context.config.scan.page_size,
        )
    except StoreUnavailable as e:
        _fail_store(e)

    console.print(f"\n[bold]Balance Review[/bold] ({len(entries)} jumps)")
    if not entries:
        console.print("[dim]No jumps over the review thresholds.[/]")
        return
    table = Table()
    table.add_column("Reading")
    table.add_column("Timestamp")
    table.add_column("Total A", justify="right")
    table.add_column("Total B", justify="right")
    table.add_column("Reason")
    for entry in entries:
        table.add_row(
            entry.id,
            entry.timestamp.isoformat(),
            f"{entry.total_a:,.2f}",
            f"{entry.total_b:,.2f}",
            entry.reason,
        )
    console.print(table)


@app.command()
def reconcile(
    ctx: typer.Context,
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        help="Safety cap on deletions (defaults to the configured value)"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report what would be deleted without deleting"
    ),
):
    """
    Delete anomalous readings one at a time until the series is clean.

    After each deletion the series is scanned again, since removing a
    reading changes which readings are neighbours.
    """
    context = _context(ctx)
    try:
        report = run_reconcile(
            context.repository(),
            max_iterations=max_iterations if max_iterations is not None else context.config.max_iterations,
            dry_run=dry_run,
            thresholds=context.config.reconcile_thresholds,
            page_size=context.config.scan.page_size,
            reversion_ratio=context.config.scan.reversion_ratio,
        )
    except ReconciliationError as e:
        _display_reconcile_report(e.report)
        if isinstance(e.cause, StoreUnavailable):
            _fail_store(e.cause)
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    _display_reconcile_report(report)


@app.command()
def delete(
    ctx: typer.Context,
    reading_id: str = typer.Argument(..., help="Id of the reading to delete"),
):
    """Permanently delete a single reading."""
    repository = _context(ctx).repository()
    try:
        reading = repository.get(reading_id)
        delete_reading(repository, reading_id)
    except ReadingNotFound:
        console.print(f"[red]Reading not found:[/] {reading_id}")
        sys.exit(EXIT_CODE_FAIL)
    except StoreUnavailable as e:
        _fail_store(e)
    console.print(f"[green]✓[/] Deleted {describe(reading)}")


@app.command("purge-ranges")
def purge_ranges_command(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Only count what would be deleted"),
):
    """Delete every reading inside time ranges that sit away from the median."""
    context = _context(ctx)
    repository = context.repository()
    try:
        report = purge_anomalous_ranges(
            repository,
            context.config.reconcile_thresholds,
            page_size=context.config.scan.page_size,
            dry_run=dry_run,
        )
    except StoreUnavailable as e:
        _fail_store(e)

    if not report.ranges:
        console.print("[green]✓[/] No anomalous ranges found")
        return
    verb = "Would delete" if dry_run else "Deleted"
    for item in report.ranges:
        console.print(
            f"{item.start.isoformat()} .. {item.end.isoformat()}: "
            f"{item.reading_count} readings ({item.reason})"
        )
    console.print(f"\n{verb} {report.deleted_count} readings across {len(report.ranges)} ranges")


@app.command("seed-demo")
def seed_demo(ctx: typer.Context):
    """Insert a demo series with a spike, a step change and a malformed reading."""
    try:
        count = seed_demo_data(_context(ctx).db_path)
    except StoreUnavailable as e:
        _fail_store(e)
    console.print(f"[green]✓[/] Inserted {count} demo readings")


@app.command()
def price(
    ctx: typer.Context,
    coin_id: str = typer.Argument(..., help="Coin id on the price service"),
    api_key: Optional[str] = typer.Option(
        None,
        "--api-key",
        envvar="BALANCE_GUARD_PRICE_API_KEY",
        help="Demo API key for the price service"
    ),
):
    """Fetch the current USD price and show it against the latest reading."""
    try:
        client = PriceClient(coin_id, api_key=api_key)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        cache = PriceCache(client.fetch_usd_price)
        latest = fetch_recent_readings(limit=1, db_path=_context(ctx).db_path)
        current = cache.get()
    except StoreUnavailable as e:
        _fail_store(e)
    finally:
        client.close()

    if current is None:
        console.print(f"[red]Price unavailable[/] for {coin_id}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"{coin_id}: ${current} USD")
    if latest:
        annotated = annotate_price(latest[0], cache)
        console.print(f"Latest reading {describe(annotated)} priced at ${annotated.price_usd}")


def _display_flagged(title: str, flagged: List[FlaggedReading]) -> None:
    console.print(f"\n[bold]{title}[/bold] ({len(flagged)} anomalies)")
    if not flagged:
        console.print("[dim]No anomalies found.[/]")
        return
    table = Table()
    table.add_column("Reading")
    table.add_column("Timestamp")
    table.add_column("Side")
    table.add_column("Reason")
    for item in flagged:
        table.add_row(item.id, item.timestamp.isoformat(), item.side.value, item.reason)
    console.print(table)


def _display_reconcile_report(report: ReconcileReport) -> None:
    """Display a reconciliation report."""
    verb = "Would delete" if report.dry_run else "Deleted"
    console.print(f"\n[bold]Reconciliation {'Dry Run' if report.dry_run else 'Result'}[/bold]")
    console.print("-" * 40)
    console.print(f"State: {report.state.value}")
    console.print(f"{verb}: {report.deleted_count} readings in {report.iterations} iterations")
    if report.reached_limit:
        console.print(f"[yellow]Iteration limit of {report.max_iterations} reached[/]")
    if report.conflicts:
        console.print(f"Already removed by another run: {len(report.conflicts)}")
    for entry in report.deleted:
        console.print(f"  #{entry.iteration} {entry.id} {entry.timestamp.isoformat()} {entry.reason}")


if __name__ == "__main__":
    app()
