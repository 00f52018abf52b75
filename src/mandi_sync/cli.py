"""Click-based CLI for mandi-sync.

Thin wrapper around library modules. Zero business logic: every operation
delegates to the sync services, the store, or the scheduler.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date

import click
from rich.console import Console
from rich.table import Table

from mandi_sync.core.exceptions import MandiSyncError
from mandi_sync.core.logging import configure_logging

console = Console(stderr=True)

_DATE_FORMATS = ["%Y-%m-%d"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_async(coro):
    """Run an async coroutine from synchronous Click code.

    Library errors are printed and turned into a non-zero exit.
    """
    try:
        return asyncio.run(coro)
    except MandiSyncError as exc:
        console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise SystemExit(1) from exc


def _load_config(ctx: click.Context):
    """Load config lazily, caching on first call."""
    if "config" not in ctx.obj:
        from mandi_sync.core import load_config

        try:
            config = load_config(config_path=ctx.obj.get("config_path"))
        except MandiSyncError as exc:
            console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
            raise SystemExit(1) from exc
        configure_logging(config.logging, verbose=ctx.obj["verbose"], console=console)
        ctx.obj["config"] = config
    return ctx.obj["config"]


async def _create_store_async(config):
    """Create and initialize storage from config."""
    from mandi_sync.ingestion import create_store

    return await create_store(config.storage)


@dataclass
class _Services:
    store: object
    sync: object
    bulk: object
    retention: object


@asynccontextmanager
async def _open_services(config) -> AsyncIterator[_Services]:
    """Wire store, client and services; close everything on exit."""
    from mandi_sync.ingestion import MandiClient
    from mandi_sync.sync import (
        BulkImporter,
        DailySyncService,
        RecordReconciler,
        RetentionService,
        RunGuard,
    )

    store = await _create_store_async(config)
    client = MandiClient(config.source)
    try:
        guard = RunGuard()
        reconciler = RecordReconciler(store, chunk_size=config.sync.chunk_size)
        yield _Services(
            store=store,
            sync=DailySyncService(client, store, reconciler, config.sync, guard=guard),
            bulk=BulkImporter(client, store, reconciler, config.sync, guard=guard),
            retention=RetentionService(
                store, config.retention, timezone=config.sync.timezone
            ),
        )
    finally:
        await client.close()
        await store.close()


def _to_date(value) -> date | None:
    return value.date() if value is not None else None


def _print_sync_result(result) -> None:
    if result.skipped and result.message == "Sync already running":
        console.print(f"[yellow]{result.sync_date}: sync already running, skipped[/yellow]")
    elif result.skipped:
        console.print(f"[green]✓[/green] {result.sync_date}: {result.message}")
    elif result.no_data:
        console.print(f"[yellow]{result.sync_date}: {result.message}[/yellow]")
    elif result.success:
        console.print(
            f"[green]✓[/green] {result.sync_date}: {result.records_synced} records "
            f"({result.status})"
        )
    else:
        console.print(f"[red]✗ {result.sync_date}: {result.message}[/red]")


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    envvar="MANDI_SYNC_CONFIG",
    default=None,
    help="Path to mandi-sync.yml config file.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose output.",
)
@click.version_option(package_name="mandi-sync")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """mandi-sync: agricultural market price synchronization engine."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = console


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--date",
    "-d",
    "sync_date",
    type=click.DateTime(formats=_DATE_FORMATS),
    default=None,
    help="Date to sync (YYYY-MM-DD). Default: yesterday.",
)
@click.option("--today", is_flag=True, default=False, help="Sync today's data.")
@click.pass_context
def sync(ctx: click.Context, sync_date, today: bool) -> None:
    """Sync one date (yesterday by default) unless it already has data."""
    if sync_date is not None and today:
        raise click.UsageError("--date and --today are mutually exclusive")
    config = _load_config(ctx)

    async def _run():
        async with _open_services(config) as services:
            if sync_date is not None:
                return await services.sync.sync_date(sync_date.date())
            if today:
                return await services.sync.sync_today()
            return await services.sync.sync_yesterday()

    result = _run_async(_run())
    _print_sync_result(result)
    if not result.success:
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# backfill
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--days",
    "-n",
    type=click.IntRange(min=1, max=365),
    default=7,
    show_default=True,
    help="Size of the trailing window (ending yesterday) to check.",
)
@click.pass_context
def backfill(ctx: click.Context, days: int) -> None:
    """Sync the dates missing from the last N days."""
    config = _load_config(ctx)

    async def _run():
        async with _open_services(config) as services:
            return await services.sync.backfill_missing_dates(days)

    summary = _run_async(_run())
    if summary.missing_dates == 0:
        console.print(f"[green]✓[/green] No missing dates in the last {days} days")
        return
    for result in summary.results:
        _print_sync_result(result)
    console.print(
        f"Backfilled {summary.synced_dates}/{summary.missing_dates} missing dates, "
        f"{summary.total_records} records"
    )


# ---------------------------------------------------------------------------
# import
# ---------------------------------------------------------------------------


@cli.command("import")
@click.option("--start", "-s", type=click.DateTime(formats=_DATE_FORMATS), default=None)
@click.option("--end", "-e", type=click.DateTime(formats=_DATE_FORMATS), default=None)
@click.option(
    "--days",
    "-n",
    type=click.IntRange(min=1),
    default=None,
    help="Import the last N days ending yesterday.",
)
@click.option(
    "--resume",
    is_flag=True,
    default=False,
    help="Only import dates in --start/--end that have no data yet.",
)
@click.option(
    "--commodity",
    "-m",
    "commodities",
    multiple=True,
    help="Import only this commodity over the last --days days (default 60). Repeatable.",
)
@click.pass_context
def import_(
    ctx: click.Context,
    start,
    end,
    days: int | None,
    resume: bool,
    commodities: tuple[str, ...],
) -> None:
    """Bulk-import historical prices over a date range."""
    start_date, end_date = _to_date(start), _to_date(end)
    has_range = start_date is not None and end_date is not None
    if commodities:
        if start_date or end_date or resume:
            raise click.UsageError("--commodity only combines with --days")
        days = days or 60
    elif has_range == (days is not None):
        raise click.UsageError("Provide either --start and --end, or --days")
    if resume and not has_range:
        raise click.UsageError("--resume requires --start and --end")
    if has_range and end_date < start_date:
        raise click.UsageError("--end must not be before --start")
    config = _load_config(ctx)

    async def _run():
        async with _open_services(config) as services:
            if commodities:
                return await services.bulk.import_commodities_last_n_days(
                    list(commodities), days
                )
            if resume:
                return await services.bulk.resume_import(start_date, end_date)
            if has_range:
                return await services.bulk.import_date_range(start_date, end_date)
            return await services.bulk.import_last_n_days(days)

    result = _run_async(_run())
    if result.skipped:
        console.print(f"[yellow]{result.message}[/yellow]")
        raise SystemExit(1)
    if result.message:
        console.print(result.message)
    failed = ""
    if result.commodities_failed:
        failed = f" ({result.commodities_failed} commodities failed)"
    elif result.dates_failed:
        failed = f" ({result.dates_failed} dates failed)"
    console.print(
        f"[green]✓[/green] Imported {result.records_synced} records over "
        f"{result.dates_processed} dates{failed}"
    )


# ---------------------------------------------------------------------------
# hourly
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def hourly(ctx: click.Context) -> None:
    """Refresh today's prices for the hourly states list."""
    config = _load_config(ctx)

    async def _run():
        async with _open_services(config) as services:
            if not services.sync.is_within_sync_hours():
                console.print("[yellow]Outside the configured hourly window; running anyway[/yellow]")
            return await services.sync.hourly_sync()

    result = _run_async(_run())
    if result.skipped:
        console.print("[yellow]Hourly sync already running, skipped[/yellow]")
        raise SystemExit(1)
    console.print(
        f"[green]✓[/green] {result.total_records} records fetched, "
        f"{result.records_written} written"
    )
    for state, error in result.states_failed.items():
        console.print(f"[red]  {state}: {error}[/red]")
    if not result.success:
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# status / health
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--limit", "-l", type=click.IntRange(min=1), default=10, show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False, help="Output JSON.")
@click.pass_context
def status(ctx: click.Context, limit: int, as_json: bool) -> None:
    """Show the most recent sync jobs."""
    config = _load_config(ctx)

    async def _run():
        store = await _create_store_async(config)
        try:
            return await store.list_sync_jobs(limit=limit)
        finally:
            await store.close()

    jobs = _run_async(_run())
    if as_json:
        click.echo(json.dumps([j.model_dump(mode="json") for j in jobs], indent=2))
        return
    if not jobs:
        console.print("[yellow]No sync jobs recorded yet.[/yellow]")
        return

    table = Table(title="Recent Sync Jobs")
    table.add_column("Date", style="bold")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Synced", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Message")
    for job in jobs:
        table.add_row(
            job.sync_date.isoformat(),
            str(job.sync_type),
            str(job.status),
            str(job.records_synced),
            str(job.records_failed),
            f"{job.duration_seconds}s" if job.duration_seconds is not None else "",
            job.error_message or "",
        )
    console.print(table)


@cli.command()
@click.option("--window", "-w", type=click.IntRange(min=1), default=None)
@click.pass_context
def health(ctx: click.Context, window: int | None) -> None:
    """Summarize sync health over the recent window."""
    config = _load_config(ctx)

    async def _run():
        async with _open_services(config) as services:
            return await services.sync.get_sync_health(window)

    report = _run_async(_run())
    table = Table(title=f"Sync Health (last {report.window_days} days)")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Healthy", "[green]yes[/green]" if report.healthy else "[red]no[/red]")
    table.add_row("Total syncs", str(report.total_syncs))
    table.add_row("Completed", str(report.completed_syncs))
    table.add_row("Partial", str(report.partial_syncs))
    table.add_row("Failed", str(report.failed_syncs))
    table.add_row("Records synced", str(report.total_records))
    table.add_row("Success rate", f"{report.success_rate:.1f}%")
    if report.last_sync is not None:
        table.add_section()
        table.add_row(
            "Last sync",
            f"{report.last_sync.sync_date} ({report.last_sync.sync_type}, "
            f"{report.last_sync.status})",
        )
    console.print(table)
    if not report.healthy:
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# cleanup
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--days",
    "-n",
    type=click.IntRange(min=1),
    default=None,
    help="Retention window in days. Default: retention.days from config.",
)
@click.option("--stats", is_flag=True, default=False, help="Only show storage statistics.")
@click.pass_context
def cleanup(ctx: click.Context, days: int | None, stats: bool) -> None:
    """Delete price rows older than the retention window."""
    config = _load_config(ctx)

    async def _run():
        async with _open_services(config) as services:
            if stats:
                return await services.retention.get_storage_stats()
            return await services.retention.cleanup_old_prices(days)

    result = _run_async(_run())
    if stats:
        table = Table(title="Storage Statistics")
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        table.add_row("Total records", f"{result.total_records:,}")
        table.add_row("Oldest date", str(result.oldest_date or "N/A"))
        table.add_row("Newest date", str(result.newest_date or "N/A"))
        table.add_row("Days of data", str(result.days_of_data))
        table.add_row("Estimated size", f"{result.estimated_size_mb:.2f} MB")
        console.print(table)
        return

    if not result.success:
        console.print(f"[red]✗ Cleanup failed: {result.message}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓[/green] {result.message}")


# ---------------------------------------------------------------------------
# serve / schedule
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", type=str, default=None, help="Bind address. Default: api.host.")
@click.option("--port", "-p", type=int, default=None, help="Port. Default: api.port.")
@click.option(
    "--no-scheduler",
    is_flag=True,
    default=False,
    help="Serve the API without running scheduled jobs.",
)
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, no_scheduler: bool) -> None:
    """Start the REST API server (with the scheduler by default)."""
    import uvicorn

    from mandi_sync.api.app import create_app

    config = _load_config(ctx)
    host = host or config.api.host
    port = port or config.api.port

    console.print(f"Starting mandi-sync API on [bold]{host}:{port}[/bold]")
    console.print(f"API docs: http://{host}:{port}/docs")

    uvicorn.run(
        create_app(config, enable_scheduler=not no_scheduler),
        host=host,
        port=port,
        log_config=None,
    )


@cli.command()
@click.pass_context
def schedule(ctx: click.Context) -> None:
    """Run the sync scheduler in the foreground until interrupted."""
    from mandi_sync.scheduler import build_scheduler

    config = _load_config(ctx)

    async def _run():
        async with _open_services(config) as services:
            scheduler = build_scheduler(config, services.sync, services.retention)
            scheduler.start()
            for job in scheduler.get_jobs():
                console.print(f"  {job.id}: next run {job.next_run_time}")
            try:
                await asyncio.Event().wait()
            finally:
                scheduler.shutdown(wait=False)

    console.print("[bold]Scheduler running.[/bold] Press Ctrl+C to stop.")
    try:
        _run_async(_run())
    except KeyboardInterrupt:
        console.print("Scheduler stopped.")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Main entry point for the CLI."""
    cli()
