"""Typer CLI for ccstats: stats, projects, sync and watch commands."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Annotated

import typer
from result import Ok

from ccstats.config import Config, SyncInterval
from ccstats.models.statistics import (
    DateRange,
    ProjectStatistic,
    SessionSortOrder,
    UsageStatistics,
)
from ccstats.models.sync import SyncProgress
from ccstats.services.protocols import StatisticsServiceProtocol

app = typer.Typer(
    name="ccstats",
    help="Usage statistics for Claude Code logs.",
    no_args_is_help=True,
)


@app.callback()
def main(
    ctx: typer.Context,
    claude_dir: Annotated[
        Path | None,
        typer.Option("--claude-dir", help="Path to Claude data directory"),
    ] = None,
    cache_dir: Annotated[
        Path | None,
        typer.Option("--cache-dir", help="Where the usage database and caches live"),
    ] = None,
    auto_sync: Annotated[
        bool | None,
        typer.Option("--auto-sync/--no-auto-sync", help="Override periodic syncing in watch"),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Ingest Claude Code usage logs and report token and cost statistics."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    config = Config()
    if claude_dir is not None:
        config = replace(config, claude_dir=claude_dir)
    if cache_dir is not None:
        config = replace(config, cache_dir=cache_dir)
    if auto_sync is not None:
        config = replace(config, auto_sync_enabled=auto_sync)
    ctx.obj = config


@app.command()
def stats(
    ctx: typer.Context,
    days: Annotated[
        int | None,
        typer.Option("--days", min=1, help="Only the last N days (default: all time)"),
    ] = None,
    project: Annotated[
        str | None,
        typer.Option("--project", help="Only projects whose path contains this text"),
    ] = None,
) -> None:
    """Print usage statistics."""
    config: Config = ctx.obj
    date_range = DateRange.last_days(days) if days else DateRange.all_time()
    ok = asyncio.run(_do_stats(config, date_range, project))
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def projects(
    ctx: typer.Context,
    days: Annotated[
        int | None,
        typer.Option("--days", min=1, help="Only the last N days (default: all time)"),
    ] = None,
    sort: Annotated[
        SessionSortOrder,
        typer.Option("--sort", help="Row order"),
    ] = SessionSortOrder.COST_DESCENDING,
) -> None:
    """Print per-project statistics."""
    config: Config = ctx.obj
    date_range = DateRange.last_days(days) if days else DateRange.all_time()
    ok = asyncio.run(_do_projects(config, date_range, sort))
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def sync(
    ctx: typer.Context,
    full: Annotated[bool, typer.Option("--full", help="Rebuild the store from scratch")] = False,
) -> None:
    """Synchronise the usage store with the logs."""
    config: Config = ctx.obj
    ok = asyncio.run(_do_sync(config, full))
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def watch(
    ctx: typer.Context,
    interval: Annotated[
        str,
        typer.Option("--interval", help="Sync interval: 5m, 15m, 30m, 1h, 2h or 4h"),
    ] = SyncInterval.ONE_HOUR.display_name,
) -> None:
    """Keep the store in sync on a fixed interval until interrupted."""
    try:
        sync_interval = SyncInterval.parse(interval)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--interval") from exc
    config: Config = replace(ctx.obj, sync_interval=sync_interval)
    try:
        asyncio.run(_do_watch(config))
    except KeyboardInterrupt:
        typer.echo("Stopped.")


async def _do_stats(config: Config, date_range: DateRange, project: str | None) -> bool:
    from ccstats.services.container import ServiceContainer

    container = await ServiceContainer.create(config)
    try:
        return await show_statistics(container.statistics_service, date_range, project)
    finally:
        await container.close()


async def show_statistics(
    service: StatisticsServiceProtocol,
    date_range: DateRange,
    project: str | None = None,
) -> bool:
    result = await service.get_statistics(date_range, project)
    if not isinstance(result, Ok):
        typer.echo(f"Error: {result.err_value}", err=True)
        return False
    typer.echo(format_statistics(result.ok_value))
    return True


def format_statistics(statistics: UsageStatistics) -> str:
    """Render statistics as plain text."""
    if statistics.is_empty:
        return "No usage recorded."
    lines = [
        f"Total cost:        ${statistics.total_cost:,.4f}",
        f"Total tokens:      {statistics.total_tokens:,}",
        f"  input            {statistics.total_input_tokens:,}",
        f"  output           {statistics.total_output_tokens:,}",
        f"  cache write      {statistics.total_cache_creation_tokens:,}",
        f"  cache read       {statistics.total_cache_read_tokens:,}",
        f"Sessions:          {statistics.total_sessions:,}",
        f"Requests:          {statistics.total_requests:,}"
        f" ({statistics.effective_request_count:,} billable)",
        f"Avg cost/request:  ${statistics.average_cost_per_request():,.4f}",
    ]
    if statistics.by_model:
        lines.append("")
        lines.append("By model:")
        lines.extend(
            f"  {row.model:<32} ${row.total_cost:>10,.4f}  {row.total_tokens:>14,} tokens"
            for row in statistics.by_model
        )
    if statistics.by_project:
        lines.append("")
        lines.append("By project:")
        lines.extend(
            f"  {row.project_name:<32} ${row.total_cost:>10,.4f}  {row.session_count:>5} sessions"
            for row in statistics.by_project
        )
    if statistics.by_date:
        lines.append("")
        lines.append("By date:")
        lines.extend(
            f"  {row.date}  ${row.total_cost:>10,.4f}  {row.total_tokens:>14,} tokens"
            for row in statistics.by_date
        )
    return "\n".join(lines)


async def _do_projects(config: Config, date_range: DateRange, sort: SessionSortOrder) -> bool:
    from ccstats.services.container import ServiceContainer

    container = await ServiceContainer.create(config)
    try:
        result = await container.statistics_service.get_project_statistics(date_range, sort)
    finally:
        await container.close()
    if not isinstance(result, Ok):
        typer.echo(f"Error: {result.err_value}", err=True)
        return False
    typer.echo(format_projects(result.ok_value))
    return True


def format_projects(rows: list[ProjectStatistic]) -> str:
    if not rows:
        return "No usage recorded."
    return "\n".join(
        f"  {row.project_name:<32} ${row.total_cost:>10,.4f}  "
        f"{row.session_count:>5} sessions  last used {row.last_used[:10] or '-'}"
        for row in rows
    )


async def _do_sync(config: Config, full: bool) -> bool:
    from ccstats.services.container import ServiceContainer

    typer.echo(f"Syncing usage logs from {config.projects_dir}...")
    container = await ServiceContainer.create(config)
    service = container.statistics_service

    def progress(event: SyncProgress) -> None:
        typer.echo(f"  [{event.fraction:>4.0%}] {event.phase}: {event.description}")

    try:
        if full:
            result = await service.trigger_full_sync(progress)
        else:
            result = await service.trigger_incremental_sync(progress)
    finally:
        await container.close()

    if not isinstance(result, Ok):
        typer.echo(f"Error: {result.err_value}", err=True)
        return False
    typer.echo(f"\nDone! {result.ok_value}")
    return True


async def _do_watch(config: Config) -> None:
    from ccstats.services.container import ServiceContainer

    container = await ServiceContainer.create(config)
    scheduler = container.scheduler
    if not scheduler.enabled:
        typer.echo("Auto sync is disabled; nothing to watch.")
        await container.close()
        return
    typer.echo(
        f"Watching {config.projects_dir} every {config.sync_interval.display_name} "
        "(Ctrl-C to stop)"
    )

    def on_change(result: object) -> None:
        typer.echo(f"Synced: {result}")

    container.sync_coordinator.add_data_changed_listener(on_change)
    try:
        scheduler.start()
        while scheduler.is_running:
            await asyncio.sleep(1)
    finally:
        await container.close()
