"""Statistics service: cached queries over the store and sync entry points."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from result import Err, Ok, Result

from ccstats.data.aggregator import aggregate, filter_entries
from ccstats.data.dedup import deduplicate, in_time_order
from ccstats.data.discovery import locate_log_files
from ccstats.data.parser import read_usage_file
from ccstats.errors import FileAccessError, SyncConflictError, UsageStatsError
from ccstats.models.statistics import (
    DateRange,
    ProjectStatistic,
    SessionSortOrder,
    UsageStatistics,
    sort_projects,
)
from ccstats.models.sync import SyncResult, SyncState, SyncStatus

if TYPE_CHECKING:
    from ccstats.config import Config
    from ccstats.models.usage import UsageEntry
    from ccstats.services.cache import DiskCache, QueryCache
    from ccstats.services.pricing import PricingTable
    from ccstats.services.sync_service import (
        DataChangedListener,
        ProgressListener,
        SyncCoordinator,
    )

logger = logging.getLogger(__name__)


def compute_live_statistics(
    projects_dir: Path,
    pricing: PricingTable,
    date_range: DateRange,
    project_filter: str | None = None,
    *,
    min_plausible: float,
    max_plausible: float,
) -> UsageStatistics:
    """Parse the logs directly, without touching the store."""
    located = locate_log_files(projects_dir)
    entries: list[UsageEntry] = []
    for log_file in located.files:
        try:
            file_entries, _ = read_usage_file(
                log_file.path, pricing=pricing, project_path=log_file.project_path
            )
        except FileAccessError as exc:
            logger.warning("Skipping %s: %s", exc.path, exc.reason)
            continue
        entries.extend(file_entries)
    unique = deduplicate(in_time_order(entries)).entries
    selected = filter_entries(unique, date_range, project_filter)
    return aggregate(
        selected, min_plausible=min_plausible, max_plausible=max_plausible
    ).to_statistics()


class UsageStatisticsService:
    """Service for usage statistics queries and sync control."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        config: Config,
        pricing: PricingTable,
        query_cache: QueryCache,
        disk_cache: DiskCache | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._config = config
        self._pricing = pricing
        self._cache = query_cache
        self._disk_cache = disk_cache

    async def get_statistics(
        self,
        date_range: DateRange | None = None,
        project_filter: str | None = None,
    ) -> Result[UsageStatistics, str]:
        """Statistics for ``date_range`` (default: all time).

        Served from the query cache when possible. Before the first sync the
        logs are parsed directly. Results computed while a sync invalidated
        the cache are returned but not cached.
        """
        date_range = date_range or DateRange.all_time()
        project_filter = project_filter or None
        cached = self._cache.get(date_range, project_filter)
        if cached is not None:
            return Ok(cached)

        generation = self._cache.generation
        state_repo = self._coordinator.state_repository
        try:
            if await state_repo.last_sync() is None:
                logger.info("Store not yet synced; computing statistics from logs")
                statistics = await self._live_statistics(date_range, project_filter)
                self._cache.put(date_range, project_filter, statistics, generation=generation)
                return Ok(statistics)

            async with self._coordinator.database.read_snapshot():
                fingerprint = ""
                if self._disk_cache is not None:
                    fingerprint = await state_repo.sources_fingerprint()
                    on_disk = await asyncio.to_thread(
                        self._disk_cache.get, date_range, project_filter, fingerprint
                    )
                    if on_disk is not None:
                        self._cache.put(date_range, project_filter, on_disk, generation=generation)
                        return Ok(on_disk)

                statistics = await self._coordinator.usage_repository.query(
                    date_range, project_filter
                )
        except UsageStatsError as exc:
            logger.warning("Statistics query failed: %s", exc)
            return Err(f"Statistics query failed: {exc}")

        stored = self._cache.put(date_range, project_filter, statistics, generation=generation)
        if stored and self._disk_cache is not None:
            self._disk_cache.schedule_put(date_range, project_filter, fingerprint, statistics)
        return Ok(statistics)

    async def get_project_statistics(
        self,
        date_range: DateRange | None = None,
        sort_order: SessionSortOrder = SessionSortOrder.COST_DESCENDING,
    ) -> Result[list[ProjectStatistic], str]:
        """Per-project statistics for ``date_range`` sorted by ``sort_order``."""
        date_range = date_range or DateRange.all_time()
        try:
            if await self._coordinator.state_repository.last_sync() is None:
                live = await self._live_statistics(date_range, None)
                return Ok(sort_projects(live.by_project, sort_order))
            projects = await self._coordinator.usage_repository.get_project_statistics(
                date_range, sort_order
            )
        except UsageStatsError as exc:
            logger.warning("Project statistics query failed: %s", exc)
            return Err(f"Project statistics query failed: {exc}")
        return Ok(projects)

    async def _live_statistics(
        self, date_range: DateRange, project_filter: str | None
    ) -> UsageStatistics:
        return await asyncio.to_thread(
            compute_live_statistics,
            self._config.projects_dir,
            self._pricing,
            date_range,
            project_filter,
            min_plausible=self._config.min_plausible_request_cost,
            max_plausible=self._config.max_plausible_request_cost,
        )

    async def trigger_full_sync(
        self, progress: ProgressListener | None = None
    ) -> Result[SyncResult, str]:
        try:
            result = await self._coordinator.run_full_sync(progress)
        except SyncConflictError as exc:
            return Err(str(exc))
        return _sync_outcome(result)

    async def trigger_incremental_sync(
        self, progress: ProgressListener | None = None
    ) -> Result[SyncResult, str]:
        try:
            result = await self._coordinator.run_incremental_sync(progress)
        except SyncConflictError as exc:
            return Err(str(exc))
        return _sync_outcome(result)

    async def get_sync_state(self) -> Result[SyncState, str]:
        try:
            return Ok(await self._coordinator.load_state())
        except UsageStatsError as exc:
            return Err(str(exc))

    def add_progress_listener(self, listener: ProgressListener) -> Callable[[], None]:
        return self._coordinator.add_progress_listener(listener)

    def add_data_changed_listener(self, listener: DataChangedListener) -> Callable[[], None]:
        return self._coordinator.add_data_changed_listener(listener)


def _sync_outcome(result: SyncResult) -> Result[SyncResult, str]:
    """Completed and preempted syncs are Ok; failed and cancelled ones are Err."""
    match result.status:
        case SyncStatus.COMPLETED | SyncStatus.PREEMPTED:
            return Ok(result)
        case SyncStatus.CANCELLED:
            return Err(f"{result.kind} sync cancelled")
        case _:
            return Err(f"{result.kind} sync failed: {result.error}")
