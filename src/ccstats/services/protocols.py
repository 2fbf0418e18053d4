"""Protocol definitions for services."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from result import Result

from ccstats.models.statistics import (
    DateRange,
    ProjectStatistic,
    SessionSortOrder,
    UsageStatistics,
)
from ccstats.models.sync import SyncProgress, SyncResult, SyncState


class StatisticsServiceProtocol(Protocol):
    """Interface the CLI and other collaborators use to read statistics and drive syncs."""

    async def get_statistics(
        self,
        date_range: DateRange | None = None,
        project_filter: str | None = None,
    ) -> Result[UsageStatistics, str]: ...

    async def get_project_statistics(
        self,
        date_range: DateRange | None = None,
        sort_order: SessionSortOrder = SessionSortOrder.COST_DESCENDING,
    ) -> Result[list[ProjectStatistic], str]: ...

    async def trigger_full_sync(
        self, progress: Callable[[SyncProgress], None] | None = None
    ) -> Result[SyncResult, str]: ...

    async def trigger_incremental_sync(
        self, progress: Callable[[SyncProgress], None] | None = None
    ) -> Result[SyncResult, str]: ...

    async def get_sync_state(self) -> Result[SyncState, str]: ...

    def add_progress_listener(
        self, listener: Callable[[SyncProgress], None]
    ) -> Callable[[], None]: ...

    def add_data_changed_listener(
        self, listener: Callable[[SyncResult], None]
    ) -> Callable[[], None]: ...
