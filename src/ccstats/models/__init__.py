"""Pydantic models for ccstats."""

from ccstats.models.statistics import (
    DailyStatistic,
    DateRange,
    ModelStatistic,
    ProjectStatistic,
    SessionSortOrder,
    TokenTotals,
    UsageStatistics,
    average_cost_per_request,
    sort_projects,
)
from ccstats.models.sync import (
    FileFingerprint,
    SyncKind,
    SyncPhase,
    SyncProgress,
    SyncResult,
    SyncState,
    SyncStatus,
)
from ccstats.models.usage import UsageEntry, local_date_string, project_name_for

__all__ = [
    "DailyStatistic",
    "DateRange",
    "FileFingerprint",
    "ModelStatistic",
    "ProjectStatistic",
    "SessionSortOrder",
    "SyncKind",
    "SyncPhase",
    "SyncProgress",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "TokenTotals",
    "UsageEntry",
    "UsageStatistics",
    "average_cost_per_request",
    "local_date_string",
    "project_name_for",
    "sort_projects",
]
