"""Repository layer for SQL persistence and query access."""

from __future__ import annotations

import hashlib
import json
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from itertools import batched
from typing import TYPE_CHECKING, Any

from ccstats.data._row_helpers import row_float, row_int, row_str, row_totals
from ccstats.data.aggregator import isoformat_utc
from ccstats.models.statistics import (
    DailyStatistic,
    DateRange,
    ModelStatistic,
    ProjectStatistic,
    SessionSortOrder,
    UsageStatistics,
    sort_projects,
)
from ccstats.models.sync import FileFingerprint, SyncState
from ccstats.models.usage import UsageEntry, project_name_for

if TYPE_CHECKING:
    from aiosqlite import Row

    from ccstats.data.aggregator import AggregateSummary
    from ccstats.data.db import Database

# Bound parameters per IN (...) list.
_MAX_IN_PARAMS = 500

_INSERT_ENTRY_SQL = """
    INSERT INTO usage_entries (
        timestamp, date_string, model,
        input_tokens, output_tokens, cache_creation_tokens, cache_read_tokens,
        cost, session_id, project_path, request_id, message_id, message_type, source_file
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_AGGREGATE_SELECT = """
    COALESCE(SUM(input_tokens), 0) AS input_tokens,
    COALESCE(SUM(output_tokens), 0) AS output_tokens,
    COALESCE(SUM(cache_creation_tokens), 0) AS cache_creation_tokens,
    COALESCE(SUM(cache_read_tokens), 0) AS cache_read_tokens,
    COALESCE(SUM(cost), 0.0) AS total_cost,
    COUNT(DISTINCT session_id) AS session_count,
    COUNT(DISTINCT request_id)
        + COALESCE(SUM(CASE WHEN request_id IS NULL THEN 1 ELSE 0 END), 0) AS request_count,
    COALESCE(SUM(CASE WHEN cost > 0 THEN 1 ELSE 0 END), 0) AS effective_request_count"""

_AGGREGATE_COLUMNS = (
    "input_tokens, output_tokens, cache_creation_tokens, cache_read_tokens, "
    "total_cost, session_count, request_count, effective_request_count"
)


@dataclass(frozen=True, slots=True)
class _Dimension:
    table: str
    key_column: str
    entry_column: str
    extra_columns: str = ""
    extra_select: str = ""


_DAILY = _Dimension("daily_statistics", "date", "date_string")
_MODEL = _Dimension("model_statistics", "model", "model")
_PROJECT = _Dimension(
    "project_statistics",
    "project_path",
    "project_path",
    extra_columns=", last_used",
    extra_select=", MAX(timestamp) AS last_used",
)


@dataclass
class AffectedKeys:
    """Aggregate keys whose rows must be recomputed after a write."""

    dates: set[str] = field(default_factory=set)
    models: set[str] = field(default_factory=set)
    projects: set[str] = field(default_factory=set)

    @classmethod
    def from_summary(cls, summary: AggregateSummary) -> AffectedKeys:
        return cls(
            dates=summary.touched_dates,
            models=summary.touched_models,
            projects=summary.touched_projects,
        )

    def update(self, other: AffectedKeys) -> None:
        self.dates |= other.dates
        self.models |= other.models
        self.projects |= other.projects

    def add_rows(self, rows: Iterable[Mapping[str, Any]]) -> None:
        for row in rows:
            self.dates.add(row["date_string"])
            self.models.add(row["model"])
            self.projects.add(row["project_path"])

    @property
    def is_empty(self) -> bool:
        return not (self.dates or self.models or self.projects)


def _placeholders(values: tuple[Any, ...] | list[Any]) -> str:
    return ",".join("?" for _ in values)


def _entry_row(entry: UsageEntry) -> tuple[object, ...]:
    return (
        isoformat_utc(entry.timestamp),
        entry.date_string,
        entry.model,
        entry.input_tokens,
        entry.output_tokens,
        entry.cache_creation_tokens,
        entry.cache_read_tokens,
        entry.cost,
        entry.session_id or None,
        entry.project_path,
        entry.request_id or None,
        entry.message_id or None,
        entry.message_type,
        entry.source_file,
    )


def _entry_filter(date_range: DateRange, project_filter: str | None) -> tuple[str, list[str]]:
    conditions: list[str] = []
    params: list[str] = []
    if date_range.start is not None:
        conditions.append("date_string >= ?")
        params.append(date_range.start.isoformat())
    if date_range.end is not None:
        conditions.append("date_string <= ?")
        params.append(date_range.end.isoformat())
    if project_filter:
        conditions.append("instr(project_path, ?) > 0")
        params.append(project_filter)
    where = "WHERE " + " AND ".join(conditions) if conditions else ""
    return where, params


class UsageRepository:
    """Raw entry storage, aggregate maintenance and statistics queries.

    Write methods must run inside ``Database.transaction()``; reads use the
    reader connection and see only committed data.
    """

    def __init__(self, db: Database, *, batch_size: int = 500) -> None:
        self._db = db
        self._batch_size = max(batch_size, 1)

    async def rebuild_schema_and_clear(self) -> None:
        await self._db.recreate_schema()
        await self._db.delete_meta("last_sync")

    async def batch_insert(self, entries: Iterable[UsageEntry]) -> int:
        """Insert entries in chunks of ``batch_size``. Returns the row count."""
        inserted = 0
        for chunk in batched((_entry_row(entry) for entry in entries), self._batch_size):
            await self._db.execute_many(_INSERT_ENTRY_SQL, list(chunk))
            inserted += len(chunk)
        return inserted

    async def delete_entries_for_files(self, paths: Iterable[str]) -> AffectedKeys:
        """Delete every row that came from ``paths``; return the keys they touched."""
        affected = AffectedKeys()
        for chunk in batched(sorted(set(paths)), _MAX_IN_PARAMS):
            marks = _placeholders(chunk)
            rows = await self._db.fetch_all(
                f"""SELECT DISTINCT date_string, model, project_path
                    FROM usage_entries WHERE source_file IN ({marks})""",
                chunk,
                writer=True,
            )
            affected.add_rows(rows)
            await self._db.execute(f"DELETE FROM usage_entries WHERE source_file IN ({marks})", chunk)
        return affected

    async def deduplicate_persisted(
        self,
        request_ids: Iterable[str] | None = None,
        *,
        affected: AffectedKeys | None = None,
    ) -> int:
        """Keep only the earliest row per request id; return how many were removed.

        With ``request_ids`` only those ids are examined. Keys of deleted rows
        are added to ``affected`` when given.
        """
        if request_ids is None:
            return await self._deduplicate_where("", (), affected)
        removed = 0
        for chunk in batched(sorted(set(request_ids)), _MAX_IN_PARAMS):
            removed += await self._deduplicate_where(
                f"AND request_id IN ({_placeholders(chunk)})", chunk, affected
            )
        return removed

    async def _deduplicate_where(
        self, condition: str, params: tuple[str, ...], affected: AffectedKeys | None
    ) -> int:
        duplicates = f"""
            SELECT id FROM (
                SELECT id, ROW_NUMBER() OVER (
                    PARTITION BY request_id ORDER BY timestamp, id
                ) AS rn
                FROM usage_entries
                WHERE request_id IS NOT NULL {condition}
            ) WHERE rn > 1
        """
        if affected is not None:
            rows = await self._db.fetch_all(
                f"""SELECT DISTINCT date_string, model, project_path
                    FROM usage_entries WHERE id IN ({duplicates})""",
                params,
                writer=True,
            )
            affected.add_rows(rows)
        cursor = await self._db.execute(
            f"DELETE FROM usage_entries WHERE id IN ({duplicates})", params
        )
        return max(cursor.rowcount, 0)

    async def recompute_aggregates(
        self,
        dates: Iterable[str] | None = None,
        models: Iterable[str] | None = None,
        projects: Iterable[str] | None = None,
    ) -> None:
        """Rebuild aggregate rows from raw entries.

        With no arguments every aggregate row is rebuilt. Otherwise only the
        given keys are; keys with no remaining entries are removed.
        """
        full = dates is None and models is None and projects is None
        await self._recompute(_DAILY, None if full else set(dates or ()))
        await self._recompute(_MODEL, None if full else set(models or ()))
        await self._recompute(_PROJECT, None if full else set(projects or ()))

    async def _recompute(self, dim: _Dimension, keys: set[str] | None) -> None:
        if keys is None:
            await self._db.execute(f"DELETE FROM {dim.table}")
            await self._insert_aggregate(dim, "", ())
            await self._refresh_details(dim, None)
            return
        for chunk in batched(sorted(keys), _MAX_IN_PARAMS):
            marks = _placeholders(chunk)
            await self._db.execute(f"DELETE FROM {dim.table} WHERE {dim.key_column} IN ({marks})", chunk)
            await self._insert_aggregate(dim, f"WHERE {dim.entry_column} IN ({marks})", chunk)
            await self._refresh_details(dim, chunk)

    async def _insert_aggregate(self, dim: _Dimension, where: str, params: tuple[str, ...]) -> None:
        await self._db.execute(
            f"""INSERT INTO {dim.table} ({dim.key_column}, {_AGGREGATE_COLUMNS}{dim.extra_columns})
                SELECT {dim.entry_column}, {_AGGREGATE_SELECT}{dim.extra_select}
                FROM usage_entries {where}
                GROUP BY {dim.entry_column}""",
            params,
        )

    async def _refresh_details(self, dim: _Dimension, keys: tuple[str, ...] | None) -> None:
        """Fill the columns that are not plain sums: models used per day, project names."""
        if dim is _DAILY:
            where = f"WHERE date_string IN ({_placeholders(keys)})" if keys else ""
            rows = await self._db.fetch_all(
                f"""SELECT date_string, model FROM usage_entries {where}
                    GROUP BY date_string, model ORDER BY date_string, model""",
                keys or (),
                writer=True,
            )
            models_by_date: dict[str, list[str]] = defaultdict(list)
            for row in rows:
                models_by_date[row["date_string"]].append(row["model"])
            await self._db.execute_many(
                "UPDATE daily_statistics SET models_used = ? WHERE date = ?",
                [(json.dumps(models), day) for day, models in models_by_date.items()],
            )
        elif dim is _PROJECT:
            where = f"WHERE project_path IN ({_placeholders(keys)})" if keys else ""
            rows = await self._db.fetch_all(
                f"SELECT project_path FROM project_statistics {where}",
                keys or (),
                writer=True,
            )
            await self._db.execute_many(
                "UPDATE project_statistics SET project_name = ? WHERE project_path = ?",
                [
                    (project_name_for(row["project_path"]), row["project_path"])
                    for row in rows
                ],
            )

    async def query(
        self, date_range: DateRange, project_filter: str | None = None
    ) -> UsageStatistics:
        """Statistics for a date range, optionally restricted to matching projects.

        All reads run in one snapshot, so totals and breakdowns always
        describe the same commit.
        """
        async with self._db.read_snapshot():
            return await self._query(date_range, project_filter)

    async def get_project_statistics(
        self,
        date_range: DateRange,
        sort_order: SessionSortOrder = SessionSortOrder.COST_DESCENDING,
    ) -> list[ProjectStatistic]:
        """Per-project rows for a date range in the requested order."""
        async with self._db.read_snapshot():
            if date_range.is_unbounded:
                rows = await self._db.fetch_all("SELECT * FROM project_statistics")
            else:
                where, params = _entry_filter(date_range, None)
                rows = await self._grouped_rows(
                    "project_path", where, params, extra=", MAX(timestamp) AS last_used"
                )
        return sort_projects((_project_stat(dict(row)) for row in rows), sort_order)

    async def _query(
        self, date_range: DateRange, project_filter: str | None
    ) -> UsageStatistics:
        where, params = _entry_filter(date_range, project_filter)
        totals = await self._db.fetch_one(
            f"SELECT {_AGGREGATE_SELECT} FROM usage_entries {where}", tuple(params)
        )
        totals_map = dict(totals) if totals else {}
        use_tables = date_range.is_unbounded and not project_filter

        by_date = (
            await self._daily_from_table(date_range)
            if not project_filter
            else await self._daily_from_entries(where, params)
        )
        if use_tables:
            by_model = [
                _model_stat(dict(row))
                for row in await self._db.fetch_all(
                    "SELECT * FROM model_statistics ORDER BY total_cost DESC, model"
                )
            ]
            by_project = [
                _project_stat(dict(row))
                for row in await self._db.fetch_all(
                    "SELECT * FROM project_statistics ORDER BY total_cost DESC, project_path"
                )
            ]
        else:
            by_model = [
                _model_stat(dict(row))
                for row in await self._grouped_rows("model", where, params)
            ]
            by_project = [
                _project_stat(dict(row))
                for row in await self._grouped_rows(
                    "project_path", where, params, extra=", MAX(timestamp) AS last_used"
                )
            ]

        return UsageStatistics(
            total_cost=row_float(totals_map, "total_cost"),
            total_input_tokens=row_int(totals_map, "input_tokens"),
            total_output_tokens=row_int(totals_map, "output_tokens"),
            total_cache_creation_tokens=row_int(totals_map, "cache_creation_tokens"),
            total_cache_read_tokens=row_int(totals_map, "cache_read_tokens"),
            total_sessions=row_int(totals_map, "session_count"),
            total_requests=row_int(totals_map, "request_count"),
            effective_request_count=row_int(totals_map, "effective_request_count"),
            by_date=by_date,
            by_model=by_model,
            by_project=by_project,
        )

    async def _daily_from_table(self, date_range: DateRange) -> list[DailyStatistic]:
        conditions: list[str] = []
        params: list[str] = []
        if date_range.start is not None:
            conditions.append("date >= ?")
            params.append(date_range.start.isoformat())
        if date_range.end is not None:
            conditions.append("date <= ?")
            params.append(date_range.end.isoformat())
        where = "WHERE " + " AND ".join(conditions) if conditions else ""
        rows = await self._db.fetch_all(
            f"SELECT * FROM daily_statistics {where} ORDER BY date", tuple(params)
        )
        return [
            DailyStatistic(
                date=row_str(data, "date"),
                models_used=sorted(json.loads(row_str(data, "models_used", "[]"))),
                **row_totals(data),
            )
            for data in (dict(row) for row in rows)
        ]

    async def _daily_from_entries(self, where: str, params: list[str]) -> list[DailyStatistic]:
        rows = await self._db.fetch_all(
            f"""SELECT date_string AS date, {_AGGREGATE_SELECT}
                FROM usage_entries {where}
                GROUP BY date_string ORDER BY date_string""",
            tuple(params),
        )
        model_rows = await self._db.fetch_all(
            f"""SELECT date_string, model FROM usage_entries {where}
                GROUP BY date_string, model ORDER BY date_string, model""",
            tuple(params),
        )
        models_by_date: dict[str, list[str]] = defaultdict(list)
        for row in model_rows:
            models_by_date[row["date_string"]].append(row["model"])
        return [
            DailyStatistic(
                date=row_str(data, "date"),
                models_used=models_by_date.get(row_str(data, "date"), []),
                **row_totals(data),
            )
            for data in (dict(row) for row in rows)
        ]

    async def _grouped_rows(
        self, column: str, where: str, params: list[str], *, extra: str = ""
    ) -> list[Row]:
        return await self._db.fetch_all(
            f"""SELECT {column}, {_AGGREGATE_SELECT}{extra}
                FROM usage_entries {where}
                GROUP BY {column}
                ORDER BY total_cost DESC, {column}""",
            tuple(params),
        )

    async def has_data(self) -> bool:
        row = await self._db.fetch_one("SELECT 1 FROM usage_entries LIMIT 1")
        return row is not None

    async def count_entries(self) -> int:
        row = await self._db.fetch_one("SELECT COUNT(*) AS cnt FROM usage_entries")
        return int(row["cnt"]) if row else 0


def _model_stat(data: dict[str, Any]) -> ModelStatistic:
    return ModelStatistic(model=row_str(data, "model"), **row_totals(data))


def _project_stat(data: dict[str, Any]) -> ProjectStatistic:
    path = row_str(data, "project_path")
    return ProjectStatistic(
        project_path=path,
        project_name=row_str(data, "project_name") or project_name_for(path),
        last_used=row_str(data, "last_used"),
        **row_totals(data),
    )


class SyncStateRepository:
    """Persisted per-file fingerprints and the last successful sync time."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def load(self) -> SyncState:
        rows = await self._db.fetch_all(
            "SELECT file_path, file_size, file_mtime_ns FROM source_files ORDER BY file_path"
        )
        last_sync = await self._db.get_meta("last_sync")
        return SyncState(
            last_sync_timestamp=datetime.fromisoformat(last_sync) if last_sync else None,
            files={
                row["file_path"]: FileFingerprint(
                    size=int(row["file_size"]), mtime_ns=int(row["file_mtime_ns"])
                )
                for row in rows
            },
        )

    async def upsert_files(self, files: Mapping[str, FileFingerprint]) -> None:
        await self._db.execute_many(
            """INSERT OR REPLACE INTO source_files (file_path, file_size, file_mtime_ns)
               VALUES (?, ?, ?)""",
            [(path, fp.size, fp.mtime_ns) for path, fp in sorted(files.items())],
        )

    async def delete_files(self, paths: Iterable[str]) -> None:
        for chunk in batched(sorted(set(paths)), _MAX_IN_PARAMS):
            await self._db.execute(
                f"DELETE FROM source_files WHERE file_path IN ({_placeholders(chunk)})", chunk
            )

    async def last_sync(self) -> datetime | None:
        value = await self._db.get_meta("last_sync")
        return datetime.fromisoformat(value) if value else None

    async def set_last_sync(self, timestamp: datetime) -> None:
        await self._db.set_meta("last_sync", timestamp.isoformat())

    async def sources_fingerprint(self) -> str:
        """Digest of the committed sync state. Changes whenever a sync commits new data."""
        rows = await self._db.fetch_all(
            "SELECT file_path, file_size, file_mtime_ns FROM source_files ORDER BY file_path"
        )
        last_sync = await self._db.get_meta("last_sync") or ""
        digest = hashlib.sha256(last_sync.encode("utf-8"))
        for row in rows:
            digest.update(f"\n{row['file_path']}:{row['file_size']}:{row['file_mtime_ns']}".encode())
        return digest.hexdigest()[:16]
