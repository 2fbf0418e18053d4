"""Sync coordinator: drives scan -> parse -> dedup -> aggregate -> store.

The coordinator is the only writer to the store. At most one sync runs at a
time; identical triggers coalesce onto the in-flight task and a full sync
requested during an incremental one preempts it at the next transaction
boundary.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from ccstats.data.aggregator import aggregate
from ccstats.data.dedup import Deduplicator, in_time_order
from ccstats.data.discovery import LocateResult, LogFile, locate_log_files
from ccstats.data.parser import read_usage_file
from ccstats.data.repositories import AffectedKeys, SyncStateRepository, UsageRepository
from ccstats.errors import (
    FileAccessError,
    SyncConflictError,
    SyncPreemptedError,
    UsageStatsError,
)
from ccstats.models.sync import (
    SyncKind,
    SyncPhase,
    SyncProgress,
    SyncResult,
    SyncState,
    SyncStatus,
)
from ccstats.services.pricing import PricingTable

if TYPE_CHECKING:
    from ccstats.config import Config, SyncInterval
    from ccstats.data.db import Database
    from ccstats.models.usage import UsageEntry
    from ccstats.services.cache import DiskCache, QueryCache

logger = logging.getLogger(__name__)

ProgressListener = Callable[[SyncProgress], None]
DataChangedListener = Callable[[SyncResult], None]

# Progress fraction at which each phase starts.
_PARSE_START = 0.05
_WRITE_START = 0.6
_AGGREGATE_START = 0.85


class SyncCoordinator:
    """Runs full and incremental syncs against the store."""

    def __init__(
        self,
        db: Database,
        config: Config,
        *,
        pricing: PricingTable | None = None,
        query_cache: QueryCache | None = None,
        disk_cache: DiskCache | None = None,
    ) -> None:
        self._db = db
        self._config = config
        self._pricing = pricing or PricingTable()
        self._query_cache = query_cache
        self._disk_cache = disk_cache
        self._usage = UsageRepository(db, batch_size=config.insert_batch_size)
        self._state = SyncStateRepository(db)

        self._run_lock = asyncio.Lock()
        self._current: asyncio.Task[SyncResult] | None = None
        self._current_kind: SyncKind | None = None
        self._queued_full: asyncio.Task[SyncResult] | None = None
        self._preempt_requested = False
        self._closed = False

        self._phase = SyncPhase.IDLE
        self._fraction = 0.0
        self._in_progress = False
        self.last_result: SyncResult | None = None
        self._progress_listeners: list[ProgressListener] = []
        self._data_changed_listeners: list[DataChangedListener] = []

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def is_syncing(self) -> bool:
        return self._in_progress or self._queued_full is not None

    @property
    def database(self) -> Database:
        return self._db

    @property
    def usage_repository(self) -> UsageRepository:
        return self._usage

    @property
    def state_repository(self) -> SyncStateRepository:
        return self._state

    async def load_state(self) -> SyncState:
        state = await self._state.load()
        return state.model_copy(update={"in_progress": self._in_progress})

    async def store_is_empty(self) -> bool:
        return not await self._usage.has_data()

    def add_progress_listener(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a progress listener; returns a callable that removes it."""
        self._progress_listeners.append(listener)
        return lambda: self._remove(self._progress_listeners, listener)

    def add_data_changed_listener(self, listener: DataChangedListener) -> Callable[[], None]:
        self._data_changed_listeners.append(listener)
        return lambda: self._remove(self._data_changed_listeners, listener)

    @staticmethod
    def _remove(listeners: list, listener: object) -> None:
        if listener in listeners:
            listeners.remove(listener)

    # -- triggers ---------------------------------------------------------

    def trigger_full_sync(
        self, progress: ProgressListener | None = None
    ) -> asyncio.Task[SyncResult]:
        """Start or join a full sync and return its task."""
        self._ensure_open()
        if self._queued_full is not None:
            task = self._queued_full
        elif self._current is not None and not self._current.done():
            if self._current_kind is SyncKind.FULL:
                task = self._current
            else:
                logger.info("Full sync requested; preempting the running incremental sync")
                self._preempt_requested = True
                task = self._spawn(SyncKind.FULL, queued=True)
        else:
            task = self._spawn(SyncKind.FULL)
        self._attach_progress(task, progress)
        return task

    def trigger_incremental_sync(
        self, progress: ProgressListener | None = None
    ) -> asyncio.Task[SyncResult]:
        """Start an incremental sync, or join whatever sync is running or queued."""
        self._ensure_open()
        if self._queued_full is not None:
            task = self._queued_full
        elif self._current is not None and not self._current.done():
            task = self._current
        else:
            task = self._spawn(SyncKind.INCREMENTAL)
        self._attach_progress(task, progress)
        return task

    async def run_full_sync(self, progress: ProgressListener | None = None) -> SyncResult:
        return await asyncio.shield(self.trigger_full_sync(progress))

    async def run_incremental_sync(self, progress: ProgressListener | None = None) -> SyncResult:
        return await asyncio.shield(self.trigger_incremental_sync(progress))

    async def cancel(self) -> None:
        """Cancel the running and queued syncs; open transactions roll back."""
        tasks = [task for task in (self._queued_full, self._current) if task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        await self.cancel()

    def _ensure_open(self) -> None:
        if self._closed:
            msg = "sync coordinator is closed"
            raise SyncConflictError(msg)

    def _spawn(self, kind: SyncKind, *, queued: bool = False) -> asyncio.Task[SyncResult]:
        task = asyncio.create_task(self._execute(kind), name=f"ccstats-{kind}-sync")
        task.add_done_callback(self._forget)
        if queued:
            self._queued_full = task
        else:
            self._current = task
            self._current_kind = kind
        return task

    def _forget(self, task: asyncio.Task[SyncResult]) -> None:
        if self._queued_full is task:
            self._queued_full = None
        if self._current is task:
            self._current = None
            self._current_kind = None

    def _attach_progress(
        self, task: asyncio.Task[SyncResult], progress: ProgressListener | None
    ) -> None:
        if progress is None:
            return
        remove = self.add_progress_listener(progress)
        task.add_done_callback(lambda _: remove())

    # -- execution --------------------------------------------------------

    async def _execute(self, kind: SyncKind) -> SyncResult:
        async with self._run_lock:
            task = asyncio.current_task()
            if self._queued_full is task:
                self._queued_full = None
                self._current = task
                self._current_kind = kind
            if kind is SyncKind.FULL:
                self._preempt_requested = False
            return await self._run(kind)

    async def _run(self, kind: SyncKind) -> SyncResult:
        result = SyncResult(kind=kind, started_at=datetime.now(UTC))
        self._in_progress = True
        self._fraction = 0.0
        logger.info("Starting %s sync of %s", kind, self._config.projects_dir)
        try:
            if kind is SyncKind.FULL:
                await self._full_sync(result)
            else:
                await self._incremental_sync(result)
        except SyncPreemptedError:
            result.status = SyncStatus.PREEMPTED
            logger.info("Incremental sync preempted by a full sync")
        except asyncio.CancelledError:
            result.status = SyncStatus.CANCELLED
            logger.info("%s sync cancelled", kind.capitalize())
        except Exception as exc:
            result.status = SyncStatus.FAILED
            result.error = str(exc)
            logger.exception("%s sync failed", kind.capitalize())
            self._emit(result.kind, SyncPhase.ERROR, self._fraction, str(exc))
        finally:
            self._in_progress = False
            result.finished_at = datetime.now(UTC)
            self.last_result = result

        if result.succeeded:
            self._emit(result.kind, SyncPhase.IDLE, 1.0, "Sync complete")
            self._invalidate_caches()
            self._notify_data_changed(result)
            logger.info("%s", result)
        else:
            self._phase = SyncPhase.IDLE
        return result

    async def _full_sync(self, result: SyncResult) -> None:
        result.kind = SyncKind.FULL
        self._current_kind = SyncKind.FULL
        located = await self._scan(result)
        entries, parsed = await self._parse_files(located.files, result)

        dedup = Deduplicator().deduplicate(in_time_order(entries))
        result.duplicates_removed = dedup.duplicates

        self._emit(result.kind, SyncPhase.WRITING, _WRITE_START, "Writing entries")
        async with self._db.transaction():
            await self._usage.rebuild_schema_and_clear()
            result.entries_inserted = await self._usage.batch_insert(dedup.entries)
            self._emit(result.kind, SyncPhase.AGGREGATING, _AGGREGATE_START, "Aggregating")
            await self._usage.recompute_aggregates()
            await self._state.upsert_files({str(f.path): f.fingerprint for f in parsed})
            await self._state.set_last_sync(datetime.now(UTC))
        self._db.requires_full_sync = False

    async def _incremental_sync(self, result: SyncResult) -> None:
        state = await self._state.load()
        if state.is_empty or self._db.requires_full_sync:
            logger.info("No previous sync state; running a full sync instead")
            await self._full_sync(result)
            return

        located = await self._scan(result)
        self._checkpoint()
        current = {str(f.path): f for f in located.files}
        unreadable = [path for path, _ in located.skipped]
        changed = [f for path, f in current.items() if state.files.get(path) != f.fingerprint]
        removed = [
            path
            for path in state.files
            if path not in current and not _is_below_any(path, unreadable)
        ]
        result.files_removed = len(removed)
        if not changed and not removed:
            logger.info("No log changes since %s", state.last_sync_timestamp)
            return

        entries, parsed = await self._parse_files(changed, result)
        deduplicator = Deduplicator()
        dedup = deduplicator.deduplicate(in_time_order(entries))
        summary = aggregate(
            dedup.entries,
            min_plausible=self._config.min_plausible_request_cost,
            max_plausible=self._config.max_plausible_request_cost,
        )
        self._checkpoint()

        self._emit(result.kind, SyncPhase.WRITING, _WRITE_START, "Writing entries")
        async with self._db.transaction():
            affected = await self._usage.delete_entries_for_files(
                [str(f.path) for f in parsed] + removed
            )
            result.entries_inserted = await self._usage.batch_insert(dedup.entries)
            affected.update(AffectedKeys.from_summary(summary))
            persisted_duplicates = await self._usage.deduplicate_persisted(
                deduplicator.request_ids, affected=affected
            )
            result.duplicates_removed = dedup.duplicates + persisted_duplicates
            self._emit(result.kind, SyncPhase.AGGREGATING, _AGGREGATE_START, "Aggregating")
            await self._usage.recompute_aggregates(
                affected.dates, affected.models, affected.projects
            )
            await self._state.upsert_files({str(f.path): f.fingerprint for f in parsed})
            await self._state.delete_files(removed)
            await self._state.set_last_sync(datetime.now(UTC))

    async def _scan(self, result: SyncResult) -> LocateResult:
        self._emit(result.kind, SyncPhase.SCANNING, 0.0, "Scanning log files")
        located = await asyncio.to_thread(locate_log_files, self._config.projects_dir)
        result.files_scanned = len(located.files)
        result.files_skipped += len(located.skipped)
        result.skip_reasons.extend(located.skip_reasons)
        return located

    async def _parse_files(
        self, files: list[LogFile], result: SyncResult
    ) -> tuple[list[UsageEntry], list[LogFile]]:
        """Parse files in worker threads; unreadable files are skipped and reported."""
        entries: list[UsageEntry] = []
        parsed: list[LogFile] = []
        total = len(files)
        span = _WRITE_START - _PARSE_START
        self._emit(result.kind, SyncPhase.PARSING, _PARSE_START, f"Parsing {total} files")
        for index, log_file in enumerate(files, 1):
            try:
                file_entries, stats = await asyncio.to_thread(
                    read_usage_file,
                    log_file.path,
                    pricing=self._pricing,
                    project_path=log_file.project_path,
                )
            except FileAccessError as exc:
                logger.warning("Skipping %s: %s", exc.path, exc.reason)
                result.files_skipped += 1
                result.skip_reasons.append(f"{exc.path}: {exc.reason}")
                continue
            entries.extend(file_entries)
            parsed.append(log_file)
            result.entries_parsed += stats.entries
            result.malformed_lines += stats.malformed
            self._emit(
                result.kind,
                SyncPhase.PARSING,
                _PARSE_START + span * index / total,
                f"Parsed {log_file.path.name}",
            )
            if result.kind is SyncKind.INCREMENTAL:
                self._checkpoint()
        result.files_processed = len(parsed)
        return entries, parsed

    def _checkpoint(self) -> None:
        if self._preempt_requested:
            raise SyncPreemptedError("a full sync was requested")

    def _emit(self, kind: SyncKind, phase: SyncPhase, fraction: float, description: str) -> None:
        self._phase = phase
        self._fraction = min(max(fraction, self._fraction), 1.0)
        event = SyncProgress(
            kind=kind, phase=phase, fraction=self._fraction, description=description
        )
        for listener in list(self._progress_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed")

    def _invalidate_caches(self) -> None:
        if self._query_cache is not None:
            self._query_cache.invalidate_all()
        if self._disk_cache is not None:
            self._disk_cache.invalidate_all()

    def _notify_data_changed(self, result: SyncResult) -> None:
        for listener in list(self._data_changed_listeners):
            try:
                listener(result)
            except Exception:
                logger.exception("Data-changed listener failed")


def _is_below_any(path: str, roots: list[str]) -> bool:
    return any(path == root or path.startswith(root + os.sep) for root in roots)


class AutoSyncScheduler:
    """Runs an incremental sync every ``interval`` seconds.

    Each run is awaited before the next delay starts, so runs never overlap.
    A full sync runs first when the store is empty. A disabled scheduler
    never starts its loop.
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        interval: SyncInterval | float,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._coordinator = coordinator
        self._enabled = enabled
        self._interval = float(interval)
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._next_run: float | None = None
        self.successful_runs = 0
        self.failed_runs = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def next_sync_at(self) -> datetime | None:
        """Wall-clock time of the next scheduled run, if one is pending."""
        if self._next_run is None or not self.is_running:
            return None
        return datetime.now(UTC) + timedelta(seconds=max(self._next_run - self._clock(), 0.0))

    def start(self) -> None:
        if not self._enabled:
            logger.info("Auto sync disabled")
            return
        if self.is_running:
            return
        logger.info("Auto sync every %.0fs", self._interval)
        self._task = asyncio.create_task(self._loop(), name="ccstats-auto-sync")

    async def stop(self) -> None:
        task, self._task = self._task, None
        self._next_run = None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _loop(self) -> None:
        try:
            empty = await self._coordinator.store_is_empty()
        except UsageStatsError as exc:
            self.failed_runs += 1
            logger.warning("Auto sync could not inspect the store: %s", exc)
            empty = False
        if empty:
            await self._run_once(SyncKind.FULL)
        while True:
            self._next_run = self._clock() + self._interval
            await asyncio.sleep(self._interval)
            self._next_run = None
            await self._run_once(SyncKind.INCREMENTAL)

    async def _run_once(self, kind: SyncKind) -> None:
        if kind is SyncKind.FULL:
            result = await self._coordinator.run_full_sync()
        else:
            result = await self._coordinator.run_incremental_sync()
        if result.succeeded:
            self.successful_runs += 1
        else:
            self.failed_runs += 1
            logger.warning("Auto sync run failed: %s", result)
