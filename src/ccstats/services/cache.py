"""Query result caches: an in-memory TTL cache and an optional on-disk tier."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ccstats.models.statistics import DateRange, UsageStatistics

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_DISK_TTL_SECONDS = 24 * 60 * 60.0

CacheKey = tuple[str, str]


def cache_key(date_range: DateRange, project_filter: str | None = None) -> CacheKey:
    return (date_range.cache_key, project_filter or "")


@dataclass(frozen=True, slots=True)
class CacheEntry:
    statistics: UsageStatistics
    computed_at: float
    expires_at: float


class QueryCache:
    """In-memory statistics cache keyed by ``(DateRange, project_filter)``.

    Values are deep copies in both directions, so callers can never mutate a
    cached result.

    ``invalidate_all`` bumps ``generation``. A ``put`` carrying the generation
    read before its store query is dropped once that generation has passed, so
    a result computed before a sync never outlives the sync.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def get(
        self, date_range: DateRange, project_filter: str | None = None
    ) -> UsageStatistics | None:
        key = cache_key(date_range, project_filter)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry.statistics.model_copy(deep=True)

    def put(
        self,
        date_range: DateRange,
        project_filter: str | None,
        statistics: UsageStatistics,
        *,
        generation: int | None = None,
    ) -> bool:
        """Store a copy of ``statistics``. Returns False when ``generation`` is stale."""
        if generation is not None and generation != self._generation:
            logger.debug("Dropping statistics computed before the last invalidation")
            return False
        now = self._clock()
        self._entries[cache_key(date_range, project_filter)] = CacheEntry(
            statistics=statistics.model_copy(deep=True),
            computed_at=now,
            expires_at=now + self._ttl,
        )
        return True

    def invalidate_all(self) -> None:
        self._generation += 1
        if self._entries:
            logger.debug("Invalidating %d cached queries", len(self._entries))
        self._entries.clear()

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for entry in self._entries.values() if now < entry.expires_at)


class DiskCache:
    """JSON files of query results, valid only for the source fingerprint they were built from."""

    def __init__(
        self,
        directory: Path,
        ttl_seconds: float = DEFAULT_DISK_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dir = directory
        self._ttl = ttl_seconds
        self._clock = clock
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, key: CacheKey) -> Path:
        digest = hashlib.sha1("|".join(key).encode("utf-8")).hexdigest()[:16]
        return self._dir / f"{digest}.json"

    def get(
        self,
        date_range: DateRange,
        project_filter: str | None,
        fingerprint: str,
    ) -> UsageStatistics | None:
        path = self._path(cache_key(date_range, project_filter))
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.debug("Discarding unreadable cache file %s: %s", path, exc)
            path.unlink(missing_ok=True)
            return None
        if payload.get("fingerprint") != fingerprint:
            return None
        if self._clock() >= float(payload.get("expires_at", 0)):
            return None
        try:
            return UsageStatistics.model_validate(payload.get("statistics"))
        except ValidationError as exc:
            logger.debug("Discarding invalid cache file %s: %s", path, exc)
            path.unlink(missing_ok=True)
            return None

    def put(
        self,
        date_range: DateRange,
        project_filter: str | None,
        fingerprint: str,
        statistics: UsageStatistics,
    ) -> None:
        """Write one entry atomically (temp file then rename)."""
        now = self._clock()
        payload = {
            "fingerprint": fingerprint,
            "computed_at": now,
            "expires_at": now + self._ttl,
            "statistics": statistics.model_dump(mode="json"),
        }
        path = self._path(cache_key(date_range, project_filter))
        self._dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(f".{os.getpid()}.tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        tmp.replace(path)

    def schedule_put(
        self,
        date_range: DateRange,
        project_filter: str | None,
        fingerprint: str,
        statistics: UsageStatistics,
    ) -> asyncio.Task[None]:
        """Write in a worker thread without making the caller wait."""
        snapshot = statistics.model_copy(deep=True)
        task = asyncio.create_task(
            asyncio.to_thread(self.put, date_range, project_filter, fingerprint, snapshot)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        task.add_done_callback(_log_write_failure)
        return task

    async def drain(self) -> None:
        """Wait for scheduled writes to finish."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def invalidate_all(self) -> None:
        if not self._dir.is_dir():
            return
        for path in self._dir.glob("*.json"):
            try:
                path.unlink()
            except OSError as exc:
                logger.warning("Could not remove cache file %s: %s", path, exc)

    def __len__(self) -> int:
        if not self._dir.is_dir():
            return 0
        return sum(1 for _ in self._dir.glob("*.json"))


def _log_write_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Disk cache write failed: %s", exc)
