"""Sync state, progress and result models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class SyncKind(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncPhase(StrEnum):
    IDLE = "idle"
    SCANNING = "scanning"
    PARSING = "parsing"
    WRITING = "writing"
    AGGREGATING = "aggregating"
    ERROR = "error"


class SyncStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    PREEMPTED = "preempted"
    CANCELLED = "cancelled"


class FileFingerprint(BaseModel):
    """Content fingerprint of a log file: size plus modification time."""

    size: int
    mtime_ns: int


class SyncState(BaseModel):
    """Persisted record of what the last successful sync ingested."""

    last_sync_timestamp: datetime | None = None
    files: dict[str, FileFingerprint] = Field(default_factory=dict)
    in_progress: bool = False

    @property
    def is_empty(self) -> bool:
        return self.last_sync_timestamp is None and not self.files


class SyncProgress(BaseModel):
    """A progress event: fraction in [0, 1] plus a human-readable phase note."""

    kind: SyncKind
    phase: SyncPhase
    fraction: float = Field(ge=0.0, le=1.0)
    description: str = ""


class SyncResult(BaseModel):
    """Outcome of one sync pass."""

    kind: SyncKind
    status: SyncStatus = SyncStatus.COMPLETED
    files_scanned: int = 0
    files_processed: int = 0
    files_skipped: int = 0
    files_removed: int = 0
    entries_parsed: int = 0
    entries_inserted: int = 0
    duplicates_removed: int = 0
    malformed_lines: int = 0
    skip_reasons: list[str] = Field(default_factory=list)
    error: str | None = None
    started_at: datetime
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is SyncStatus.COMPLETED

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def __str__(self) -> str:
        text = (
            f"{self.kind} sync {self.status}: files={self.files_processed}/{self.files_scanned} "
            f"removed={self.files_removed} entries={self.entries_inserted} "
            f"duplicates={self.duplicates_removed} malformed={self.malformed_lines} "
            f"in {self.duration_seconds:.2f}s"
        )
        if self.error:
            text += f" ({self.error})"
        return text
