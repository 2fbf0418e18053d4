"""Error taxonomy for the ingestion and sync pipeline."""

from __future__ import annotations

from pathlib import Path


class UsageStatsError(Exception):
    """Base class for ccstats errors."""


class FileAccessError(UsageStatsError):
    """A log directory or file could not be read. Callers skip it and continue."""

    def __init__(self, path: Path | str, reason: str) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Cannot read {self.path}: {reason}")


class ParseError(UsageStatsError):
    """A log line is not a well-formed record."""

    def __init__(self, reason: str, line_number: int | None = None) -> None:
        self.reason = reason
        self.line_number = line_number
        location = f"line {line_number}: " if line_number is not None else ""
        super().__init__(f"{location}{reason}")


class StorageError(UsageStatsError):
    """A storage transaction failed; the previously committed state is intact."""


class SyncConflictError(UsageStatsError):
    """A sync was requested in a way that conflicts with the one in flight."""


class SyncPreemptedError(UsageStatsError):
    """An incremental sync yielded to a full sync at a transaction boundary."""


class UnknownModelWarning(UserWarning):
    """A model has no pricing entry; its cost is counted as zero."""
