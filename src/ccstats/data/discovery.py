"""Locate Claude Code usage logs below a projects directory."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from ccstats.models.sync import FileFingerprint

logger = logging.getLogger(__name__)

LOG_SUFFIX = ".jsonl"


@dataclass(frozen=True, slots=True)
class LogFile:
    """A discovered log file with the metadata used for change detection."""

    path: Path
    project_path: str
    size: int
    mtime_ns: int

    @property
    def fingerprint(self) -> FileFingerprint:
        return FileFingerprint(size=self.size, mtime_ns=self.mtime_ns)


@dataclass
class LocateResult:
    """Files found by a scan plus ``(path, reason)`` for everything skipped."""

    files: list[LogFile] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)

    @property
    def skip_reasons(self) -> list[str]:
        return [f"{path}: {reason}" for path, reason in self.skipped]


def _decode_project_id(project_id: str) -> str:
    """Decode a Claude project directory name '-Users-foo-src-app' -> '/Users/foo/src/app'."""
    if not project_id:
        return ""
    return project_id.replace("-", "/")


def project_path_for(root: Path, file_path: Path) -> str:
    """Project path for a log file: the decoded top-level directory below ``root``."""
    try:
        relative = file_path.relative_to(root)
    except ValueError:
        return str(file_path.parent)
    if len(relative.parts) < 2:
        return ""
    return _decode_project_id(relative.parts[0])


def locate_log_files(root: Path) -> LocateResult:
    """Recursively find ``*.jsonl`` files below ``root`` in a stable order.

    Unreadable directories and files are recorded in ``skipped``; the scan
    always returns whatever it could read.
    """
    result = LocateResult()
    if not root.is_dir():
        logger.info("Claude projects directory not found: %s", root)
        result.skipped.append((str(root), "directory not found"))
        return result

    def on_error(exc: OSError) -> None:
        path = exc.filename or str(root)
        logger.warning("Skipping unreadable directory %s: %s", path, exc.strerror or exc)
        result.skipped.append((str(path), exc.strerror or str(exc)))

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames.sort()
        for name in sorted(filenames):
            if not name.endswith(LOG_SUFFIX):
                continue
            path = Path(dirpath) / name
            try:
                stat = path.stat()
            except OSError as exc:
                logger.warning("Skipping unreadable file %s: %s", path, exc)
                result.skipped.append((str(path), exc.strerror or str(exc)))
                continue
            if not os.access(path, os.R_OK):
                result.skipped.append((str(path), "permission denied"))
                continue
            result.files.append(
                LogFile(
                    path=path,
                    project_path=project_path_for(root, path),
                    size=stat.st_size,
                    mtime_ns=stat.st_mtime_ns,
                )
            )
    return result
