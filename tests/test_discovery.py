"""Tests for log file discovery."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from helpers import usage_line, write_log

from ccstats.data.discovery import locate_log_files, project_path_for


def test_locates_jsonl_files_in_sorted_order(tmp_claude_dir: Path) -> None:
    root = tmp_claude_dir / "projects"
    write_log(root / "-tmp-test-project" / "notes.txt", ["ignored"])
    write_log(root / "-tmp-test-project" / "nested" / "sub.jsonl", [usage_line()])

    result = locate_log_files(root)

    relative = [f.path.relative_to(root).as_posix() for f in result.files]
    assert relative == [
        "-tmp-other-app/session-002.jsonl",
        "-tmp-test-project/session-001.jsonl",
        "-tmp-test-project/nested/sub.jsonl",
    ]
    assert result.skipped == []


def test_log_file_metadata(tmp_claude_dir: Path) -> None:
    root = tmp_claude_dir / "projects"
    result = locate_log_files(root)
    first = result.files[0]
    stat = first.path.stat()
    assert first.size == stat.st_size
    assert first.mtime_ns == stat.st_mtime_ns
    assert first.fingerprint.size == stat.st_size
    assert first.project_path == "/tmp/other/app"


def test_missing_root_is_reported(tmp_path: Path) -> None:
    result = locate_log_files(tmp_path / "nope")
    assert result.files == []
    assert len(result.skipped) == 1
    assert "directory not found" in result.skip_reasons[0]


@pytest.mark.skipif(os.geteuid() == 0, reason="root can read everything")
def test_unreadable_directory_is_skipped(tmp_claude_dir: Path) -> None:
    root = tmp_claude_dir / "projects"
    locked = root / "-tmp-locked"
    write_log(locked / "a.jsonl", [usage_line()])
    locked.chmod(0)
    try:
        result = locate_log_files(root)
    finally:
        locked.chmod(0o755)
    assert len(result.files) == 2
    assert any(path.endswith("-tmp-locked") for path, _ in result.skipped)


def test_project_path_for(tmp_path: Path) -> None:
    root = tmp_path / "projects"
    assert project_path_for(root, root / "-Users-foo-app" / "x.jsonl") == "/Users/foo/app"
    assert project_path_for(root, root / "-Users-foo-app" / "deep" / "x.jsonl") == "/Users/foo/app"
    assert project_path_for(root, root / "loose.jsonl") == ""
