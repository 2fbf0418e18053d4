"""Shared fixtures for ccstats tests."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from helpers import DAY_TWO, OPUS, usage_line, write_log

from ccstats.config import Config
from ccstats.data.db import Database
from ccstats.services.pricing import PricingTable


@pytest.fixture
def pricing() -> PricingTable:
    return PricingTable()


@pytest.fixture
def tmp_claude_dir(tmp_path: Path) -> Path:
    """A Claude directory with two projects and a handful of records.

    After deduplication: 3 entries, 2 sessions, cost 0.0432.
    """
    claude_dir = tmp_path / ".claude"
    projects = claude_dir / "projects"
    write_log(
        projects / "-tmp-test-project" / "session-001.jsonl",
        [
            usage_line(request_id="req-1", input_tokens=1000, output_tokens=500),
            usage_line(
                request_id="req-2",
                model=OPUS,
                input_tokens=200,
                output_tokens=100,
                cache_creation_tokens=1000,
                cache_read_tokens=2000,
            ),
            usage_line(request_id="req-1", input_tokens=1000, output_tokens=500),
            json.dumps({"type": "user", "message": {"role": "user", "content": "hi"}}),
            "{not json",
        ],
    )
    write_log(
        projects / "-tmp-other-app" / "session-002.jsonl",
        [
            usage_line(
                request_id="req-3",
                session_id="session-2",
                input_tokens=100,
                output_tokens=10,
                timestamp=DAY_TWO,
            ),
        ],
    )
    return claude_dir


@pytest.fixture
def test_config(tmp_claude_dir: Path, tmp_path: Path) -> Config:
    """Config pointing at temporary test data."""
    return Config(claude_dir=tmp_claude_dir, cache_dir=tmp_path / "cache")


@pytest.fixture
async def test_db(tmp_path: Path) -> AsyncGenerator[Database]:
    """A fresh file-backed test database."""
    db = Database(tmp_path / "test.db")
    await db.__aenter__()
    yield db  # type: ignore[misc]
    await db.__aexit__(None, None, None)


@pytest.fixture
async def in_memory_db() -> AsyncGenerator[Database]:
    """SQLite in-memory database for fast unit tests."""
    db = Database(Path(":memory:"))
    await db.__aenter__()
    yield db  # type: ignore[misc]
    await db.__aexit__(None, None, None)
