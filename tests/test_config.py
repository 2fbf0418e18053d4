"""Tests for configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from ccstats.config import Config, SyncInterval


class TestSyncInterval:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("5m", SyncInterval.FIVE_MINUTES),
            ("30M", SyncInterval.THIRTY_MINUTES),
            (" 1h ", SyncInterval.ONE_HOUR),
            ("4h", SyncInterval.FOUR_HOURS),
            ("two_hours", SyncInterval.TWO_HOURS),
        ],
    )
    def test_parse(self, text: str, expected: SyncInterval) -> None:
        assert SyncInterval.parse(text) is expected

    def test_parse_rejects_unknown(self) -> None:
        with pytest.raises(ValueError, match="choose one of 5m, 15m, 30m, 1h, 2h, 4h"):
            SyncInterval.parse("7m")

    def test_values_are_seconds(self) -> None:
        assert int(SyncInterval.FIFTEEN_MINUTES) == 900
        assert float(SyncInterval.TWO_HOURS) == 7200.0
        assert [i.display_name for i in SyncInterval] == ["5m", "15m", "30m", "1h", "2h", "4h"]


def test_config_paths(tmp_path: Path) -> None:
    config = Config(claude_dir=tmp_path / ".claude", cache_dir=tmp_path / "cache")
    assert config.projects_dir == tmp_path / ".claude" / "projects"
    assert config.db_path == tmp_path / "cache" / "usage.db"
    assert config.disk_cache_dir == tmp_path / "cache" / "query-cache"
    assert config.sync_interval is SyncInterval.ONE_HOUR
