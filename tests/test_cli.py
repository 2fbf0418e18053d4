"""CLI tests."""

from __future__ import annotations

from pathlib import Path

import pytest
from result import Err, Ok, Result
from typer.testing import CliRunner

from ccstats.cli import app, format_projects, format_statistics, show_statistics
from ccstats.config import SyncInterval
from ccstats.models import DateRange, ModelStatistic, ProjectStatistic, UsageStatistics


def dirs(claude_dir: Path, tmp_path: Path) -> list[str]:
    return ["--claude-dir", str(claude_dir), "--cache-dir", str(tmp_path / "cli-cache")]


def test_no_args_shows_help() -> None:
    result = CliRunner().invoke(app, [])
    assert "stats" in result.output
    assert "sync" in result.output


def test_sync_then_stats(tmp_claude_dir: Path, tmp_path: Path) -> None:
    runner = CliRunner()
    synced = runner.invoke(app, [*dirs(tmp_claude_dir, tmp_path), "sync", "--full"])
    assert synced.exit_code == 0, synced.output
    assert "Done!" in synced.output
    assert (tmp_path / "cli-cache" / "usage.db").exists()

    shown = runner.invoke(app, [*dirs(tmp_claude_dir, tmp_path), "stats"])
    assert shown.exit_code == 0, shown.output
    assert "$0.0432" in shown.output
    assert "Requests:          3" in shown.output

    filtered = runner.invoke(app, [*dirs(tmp_claude_dir, tmp_path), "stats", "--project", "other"])
    assert filtered.exit_code == 0
    assert "Requests:          1" in filtered.output


def test_incremental_sync_command(tmp_claude_dir: Path, tmp_path: Path) -> None:
    result = CliRunner().invoke(app, [*dirs(tmp_claude_dir, tmp_path), "sync"])
    assert result.exit_code == 0, result.output
    assert "Done!" in result.output


def test_stats_without_logs(tmp_path: Path) -> None:
    result = CliRunner().invoke(app, [*dirs(tmp_path / "empty", tmp_path), "stats", "--days", "7"])
    assert result.exit_code == 0
    assert "No usage recorded." in result.output


def test_watch_rejects_unknown_interval(tmp_path: Path) -> None:
    result = CliRunner().invoke(app, [*dirs(tmp_path, tmp_path), "watch", "--interval", "7m"])
    assert result.exit_code == 2


def test_watch_passes_interval(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    seen: dict[str, object] = {}

    async def fake_watch(config) -> None:  # type: ignore[no-untyped-def]
        seen["interval"] = config.sync_interval

    monkeypatch.setattr("ccstats.cli._do_watch", fake_watch)
    result = CliRunner().invoke(app, [*dirs(tmp_path, tmp_path), "watch", "--interval", "15m"])
    assert result.exit_code == 0
    assert seen["interval"] is SyncInterval.FIFTEEN_MINUTES


def test_watch_with_auto_sync_disabled_starts_no_loop(
    tmp_claude_dir: Path, tmp_path: Path
) -> None:
    result = CliRunner().invoke(
        app, [*dirs(tmp_claude_dir, tmp_path), "--no-auto-sync", "watch", "--interval", "5m"]
    )
    assert result.exit_code == 0, result.output
    assert "Auto sync is disabled" in result.output
    assert "Watching" not in result.output


def test_auto_sync_flag_sets_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    seen: list[bool] = []

    async def fake_watch(config) -> None:  # type: ignore[no-untyped-def]
        seen.append(config.auto_sync_enabled)

    monkeypatch.setattr("ccstats.cli._do_watch", fake_watch)
    runner = CliRunner()
    runner.invoke(app, [*dirs(tmp_path, tmp_path), "watch"])
    runner.invoke(app, [*dirs(tmp_path, tmp_path), "--no-auto-sync", "watch"])
    assert seen == [True, False]


def test_projects_command(tmp_claude_dir: Path, tmp_path: Path) -> None:
    runner = CliRunner()
    runner.invoke(app, [*dirs(tmp_claude_dir, tmp_path), "sync", "--full"])
    result = runner.invoke(app, [*dirs(tmp_claude_dir, tmp_path), "projects", "--sort", "name-asc"])
    assert result.exit_code == 0, result.output
    lines = [line for line in result.output.splitlines() if "last used" in line]
    assert [line.split()[0] for line in lines] == ["app", "project"]
    assert "last used 2025-01-16" in lines[0]


def test_projects_rejects_unknown_order(tmp_path: Path) -> None:
    result = CliRunner().invoke(app, [*dirs(tmp_path, tmp_path), "projects", "--sort", "size"])
    assert result.exit_code == 2


class FakeService:
    def __init__(self, result: Result[UsageStatistics, str]) -> None:
        self.result = result
        self.calls: list[tuple[DateRange | None, str | None]] = []

    async def get_statistics(
        self, date_range: DateRange | None = None, project_filter: str | None = None
    ) -> Result[UsageStatistics, str]:
        self.calls.append((date_range, project_filter))
        return self.result


@pytest.mark.asyncio
async def test_show_statistics_reports_errors(capsys: pytest.CaptureFixture[str]) -> None:
    service = FakeService(Err("Statistics query failed: locked"))
    assert await show_statistics(service, DateRange.all_time()) is False  # type: ignore[arg-type]
    assert "locked" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_show_statistics_passes_filters(capsys: pytest.CaptureFixture[str]) -> None:
    service = FakeService(Ok(UsageStatistics()))
    week = DateRange.last_days(7)
    assert await show_statistics(service, week, "app") is True  # type: ignore[arg-type]
    assert service.calls == [(week, "app")]
    assert "No usage recorded." in capsys.readouterr().out


def test_format_statistics() -> None:
    stats = UsageStatistics(
        total_cost=1.5,
        total_input_tokens=1000,
        total_output_tokens=2000,
        total_sessions=1,
        total_requests=3,
        effective_request_count=2,
        by_model=[ModelStatistic(model="claude-4-opus", total_cost=1.5, input_tokens=1000)],
    )
    text = format_statistics(stats)
    assert "Total cost:        $1.5000" in text
    assert "Total tokens:      3,000" in text
    assert "Requests:          3 (2 billable)" in text
    assert "Avg cost/request:  $0.7500" in text
    assert "claude-4-opus" in text
    assert "By project:" not in text


def test_format_projects() -> None:
    rows = [
        ProjectStatistic(
            project_path="/work/shop",
            project_name="shop",
            total_cost=0.25,
            session_count=3,
            last_used="2025-01-15T12:00:00.000000+00:00",
        ),
        ProjectStatistic(project_path="/work/idle", project_name="idle"),
    ]
    text = format_projects(rows)
    assert "shop" in text
    assert "$    0.2500" in text
    assert "3 sessions  last used 2025-01-15" in text
    assert text.splitlines()[1].endswith("last used -")
    assert format_projects([]) == "No usage recorded."
