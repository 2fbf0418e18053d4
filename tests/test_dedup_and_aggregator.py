"""Tests for per-pass deduplication and aggregation."""

from __future__ import annotations

import logging
import random
from datetime import UTC, date, datetime

import pytest

from ccstats.data.aggregator import Aggregator, aggregate, filter_entries, isoformat_utc
from ccstats.data.dedup import Deduplicator, deduplicate
from ccstats.models import DateRange, UsageEntry, local_date_string

NOON = datetime(2025, 1, 15, 12, tzinfo=UTC)
NEXT_NOON = datetime(2025, 1, 16, 12, tzinfo=UTC)


def make_entry(
    request_id: str | None = "r1",
    *,
    session_id: str | None = "s1",
    model: str = "claude-4-sonnet",
    project_path: str = "/tmp/app",
    timestamp: datetime = NOON,
    input_tokens: int = 10,
    output_tokens: int = 5,
    cost: float = 0.01,
) -> UsageEntry:
    return UsageEntry(
        timestamp=timestamp,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost=cost,
        session_id=session_id,
        project_path=project_path,
        request_id=request_id,
    )


class TestDeduplicator:
    def test_first_occurrence_wins(self) -> None:
        first = make_entry("r1", input_tokens=1)
        second = make_entry("r1", input_tokens=2)
        result = deduplicate([first, second, make_entry("r2")])
        assert [e.input_tokens for e in result.entries] == [1, 10]
        assert result.duplicates == 1

    def test_entries_without_request_id_are_never_duplicates(self) -> None:
        result = deduplicate([make_entry(None), make_entry(None), make_entry("")])
        assert len(result.entries) == 3
        assert result.duplicates == 0

    def test_idempotent(self) -> None:
        entries = [make_entry(f"r{i % 4}", input_tokens=i) for i in range(10)]
        once = deduplicate(entries).entries
        twice = deduplicate(once).entries
        assert once == twice

    def test_state_spans_one_pass(self) -> None:
        dedup = Deduplicator()
        assert dedup.add(make_entry("r1"))
        assert not dedup.add(make_entry("r1"))
        assert dedup.deduplicate([make_entry("r1"), make_entry("r2")]).duplicates == 1
        assert dedup.duplicates == 2
        assert dedup.request_ids == frozenset({"r1", "r2"})


class TestAggregator:
    def test_token_conservation(self) -> None:
        entries = [
            make_entry("a", input_tokens=3, output_tokens=4),
            make_entry("b", model="claude-4-opus", input_tokens=5, output_tokens=6),
            make_entry("c", project_path="/tmp/other", timestamp=NEXT_NOON, input_tokens=7),
        ]
        summary = aggregate(entries)
        expected = sum(e.total_tokens for e in entries)
        assert summary.totals.total_tokens == expected
        for groups in (summary.by_date, summary.by_model, summary.by_project):
            assert sum(bucket.total_tokens for bucket in groups.values()) == expected

    def test_cardinalities_are_set_sizes(self) -> None:
        entries = [
            make_entry("a", session_id="s1"),
            make_entry("b", session_id="s1"),
            make_entry("c", session_id="s2"),
            make_entry(None, session_id=None),
        ]
        stats = aggregate(entries).to_statistics()
        assert stats.total_sessions == 2
        assert stats.total_requests == 4

    def test_effective_request_count_excludes_zero_cost(self) -> None:
        entries = [make_entry("a", cost=0.5), make_entry("b", cost=0.0)]
        stats = aggregate(entries).to_statistics()
        assert stats.total_requests == 2
        assert stats.effective_request_count == 1
        assert stats.average_cost_per_request() == pytest.approx(0.5)

    def test_average_cost_with_no_billable_requests(self) -> None:
        stats = aggregate([make_entry("a", cost=0.0)]).to_statistics()
        assert stats.average_cost_per_request() == 0.0

    def test_implausible_average_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        summary = aggregate([make_entry("a", cost=50.0)])
        with caplog.at_level(logging.WARNING):
            assert summary.average_cost_per_request == 50.0
        assert "implausibly high" in caplog.text

    def test_plausibility_bounds_are_configurable(self, caplog: pytest.LogCaptureFixture) -> None:
        summary = aggregate([make_entry("a", cost=50.0)], max_plausible=100.0)
        with caplog.at_level(logging.WARNING):
            assert summary.average_cost_per_request == 50.0
        assert "implausibly" not in caplog.text

    def test_grouping_and_touched_keys(self) -> None:
        entries = [
            make_entry("a"),
            make_entry("b", model="claude-4-opus", cost=0.5),
            make_entry("c", project_path="/tmp/other", timestamp=NEXT_NOON),
        ]
        summary = aggregate(entries)
        assert summary.touched_dates == {local_date_string(NOON), local_date_string(NEXT_NOON)}
        assert summary.touched_models == {"claude-4-sonnet", "claude-4-opus"}
        assert summary.touched_projects == {"/tmp/app", "/tmp/other"}

        stats = summary.to_statistics()
        assert [m.model for m in stats.by_model] == ["claude-4-opus", "claude-4-sonnet"]
        assert [d.date for d in stats.by_date] == sorted(summary.touched_dates)
        assert stats.by_date[0].models_used == ["claude-4-opus", "claude-4-sonnet"]
        app = next(p for p in stats.by_project if p.project_path == "/tmp/app")
        assert app.project_name == "app"
        assert app.last_used == isoformat_utc(NOON)

    def test_order_independent(self) -> None:
        entries = [
            make_entry(f"r{i}", session_id=f"s{i % 3}", model=m, timestamp=t, cost=0.01 * i)
            for i, (m, t) in enumerate(
                [("claude-4-sonnet", NOON), ("claude-4-opus", NEXT_NOON)] * 5
            )
        ]
        shuffled = entries[:]
        random.Random(7).shuffle(shuffled)
        left = aggregate(entries).to_statistics()
        right = aggregate(shuffled).to_statistics()
        assert left.total_requests == right.total_requests
        assert left.total_cost == pytest.approx(right.total_cost)
        assert [d.date for d in left.by_date] == [d.date for d in right.by_date]
        assert [m.model for m in left.by_model] == [m.model for m in right.by_model]

    def test_incremental_add(self) -> None:
        aggregator = Aggregator()
        aggregator.add(make_entry("a"))
        aggregator.add_all([make_entry("b")])
        assert aggregator.summary.totals.request_count == 2


class TestFilterEntries:
    def test_date_range_and_project_substring(self) -> None:
        entries = [
            make_entry("a", project_path="/work/alpha"),
            make_entry("b", project_path="/work/beta", timestamp=NEXT_NOON),
        ]
        day_one = date.fromisoformat(local_date_string(NOON))
        only_first_day = DateRange(start=day_one, end=day_one)
        assert [e.request_id for e in filter_entries(entries, only_first_day)] == ["a"]
        assert [e.request_id for e in filter_entries(entries, DateRange.all_time(), "beta")] == ["b"]
        assert filter_entries(entries, DateRange.all_time(), "gamma") == []
