"""Fold deduplicated usage entries into per-date, per-model and per-project summaries."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ccstats.models.statistics import (
    DEFAULT_MAX_PLAUSIBLE_REQUEST_COST,
    DEFAULT_MIN_PLAUSIBLE_REQUEST_COST,
    DailyStatistic,
    DateRange,
    ModelStatistic,
    ProjectStatistic,
    UsageStatistics,
    average_cost_per_request,
)
from ccstats.models.usage import UsageEntry


def isoformat_utc(timestamp: datetime) -> str:
    """Fixed-width UTC ISO string so stored timestamps sort lexicographically."""
    return timestamp.astimezone(UTC).isoformat(timespec="microseconds")


@dataclass
class _Bucket:
    """Running sums and identity sets for one group."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost: float = 0.0
    sessions: set[str] = field(default_factory=set)
    request_ids: set[str] = field(default_factory=set)
    anonymous_requests: int = 0
    effective_requests: int = 0
    models: set[str] = field(default_factory=set)
    last_used: str = ""

    def add(self, entry: UsageEntry) -> None:
        self.input_tokens += entry.input_tokens
        self.output_tokens += entry.output_tokens
        self.cache_creation_tokens += entry.cache_creation_tokens
        self.cache_read_tokens += entry.cache_read_tokens
        self.total_cost += entry.cost
        if entry.session_id:
            self.sessions.add(entry.session_id)
        if entry.request_id:
            self.request_ids.add(entry.request_id)
        else:
            self.anonymous_requests += 1
        if entry.cost > 0:
            self.effective_requests += 1
        self.models.add(entry.model)
        stamp = isoformat_utc(entry.timestamp)
        if stamp > self.last_used:
            self.last_used = stamp

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def session_count(self) -> int:
        return len(self.sessions)

    @property
    def request_count(self) -> int:
        return len(self.request_ids) + self.anonymous_requests

    def totals(self) -> dict[str, int | float]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "total_cost": self.total_cost,
            "session_count": self.session_count,
            "request_count": self.request_count,
            "effective_request_count": self.effective_requests,
        }


@dataclass
class AggregateSummary:
    """Grouped summaries for one ingestion window."""

    by_date: dict[str, _Bucket] = field(default_factory=dict)
    by_model: dict[str, _Bucket] = field(default_factory=dict)
    by_project: dict[str, _Bucket] = field(default_factory=dict)
    totals: _Bucket = field(default_factory=_Bucket)
    project_names: dict[str, str] = field(default_factory=dict)
    min_plausible: float = DEFAULT_MIN_PLAUSIBLE_REQUEST_COST
    max_plausible: float = DEFAULT_MAX_PLAUSIBLE_REQUEST_COST

    @property
    def touched_dates(self) -> set[str]:
        return set(self.by_date)

    @property
    def touched_models(self) -> set[str]:
        return set(self.by_model)

    @property
    def touched_projects(self) -> set[str]:
        return set(self.by_project)

    @property
    def average_cost_per_request(self) -> float:
        return average_cost_per_request(
            self.totals.total_cost,
            self.totals.effective_requests,
            min_plausible=self.min_plausible,
            max_plausible=self.max_plausible,
        )

    def to_statistics(self) -> UsageStatistics:
        """Convert to the public statistics model, ordered as storage queries are."""
        totals = self.totals
        by_date = [
            DailyStatistic(date=key, models_used=sorted(bucket.models), **bucket.totals())
            for key, bucket in sorted(self.by_date.items())
        ]
        by_model = [
            ModelStatistic(model=key, **bucket.totals())
            for key, bucket in sorted(
                self.by_model.items(), key=lambda item: (-item[1].total_cost, item[0])
            )
        ]
        by_project = [
            ProjectStatistic(
                project_path=key,
                project_name=self.project_names.get(key, ""),
                last_used=bucket.last_used,
                **bucket.totals(),
            )
            for key, bucket in sorted(
                self.by_project.items(), key=lambda item: (-item[1].total_cost, item[0])
            )
        ]
        return UsageStatistics(
            total_cost=totals.total_cost,
            total_input_tokens=totals.input_tokens,
            total_output_tokens=totals.output_tokens,
            total_cache_creation_tokens=totals.cache_creation_tokens,
            total_cache_read_tokens=totals.cache_read_tokens,
            total_sessions=totals.session_count,
            total_requests=totals.request_count,
            effective_request_count=totals.effective_requests,
            by_date=by_date,
            by_model=by_model,
            by_project=by_project,
        )


class Aggregator:
    """Accumulates entries into an ``AggregateSummary``.

    Output does not depend on input order: sums and set unions commute.
    """

    def __init__(
        self,
        *,
        min_plausible: float = DEFAULT_MIN_PLAUSIBLE_REQUEST_COST,
        max_plausible: float = DEFAULT_MAX_PLAUSIBLE_REQUEST_COST,
    ) -> None:
        self.summary = AggregateSummary(min_plausible=min_plausible, max_plausible=max_plausible)

    def add(self, entry: UsageEntry) -> None:
        summary = self.summary
        summary.totals.add(entry)
        summary.by_date.setdefault(entry.date_string, _Bucket()).add(entry)
        summary.by_model.setdefault(entry.model, _Bucket()).add(entry)
        summary.by_project.setdefault(entry.project_path, _Bucket()).add(entry)
        summary.project_names.setdefault(entry.project_path, entry.project_name)

    def add_all(self, entries: Iterable[UsageEntry]) -> AggregateSummary:
        for entry in entries:
            self.add(entry)
        return self.summary


def aggregate(
    entries: Iterable[UsageEntry],
    *,
    min_plausible: float = DEFAULT_MIN_PLAUSIBLE_REQUEST_COST,
    max_plausible: float = DEFAULT_MAX_PLAUSIBLE_REQUEST_COST,
) -> AggregateSummary:
    return Aggregator(min_plausible=min_plausible, max_plausible=max_plausible).add_all(entries)


def filter_entries(
    entries: Iterable[UsageEntry],
    date_range: DateRange,
    project_filter: str | None = None,
) -> list[UsageEntry]:
    """Entries inside ``date_range`` whose project path contains ``project_filter``."""
    return [
        entry
        for entry in entries
        if date_range.contains(entry.date_string)
        and (not project_filter or project_filter in entry.project_path)
    ]
