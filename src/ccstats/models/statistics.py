"""Aggregate statistics models."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_MIN_PLAUSIBLE_REQUEST_COST = 0.000001
DEFAULT_MAX_PLAUSIBLE_REQUEST_COST = 10.0


class DateRange(BaseModel):
    """Inclusive range of local calendar dates. ``None`` bounds are open."""

    model_config = ConfigDict(frozen=True)

    start: date | None = None
    end: date | None = None

    @classmethod
    def all_time(cls) -> DateRange:
        return cls()

    @classmethod
    def last_days(cls, days: int, *, today: date | None = None) -> DateRange:
        """The last ``days`` calendar days, today included."""
        if days < 1:
            msg = f"days must be positive, got {days}"
            raise ValueError(msg)
        end = today or date.today()
        return cls(start=end - timedelta(days=days - 1), end=end)

    @property
    def is_unbounded(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, date_string: str) -> bool:
        if self.start is not None and date_string < self.start.isoformat():
            return False
        return not (self.end is not None and date_string > self.end.isoformat())

    @property
    def cache_key(self) -> str:
        start = self.start.isoformat() if self.start else "*"
        end = self.end.isoformat() if self.end else "*"
        return f"{start}..{end}"


class TokenTotals(BaseModel):
    """Summed token categories, cost and cardinalities shared by all aggregates."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost: float = 0.0
    session_count: int = 0
    request_count: int = 0
    effective_request_count: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )


class DailyStatistic(TokenTotals):
    """Usage for one local calendar date."""

    date: str
    models_used: list[str] = Field(default_factory=list)


class ModelStatistic(TokenTotals):
    """Usage for one model identifier."""

    model: str


class ProjectStatistic(TokenTotals):
    """Usage for one project path."""

    project_path: str
    project_name: str = ""
    last_used: str = ""


class UsageStatistics(BaseModel):
    """Totals plus per-date, per-model and per-project breakdowns."""

    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_creation_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_sessions: int = 0
    total_requests: int = 0
    effective_request_count: int = 0
    by_date: list[DailyStatistic] = Field(default_factory=list)
    by_model: list[ModelStatistic] = Field(default_factory=list)
    by_project: list[ProjectStatistic] = Field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return (
            self.total_input_tokens
            + self.total_output_tokens
            + self.total_cache_creation_tokens
            + self.total_cache_read_tokens
        )

    @property
    def is_empty(self) -> bool:
        return self.total_requests == 0 and self.total_sessions == 0

    def average_cost_per_request(
        self,
        *,
        min_plausible: float = DEFAULT_MIN_PLAUSIBLE_REQUEST_COST,
        max_plausible: float = DEFAULT_MAX_PLAUSIBLE_REQUEST_COST,
    ) -> float:
        return average_cost_per_request(
            self.total_cost,
            self.effective_request_count,
            min_plausible=min_plausible,
            max_plausible=max_plausible,
        )

    @property
    def average_cost_per_session(self) -> float:
        if self.total_sessions <= 0:
            return 0.0
        return self.total_cost / self.total_sessions


def average_cost_per_request(
    total_cost: float,
    billable_requests: int,
    *,
    min_plausible: float = DEFAULT_MIN_PLAUSIBLE_REQUEST_COST,
    max_plausible: float = DEFAULT_MAX_PLAUSIBLE_REQUEST_COST,
) -> float:
    """Average cost over billable (cost > 0) requests.

    Values outside ``[min_plausible, max_plausible]`` are logged as anomalies
    but still returned.
    """
    if billable_requests <= 0:
        return 0.0
    average = total_cost / billable_requests
    if average > max_plausible:
        logger.warning(
            "Average cost per request is implausibly high: $%.6f (cost=$%.6f, requests=%d)",
            average,
            total_cost,
            billable_requests,
        )
    elif average < min_plausible:
        logger.warning(
            "Average cost per request is implausibly low: $%.6f (cost=$%.6f, requests=%d)",
            average,
            total_cost,
            billable_requests,
        )
    return average


class SessionSortOrder(StrEnum):
    """Orderings for per-project statistics."""

    COST_DESCENDING = "cost-desc"
    COST_ASCENDING = "cost-asc"
    DATE_DESCENDING = "date-desc"
    DATE_ASCENDING = "date-asc"
    NAME_ASCENDING = "name-asc"
    NAME_DESCENDING = "name-desc"

    @property
    def field_name(self) -> str:
        match self:
            case SessionSortOrder.COST_DESCENDING | SessionSortOrder.COST_ASCENDING:
                return "total_cost"
            case SessionSortOrder.DATE_DESCENDING | SessionSortOrder.DATE_ASCENDING:
                return "last_used"
            case _:
                return "project_name"

    @property
    def descending(self) -> bool:
        return self.value.endswith("-desc")


def sort_projects(
    projects: Iterable[ProjectStatistic], order: SessionSortOrder
) -> list[ProjectStatistic]:
    """Sort project rows by ``order``; ties keep project path order."""
    by_path = sorted(projects, key=lambda p: p.project_path)
    return sorted(by_path, key=lambda p: getattr(p, order.field_name), reverse=order.descending)
