"""Shared row-to-value conversion helpers for repository queries."""

from __future__ import annotations

from collections.abc import Mapping


def row_str(row: Mapping[str, object], key: str, default: str = "") -> str:
    """Extract a string value from a database row dict."""
    v = row.get(key, default)
    return str(v) if v else default


def row_int(row: Mapping[str, object], key: str) -> int:
    """Extract an integer value from a database row dict. NULL sums become 0."""
    v = row.get(key, 0)
    if isinstance(v, bool):
        return int(v)
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v)
    if isinstance(v, str):
        try:
            return int(v)
        except ValueError:
            return 0
    return 0


def row_float(row: Mapping[str, object], key: str) -> float:
    v = row.get(key, 0.0)
    if isinstance(v, int | float) and not isinstance(v, bool):
        return float(v)
    return 0.0


def row_totals(row: Mapping[str, object]) -> dict[str, int | float]:
    """The token, cost and cardinality columns shared by every aggregate row."""
    return {
        "input_tokens": row_int(row, "input_tokens"),
        "output_tokens": row_int(row, "output_tokens"),
        "cache_creation_tokens": row_int(row, "cache_creation_tokens"),
        "cache_read_tokens": row_int(row, "cache_read_tokens"),
        "total_cost": row_float(row, "total_cost"),
        "session_count": row_int(row, "session_count"),
        "request_count": row_int(row, "request_count"),
        "effective_request_count": row_int(row, "effective_request_count"),
    }
