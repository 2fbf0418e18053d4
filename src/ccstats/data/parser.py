"""Tolerant parser for Claude Code usage log lines."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Generator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from ccstats.errors import FileAccessError, ParseError
from ccstats.models.usage import UsageEntry

if TYPE_CHECKING:
    from ccstats.services.pricing import PricingTable

logger = logging.getLogger(__name__)

_Rule = tuple[str, ...]

# Candidate key paths per logical field, in priority order. Top-level
# spellings come first, then the nested "message" object.
_MODEL_RULES: tuple[_Rule, ...] = (("model",), ("message", "model"))
_USAGE_RULES: tuple[_Rule, ...] = (("usage",), ("message", "usage"))
_COST_RULES: tuple[_Rule, ...] = (("cost",), ("costUSD",), ("cost_usd",), ("message", "cost"))
_SESSION_RULES: tuple[_Rule, ...] = (
    ("sessionId",),
    ("session_id",),
    ("message", "sessionId"),
    ("message", "session_id"),
)
_REQUEST_RULES: tuple[_Rule, ...] = (
    ("requestId",),
    ("request_id",),
    ("message", "requestId"),
    ("message", "request_id"),
)
_MESSAGE_ID_RULES: tuple[_Rule, ...] = (("message_id",), ("messageId",), ("message", "id"))
_TYPE_RULES: tuple[_Rule, ...] = (("type",), ("message_type",), ("messageType",))
_TIMESTAMP_RULES: tuple[_Rule, ...] = (("timestamp",), ("date",), ("message", "timestamp"))

# Keys inside a usage object.
_INPUT_RULES: tuple[_Rule, ...] = (("input_tokens",), ("inputTokens",))
_OUTPUT_RULES: tuple[_Rule, ...] = (("output_tokens",), ("outputTokens",))
_CACHE_CREATION_RULES: tuple[_Rule, ...] = (
    ("cache_creation_input_tokens",),
    ("cacheCreationInputTokens",),
    ("cache_creation_tokens",),
    ("cacheCreationTokens",),
)
_CACHE_READ_RULES: tuple[_Rule, ...] = (
    ("cache_read_input_tokens",),
    ("cacheReadInputTokens",),
    ("cache_read_tokens",),
    ("cacheReadTokens",),
)

# Largest value an SQLite INTEGER column holds.
_MAX_TOKENS = 2**63 - 1

NON_BILLABLE_MODELS = frozenset({"<synthetic>", "synthetic", "unknown"})


@dataclass
class FileParseStats:
    """Per-file line accounting."""

    lines: int = 0
    entries: int = 0
    skipped: int = 0
    malformed: int = 0

    def merge(self, other: FileParseStats) -> None:
        self.lines += other.lines
        self.entries += other.entries
        self.skipped += other.skipped
        self.malformed += other.malformed


def resolve_field(raw: dict[str, object], rules: tuple[_Rule, ...]) -> object:
    """Return the first non-null value found along the candidate key paths."""
    for rule in rules:
        value: object = raw
        for key in rule:
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(key)
        if value is not None:
            return value
    return None


def parse_usage_line(
    line: str,
    *,
    pricing: PricingTable,
    project_path: str = "",
    source_file: str = "",
    line_number: int | None = None,
) -> UsageEntry | None:
    """Parse one JSONL line.

    Returns ``None`` for well-formed records that are not billable and raises
    ``ParseError`` for lines that are not usable JSON records.
    """
    try:
        raw = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ParseError(f"invalid JSON: {exc.msg}", line_number) from exc
    if not isinstance(raw, dict):
        raise ParseError("record is not a JSON object", line_number)

    usage_raw = resolve_field(raw, _USAGE_RULES)
    usage = usage_raw if isinstance(usage_raw, dict) else {}
    input_tokens = _token_count(resolve_field(usage, _INPUT_RULES), line_number)
    output_tokens = _token_count(resolve_field(usage, _OUTPUT_RULES), line_number)
    cache_creation_tokens = _token_count(resolve_field(usage, _CACHE_CREATION_RULES), line_number)
    cache_read_tokens = _token_count(resolve_field(usage, _CACHE_READ_RULES), line_number)
    source_cost = max(_float(resolve_field(raw, _COST_RULES)), 0.0)

    has_tokens = (input_tokens + output_tokens + cache_creation_tokens + cache_read_tokens) > 0
    if not has_tokens and source_cost <= 0:
        return None

    model = _as_str(resolve_field(raw, _MODEL_RULES)).strip()
    if not model or model.lower() in NON_BILLABLE_MODELS:
        logger.debug("Dropping record with non-billable model %r at line %s", model, line_number)
        return None

    raw_timestamp = resolve_field(raw, _TIMESTAMP_RULES)
    if raw_timestamp is None:
        timestamp = datetime.now(UTC)
    else:
        parsed_timestamp = _parse_timestamp(raw_timestamp)
        if parsed_timestamp is None:
            raise ParseError(f"invalid timestamp {raw_timestamp!r}", line_number)
        timestamp = parsed_timestamp

    if source_cost > 0:
        cost = source_cost
    else:
        cost = pricing.calculate_cost(
            model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_creation_tokens=cache_creation_tokens,
            cache_read_tokens=cache_read_tokens,
        )

    return UsageEntry(
        timestamp=timestamp,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_tokens=cache_creation_tokens,
        cache_read_tokens=cache_read_tokens,
        cost=cost,
        session_id=_as_optional_str(resolve_field(raw, _SESSION_RULES)),
        project_path=project_path,
        request_id=_as_optional_str(resolve_field(raw, _REQUEST_RULES)),
        message_id=_as_optional_str(resolve_field(raw, _MESSAGE_ID_RULES)),
        message_type=_as_str(resolve_field(raw, _TYPE_RULES)),
        source_file=source_file,
    )


def parse_usage_file(
    path: Path,
    *,
    pricing: PricingTable,
    project_path: str = "",
    stats: FileParseStats | None = None,
) -> Generator[UsageEntry]:
    """Stream-parse a usage log. Malformed lines are counted and skipped."""
    counters = stats if stats is not None else FileParseStats()
    try:
        file = open(path, encoding="utf-8", errors="replace")  # noqa: SIM115
    except OSError as exc:
        raise FileAccessError(path, exc.strerror or str(exc)) from exc

    with file:
        for line_num, line in enumerate(file, 1):
            line = line.strip()
            if not line:
                continue
            counters.lines += 1
            try:
                entry = parse_usage_line(
                    line,
                    pricing=pricing,
                    project_path=project_path,
                    source_file=str(path),
                    line_number=line_num,
                )
            except ParseError as exc:
                logger.warning("Skipping malformed record at %s:%d (%s)", path, line_num, exc.reason)
                counters.malformed += 1
                continue
            if entry is None:
                counters.skipped += 1
                continue
            counters.entries += 1
            yield entry


def read_usage_file(
    path: Path,
    *,
    pricing: PricingTable,
    project_path: str = "",
) -> tuple[list[UsageEntry], FileParseStats]:
    """Parse a whole file eagerly. Suitable for ``asyncio.to_thread``."""
    stats = FileParseStats()
    try:
        entries = list(
            parse_usage_file(path, pricing=pricing, project_path=project_path, stats=stats)
        )
    except OSError as exc:
        raise FileAccessError(path, exc.strerror or str(exc)) from exc
    return entries, stats


def _parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _as_str(value: object) -> str:
    return value if isinstance(value, str) else ""


def _as_optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _token_count(value: object, line_number: int | None = None) -> int:
    count = max(_int(value), 0)
    if count > _MAX_TOKENS:
        raise ParseError(f"token count {value!r} out of range", line_number)
    return count


def _int(val: object) -> int:
    if isinstance(val, bool):
        return int(val)
    if isinstance(val, int):
        return val
    if isinstance(val, float | str):
        return int(_float(val))
    return 0


def _float(val: object) -> float:
    if isinstance(val, bool):
        return 0.0
    if isinstance(val, int | float):
        result = float(val)
    elif isinstance(val, str):
        try:
            result = float(val)
        except ValueError:
            return 0.0
    else:
        return 0.0
    return result if math.isfinite(result) else 0.0
