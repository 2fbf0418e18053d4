"""JSONL record builders shared by the test modules."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

# Noon UTC keeps the local calendar date stable in every common time zone.
DAY_ONE = "2025-01-15T12:00:00Z"
DAY_TWO = "2025-01-16T12:00:00Z"

SONNET = "claude-sonnet-4-20250514"
OPUS = "claude-opus-4-20250514"


def usage_line(
    *,
    request_id: str | None = "req-1",
    session_id: str | None = "session-1",
    model: str = SONNET,
    input_tokens: int = 100,
    output_tokens: int = 50,
    cache_creation_tokens: int = 0,
    cache_read_tokens: int = 0,
    timestamp: str | None = DAY_ONE,
    **extra: Any,
) -> str:
    """One assistant record in the shape Claude Code writes."""
    record: dict[str, Any] = {
        "type": "assistant",
        "message": {
            "id": f"msg-{request_id}",
            "model": model,
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_creation_input_tokens": cache_creation_tokens,
                "cache_read_input_tokens": cache_read_tokens,
            },
        },
    }
    if request_id is not None:
        record["requestId"] = request_id
    if session_id is not None:
        record["sessionId"] = session_id
    if timestamp is not None:
        record["timestamp"] = timestamp
    record.update(extra)
    return json.dumps(record)


def write_log(path: Path, lines: list[str]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path
