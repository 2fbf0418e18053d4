"""Entry-level model for parsed usage records."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class UsageEntry(BaseModel):
    """One billable usage record parsed from a JSONL log line."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    model: str
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_creation_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0.0)
    session_id: str | None = None
    project_path: str = ""
    request_id: str | None = None
    message_id: str | None = None
    message_type: str = ""
    source_file: str = ""

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def date_string(self) -> str:
        """Local calendar date of the entry, ``YYYY-MM-DD``."""
        return local_date_string(self.timestamp)

    @property
    def project_name(self) -> str:
        return project_name_for(self.project_path)


def project_name_for(project_path: str) -> str:
    """Last path segment of a project path, or "Unknown"."""
    parts = project_path.rstrip("/").split("/")
    return parts[-1] or "Unknown"


def local_date_string(timestamp: datetime) -> str:
    """Convert an aware timestamp to the local calendar date string."""
    return timestamp.astimezone().date().isoformat()
