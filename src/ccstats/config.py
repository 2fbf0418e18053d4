"""Configuration for ccstats."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path


class SyncInterval(IntEnum):
    """Selectable auto-sync intervals, in seconds."""

    FIVE_MINUTES = 5 * 60
    FIFTEEN_MINUTES = 15 * 60
    THIRTY_MINUTES = 30 * 60
    ONE_HOUR = 60 * 60
    TWO_HOURS = 2 * 60 * 60
    FOUR_HOURS = 4 * 60 * 60

    @property
    def display_name(self) -> str:
        minutes = self.value // 60
        if minutes < 60:
            return f"{minutes}m"
        return f"{minutes // 60}h"

    @classmethod
    def parse(cls, text: str) -> SyncInterval:
        """Parse '15m', '1h' or a member name such as 'ONE_HOUR'."""
        value = text.strip()
        for member in cls:
            if value.lower() == member.display_name or value.upper() == member.name:
                return member
        choices = ", ".join(member.display_name for member in cls)
        msg = f"Unsupported sync interval {text!r}; choose one of {choices}"
        raise ValueError(msg)


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    claude_dir: Path = field(default_factory=lambda: Path.home() / ".claude")
    cache_dir: Path = field(default_factory=lambda: Path.home() / ".cache" / "ccstats")
    sync_interval: SyncInterval = SyncInterval.ONE_HOUR
    auto_sync_enabled: bool = True
    cache_ttl_seconds: float = 300.0
    disk_cache_enabled: bool = True
    disk_cache_ttl_seconds: float = 24 * 60 * 60
    insert_batch_size: int = 500
    min_plausible_request_cost: float = 0.000001
    max_plausible_request_cost: float = 10.0

    @property
    def projects_dir(self) -> Path:
        return self.claude_dir / "projects"

    @property
    def db_path(self) -> Path:
        return self.cache_dir / "usage.db"

    @property
    def disk_cache_dir(self) -> Path:
        return self.cache_dir / "query-cache"
