"""Per-pass deduplication of usage entries keyed by request id."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from operator import attrgetter

from ccstats.models.usage import UsageEntry


@dataclass
class DedupResult:
    entries: list[UsageEntry] = field(default_factory=list)
    duplicates: int = 0


class Deduplicator:
    """Drops repeated request ids within one ingestion pass.

    The first entry seen for a request id wins. Entries without a request id
    are always kept. Create a new instance for every pass.
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self.duplicates = 0

    def add(self, entry: UsageEntry) -> bool:
        """Register an entry; return False when it repeats a request id."""
        key = entry.request_id
        if not key:
            return True
        if key in self._seen:
            self.duplicates += 1
            return False
        self._seen.add(key)
        return True

    def deduplicate(self, entries: Iterable[UsageEntry]) -> DedupResult:
        before = self.duplicates
        kept = [entry for entry in entries if self.add(entry)]
        return DedupResult(entries=kept, duplicates=self.duplicates - before)

    @property
    def request_ids(self) -> frozenset[str]:
        return frozenset(self._seen)


def deduplicate(entries: Iterable[UsageEntry]) -> DedupResult:
    """Deduplicate a single pass of entries."""
    return Deduplicator().deduplicate(entries)


def in_time_order(entries: Iterable[UsageEntry]) -> list[UsageEntry]:
    """Entries sorted by timestamp; equal timestamps keep their input order.

    Deduplicating this order keeps the earliest copy of each request, the
    same copy ``UsageRepository.deduplicate_persisted`` keeps.
    """
    return sorted(entries, key=attrgetter("timestamp"))
