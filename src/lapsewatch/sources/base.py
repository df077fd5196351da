from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Protocol


@dataclass(frozen=True)
class RecordFilter:
    """Which raw records a capture pass asks for."""

    modified_since: datetime | None = None
    name_prefix: str | None = "PS-"


@dataclass(slots=True)
class RecordPage:
    records: list[Mapping[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


class RecordSource(Protocol):
    """Paginated producer of raw provisioning records.

    Pass ``cursor=None`` for the first page and the returned ``next_cursor``
    for each following page. Implementations raise SourceUnavailable when the
    upstream system cannot be reached.
    """

    async def fetch_page(
        self, record_filter: RecordFilter, cursor: str | None = None
    ) -> RecordPage: ...


def modified_since_for(
    watermark: datetime | None, now: datetime, lookback_days: int, overlap_minutes: int
) -> datetime:
    """Lower bound on last-modified time for the next capture pass."""
    if watermark is None:
        return now - timedelta(days=lookback_days)
    return watermark - timedelta(minutes=overlap_minutes)
