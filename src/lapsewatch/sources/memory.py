from __future__ import annotations

from typing import Any, Iterable, Mapping

from lapsewatch.analysis.normalizer import (
    RECORD_FIELD_ALIASES,
    first_present,
    parse_source_datetime,
)
from lapsewatch.core.errors import SourceUnavailable
from lapsewatch.sources.base import RecordFilter, RecordPage


class InMemoryRecordSource:
    """List-backed record source for local development and tests."""

    def __init__(self, records: Iterable[Mapping[str, Any]] = (), *, page_size: int = 100) -> None:
        self._records: list[Mapping[str, Any]] = list(records)
        self._page_size = page_size
        self.unavailable = False
        self.calls = 0

    def put(self, record: Mapping[str, Any]) -> None:
        """Add a record, replacing any earlier version with the same id."""
        record_id = first_present(record, RECORD_FIELD_ALIASES["id"])
        self._records = [
            r for r in self._records if first_present(r, RECORD_FIELD_ALIASES["id"]) != record_id
        ]
        self._records.append(record)

    def size(self) -> int:
        return len(self._records)

    def _matches(self, record: Mapping[str, Any], record_filter: RecordFilter) -> bool:
        if record_filter.name_prefix:
            name = first_present(record, RECORD_FIELD_ALIASES["name"]) or ""
            if not str(name).startswith(record_filter.name_prefix):
                return False
        if record_filter.modified_since is not None:
            modified = parse_source_datetime(
                first_present(record, RECORD_FIELD_ALIASES["last_modified_at"])
            )
            if modified is not None and modified < record_filter.modified_since:
                return False
        return True

    async def fetch_page(
        self, record_filter: RecordFilter, cursor: str | None = None
    ) -> RecordPage:
        self.calls += 1
        if self.unavailable:
            raise SourceUnavailable("in-memory source marked unavailable")

        matching = [r for r in self._records if self._matches(r, record_filter)]
        start = int(cursor or 0)
        end = start + self._page_size
        next_cursor = str(end) if end < len(matching) else None
        return RecordPage(records=list(matching[start:end]), next_cursor=next_cursor)
