from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Sequence

from scanchain.core.errors import TransientSourceError
from scanchain.sources.types import RemoteFileRecord, ScanFilters, SourcePage, record_from_mapping


def _parse_time(value: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class InMemoryFileSource:
    """Offset-paged listing over a fixed record set.

    Continuation tokens are stringified offsets into the filtered listing, so they stay valid
    across process restarts as long as the record set does not change.
    """

    def __init__(
        self,
        records: Iterable[RemoteFileRecord],
        *,
        fail_on_tokens: Sequence[str | None] = (),
        fail_times: int = 1,
    ):
        self._records = list(records)
        self._fail_on_tokens = set(fail_on_tokens)
        self._fail_budget = {token: fail_times for token in self._fail_on_tokens}
        self.calls: list[str | None] = []

    @classmethod
    def from_mappings(cls, payloads: Sequence[dict[str, object]], **kwargs: object) -> "InMemoryFileSource":
        return cls([record_from_mapping(payload) for payload in payloads], **kwargs)  # type: ignore[arg-type]

    @property
    def records(self) -> list[RemoteFileRecord]:
        return list(self._records)

    def replace_records(self, records: Iterable[RemoteFileRecord]) -> None:
        self._records = list(records)

    def _depth_from(self, record: RemoteFileRecord, root_id: str, by_id: dict[str, RemoteFileRecord]) -> int | None:
        depth = 1
        current = record
        seen: set[str] = set()
        while current.parent_id is not None:
            if current.parent_id == root_id:
                return depth
            if current.parent_id in seen:
                return None
            seen.add(current.parent_id)
            parent = by_id.get(current.parent_id)
            if parent is None:
                return None
            current = parent
            depth += 1
        return None

    def _filtered(self, filters: ScanFilters) -> list[RemoteFileRecord]:
        by_id = {record.id: record for record in self._records}
        selected: list[RemoteFileRecord] = []
        for record in self._records:
            if record.trashed and not filters.include_trashed:
                continue
            if filters.root_scope_id is not None:
                depth = self._depth_from(record, filters.root_scope_id, by_id)
                if depth is None:
                    continue
                if filters.max_depth is not None and depth > filters.max_depth:
                    continue
            if filters.modified_since is not None:
                modified = _parse_time(record.modified_time)
                if modified is not None and modified < filters.modified_since:
                    continue
            selected.append(record)
        return selected

    def list(self, continuation_token: str | None, filters: ScanFilters) -> SourcePage:
        self.calls.append(continuation_token)
        if continuation_token in self._fail_on_tokens and self._fail_budget.get(continuation_token, 0) > 0:
            self._fail_budget[continuation_token] -= 1
            raise TransientSourceError(f"Listing failed at token {continuation_token!r}")

        try:
            offset = int(continuation_token) if continuation_token else 0
        except ValueError as exc:
            raise TransientSourceError(f"Unknown continuation token: {continuation_token}") from exc

        listing = self._filtered(filters)
        page = listing[offset : offset + filters.page_size]
        next_offset = offset + len(page)
        next_token = str(next_offset) if next_offset < len(listing) else None
        return SourcePage(records=page, next_token=next_token)
