from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Sequence, runtime_checkable

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


@dataclass(frozen=True, slots=True)
class RemoteFileRecord:
    id: str
    name: str
    mime_type: str
    size: int
    modified_time: str
    parent_ids: tuple[str, ...] = ()
    content_hash: str | None = None
    trashed: bool = False

    @property
    def parent_id(self) -> str | None:
        return self.parent_ids[0] if self.parent_ids else None


@dataclass(frozen=True, slots=True)
class ScanFilters:
    include_trashed: bool = False
    root_scope_id: str | None = None
    max_depth: int | None = None
    modified_since: datetime | None = None
    page_size: int = 1000


@dataclass(slots=True)
class SourcePage:
    records: list[RemoteFileRecord] = field(default_factory=list)
    next_token: str | None = None


@runtime_checkable
class RemoteFileSource(Protocol):
    """Paginated listing of one owner's remote hierarchy.

    ``list`` returns one bounded page. A missing ``next_token`` means the listing is exhausted.
    Implementations raise ``TransientSourceError`` for remote failures.
    """

    def list(self, continuation_token: str | None, filters: ScanFilters) -> SourcePage: ...


def record_from_mapping(payload: dict[str, object]) -> RemoteFileRecord:
    parents = payload.get("parent_ids") or payload.get("parents") or ()
    if isinstance(parents, str):
        parents = (parents,)
    raw_size = payload.get("size") or 0
    return RemoteFileRecord(
        id=str(payload["id"]),
        name=str(payload.get("name") or ""),
        mime_type=str(payload.get("mime_type") or payload.get("mimeType") or "unknown"),
        size=int(raw_size),  # type: ignore[arg-type]
        modified_time=str(payload.get("modified_time") or payload.get("modifiedTime") or ""),
        parent_ids=tuple(str(item) for item in parents),  # type: ignore[union-attr]
        content_hash=(str(payload["content_hash"]) if payload.get("content_hash") else None),
        trashed=bool(payload.get("trashed", False)),
    )


def records_from_mappings(payloads: Sequence[dict[str, object]]) -> list[RemoteFileRecord]:
    return [record_from_mapping(payload) for payload in payloads]
