from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from scanchain.core.errors import CheckpointValidationError
from scanchain.db.models import ScanType


@dataclass(slots=True)
class IndexDeltaCounts:
    created: int = 0
    modified: int = 0
    deleted: int = 0

    def add(self, other: "IndexDeltaCounts") -> None:
        self.created += other.created
        self.modified += other.modified
        self.deleted += other.deleted

    def to_dict(self) -> dict[str, int]:
        return {"created": self.created, "modified": self.modified, "deleted": self.deleted}

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "IndexDeltaCounts":
        payload = payload or {}
        return cls(
            created=int(payload.get("created", 0)),
            modified=int(payload.get("modified", 0)),
            deleted=int(payload.get("deleted", 0)),
        )


@dataclass(slots=True)
class CheckpointError:
    timestamp: datetime
    error: str
    recoverable: bool = True


@dataclass(slots=True)
class CheckpointMetadata:
    duplicates_found: int = 0
    index_delta: IndexDeltaCounts = field(default_factory=IndexDeltaCounts)
    pages_processed: int = 0
    scan_started_at: datetime | None = None
    errors: list[CheckpointError] = field(default_factory=list)


@dataclass(slots=True)
class CheckpointState:
    job_id: str
    owner_id: str
    scan_id: str
    scan_type: ScanType
    continuation_token: str | None = None
    files_processed: int = 0
    bytes_processed: int = 0
    last_file_id: str | None = None
    last_modified_time: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    expires_at: datetime | None = None
    metadata: CheckpointMetadata = field(default_factory=CheckpointMetadata)


@dataclass(slots=True)
class CheckpointStats:
    total: int
    expired: int
    active: int
    oldest_active: datetime | None


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _parse_iso(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def metadata_to_dict(metadata: CheckpointMetadata) -> dict[str, Any]:
    return {
        "duplicates_found": metadata.duplicates_found,
        "index_delta": metadata.index_delta.to_dict(),
        "pages_processed": metadata.pages_processed,
        "scan_started_at": _iso(metadata.scan_started_at),
        "errors": [
            {"timestamp": _iso(item.timestamp), "error": item.error, "recoverable": item.recoverable}
            for item in metadata.errors
        ],
    }


def metadata_from_dict(payload: dict[str, Any] | None) -> CheckpointMetadata:
    payload = payload or {}
    errors: list[CheckpointError] = []
    for item in payload.get("errors") or []:
        timestamp = _parse_iso(item.get("timestamp")) or datetime.now(tz=timezone.utc)
        errors.append(
            CheckpointError(
                timestamp=timestamp,
                error=str(item.get("error", "")),
                recoverable=bool(item.get("recoverable", True)),
            )
        )
    return CheckpointMetadata(
        duplicates_found=int(payload.get("duplicates_found", 0)),
        index_delta=IndexDeltaCounts.from_dict(payload.get("index_delta")),
        pages_processed=int(payload.get("pages_processed", 0)),
        scan_started_at=_parse_iso(payload.get("scan_started_at")),
        errors=errors,
    )


def checkpoint_state_to_dict(state: CheckpointState) -> dict[str, Any]:
    return {
        "job_id": state.job_id,
        "owner_id": state.owner_id,
        "scan_id": state.scan_id,
        "scan_type": state.scan_type.value,
        "continuation_token": state.continuation_token,
        "files_processed": state.files_processed,
        "bytes_processed": state.bytes_processed,
        "last_file_id": state.last_file_id,
        "last_modified_time": state.last_modified_time,
        "created_at": _iso(state.created_at),
        "updated_at": _iso(state.updated_at),
        "expires_at": _iso(state.expires_at),
        "metadata": metadata_to_dict(state.metadata),
    }


def checkpoint_state_from_dict(payload: dict[str, Any]) -> CheckpointState:
    """Raises CheckpointValidationError when the payload cannot be parsed."""
    try:
        return _checkpoint_state_from_dict(payload)
    except (AttributeError, TypeError, ValueError) as exc:
        raise CheckpointValidationError(f"Invalid checkpoint: malformed payload ({exc})") from exc


def _checkpoint_state_from_dict(payload: dict[str, Any]) -> CheckpointState:
    return CheckpointState(
        job_id=str(payload.get("job_id") or ""),
        owner_id=str(payload.get("owner_id") or ""),
        scan_id=str(payload.get("scan_id") or ""),
        scan_type=ScanType(str(payload.get("scan_type") or ScanType.FULL.value)),
        continuation_token=payload.get("continuation_token"),
        files_processed=int(payload.get("files_processed", 0)),
        bytes_processed=int(payload.get("bytes_processed", 0)),
        last_file_id=payload.get("last_file_id"),
        last_modified_time=payload.get("last_modified_time"),
        created_at=_parse_iso(payload.get("created_at")),
        updated_at=_parse_iso(payload.get("updated_at")),
        expires_at=_parse_iso(payload.get("expires_at")),
        metadata=metadata_from_dict(payload.get("metadata")),
    )
