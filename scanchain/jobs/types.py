from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from scanchain.db.models import JobStatus, JobType


@dataclass(slots=True)
class JobProgress:
    current: int = 0
    total: int = 0
    percentage: int = 0
    step: str = ""
    files_processed: int = 0
    bytes_processed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "total": self.total,
            "percentage": self.percentage,
            "step": self.step,
            "files_processed": self.files_processed,
            "bytes_processed": self.bytes_processed,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "JobProgress":
        payload = payload or {}
        return cls(
            current=int(payload.get("current", 0)),
            total=int(payload.get("total", 0)),
            percentage=int(payload.get("percentage", 0)),
            step=str(payload.get("step", "")),
            files_processed=int(payload.get("files_processed", 0)),
            bytes_processed=int(payload.get("bytes_processed", 0)),
        )


@dataclass(slots=True)
class ScanJobConfig:
    max_depth: int | None = None
    include_trashed: bool = False
    root_scope_id: str | None = None
    force_full: bool = False
    force_delta: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_depth": self.max_depth,
            "include_trashed": self.include_trashed,
            "root_scope_id": self.root_scope_id,
            "force_full": self.force_full,
            "force_delta": self.force_delta,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "ScanJobConfig":
        payload = payload or {}
        max_depth = payload.get("max_depth")
        return cls(
            max_depth=int(max_depth) if max_depth is not None else None,
            include_trashed=bool(payload.get("include_trashed", False)),
            root_scope_id=payload.get("root_scope_id"),
            force_full=bool(payload.get("force_full", False)),
            force_delta=bool(payload.get("force_delta", False)),
        )


@dataclass(slots=True)
class JobSnapshot:
    id: str
    owner_id: str
    status: JobStatus
    type: JobType
    progress: JobProgress
    config: ScanJobConfig
    results: dict[str, Any] | None
    error_code: str | None
    error_message: str | None
    parent_job_id: str | None
    root_job_id: str
    chain_index: int
    worker_id: str | None
    lease_expires_at: datetime | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
