from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from scanchain.checkpoints.types import CheckpointState, checkpoint_state_from_dict
from scanchain.db.models import JobStatus


class ChainOutcome(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(slots=True)
class ExecutionResults:
    files_processed: int = 0
    bytes_processed: int = 0
    pages_processed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "files_processed": self.files_processed,
            "bytes_processed": self.bytes_processed,
            "pages_processed": self.pages_processed,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "ExecutionResults":
        payload = payload or {}
        return cls(
            files_processed=int(payload.get("files_processed", 0)),
            bytes_processed=int(payload.get("bytes_processed", 0)),
            pages_processed=int(payload.get("pages_processed", 0)),
        )


@dataclass(slots=True)
class ChainLinkSnapshot:
    id: str
    parent_job_id: str | None
    root_job_id: str
    chain_index: int
    owner_id: str
    status: JobStatus
    checkpoint_payload: Any
    results: ExecutionResults | None
    error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @property
    def checkpoint(self) -> CheckpointState | None:
        """The hand-off checkpoint. Raises CheckpointValidationError when the stored payload is malformed."""
        if not self.checkpoint_payload:
            return None
        return checkpoint_state_from_dict(self.checkpoint_payload)


@dataclass(frozen=True)
class ChainAggregate:
    root_job_id: str
    total_files_processed: int
    total_bytes_processed: int
    total_pages_processed: int
    chain_length: int
    total_duration_seconds: float
    status: ChainOutcome
