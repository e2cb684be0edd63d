from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from scanchain.checkpoints.types import IndexDeltaCounts
from scanchain.db.models import DeltaType, ScanType


@dataclass(frozen=True, slots=True)
class DeltaEvent:
    delta_type: DeltaType
    file_id: str
    file_name: str
    size_change: int | None = None


@dataclass(slots=True)
class DeltaSummary:
    counts: IndexDeltaCounts = field(default_factory=IndexDeltaCounts)
    unchanged: int = 0
    events: list[DeltaEvent] = field(default_factory=list)

    def record(self, event: DeltaEvent) -> None:
        self.events.append(event)
        if event.delta_type == DeltaType.CREATED:
            self.counts.created += 1
        elif event.delta_type == DeltaType.MODIFIED:
            self.counts.modified += 1
        else:
            self.counts.deleted += 1

    def merge(self, other: "DeltaSummary") -> None:
        self.counts.add(other.counts)
        self.unchanged += other.unchanged
        self.events.extend(other.events)


@dataclass(frozen=True)
class ScanDecision:
    scan_type: ScanType
    reason: str
    last_scan_at: datetime | None = None
    index_count: int | None = None
    modified_since: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scan_type": self.scan_type.value,
            "reason": self.reason,
            "last_scan_at": self.last_scan_at.isoformat() if self.last_scan_at else None,
            "index_count": self.index_count,
            "modified_since": self.modified_since.isoformat() if self.modified_since else None,
        }
