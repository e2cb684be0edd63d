from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from scanchain.checkpoints.types import CheckpointStats


@dataclass(slots=True)
class CleanupReport:
    generated_at: datetime
    expired_checkpoints: int
    old_chain_links: int
    stale_jobs: int


@dataclass(slots=True)
class StoreMetrics:
    generated_at: datetime
    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    chained: int
    chain_links: int
    indexed_files: int
    checkpoints: CheckpointStats
