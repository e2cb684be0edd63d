from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CleanupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_size: int | None = Field(default=None, ge=1)
    retention_days: int | None = Field(default=None, ge=1)


class CleanupResponse(BaseModel):
    generated_at: datetime
    expired_checkpoints: int
    old_chain_links: int
    stale_jobs: int


class CheckpointStatsResponse(BaseModel):
    total: int
    expired: int
    active: int
    oldest_active: datetime | None


class StoreMetricsResponse(BaseModel):
    generated_at: datetime
    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    chained: int
    chain_links: int
    indexed_files: int
    checkpoints: CheckpointStatsResponse
