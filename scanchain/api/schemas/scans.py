from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CreateScanRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    owner_id: str = Field(min_length=1, max_length=128)
    max_depth: int | None = Field(default=None, ge=1)
    include_trashed: bool = False
    root_scope_id: str | None = Field(default=None, max_length=256)
    force_full: bool = False
    force_delta: bool = False

    @model_validator(mode="after")
    def _exclusive_modes(self) -> "CreateScanRequest":
        if self.force_full and self.force_delta:
            raise ValueError("force_full and force_delta are mutually exclusive")
        return self


class CancelScanRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error_message: str | None = Field(default=None, max_length=2048)


class ScanProgressResponse(BaseModel):
    current: int
    total: int
    percentage: int
    step: str
    files_processed: int
    bytes_processed: int


class ScanJobResponse(BaseModel):
    id: str
    owner_id: str
    status: str
    type: str
    progress: ScanProgressResponse
    config: dict[str, Any]
    results: dict[str, Any] | None
    error_code: str | None
    error_message: str | None
    parent_job_id: str | None
    root_job_id: str
    chain_index: int
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class ScanJobListResponse(BaseModel):
    items: list[ScanJobResponse]
    next_cursor: str | None


class ChainLinkResponse(BaseModel):
    id: str
    parent_job_id: str | None
    root_job_id: str
    chain_index: int
    owner_id: str
    status: str
    results: dict[str, int] | None
    error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class ChainResponse(BaseModel):
    root_job_id: str
    total_files_processed: int
    total_bytes_processed: int
    total_pages_processed: int
    chain_length: int
    total_duration_seconds: float
    status: str
    links: list[ChainLinkResponse]
