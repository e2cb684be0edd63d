from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class JobType(str, Enum):
    DRIVE_SCAN = "drive_scan"
    CHAINED_SCAN = "chained_scan"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CHAINED = "chained"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.CHAINED}
)


class ScanType(str, Enum):
    FULL = "full"
    DELTA = "delta"


class DeltaType(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class ScanJob(Base):
    __tablename__ = "scan_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobStatus.PENDING,
    )
    type: Mapped[JobType] = mapped_column(
        SAEnum(JobType, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobType.DRIVE_SCAN,
    )

    progress: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    config: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    results: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    parent_job_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    root_job_id: Mapped[str] = mapped_column(String(36), nullable=False)
    chain_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    worker_heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_scan_jobs_status_created", "status", "created_at", "id"),
        Index("ix_scan_jobs_owner_status", "owner_id", "status", "completed_at"),
        Index("ix_scan_jobs_running_lease", "status", "lease_expires_at"),
        Index("ix_scan_jobs_created_id", "created_at", "id"),
        Index("ix_scan_jobs_root", "root_job_id", "chain_index"),
    )


class ScanCheckpoint(Base):
    __tablename__ = "scan_checkpoints"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    job_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    scan_id: Mapped[str] = mapped_column(String(128), nullable=False)
    continuation_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    files_processed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bytes_processed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_file_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    last_modified_time: Mapped[str | None] = mapped_column(String(64), nullable=True)
    scan_type: Mapped[ScanType] = mapped_column(
        SAEnum(ScanType, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=ScanType.FULL,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON(none_as_null=True), nullable=False, default=dict)

    __table_args__ = (
        Index("ix_scan_checkpoints_expires_at", "expires_at"),
        Index("ix_scan_checkpoints_owner", "owner_id", "created_at"),
    )


class JobChainLink(Base):
    __tablename__ = "job_chain_links"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    parent_job_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    root_job_id: Mapped[str] = mapped_column(String(36), nullable=False)
    chain_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobStatus.PENDING,
    )
    checkpoint: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    results: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_job_chain_links_parent", "parent_job_id", "chain_index"),
        Index("ix_job_chain_links_root", "root_job_id", "chain_index"),
        Index("ix_job_chain_links_status_completed", "status", "completed_at"),
    )


class FileIndexEntry(Base):
    __tablename__ = "file_index"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    file_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    name: Mapped[str] = mapped_column(String(1024), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False, default="unknown")
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    modified_time: Mapped[str] = mapped_column(String(64), nullable=False)
    parent_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_scan_id: Mapped[str] = mapped_column(String(128), nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_file_index_owner_live", "owner_id", "is_deleted", "last_scan_id"),
        Index("ix_file_index_owner_size_hash", "owner_id", "size", "content_hash"),
    )


class ScanDelta(Base):
    __tablename__ = "scan_deltas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    scan_id: Mapped[str] = mapped_column(String(128), nullable=False)
    job_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    delta_type: Mapped[DeltaType] = mapped_column(
        SAEnum(DeltaType, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    file_id: Mapped[str] = mapped_column(String(256), nullable=False)
    file_name: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    size_change: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_scan_deltas_owner_scan", "owner_id", "scan_id", "delta_type"),
        Index("ix_scan_deltas_created_at", "created_at"),
    )


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
