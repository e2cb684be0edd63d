from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from scanchain.chains.manager import JobChainManager
from scanchain.checkpoints.manager import CheckpointManager
from scanchain.checkpoints.types import CheckpointStats
from scanchain.core.config import Settings
from scanchain.db.models import FileIndexEntry, JobChainLink, JobStatus, ScanJob
from scanchain.jobs.service import JobService
from scanchain.maintenance.types import CleanupReport, StoreMetrics

logger = logging.getLogger(__name__)


class MaintenancePolicyError(RuntimeError):
    pass


class MaintenanceService:
    """Off-hot-path housekeeping for the durable stores."""

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory
        self._checkpoints = CheckpointManager(settings, session_factory)
        self._chains = JobChainManager(settings, session_factory)
        self._jobs = JobService(settings, session_factory)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _normalize_batch_size(self, batch_size: int | None) -> int:
        if batch_size is None:
            return self._settings.maintenance_batch_size
        if batch_size < 1 or batch_size > self._settings.max_page_size * 10:
            raise MaintenancePolicyError(
                f"batch_size must be between 1 and {self._settings.max_page_size * 10}"
            )
        return batch_size

    def run_cleanup(self, *, batch_size: int | None = None, retention_days: int | None = None) -> CleanupReport:
        bounded = self._normalize_batch_size(batch_size)
        if retention_days is not None and retention_days < 1:
            raise MaintenancePolicyError("retention_days must be at least 1")

        stale_jobs = self._jobs.recover_stale_jobs()
        expired = self._checkpoints.cleanup_expired(bounded)
        old_links = self._chains.cleanup_old_chains(retention_days, bounded)
        report = CleanupReport(
            generated_at=self._now(),
            expired_checkpoints=expired,
            old_chain_links=old_links,
            stale_jobs=stale_jobs,
        )
        logger.info(
            "Maintenance cleanup: checkpoints=%d chain_links=%d stale_jobs=%d",
            expired,
            old_links,
            stale_jobs,
        )
        return report

    def checkpoint_stats(self, owner_id: str | None = None) -> CheckpointStats:
        return self._checkpoints.get_stats(owner_id)

    def get_metrics(self) -> StoreMetrics:
        with self._session_factory() as session:
            counts = {
                status: int(count)
                for status, count in session.execute(
                    select(ScanJob.status, func.count()).group_by(ScanJob.status)
                ).all()
            }
            chain_links = int(session.scalar(select(func.count()).select_from(JobChainLink)) or 0)
            indexed_files = int(
                session.scalar(
                    select(func.count()).select_from(FileIndexEntry).where(FileIndexEntry.is_deleted.is_(False))
                )
                or 0
            )
        return StoreMetrics(
            generated_at=self._now(),
            pending=counts.get(JobStatus.PENDING, 0),
            running=counts.get(JobStatus.RUNNING, 0),
            completed=counts.get(JobStatus.COMPLETED, 0),
            failed=counts.get(JobStatus.FAILED, 0),
            cancelled=counts.get(JobStatus.CANCELLED, 0),
            chained=counts.get(JobStatus.CHAINED, 0),
            chain_links=chain_links,
            indexed_files=indexed_files,
            checkpoints=self._checkpoints.get_stats(),
        )


def cleanup_report_to_dict(report: CleanupReport) -> dict[str, Any]:
    return asdict(report)


def checkpoint_stats_to_dict(stats: CheckpointStats) -> dict[str, Any]:
    return asdict(stats)


def store_metrics_to_dict(metrics: StoreMetrics) -> dict[str, Any]:
    return asdict(metrics)
