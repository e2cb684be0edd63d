from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from scanchain.core.config import Settings
from scanchain.db.models import FileIndexEntry, JobStatus, ScanJob, ScanType
from scanchain.index.types import ScanDecision
from scanchain.db.session import coerce_utc

logger = logging.getLogger(__name__)


def _parse_started_at(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return coerce_utc(parsed)


class ScanStrategyAdvisor:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def decide(self, owner_id: str, *, force_full: bool = False, force_delta: bool = False) -> ScanDecision:
        try:
            with self._session_factory() as session:
                last_job = session.scalar(
                    select(ScanJob)
                    .where(ScanJob.owner_id == owner_id, ScanJob.status == JobStatus.COMPLETED)
                    .order_by(ScanJob.completed_at.desc(), ScanJob.id.desc())
                    .limit(1)
                )
                index_count = int(
                    session.scalar(
                        select(func.count())
                        .select_from(FileIndexEntry)
                        .where(FileIndexEntry.owner_id == owner_id, FileIndexEntry.is_deleted.is_(False))
                    )
                    or 0
                )
                last_scan_at = coerce_utc(last_job.completed_at) if last_job is not None else None
                scan_started_at = None
                if last_job is not None:
                    scan_started_at = _parse_started_at((last_job.results or {}).get("scan_started_at"))
                    scan_started_at = scan_started_at or coerce_utc(last_job.started_at)
        except SQLAlchemyError as exc:
            logger.warning("Scan strategy lookup failed for owner %s; defaulting to full: %s", owner_id, exc)
            return ScanDecision(ScanType.FULL, "Error checking scan requirements")

        if last_scan_at is None:
            return ScanDecision(ScanType.FULL, "No previous scan found", index_count=index_count)
        if force_full:
            return ScanDecision(ScanType.FULL, "Full scan forced", last_scan_at, index_count)
        if force_delta:
            return ScanDecision(ScanType.DELTA, "Delta scan forced", last_scan_at, index_count, scan_started_at)

        age = self._now() - last_scan_at
        if age > timedelta(days=self._settings.full_scan_staleness_days):
            return ScanDecision(
                ScanType.FULL,
                f"Last scan is more than {self._settings.full_scan_staleness_days} days old",
                last_scan_at,
                index_count,
            )
        if index_count < self._settings.min_index_completeness:
            return ScanDecision(
                ScanType.FULL,
                f"File index is incomplete (<{self._settings.min_index_completeness} files)",
                last_scan_at,
                index_count,
            )
        return ScanDecision(ScanType.DELTA, "Delta scan sufficient", last_scan_at, index_count, scan_started_at)
