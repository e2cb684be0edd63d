from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from scanchain.core.config import Settings
from scanchain.core.errors import ChainLimitExceededError
from scanchain.db.models import JobStatus, JobType, ScanJob
from scanchain.db.session import coerce_utc
from scanchain.jobs.types import JobProgress, JobSnapshot, ScanJobConfig


class JobConflictError(RuntimeError):
    pass


class JobNotFoundError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


class JobPolicyError(RuntimeError):
    pass


@dataclass(frozen=True)
class JobListResult:
    items: list[JobSnapshot]
    next_cursor: str | None


ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.CHAINED},
    JobStatus.FAILED: {JobStatus.PENDING},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
    JobStatus.CHAINED: set(),
}

ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


def enforce_transition(from_status: JobStatus, to_status: JobStatus) -> None:
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidJobStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")


class JobService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _lease_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.job_lease_ttl_seconds)

    def _normalize_worker_id(self, worker_id: str) -> str:
        normalized = worker_id.strip()
        if not normalized:
            raise ValueError("worker_id cannot be blank")
        return normalized

    def _load(self, session: Session, job_id: str) -> ScanJob:
        job = session.get(ScanJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def _require_lease_owner(self, job: ScanJob, worker_id: str) -> None:
        if job.worker_id != worker_id:
            raise JobConflictError("Only the current lease owner can update the job")

    def create_job(
        self,
        owner_id: str,
        config: ScanJobConfig | dict[str, Any] | None = None,
    ) -> JobSnapshot:
        normalized_owner = owner_id.strip()
        if not normalized_owner:
            raise ValueError("owner_id cannot be blank")
        if isinstance(config, dict) or config is None:
            config = ScanJobConfig.from_dict(config)
        if config.force_full and config.force_delta:
            raise JobPolicyError("force_full and force_delta are mutually exclusive")

        job_id = str(uuid4())
        now = self._now()
        with self._session_factory() as session:
            self.recover_stale_jobs(session=session)
            active = session.scalar(
                select(ScanJob.id).where(
                    ScanJob.owner_id == normalized_owner,
                    ScanJob.status.in_(ACTIVE_JOB_STATUSES),
                )
            )
            if active is not None:
                raise JobConflictError(f"A scan job is already active for owner {normalized_owner}")

            job = ScanJob(
                id=job_id,
                owner_id=normalized_owner,
                status=JobStatus.PENDING,
                type=JobType.DRIVE_SCAN,
                progress=JobProgress(step="Queued").to_dict(),
                config=config.to_dict(),
                root_job_id=job_id,
                chain_index=0,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise JobConflictError(f"A scan job is already active for owner {normalized_owner}") from exc
            session.refresh(job)
            return self._to_snapshot(job)

    def get_job(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            return self._to_snapshot(self._load(session, job_id))

    def list_jobs(
        self,
        *,
        limit: int = 50,
        cursor: str | None = None,
        owner_id: str | None = None,
    ) -> JobListResult:
        bounded_limit = max(1, min(limit, self._settings.max_page_size))
        with self._session_factory() as session:
            stmt = select(ScanJob).order_by(ScanJob.created_at.desc(), ScanJob.id.desc()).limit(bounded_limit + 1)
            if owner_id is not None:
                stmt = stmt.where(ScanJob.owner_id == owner_id)
            if cursor:
                anchor_exists = session.scalar(select(ScanJob.id).where(ScanJob.id == cursor))
                if anchor_exists is None:
                    raise ValueError(f"Invalid pagination cursor: {cursor}")
                anchor_created_at = select(ScanJob.created_at).where(ScanJob.id == cursor).scalar_subquery()
                stmt = stmt.where(
                    or_(
                        ScanJob.created_at < anchor_created_at,
                        and_(ScanJob.created_at == anchor_created_at, ScanJob.id < cursor),
                    )
                )
            rows = list(session.scalars(stmt).all())
            items = rows[:bounded_limit]
            next_cursor = items[-1].id if len(rows) > bounded_limit and items else None
            return JobListResult(items=[self._to_snapshot(row) for row in items], next_cursor=next_cursor)

    def claim_pending_job(self, worker_id: str, *, job_id: str | None = None) -> JobSnapshot | None:
        normalized_worker_id = self._normalize_worker_id(worker_id)

        with self._session_factory() as session:
            self.recover_stale_jobs(session=session)
            stmt = select(ScanJob).where(ScanJob.status == JobStatus.PENDING)
            if job_id is not None:
                stmt = stmt.where(ScanJob.id == job_id)
            stmt = stmt.order_by(ScanJob.created_at.asc(), ScanJob.id.asc()).limit(1)
            job = session.scalar(stmt)
            if job is None:
                session.commit()
                return None

            now = self._now()
            enforce_transition(job.status, JobStatus.RUNNING)
            claimed = session.execute(
                ScanJob.__table__.update()
                .where(ScanJob.id == job.id, ScanJob.status == JobStatus.PENDING)
                .values(
                    status=JobStatus.RUNNING,
                    worker_id=normalized_worker_id,
                    worker_heartbeat_at=now,
                    lease_expires_at=now + self._lease_delta(),
                    started_at=job.started_at or now,
                    completed_at=None,
                    updated_at=now,
                )
            )
            if not claimed.rowcount:
                session.rollback()
                return None
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def heartbeat(self, job_id: str, worker_id: str, progress: JobProgress | None = None) -> JobSnapshot:
        """Extend the lease and publish progress.

        A job cancelled by an external actor is returned unchanged so the running worker can
        observe the cancellation at its next page boundary.
        """
        normalized_worker_id = self._normalize_worker_id(worker_id)

        with self._session_factory() as session:
            job = self._load(session, job_id)
            if job.status == JobStatus.CANCELLED:
                return self._to_snapshot(job)
            if job.status != JobStatus.RUNNING:
                raise InvalidJobStateError(f"Job {job_id} is not running")
            self._require_lease_owner(job, normalized_worker_id)

            now = self._now()
            if progress is not None:
                job.progress = progress.to_dict()
            job.worker_heartbeat_at = now
            job.lease_expires_at = now + self._lease_delta()
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def is_cancelled(self, job_id: str) -> bool:
        with self._session_factory() as session:
            status = session.scalar(select(ScanJob.status).where(ScanJob.id == job_id))
            if status is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return status == JobStatus.CANCELLED

    def complete_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        results: dict[str, Any],
        progress: JobProgress | None = None,
    ) -> JobSnapshot:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        with self._session_factory() as session:
            job = self._load(session, job_id)
            enforce_transition(job.status, JobStatus.COMPLETED)
            self._require_lease_owner(job, normalized_worker_id)
            now = self._now()
            job.status = JobStatus.COMPLETED
            job.results = results
            if progress is not None:
                job.progress = progress.to_dict()
            job.error_code = None
            job.error_message = None
            job.completed_at = now
            job.lease_expires_at = None
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def fail_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        error_code: str,
        error_message: str,
    ) -> JobSnapshot:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        with self._session_factory() as session:
            job = self._load(session, job_id)
            enforce_transition(job.status, JobStatus.FAILED)
            self._require_lease_owner(job, normalized_worker_id)
            now = self._now()
            job.status = JobStatus.FAILED
            job.error_code = error_code
            job.error_message = error_message
            job.completed_at = now
            job.lease_expires_at = None
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def acknowledge_cancellation(self, job_id: str, *, progress: JobProgress | None = None) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load(session, job_id)
            if job.status != JobStatus.CANCELLED:
                raise InvalidJobStateError(f"Job {job_id} is not cancelled")
            now = self._now()
            if progress is not None:
                job.progress = progress.to_dict()
            job.completed_at = job.completed_at or now
            job.lease_expires_at = None
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def cancel_job(self, job_id: str, error_message: str | None = None) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load(session, job_id)
            enforce_transition(job.status, JobStatus.CANCELLED)
            now = self._now()
            if job.status == JobStatus.PENDING:
                job.completed_at = now
                job.lease_expires_at = None
            job.status = JobStatus.CANCELLED
            job.updated_at = now
            job.error_message = error_message or "Scan cancelled by user"
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def reset_failed_job(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load(session, job_id)
            enforce_transition(job.status, JobStatus.PENDING)
            if job.error_code == ChainLimitExceededError.error_code:
                raise JobPolicyError("Jobs that exhausted the chain length limit cannot be retried")
            now = self._now()
            job.status = JobStatus.PENDING
            job.worker_id = None
            job.worker_heartbeat_at = None
            job.lease_expires_at = None
            job.error_code = None
            job.error_message = None
            job.completed_at = None
            job.updated_at = now
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise JobConflictError(f"A scan job is already active for owner {job.owner_id}") from exc
            session.refresh(job)
            return self._to_snapshot(job)

    def recover_stale_jobs(self, *, session: Session | None = None) -> int:
        owns_session = session is None
        local_session = session or self._session_factory()
        now = self._now()
        stale_jobs = list(
            local_session.scalars(
                select(ScanJob).where(
                    ScanJob.status == JobStatus.RUNNING,
                    or_(ScanJob.lease_expires_at.is_(None), ScanJob.lease_expires_at <= now),
                )
            ).all()
        )
        for job in stale_jobs:
            enforce_transition(job.status, JobStatus.FAILED)
            job.status = JobStatus.FAILED
            job.error_code = "LEASE_EXPIRED"
            job.error_message = "Lease expired and recovered by control plane"
            job.completed_at = now
            job.updated_at = now
            job.worker_id = None
            job.worker_heartbeat_at = None
            job.lease_expires_at = None
        if stale_jobs and owns_session:
            local_session.commit()
        elif stale_jobs:
            local_session.flush()
        if owns_session:
            local_session.close()
        return len(stale_jobs)

    def _to_snapshot(self, job: ScanJob) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            owner_id=job.owner_id,
            status=job.status,
            type=job.type,
            progress=JobProgress.from_dict(job.progress),
            config=ScanJobConfig.from_dict(job.config),
            results=job.results,
            error_code=job.error_code,
            error_message=job.error_message,
            parent_job_id=job.parent_job_id,
            root_job_id=job.root_job_id,
            chain_index=job.chain_index,
            worker_id=job.worker_id,
            lease_expires_at=coerce_utc(job.lease_expires_at),
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


def snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "owner_id": snapshot.owner_id,
        "status": snapshot.status.value,
        "type": snapshot.type.value,
        "progress": snapshot.progress.to_dict(),
        "config": snapshot.config.to_dict(),
        "results": snapshot.results,
        "error_code": snapshot.error_code,
        "error_message": snapshot.error_message,
        "parent_job_id": snapshot.parent_job_id,
        "root_job_id": snapshot.root_job_id,
        "chain_index": snapshot.chain_index,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
        "started_at": snapshot.started_at,
        "completed_at": snapshot.completed_at,
    }
