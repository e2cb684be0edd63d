from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from scanchain.chains.types import ChainAggregate, ChainLinkSnapshot, ChainOutcome, ExecutionResults
from scanchain.checkpoints.types import CheckpointState, checkpoint_state_to_dict
from scanchain.core.config import Settings
from scanchain.core.errors import ChainLimitExceededError
from scanchain.db.models import TERMINAL_JOB_STATUSES, JobChainLink, JobStatus, JobType, ScanJob
from scanchain.db.session import coerce_utc
from scanchain.jobs.service import JobNotFoundError, enforce_transition
from scanchain.jobs.types import JobSnapshot

logger = logging.getLogger(__name__)

_UNFINISHED_LINK_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.CANCELLED})


class JobChainManager:
    """Splits one logical scan into a lineage of bounded executions.

    The execution clock is local to this instance: call ``start_execution`` when a worker picks
    up a job, then consult ``should_chain_job`` and ``has_time_for_more_files`` before each page.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._clock = clock
        self._started_at = clock()
        self._files_this_execution = 0

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def start_execution(self) -> None:
        self._started_at = self._clock()
        self._files_this_execution = 0

    def elapsed(self) -> float:
        return self._clock() - self._started_at

    def should_chain_job(self, files_this_batch: int) -> bool:
        self._files_this_execution += max(0, files_this_batch)
        return (
            self.elapsed() >= self._settings.chain_max_execution_seconds
            or self._files_this_execution >= self._settings.chain_max_files_per_execution
        )

    def get_remaining_time(self) -> float:
        return max(0.0, self._settings.chain_max_execution_seconds - self.elapsed())

    def has_time_for_more_files(self, avg_per_file_seconds: float, batch_size: int) -> bool:
        estimated = max(0.0, avg_per_file_seconds) * max(0, batch_size)
        return self.get_remaining_time() > estimated + self._settings.chain_timeout_buffer_seconds

    def ensure_link(self, job: JobSnapshot) -> ChainLinkSnapshot:
        with self._session_factory() as session:
            link = session.get(JobChainLink, job.id)
            if link is None:
                link = JobChainLink(
                    id=job.id,
                    parent_job_id=job.parent_job_id,
                    root_job_id=job.root_job_id,
                    chain_index=job.chain_index,
                    owner_id=job.owner_id,
                    status=job.status,
                    created_at=self._now(),
                )
                session.add(link)
                session.commit()
                session.refresh(link)
            return self._to_snapshot(link)

    def create_chained_job(
        self,
        parent_job_id: str,
        owner_id: str,
        checkpoint: CheckpointState,
        execution_results: ExecutionResults | None = None,
    ) -> str:
        """Hand the scan off to a pending successor job.

        The parent job and its link are marked chained in the same transaction that inserts the
        successor, so no dispatcher can claim the successor while the parent still looks active.
        """
        now = self._now()
        with self._session_factory() as session:
            parent_job = session.get(ScanJob, parent_job_id)
            if parent_job is None:
                raise JobNotFoundError(f"Job not found: {parent_job_id}")
            if parent_job.owner_id != owner_id:
                raise ValueError(f"Job {parent_job_id} does not belong to owner {owner_id}")

            parent_link = session.get(JobChainLink, parent_job_id)
            parent_index = parent_link.chain_index if parent_link is not None else 0
            chain_index = parent_index + 1
            if chain_index > self._settings.chain_max_length:
                logger.error(
                    "Chain limit reached for job %s: index %d > %d",
                    parent_job_id,
                    chain_index,
                    self._settings.chain_max_length,
                )
                raise ChainLimitExceededError(chain_index, self._settings.chain_max_length)

            enforce_transition(parent_job.status, JobStatus.CHAINED)
            root_job_id = parent_link.root_job_id if parent_link is not None else parent_job.root_job_id
            if parent_link is None:
                parent_link = JobChainLink(
                    id=parent_job_id,
                    parent_job_id=parent_job.parent_job_id,
                    root_job_id=root_job_id,
                    chain_index=0,
                    owner_id=owner_id,
                    created_at=now,
                    started_at=coerce_utc(parent_job.started_at),
                )
                session.add(parent_link)

            results = execution_results or ExecutionResults(
                files_processed=checkpoint.files_processed,
                bytes_processed=checkpoint.bytes_processed,
                pages_processed=checkpoint.metadata.pages_processed,
            )
            successor_id = str(uuid4())

            parent_link.status = JobStatus.CHAINED
            parent_link.results = results.to_dict()
            parent_link.completed_at = now

            parent_job.status = JobStatus.CHAINED
            parent_job.results = {"chained_to": successor_id, "execution": results.to_dict()}
            parent_job.completed_at = now
            parent_job.lease_expires_at = None
            parent_job.updated_at = now

            payload = checkpoint_state_to_dict(checkpoint)
            if payload["expires_at"] is None:
                payload["expires_at"] = (now + timedelta(seconds=self._settings.checkpoint_ttl_seconds)).isoformat()

            session.add(
                JobChainLink(
                    id=successor_id,
                    parent_job_id=parent_job_id,
                    root_job_id=root_job_id,
                    chain_index=chain_index,
                    owner_id=owner_id,
                    status=JobStatus.PENDING,
                    checkpoint=payload,
                    created_at=now,
                )
            )
            session.add(
                ScanJob(
                    id=successor_id,
                    owner_id=owner_id,
                    status=JobStatus.PENDING,
                    type=JobType.CHAINED_SCAN,
                    progress=dict(parent_job.progress or {}),
                    config=dict(parent_job.config or {}),
                    parent_job_id=parent_job_id,
                    root_job_id=root_job_id,
                    chain_index=chain_index,
                    created_at=now,
                    updated_at=now,
                )
            )
            session.commit()

        logger.info(
            "Chained job %s created from %s at index %d (files=%d)",
            successor_id,
            parent_job_id,
            chain_index,
            checkpoint.files_processed,
        )
        return successor_id

    def update_chain_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        results: ExecutionResults | None = None,
        error: str | None = None,
    ) -> bool:
        now = self._now()
        try:
            with self._session_factory() as session:
                link = session.get(JobChainLink, job_id)
                if link is None:
                    logger.warning("No chain link recorded for job %s", job_id)
                    return False
                link.status = status
                if status == JobStatus.RUNNING and link.started_at is None:
                    link.started_at = now
                if status in TERMINAL_JOB_STATUSES:
                    link.completed_at = now
                if results is not None:
                    link.results = results.to_dict()
                if error:
                    link.error = error
                session.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to update chain status for job %s: %s", job_id, exc)
            return False
        logger.info("Chain status for job %s set to %s", job_id, status.value)
        return True

    def get_chain_link(self, job_id: str) -> ChainLinkSnapshot | None:
        with self._session_factory() as session:
            link = session.get(JobChainLink, job_id)
            return self._to_snapshot(link) if link is not None else None

    def get_full_chain(self, root_job_id: str) -> list[ChainLinkSnapshot]:
        with self._session_factory() as session:
            links = list(
                session.scalars(
                    select(JobChainLink)
                    .where(JobChainLink.root_job_id == root_job_id)
                    .order_by(JobChainLink.chain_index.asc(), JobChainLink.created_at.asc())
                ).all()
            )
            by_parent: dict[str | None, list[JobChainLink]] = {}
            root: JobChainLink | None = None
            for link in links:
                if link.id == root_job_id:
                    root = link
                else:
                    by_parent.setdefault(link.parent_job_id, []).append(link)
            if root is None:
                return []

            lineage = [root]
            frontier = [root.id]
            while frontier:
                children = by_parent.pop(frontier.pop(0), [])
                lineage.extend(children)
                frontier.extend(child.id for child in children)
            lineage.sort(key=lambda item: item.chain_index)
            return [self._to_snapshot(link) for link in lineage]

    def aggregate_chain_results(self, root_job_id: str) -> ChainAggregate:
        chain = self.get_full_chain(root_job_id)
        total_files = 0
        total_bytes = 0
        total_pages = 0
        earliest_start: datetime | None = None
        latest_end: datetime | None = None
        has_failure = False
        unfinished = not chain

        for link in chain:
            if link.results is not None:
                total_files += link.results.files_processed
                total_bytes += link.results.bytes_processed
                total_pages += link.results.pages_processed
            if link.started_at is not None and (earliest_start is None or link.started_at < earliest_start):
                earliest_start = link.started_at
            if link.completed_at is not None and (latest_end is None or link.completed_at > latest_end):
                latest_end = link.completed_at
            if link.status == JobStatus.FAILED:
                has_failure = True
            elif link.status in _UNFINISHED_LINK_STATUSES:
                unfinished = True

        duration = 0.0
        if earliest_start is not None and latest_end is not None and latest_end > earliest_start:
            duration = (latest_end - earliest_start).total_seconds()

        if has_failure:
            outcome = ChainOutcome.FAILED
        elif unfinished:
            outcome = ChainOutcome.PARTIAL
        else:
            outcome = ChainOutcome.COMPLETED

        logger.info(
            "Chain %s aggregated: links=%d files=%d status=%s",
            root_job_id,
            len(chain),
            total_files,
            outcome.value,
        )
        return ChainAggregate(
            root_job_id=root_job_id,
            total_files_processed=total_files,
            total_bytes_processed=total_bytes,
            total_pages_processed=total_pages,
            chain_length=len(chain),
            total_duration_seconds=duration,
            status=outcome,
        )

    def cleanup_old_chains(self, retention_days: int | None = None, batch_size: int | None = None) -> int:
        days = retention_days if retention_days is not None else self._settings.chain_retention_days
        limit = batch_size or self._settings.maintenance_batch_size
        cutoff = self._now() - timedelta(days=days)
        with self._session_factory() as session:
            ids = list(
                session.scalars(
                    select(JobChainLink.id)
                    .where(
                        JobChainLink.status.in_(TERMINAL_JOB_STATUSES),
                        JobChainLink.completed_at.is_not(None),
                        JobChainLink.completed_at < cutoff,
                    )
                    .order_by(JobChainLink.completed_at.asc())
                    .limit(limit)
                ).all()
            )
            if not ids:
                return 0
            session.execute(delete(JobChainLink).where(JobChainLink.id.in_(ids)))
            session.commit()
        logger.info("Old chain links cleaned: %d (retention %d days)", len(ids), days)
        return len(ids)

    def _to_snapshot(self, link: JobChainLink) -> ChainLinkSnapshot:
        return ChainLinkSnapshot(
            id=link.id,
            parent_job_id=link.parent_job_id,
            root_job_id=link.root_job_id,
            chain_index=link.chain_index,
            owner_id=link.owner_id,
            status=link.status,
            checkpoint_payload=link.checkpoint,
            results=ExecutionResults.from_dict(link.results) if link.results is not None else None,
            error=link.error,
            created_at=coerce_utc(link.created_at),
            started_at=coerce_utc(link.started_at),
            completed_at=coerce_utc(link.completed_at),
        )


def chain_link_to_dict(link: ChainLinkSnapshot) -> dict[str, object]:
    return {
        "id": link.id,
        "parent_job_id": link.parent_job_id,
        "root_job_id": link.root_job_id,
        "chain_index": link.chain_index,
        "owner_id": link.owner_id,
        "status": link.status.value,
        "results": link.results.to_dict() if link.results is not None else None,
        "error": link.error,
        "created_at": link.created_at,
        "started_at": link.started_at,
        "completed_at": link.completed_at,
    }


def chain_aggregate_to_dict(aggregate: ChainAggregate) -> dict[str, object]:
    return {
        "root_job_id": aggregate.root_job_id,
        "total_files_processed": aggregate.total_files_processed,
        "total_bytes_processed": aggregate.total_bytes_processed,
        "total_pages_processed": aggregate.total_pages_processed,
        "chain_length": aggregate.chain_length,
        "total_duration_seconds": aggregate.total_duration_seconds,
        "status": aggregate.status.value,
    }
