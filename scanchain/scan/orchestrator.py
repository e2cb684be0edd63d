from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from scanchain.chains.manager import JobChainManager
from scanchain.chains.types import ExecutionResults
from scanchain.checkpoints.manager import CheckpointManager
from scanchain.checkpoints.types import CheckpointMetadata, CheckpointState
from scanchain.core.config import Settings
from scanchain.core.errors import CheckpointValidationError, StoreWriteError, error_code_for
from scanchain.db.models import JobStatus, ScanType
from scanchain.duplicates.service import DuplicateDetector, duplicate_report_to_dict
from scanchain.index.delta import DeltaComputer
from scanchain.index.strategy import ScanStrategyAdvisor
from scanchain.jobs.service import InvalidJobStateError, JobConflictError, JobService
from scanchain.jobs.types import JobProgress, JobSnapshot
from scanchain.sources.types import RemoteFileRecord, RemoteFileSource, ScanFilters

logger = logging.getLogger(__name__)

TOTAL_STEPS = 6


@dataclass(slots=True)
class _ScanState:
    checkpoint: CheckpointState
    modified_since: datetime | None = None
    skip_through_file_id: str | None = None
    base_files: int = 0
    base_bytes: int = 0
    base_pages: int = 0
    files_this_execution: int = 0
    resumed: bool = False
    extra_results: dict[str, Any] = field(default_factory=dict)

    @property
    def listing_exhausted(self) -> bool:
        checkpoint = self.checkpoint
        return (
            checkpoint.continuation_token is None
            and checkpoint.last_file_id is None
            and checkpoint.metadata.pages_processed > 0
        )

    def execution_results(self) -> ExecutionResults:
        checkpoint = self.checkpoint
        return ExecutionResults(
            files_processed=max(0, checkpoint.files_processed - self.base_files),
            bytes_processed=max(0, checkpoint.bytes_processed - self.base_bytes),
            pages_processed=max(0, checkpoint.metadata.pages_processed - self.base_pages),
        )


def _progress(step: int, label: str, checkpoint: CheckpointState | None = None) -> JobProgress:
    return JobProgress(
        current=step,
        total=TOTAL_STEPS,
        percentage=round(step / TOTAL_STEPS * 100),
        step=label,
        files_processed=checkpoint.files_processed if checkpoint is not None else 0,
        bytes_processed=checkpoint.bytes_processed if checkpoint is not None else 0,
    )


class ScanOrchestrator:
    """Drives one job through pending -> running -> {completed, failed, chained, cancelled}.

    Everything runs synchronously on the calling thread. The only suspension points are the
    inter-page delay and store I/O.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        source: RemoteFileSource,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        checkpoints: CheckpointManager | None = None,
        deltas: DeltaComputer | None = None,
    ):
        self._settings = settings
        self._source = source
        self._sleep = sleep
        self._jobs = JobService(settings, session_factory)
        self._checkpoints = checkpoints or CheckpointManager(settings, session_factory, clock=clock)
        self._chains = JobChainManager(settings, session_factory, clock=clock)
        self._deltas = deltas or DeltaComputer(settings, session_factory)
        self._advisor = ScanStrategyAdvisor(settings, session_factory)
        self._detector = DuplicateDetector(settings, session_factory)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def run_job(self, job_id: str, worker_id: str) -> JobSnapshot:
        job = self._jobs.get_job(job_id)
        if job.status == JobStatus.PENDING:
            claimed = self._jobs.claim_pending_job(worker_id, job_id=job_id)
            if claimed is None:
                logger.info("Job %s was claimed elsewhere; skipping", job_id)
                return self._jobs.get_job(job_id)
            job = claimed
        elif job.status != JobStatus.RUNNING or job.worker_id != worker_id.strip():
            raise InvalidJobStateError(f"Job {job_id} is {job.status.value} and not leased to {worker_id}")

        self._chains.start_execution()
        self._checkpoints.reset_cadence()
        logger.info("Scan job %s started by %s (chain index %d)", job.id, worker_id, job.chain_index)

        state: _ScanState | None = None
        try:
            self._chains.ensure_link(job)
            self._chains.update_chain_status(job.id, JobStatus.RUNNING)
            self._jobs.heartbeat(job.id, worker_id, _progress(1, "Checking scan requirements"))

            state = self._resume_or_start(job)
            self._jobs.heartbeat(
                job.id,
                worker_id,
                _progress(2, "Resuming from checkpoint" if state.resumed else "Preparing scan", state.checkpoint),
            )

            if not state.listing_exhausted:
                stopped = self._scan_pages(job, worker_id, state)
                if stopped is not None:
                    return stopped

            return self._finish(job, worker_id, state)
        except Exception as exc:  # noqa: BLE001
            return self._fail(job, worker_id, state, exc)

    def _stored_checkpoint(self, job: JobSnapshot) -> CheckpointState | None:
        try:
            checkpoint = self._checkpoints.get(job.owner_id, job.id)
        except CheckpointValidationError as exc:
            logger.warning("Discarding checkpoint for job %s and restarting from scratch: %s", job.id, exc)
            self._checkpoints.delete(job.owner_id, job.id)
            return None
        if checkpoint is None:
            return None
        checkpoint = self._validated(checkpoint, job)
        if checkpoint is None:
            self._checkpoints.delete(job.owner_id, job.id)
        return checkpoint

    def _handoff_checkpoint(self, job: JobSnapshot) -> CheckpointState | None:
        link = self._chains.get_chain_link(job.id)
        if link is None:
            return None
        try:
            return link.checkpoint
        except CheckpointValidationError as exc:
            logger.warning("Discarding hand-off checkpoint for job %s: %s", job.id, exc)
            return None

    def _resume_or_start(self, job: JobSnapshot) -> _ScanState:
        handoff = self._handoff_checkpoint(job)
        checkpoint = self._stored_checkpoint(job)
        if checkpoint is None and handoff is not None:
            checkpoint = self._validated(handoff, job)
            if checkpoint is not None:
                previous_job_id = checkpoint.job_id
                checkpoint = replace(checkpoint, job_id=job.id, created_at=None, updated_at=None)
                self._checkpoints.save(checkpoint)
                if previous_job_id != job.id:
                    self._checkpoints.delete(job.owner_id, previous_job_id)

        if checkpoint is not None:
            modified_since = None
            if checkpoint.scan_type == ScanType.DELTA:
                modified_since = self._advisor.decide(job.owner_id, force_delta=True).modified_since
            base = handoff or CheckpointState(job_id=job.id, owner_id=job.owner_id, scan_id="", scan_type=ScanType.FULL)
            logger.info(
                "Job %s resuming %s scan %s at files=%d token=%s",
                job.id,
                checkpoint.scan_type.value,
                checkpoint.scan_id,
                checkpoint.files_processed,
                "present" if checkpoint.continuation_token else "none",
            )
            return _ScanState(
                checkpoint=checkpoint,
                modified_since=modified_since,
                skip_through_file_id=checkpoint.last_file_id,
                base_files=base.files_processed,
                base_bytes=base.bytes_processed,
                base_pages=base.metadata.pages_processed,
                resumed=True,
            )

        config = job.config
        decision = self._advisor.decide(job.owner_id, force_full=config.force_full, force_delta=config.force_delta)
        now = self._now()
        logger.info("Job %s starting %s scan: %s", job.id, decision.scan_type.value, decision.reason)
        return _ScanState(
            checkpoint=CheckpointState(
                job_id=job.id,
                owner_id=job.owner_id,
                scan_id=f"scan_{job.id}_{int(now.timestamp() * 1000)}",
                scan_type=decision.scan_type,
                metadata=CheckpointMetadata(scan_started_at=now),
            ),
            modified_since=decision.modified_since if decision.scan_type == ScanType.DELTA else None,
            extra_results={"strategy": decision.to_dict()},
        )

    def _validated(self, checkpoint: CheckpointState, job: JobSnapshot) -> CheckpointState | None:
        try:
            self._checkpoints.validate(checkpoint)
        except CheckpointValidationError as exc:
            logger.warning("Discarding checkpoint for job %s and restarting from scratch: %s", job.id, exc)
            return None
        if checkpoint.owner_id != job.owner_id:
            logger.warning("Discarding checkpoint for job %s: owner mismatch", job.id)
            return None
        return checkpoint

    def _filters(self, job: JobSnapshot, state: _ScanState) -> tuple[ScanFilters, bool]:
        config = job.config
        is_delta = state.checkpoint.scan_type == ScanType.DELTA
        trashed_as_deleted = is_delta and not config.include_trashed
        filters = ScanFilters(
            include_trashed=config.include_trashed or trashed_as_deleted,
            root_scope_id=config.root_scope_id,
            max_depth=config.max_depth,
            modified_since=state.modified_since if is_delta else None,
            page_size=self._settings.scan_page_size,
        )
        return filters, trashed_as_deleted

    def _scan_pages(self, job: JobSnapshot, worker_id: str, state: _ScanState) -> JobSnapshot | None:
        """Page through the listing. Returns the final snapshot when the execution stops early."""
        filters, trashed_as_deleted = self._filters(job, state)
        checkpoint = state.checkpoint
        sub_batch = self._settings.scan_sub_batch_size
        first_fetch = True
        chain_due = False

        while True:
            if self._jobs.is_cancelled(job.id):
                return self._cancelled(job, state)
            if not first_fetch:
                files = state.files_this_execution
                avg_per_file = self._chains.elapsed() / files if files else 0.0
                if chain_due or not self._chains.has_time_for_more_files(avg_per_file, filters.page_size):
                    return self._hand_off(job, state)
            first_fetch = False

            page_token = checkpoint.continuation_token
            page = self._source.list(page_token, filters)
            records = self._skip_processed(page.records, state)
            page_files = 0

            for start in range(0, len(records), sub_batch):
                batch = records[start : start + sub_batch]
                summary = self._deltas.apply(
                    job.owner_id,
                    batch,
                    checkpoint.scan_id,
                    job.id,
                    trashed_as_deleted=trashed_as_deleted,
                )
                checkpoint.metadata.index_delta.add(summary.counts)
                checkpoint.files_processed += len(batch)
                checkpoint.bytes_processed += sum(record.size for record in batch)
                page_files += len(batch)

                last_in_page = start + sub_batch >= len(records)
                if last_in_page:
                    checkpoint.continuation_token = page.next_token
                    checkpoint.last_file_id = None
                    checkpoint.metadata.pages_processed += 1
                else:
                    checkpoint.continuation_token = page_token
                    checkpoint.last_file_id = batch[-1].id
                checkpoint.last_modified_time = batch[-1].modified_time

                self._jobs.heartbeat(
                    job.id,
                    worker_id,
                    _progress(3, f"Scanning files ({checkpoint.files_processed} processed)", checkpoint),
                )
                if self._checkpoints.should_checkpoint(len(batch)):
                    self._checkpoints.save(checkpoint)

            if not records:
                checkpoint.continuation_token = page.next_token
                checkpoint.last_file_id = None
                checkpoint.metadata.pages_processed += 1

            state.files_this_execution += page_files
            chain_due = self._chains.should_chain_job(page_files)
            logger.debug(
                "Job %s page %d done: files=%d next=%s",
                job.id,
                checkpoint.metadata.pages_processed,
                page_files,
                "present" if page.next_token else "none",
            )
            if page.next_token is None:
                return None
            if self._settings.scan_page_delay_seconds > 0:
                self._sleep(self._settings.scan_page_delay_seconds)

    def _skip_processed(self, records: list[RemoteFileRecord], state: _ScanState) -> list[RemoteFileRecord]:
        marker = state.skip_through_file_id
        state.skip_through_file_id = None
        if marker is None:
            return list(records)
        for index, record in enumerate(records):
            if record.id == marker:
                return list(records[index + 1 :])
        logger.warning("Resume marker %s not found in replayed page; reprocessing the whole page", marker)
        return list(records)

    def _hand_off(self, job: JobSnapshot, state: _ScanState) -> JobSnapshot:
        checkpoint = state.checkpoint
        self._checkpoints.save(checkpoint)
        results = state.execution_results()
        successor_id = self._chains.create_chained_job(job.id, job.owner_id, checkpoint, results)
        logger.info(
            "Job %s handed off to %s after %.1fs (files this execution=%d)",
            job.id,
            successor_id,
            self._chains.elapsed(),
            results.files_processed,
        )
        return self._jobs.get_job(job.id)

    def _cancelled(self, job: JobSnapshot, state: _ScanState) -> JobSnapshot:
        self._checkpoints.save(state.checkpoint)
        self._chains.update_chain_status(job.id, JobStatus.CANCELLED, results=state.execution_results())
        logger.info("Job %s cancelled at files=%d", job.id, state.checkpoint.files_processed)
        return self._jobs.acknowledge_cancellation(
            job.id,
            progress=_progress(3, "Scan cancelled", state.checkpoint),
        )

    def _finish(self, job: JobSnapshot, worker_id: str, state: _ScanState) -> JobSnapshot:
        checkpoint = state.checkpoint
        if checkpoint.scan_type == ScanType.FULL:
            self._jobs.heartbeat(job.id, worker_id, _progress(4, "Reconciling deleted files", checkpoint))
            reconciled = self._deltas.finalize_full_scan(
                job.owner_id,
                checkpoint.scan_id,
                job.id,
                root_scope_id=job.config.root_scope_id,
                max_depth=job.config.max_depth,
            )
            checkpoint.metadata.index_delta.add(reconciled.counts)

        self._jobs.heartbeat(job.id, worker_id, _progress(5, "Analyzing for duplicates", checkpoint))
        report = self._detector.detect_for_owner(job.owner_id)
        checkpoint.metadata.duplicates_found = report.duplicates_found

        if self._jobs.is_cancelled(job.id):
            return self._cancelled(job, state)

        self._jobs.heartbeat(job.id, worker_id, _progress(6, "Finalizing scan results", checkpoint))
        started_at = checkpoint.metadata.scan_started_at
        results: dict[str, Any] = {
            "scan_id": checkpoint.scan_id,
            "scan_type": checkpoint.scan_type.value,
            "scan_started_at": started_at.isoformat() if started_at else None,
            "files_processed": checkpoint.files_processed,
            "bytes_processed": checkpoint.bytes_processed,
            "pages_processed": checkpoint.metadata.pages_processed,
            "index_delta": checkpoint.metadata.index_delta.to_dict(),
            "duplicates": duplicate_report_to_dict(report, max_groups=self._settings.results_max_groups),
            "chain": {
                "root_job_id": job.root_job_id,
                "chain_index": job.chain_index,
                "chain_length": job.chain_index + 1,
            },
            "execution_seconds": round(self._chains.elapsed(), 3),
            **state.extra_results,
        }

        self._checkpoints.delete(job.owner_id, job.id)
        self._chains.update_chain_status(job.id, JobStatus.COMPLETED, results=state.execution_results())
        snapshot = self._jobs.complete_job(
            job.id,
            worker_id=worker_id,
            results=results,
            progress=_progress(6, "Scan completed", checkpoint),
        )
        logger.info(
            "Scan job %s completed: files=%d created=%d modified=%d deleted=%d duplicates=%d",
            job.id,
            checkpoint.files_processed,
            checkpoint.metadata.index_delta.created,
            checkpoint.metadata.index_delta.modified,
            checkpoint.metadata.index_delta.deleted,
            report.duplicates_found,
        )
        return snapshot

    def _fail(self, job: JobSnapshot, worker_id: str, state: _ScanState | None, exc: Exception) -> JobSnapshot:
        error = StoreWriteError(str(exc)) if isinstance(exc, SQLAlchemyError) else exc
        error_code = error_code_for(error)
        logger.error("Scan job %s failed with %s: %s", job.id, error_code, exc, exc_info=exc)

        if state is not None:
            self._checkpoints.create_recovery_checkpoint(error, state.checkpoint)
        self._chains.update_chain_status(
            job.id,
            JobStatus.FAILED,
            results=state.execution_results() if state is not None else None,
            error=str(exc),
        )
        try:
            return self._jobs.fail_job(
                job.id,
                worker_id=worker_id,
                error_code=error_code,
                error_message=str(exc) or exc.__class__.__name__,
            )
        except (InvalidJobStateError, JobConflictError) as status_exc:
            logger.error("Could not record failure for job %s: %s", job.id, status_exc)
            return self._jobs.get_job(job.id)
