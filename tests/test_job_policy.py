from __future__ import annotations

import os
import time
from pathlib import Path

import scanchain.db.session as db_session_module
from scanchain.core.config import get_settings
from scanchain.db.init_db import initialize_database
from scanchain.db.models import JobStatus, JobType
from scanchain.jobs.service import (
    InvalidJobStateError,
    JobConflictError,
    JobPolicyError,
    JobService,
    enforce_transition,
)
from scanchain.jobs.types import JobProgress, ScanJobConfig


def make_service(tmp_path: Path, *, lease_ttl_seconds: int = 900) -> JobService:
    for key in [key for key in os.environ if key.startswith("SCANCHAIN_")]:
        del os.environ[key]
    state_root = tmp_path / f"state_{lease_ttl_seconds}"
    state_root.mkdir(parents=True, exist_ok=True)

    os.environ["SCANCHAIN_STATE_ROOT"] = state_root.as_posix()
    os.environ["SCANCHAIN_JOB_LEASE_TTL_SECONDS"] = str(lease_ttl_seconds)

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return JobService(get_settings(), db_session_module.get_session_factory())


def test_new_job_is_pending_root_of_its_chain(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = service.create_job("owner-1", ScanJobConfig(max_depth=3, root_scope_id="folder-9"))

    assert job.status == JobStatus.PENDING
    assert job.type == JobType.DRIVE_SCAN
    assert job.root_job_id == job.id
    assert job.chain_index == 0
    assert job.parent_job_id is None
    assert job.config.max_depth == 3
    assert job.config.root_scope_id == "folder-9"
    assert job.progress.step == "Queued"


def test_blank_owner_is_rejected(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    try:
        service.create_job("   ")
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")


def test_forced_modes_are_mutually_exclusive(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    try:
        service.create_job("owner-1", {"force_full": True, "force_delta": True})
    except JobPolicyError:
        pass
    else:
        raise AssertionError("expected JobPolicyError")


def test_one_active_scan_per_owner(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    service.create_job("owner-1")
    try:
        service.create_job("owner-1")
    except JobConflictError:
        pass
    else:
        raise AssertionError("expected JobConflictError")

    other = service.create_job("owner-2")
    assert other.status == JobStatus.PENDING


def test_fsm_transition_legality(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    service.create_job("owner-1")
    claimed = service.claim_pending_job("worker-a")
    assert claimed is not None
    assert claimed.status == JobStatus.RUNNING
    assert claimed.worker_id == "worker-a"
    assert claimed.lease_expires_at is not None

    finished = service.complete_job(claimed.id, worker_id="worker-a", results={"files_processed": 0})
    assert finished.status == JobStatus.COMPLETED
    assert finished.results == {"files_processed": 0}
    assert finished.completed_at is not None

    try:
        service.reset_failed_job(finished.id)
    except InvalidJobStateError:
        pass
    else:
        raise AssertionError("expected InvalidJobStateError")

    try:
        enforce_transition(JobStatus.CHAINED, JobStatus.RUNNING)
    except InvalidJobStateError:
        pass
    else:
        raise AssertionError("expected InvalidJobStateError")


def test_only_lease_owner_can_finish(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = service.create_job("owner-1")
    service.claim_pending_job("worker-a")
    try:
        service.fail_job(job.id, worker_id="worker-b", error_code="SCAN_FAILED", error_message="nope")
    except JobConflictError:
        pass
    else:
        raise AssertionError("expected JobConflictError")


def test_heartbeat_publishes_progress(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = service.create_job("owner-1")
    service.claim_pending_job("worker-a")

    updated = service.heartbeat(job.id, "worker-a", JobProgress(current=3, total=6, percentage=50, step="Scanning"))
    assert updated.progress.percentage == 50
    assert updated.progress.step == "Scanning"


def test_cancelled_job_is_observed_by_worker(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = service.create_job("owner-1")
    service.claim_pending_job("worker-a")

    cancelled = service.cancel_job(job.id)
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.error_message == "Scan cancelled by user"
    assert service.is_cancelled(job.id) is True

    still_cancelled = service.heartbeat(job.id, "worker-a", JobProgress(step="Scanning"))
    assert still_cancelled.status == JobStatus.CANCELLED

    acknowledged = service.acknowledge_cancellation(job.id)
    assert acknowledged.completed_at is not None
    assert acknowledged.lease_expires_at is None


def test_pending_job_can_be_cancelled_directly(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = service.create_job("owner-1")
    cancelled = service.cancel_job(job.id, error_message="not needed")
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.completed_at is not None
    assert cancelled.error_message == "not needed"

    service.create_job("owner-1")


def test_failed_job_can_be_reset(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = service.create_job("owner-1")
    service.claim_pending_job("worker-a")
    failed = service.fail_job(job.id, worker_id="worker-a", error_code="SOURCE_ERROR", error_message="timeout")
    assert failed.status == JobStatus.FAILED
    assert failed.error_code == "SOURCE_ERROR"

    reset = service.reset_failed_job(job.id)
    assert reset.status == JobStatus.PENDING
    assert reset.error_code is None
    assert reset.worker_id is None


def test_chain_limit_failures_are_not_retryable(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = service.create_job("owner-1")
    service.claim_pending_job("worker-a")
    service.fail_job(job.id, worker_id="worker-a", error_code="CHAIN_LIMIT_EXCEEDED", error_message="too long")
    try:
        service.reset_failed_job(job.id)
    except JobPolicyError:
        pass
    else:
        raise AssertionError("expected JobPolicyError")


def test_stale_lease_fails_job(tmp_path: Path) -> None:
    service = make_service(tmp_path, lease_ttl_seconds=1)
    job = service.create_job("owner-1")
    claimed = service.claim_pending_job("worker-a")
    assert claimed is not None
    time.sleep(1.2)
    recovered = service.recover_stale_jobs()
    assert recovered >= 1
    updated = service.get_job(job.id)
    assert updated.status == JobStatus.FAILED
    assert updated.error_code == "LEASE_EXPIRED"
    assert updated.worker_id is None

    assert service.reset_failed_job(job.id).status == JobStatus.PENDING


def test_claim_by_id_skips_other_pending_jobs(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    first = service.create_job("owner-1")
    second = service.create_job("owner-2")

    claimed = service.claim_pending_job("worker-a", job_id=second.id)
    assert claimed is not None and claimed.id == second.id
    assert service.get_job(first.id).status == JobStatus.PENDING
    assert service.claim_pending_job("worker-a", job_id=second.id) is None


def test_list_jobs_cursor_pagination_is_gap_free(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    created_ids = [service.create_job(f"owner-{i}").id for i in range(8)]

    page1 = service.list_jobs(limit=3)
    page2 = service.list_jobs(limit=3, cursor=page1.next_cursor)
    page3 = service.list_jobs(limit=3, cursor=page2.next_cursor)

    seen = [job.id for job in page1.items + page2.items + page3.items]
    assert len(seen) == len(set(seen))
    assert set(seen) == set(created_ids)
    assert page3.next_cursor is None

    only_owner = service.list_jobs(owner_id="owner-3")
    assert [job.id for job in only_owner.items] == [created_ids[3]]


def test_list_jobs_rejects_unknown_cursor(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    service.create_job("owner-1")
    try:
        service.list_jobs(limit=10, cursor="does-not-exist")
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError for unknown cursor")
