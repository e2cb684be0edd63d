from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import scanchain.db.session as db_session_module
from sqlalchemy import func, select

from scanchain.chains.manager import JobChainManager
from scanchain.chains.types import ChainOutcome, ExecutionResults
from scanchain.checkpoints.types import CheckpointMetadata, CheckpointState
from scanchain.core.config import get_settings
from scanchain.core.errors import ChainLimitExceededError
from scanchain.db.init_db import initialize_database
from scanchain.db.models import JobChainLink, JobStatus, JobType, ScanJob, ScanType
from scanchain.jobs.service import JobConflictError, JobService


class FakeClock:
    def __init__(self, start: float = 50.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def setup_env(tmp_path: Path, clock: FakeClock | None = None, **overrides: object) -> tuple[JobService, JobChainManager]:
    for key in [key for key in os.environ if key.startswith("SCANCHAIN_")]:
        del os.environ[key]
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["SCANCHAIN_STATE_ROOT"] = state_root.as_posix()
    for key, value in overrides.items():
        os.environ[f"SCANCHAIN_{key.upper()}"] = str(value)

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    settings = get_settings()
    factory = db_session_module.get_session_factory()
    return JobService(settings, factory), JobChainManager(settings, factory, clock=clock or FakeClock())


def running_job(service: JobService, chains: JobChainManager, owner_id: str = "owner-1") -> str:
    job = service.create_job(owner_id)
    claimed = service.claim_pending_job("worker-a", job_id=job.id)
    assert claimed is not None
    chains.ensure_link(claimed)
    return claimed.id


def checkpoint_for(job_id: str, token: str, files: int) -> CheckpointState:
    return CheckpointState(
        job_id=job_id,
        owner_id="owner-1",
        scan_id="scan-1",
        scan_type=ScanType.FULL,
        continuation_token=token,
        files_processed=files,
        bytes_processed=files * 10,
        metadata=CheckpointMetadata(pages_processed=files // 1000),
    )


def insert_link(
    link_id: str,
    *,
    parent: str | None,
    index: int,
    status: JobStatus,
    files: int = 0,
    root: str = "root",
    completed_at: datetime | None = None,
) -> None:
    now = datetime.now(tz=timezone.utc)
    with db_session_module.get_session_factory()() as session:
        session.add(
            JobChainLink(
                id=link_id,
                parent_job_id=parent,
                root_job_id=root,
                chain_index=index,
                owner_id="owner-1",
                status=status,
                results=ExecutionResults(files_processed=files, bytes_processed=files).to_dict(),
                created_at=now,
                started_at=now - timedelta(minutes=10 - index),
                completed_at=completed_at or now - timedelta(minutes=9 - index),
            )
        )
        session.commit()


def count_rows(model: type) -> int:
    with db_session_module.get_session_factory()() as session:
        return int(session.scalar(select(func.count()).select_from(model)) or 0)


def test_file_budget_triggers_chaining(tmp_path: Path) -> None:
    _, chains = setup_env(tmp_path, chain_max_files_per_execution=100)
    chains.start_execution()
    assert chains.should_chain_job(60) is False
    assert chains.should_chain_job(40) is True


def test_time_budget_triggers_chaining(tmp_path: Path) -> None:
    clock = FakeClock()
    _, chains = setup_env(tmp_path, clock=clock)
    chains.start_execution()
    clock.advance(479)
    assert chains.should_chain_job(0) is False
    clock.advance(1)
    assert chains.should_chain_job(0) is True


def test_remaining_time_keeps_safety_buffer(tmp_path: Path) -> None:
    clock = FakeClock()
    _, chains = setup_env(tmp_path, clock=clock)
    chains.start_execution()
    assert chains.has_time_for_more_files(0.1, 1000) is True

    clock.advance(400)
    assert chains.get_remaining_time() == 80
    assert chains.has_time_for_more_files(0.01, 10) is True
    assert chains.has_time_for_more_files(0.1, 1000) is False

    clock.advance(200)
    assert chains.get_remaining_time() == 0


def test_hand_off_marks_parent_and_queues_successor(tmp_path: Path) -> None:
    service, chains = setup_env(tmp_path)
    parent_id = running_job(service, chains)

    successor_id = chains.create_chained_job(
        parent_id,
        "owner-1",
        checkpoint_for(parent_id, "1000", 1000),
        ExecutionResults(files_processed=1000, bytes_processed=10000, pages_processed=1),
    )

    parent = service.get_job(parent_id)
    assert parent.status == JobStatus.CHAINED
    assert parent.results == {
        "chained_to": successor_id,
        "execution": {"files_processed": 1000, "bytes_processed": 10000, "pages_processed": 1},
    }

    successor = service.get_job(successor_id)
    assert successor.status == JobStatus.PENDING
    assert successor.type == JobType.CHAINED_SCAN
    assert successor.parent_job_id == parent_id
    assert successor.root_job_id == parent_id
    assert successor.chain_index == 1

    link = chains.get_chain_link(successor_id)
    assert link is not None
    assert link.status == JobStatus.PENDING
    assert link.checkpoint is not None
    assert link.checkpoint.continuation_token == "1000"
    assert link.checkpoint.expires_at is not None

    parent_link = chains.get_chain_link(parent_id)
    assert parent_link is not None
    assert parent_link.status == JobStatus.CHAINED
    assert parent_link.results is not None and parent_link.results.files_processed == 1000


def test_pending_successor_blocks_new_scan_for_owner(tmp_path: Path) -> None:
    service, chains = setup_env(tmp_path)
    parent_id = running_job(service, chains)
    chains.create_chained_job(parent_id, "owner-1", checkpoint_for(parent_id, "1000", 1000))

    try:
        service.create_job("owner-1")
    except JobConflictError:
        pass
    else:
        raise AssertionError("expected JobConflictError")


def test_chain_limit_writes_nothing(tmp_path: Path) -> None:
    service, chains = setup_env(tmp_path, chain_max_length=2)
    current = running_job(service, chains)
    for index in range(2):
        successor_id = chains.create_chained_job(current, "owner-1", checkpoint_for(current, str(index), index))
        claimed = service.claim_pending_job("worker-a", job_id=successor_id)
        assert claimed is not None
        current = claimed.id

    jobs_before = count_rows(ScanJob)
    links_before = count_rows(JobChainLink)
    try:
        chains.create_chained_job(current, "owner-1", checkpoint_for(current, "9", 9))
    except ChainLimitExceededError as exc:
        assert exc.chain_index == 3
        assert exc.max_chain_length == 2
        assert exc.retryable is False
    else:
        raise AssertionError("expected ChainLimitExceededError")

    assert count_rows(ScanJob) == jobs_before
    assert count_rows(JobChainLink) == links_before
    assert service.get_job(current).status == JobStatus.RUNNING


def test_aggregate_sums_completed_links(tmp_path: Path) -> None:
    _, chains = setup_env(tmp_path)
    insert_link("root", parent=None, index=0, status=JobStatus.CHAINED, files=1000)
    insert_link("c1", parent="root", index=1, status=JobStatus.CHAINED, files=1000)
    insert_link("c2", parent="c1", index=2, status=JobStatus.COMPLETED, files=500)

    aggregate = chains.aggregate_chain_results("root")
    assert aggregate.total_files_processed == 2500
    assert aggregate.chain_length == 3
    assert aggregate.status == ChainOutcome.COMPLETED
    assert aggregate.total_duration_seconds > 0


def test_aggregate_reports_failure_anywhere_in_chain(tmp_path: Path) -> None:
    _, chains = setup_env(tmp_path)
    insert_link("root", parent=None, index=0, status=JobStatus.COMPLETED, files=1000)
    insert_link("c1", parent="root", index=1, status=JobStatus.FAILED, files=1000)
    insert_link("c2", parent="c1", index=2, status=JobStatus.COMPLETED, files=500)

    aggregate = chains.aggregate_chain_results("root")
    assert aggregate.status == ChainOutcome.FAILED
    assert aggregate.total_files_processed == 2500


def test_aggregate_is_partial_while_links_are_unfinished(tmp_path: Path) -> None:
    _, chains = setup_env(tmp_path)
    insert_link("root", parent=None, index=0, status=JobStatus.CHAINED, files=1000)
    insert_link("c1", parent="root", index=1, status=JobStatus.PENDING)

    assert chains.aggregate_chain_results("root").status == ChainOutcome.PARTIAL
    assert chains.aggregate_chain_results("unknown").status == ChainOutcome.PARTIAL


def test_full_chain_follows_parent_links(tmp_path: Path) -> None:
    _, chains = setup_env(tmp_path)
    insert_link("root", parent=None, index=0, status=JobStatus.CHAINED)
    insert_link("c1", parent="root", index=1, status=JobStatus.CHAINED)
    insert_link("c2", parent="c1", index=2, status=JobStatus.RUNNING)
    insert_link("stray", parent="missing", index=1, status=JobStatus.COMPLETED)

    assert [link.id for link in chains.get_full_chain("root")] == ["root", "c1", "c2"]


def test_cleanup_removes_only_old_terminal_links(tmp_path: Path) -> None:
    _, chains = setup_env(tmp_path)
    old = datetime.now(tz=timezone.utc) - timedelta(days=10)
    insert_link("a", parent=None, index=0, status=JobStatus.COMPLETED, root="a", completed_at=old)
    insert_link("b", parent=None, index=0, status=JobStatus.FAILED, root="b", completed_at=old)
    insert_link("c", parent=None, index=0, status=JobStatus.CHAINED, root="c", completed_at=old)
    insert_link("d", parent=None, index=0, status=JobStatus.RUNNING, root="d", completed_at=old)
    insert_link("e", parent=None, index=0, status=JobStatus.COMPLETED, root="e")

    assert chains.cleanup_old_chains(retention_days=7, batch_size=2) == 2
    assert chains.cleanup_old_chains(retention_days=7, batch_size=2) == 1
    assert chains.cleanup_old_chains(retention_days=7, batch_size=2) == 0
    assert chains.get_chain_link("d") is not None
    assert chains.get_chain_link("e") is not None
