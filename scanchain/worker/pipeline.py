from __future__ import annotations

import logging
import os
import socket
from typing import Callable

from scanchain.core.config import get_settings
from scanchain.core.logging import configure_logging
from scanchain.db.session import get_session_factory
from scanchain.jobs.service import JobService
from scanchain.jobs.types import JobSnapshot, ScanJobConfig
from scanchain.scan.orchestrator import ScanOrchestrator
from scanchain.sources.types import RemoteFileSource

logger = logging.getLogger(__name__)

SourceFactory = Callable[[JobSnapshot], RemoteFileSource]


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def enqueue_scan_job(
    owner_id: str,
    *,
    max_depth: int | None = None,
    include_trashed: bool = False,
    root_scope_id: str | None = None,
    force_full: bool = False,
    force_delta: bool = False,
) -> str:
    settings = get_settings()
    job_service = JobService(settings=settings, session_factory=get_session_factory())

    config = ScanJobConfig(
        max_depth=max_depth,
        include_trashed=include_trashed,
        root_scope_id=root_scope_id,
        force_full=force_full,
        force_delta=force_delta,
    )
    snapshot = job_service.create_job(owner_id, config)
    logger.info("Scan job %s enqueued for owner %s", snapshot.id, owner_id)
    return snapshot.id


def run_pending_job_once(
    source_factory: SourceFactory,
    *,
    worker_id: str | None = None,
    job_id: str | None = None,
) -> JobSnapshot | None:
    """Claim the oldest pending job (chained successors included) and run it to a stopping point."""
    settings = get_settings()
    configure_logging(settings.log_level)
    session_factory = get_session_factory()
    resolved_worker_id = worker_id or default_worker_id()

    job_service = JobService(settings=settings, session_factory=session_factory)
    claimed = job_service.claim_pending_job(resolved_worker_id, job_id=job_id)
    if claimed is None:
        logger.debug("No pending scan jobs")
        return None

    orchestrator = ScanOrchestrator(settings, session_factory, source_factory(claimed))
    return orchestrator.run_job(claimed.id, resolved_worker_id)


def drain_pending_jobs(
    source_factory: SourceFactory,
    *,
    worker_id: str | None = None,
    max_jobs: int = 100,
) -> list[JobSnapshot]:
    """Run pending jobs until none are left, so a whole chain completes in one process."""
    finished: list[JobSnapshot] = []
    for _ in range(max_jobs):
        snapshot = run_pending_job_once(source_factory, worker_id=worker_id)
        if snapshot is None:
            break
        finished.append(snapshot)
    return finished
