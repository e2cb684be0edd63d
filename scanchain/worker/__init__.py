from scanchain.worker.pipeline import drain_pending_jobs, enqueue_scan_job, run_pending_job_once

__all__ = [
    "enqueue_scan_job",
    "run_pending_job_once",
    "drain_pending_jobs",
]
