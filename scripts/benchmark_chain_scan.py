from __future__ import annotations

import argparse
import os
import time
from pathlib import Path

import scanchain.db.session as db_session_module
from sqlalchemy import text

from scanchain.chains.manager import JobChainManager
from scanchain.core.config import get_settings
from scanchain.db.init_db import initialize_database
from scanchain.sources.memory import InMemoryFileSource
from scanchain.sources.types import RemoteFileRecord
from scanchain.worker.pipeline import drain_pending_jobs, enqueue_scan_job


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark a chained scan over a synthetic listing")
    parser.add_argument("--state-root", required=True, help="State root directory")
    parser.add_argument("--files", type=int, default=20000, help="Number of files in the listing")
    parser.add_argument("--duplicate-every", type=int, default=10, help="Every Nth file shares a content hash")
    parser.add_argument("--page-size", type=int, default=1000, help="Listing page size")
    parser.add_argument("--files-per-execution", type=int, default=5000, help="File budget per chained execution")
    parser.add_argument("--explain", action="store_true", help="Print query plan details")
    return parser.parse_args()


def configure_env(state_root: Path, page_size: int, files_per_execution: int) -> None:
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["SCANCHAIN_STATE_ROOT"] = state_root.as_posix()
    os.environ["SCANCHAIN_SCAN_PAGE_SIZE"] = str(page_size)
    os.environ["SCANCHAIN_SCAN_SUB_BATCH_SIZE"] = str(min(100, page_size))
    os.environ["SCANCHAIN_SCAN_PAGE_DELAY_SECONDS"] = "0"
    os.environ["SCANCHAIN_CHAIN_MAX_FILES_PER_EXECUTION"] = str(files_per_execution)

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None


def build_source(total_files: int, duplicate_every: int) -> InMemoryFileSource:
    records = []
    for index in range(total_files):
        shared = duplicate_every > 0 and index % duplicate_every == 0
        records.append(
            RemoteFileRecord(
                id=f"file-{index:08d}",
                name=f"fixture-{index}.jpg",
                mime_type="image/jpeg",
                size=2048 if shared else 4096 + index,
                modified_time="2024-01-01T00:00:00+00:00",
                parent_ids=("bench-root",),
                content_hash="shared" if shared else f"hash-{index}",
            )
        )
    return InMemoryFileSource(records)


def benchmark(source: InMemoryFileSource) -> tuple[str, float, int]:
    root_id = enqueue_scan_job("bench-owner")
    start = time.perf_counter()
    finished = drain_pending_jobs(lambda job: source, worker_id="bench-worker", max_jobs=1000)
    elapsed = time.perf_counter() - start
    return root_id, elapsed, len(finished)


def maybe_print_explain() -> None:
    with db_session_module.get_session_factory()() as session:
        rows = session.execute(
            text(
                """
                EXPLAIN QUERY PLAN
                SELECT file_id, name, size, content_hash
                FROM file_index INDEXED BY ix_file_index_owner_live
                WHERE owner_id = 'bench-owner'
                  AND is_deleted = 0
                  AND size > 0
                """
            )
        ).all()

    print("Query plan:")
    for row in rows:
        print(f"- {row[3]}")


def main() -> None:
    args = parse_args()
    configure_env(Path(args.state_root), args.page_size, args.files_per_execution)
    initialize_database()
    source = build_source(args.files, args.duplicate_every)
    root_id, elapsed, executions = benchmark(source)

    aggregate = JobChainManager(get_settings(), db_session_module.get_session_factory()).aggregate_chain_results(root_id)
    print(
        f"files={aggregate.total_files_processed} executions={executions} chain_length={aggregate.chain_length} "
        f"status={aggregate.status.value} elapsed_seconds={elapsed:.3f} list_calls={len(source.calls)}"
    )
    if args.explain:
        maybe_print_explain()


if __name__ == "__main__":
    main()
