from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError

from scanchain.core.config import Settings
from scanchain.db.init_db import initialize_database
from scanchain.db.migrations import MIGRATIONS, apply_migrations
from scanchain.db.session import build_engine, coerce_utc


def _column_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _index_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def test_apply_migrations_upgrades_legacy_schema(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE scan_jobs (
                    id VARCHAR(36) PRIMARY KEY,
                    owner_id VARCHAR(128) NOT NULL,
                    status VARCHAR(9) NOT NULL,
                    type VARCHAR(12) NOT NULL,
                    progress JSON NOT NULL,
                    config JSON NOT NULL,
                    results JSON,
                    error_code VARCHAR(64),
                    error_message TEXT,
                    worker_id VARCHAR(128),
                    worker_heartbeat_at DATETIME,
                    lease_expires_at DATETIME,
                    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    started_at DATETIME,
                    completed_at DATETIME
                )
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE TABLE scan_checkpoints (
                    owner_id VARCHAR(128) NOT NULL,
                    job_id VARCHAR(36) NOT NULL,
                    scan_id VARCHAR(128) NOT NULL,
                    continuation_token TEXT,
                    files_processed BIGINT NOT NULL DEFAULT 0,
                    bytes_processed BIGINT NOT NULL DEFAULT 0,
                    last_file_id VARCHAR(256),
                    last_modified_time VARCHAR(64),
                    scan_type VARCHAR(5) NOT NULL,
                    created_at DATETIME NOT NULL,
                    updated_at DATETIME NOT NULL,
                    expires_at DATETIME NOT NULL,
                    metadata JSON NOT NULL,
                    PRIMARY KEY (owner_id, job_id)
                )
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE TABLE file_index (
                    owner_id VARCHAR(128) NOT NULL,
                    file_id VARCHAR(256) NOT NULL,
                    name VARCHAR(1024) NOT NULL,
                    mime_type VARCHAR(255) NOT NULL,
                    size BIGINT NOT NULL DEFAULT 0,
                    modified_time VARCHAR(64) NOT NULL,
                    parent_id VARCHAR(256),
                    content_hash VARCHAR(128),
                    version INTEGER NOT NULL DEFAULT 1,
                    last_scan_id VARCHAR(128) NOT NULL,
                    is_deleted BOOLEAN NOT NULL DEFAULT 0,
                    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (owner_id, file_id)
                )
                """
            )
        )
        conn.execute(
            text(
                "INSERT INTO scan_jobs (id, owner_id, status, type, progress, config) "
                "VALUES ('job-1', 'owner-1', 'completed', 'drive_scan', '{}', '{}')"
            )
        )
        conn.execute(
            text(
                "INSERT INTO scan_checkpoints (owner_id, job_id, scan_id, scan_type, created_at, updated_at, "
                "expires_at, metadata) VALUES ('owner-1', 'job-1', 'scan-1', 'full', '2026-01-01 00:00:00', "
                "'2026-01-01 00:00:00', '2026-01-02 00:00:00', :meta)"
            ),
            {"meta": json.dumps({"index_delta": {"created": 3}})},
        )

    first = apply_migrations(engine)
    second = apply_migrations(engine)

    with engine.begin() as conn:
        job_columns = _column_names(conn, "scan_jobs")
        job_indexes = _index_names(conn, "scan_jobs")
        file_indexes = _index_names(conn, "file_index")
        root_job_id = conn.execute(text("SELECT root_job_id FROM scan_jobs WHERE id = 'job-1'")).scalar_one()
        chain_index = conn.execute(text("SELECT chain_index FROM scan_jobs WHERE id = 'job-1'")).scalar_one()
        meta = json.loads(conn.execute(text("SELECT metadata FROM scan_checkpoints")).scalar_one())
        migration_versions = [
            int(row[0]) for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version")).all()
        ]

    assert {"parent_job_id", "root_job_id", "chain_index"}.issubset(job_columns)
    assert {"ix_scan_jobs_root", "ux_scan_jobs_owner_active_root"}.issubset(job_indexes)
    assert {"ix_file_index_owner_live", "ix_file_index_owner_size_hash"}.issubset(file_indexes)
    assert root_job_id == "job-1"
    assert chain_index == 0
    assert meta["pages_processed"] == 0
    assert meta["duplicates_found"] == 0
    assert meta["index_delta"] == {"created": 3}
    assert migration_versions == [step.version for step in MIGRATIONS]
    assert first == [step.name for step in MIGRATIONS]
    assert second == []


def test_active_root_index_allows_chained_successors(tmp_path: Path) -> None:
    db_path = tmp_path / "fresh.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE scan_jobs (id VARCHAR(36) PRIMARY KEY, owner_id VARCHAR(128) NOT NULL, "
                "status VARCHAR(9) NOT NULL)"
            )
        )
    apply_migrations(engine)

    with engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO scan_jobs (id, owner_id, status, root_job_id, chain_index) VALUES "
                "('a', 'owner-1', 'pending', 'a', 0), ('b', 'owner-1', 'pending', 'x', 1)"
            )
        )

    try:
        with engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO scan_jobs (id, owner_id, status, root_job_id, chain_index) "
                    "VALUES ('c', 'owner-1', 'running', 'c', 0)"
                )
            )
    except IntegrityError:
        pass
    else:
        raise AssertionError("expected unique constraint violation")


def test_sqlite_connections_wait_on_locks_and_use_wal(tmp_path: Path) -> None:
    settings = Settings(state_root=tmp_path, sqlite_busy_timeout_ms=7500)
    engine = initialize_database(build_engine(settings))

    with engine.connect() as conn:
        busy_timeout = conn.execute(text("PRAGMA busy_timeout")).scalar_one()
        journal_mode = conn.execute(text("PRAGMA journal_mode")).scalar_one()
        tables = {
            str(row[0]) for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'table'")).all()
        }

    assert busy_timeout == 7500
    assert str(journal_mode).lower() == "wal"
    assert {"scan_jobs", "scan_checkpoints", "job_chain_links", "file_index", "scan_deltas"}.issubset(tables)
    engine.dispose()


def test_coerce_utc_tags_naive_timestamps() -> None:
    naive = datetime(2026, 1, 1, 12, 0, 0)
    aware = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    assert coerce_utc(None) is None
    assert coerce_utc(naive) == aware
    assert coerce_utc(naive).tzinfo is timezone.utc
    assert coerce_utc(aware) is aware
