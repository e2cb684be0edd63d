from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    return any(index.get("name") == index_name for index in inspector.get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _migration_0002_checkpoint_metadata_defaults(conn: Connection) -> None:
    # Rows written before these counters existed get zero defaults.
    if not _table_exists(conn, "scan_checkpoints"):
        return
    if conn.engine.dialect.name != "sqlite":
        return
    conn.execute(
        text(
            """
            UPDATE scan_checkpoints
            SET metadata = json_set(
                metadata,
                '$.pages_processed', COALESCE(json_extract(metadata, '$.pages_processed'), 0),
                '$.duplicates_found', COALESCE(json_extract(metadata, '$.duplicates_found'), 0)
            )
            WHERE json_extract(metadata, '$.pages_processed') IS NULL
               OR json_extract(metadata, '$.duplicates_found') IS NULL
            """
        )
    )


def _migration_0003_file_index_lookup_indexes(conn: Connection) -> None:
    if not _table_exists(conn, "file_index"):
        return

    if not _index_exists(conn, "file_index", "ix_file_index_owner_live"):
        conn.execute(
            text("CREATE INDEX ix_file_index_owner_live ON file_index (owner_id, is_deleted, last_scan_id)")
        )

    if not _index_exists(conn, "file_index", "ix_file_index_owner_size_hash"):
        conn.execute(
            text("CREATE INDEX ix_file_index_owner_size_hash ON file_index (owner_id, size, content_hash)")
        )


def _migration_0004_scan_jobs_chain_columns(conn: Connection) -> None:
    if not _table_exists(conn, "scan_jobs"):
        return

    if not _column_exists(conn, "scan_jobs", "parent_job_id"):
        conn.execute(text("ALTER TABLE scan_jobs ADD COLUMN parent_job_id VARCHAR(36)"))

    if not _column_exists(conn, "scan_jobs", "root_job_id"):
        conn.execute(text("ALTER TABLE scan_jobs ADD COLUMN root_job_id VARCHAR(36)"))
        conn.execute(text("UPDATE scan_jobs SET root_job_id = id WHERE root_job_id IS NULL"))

    if not _column_exists(conn, "scan_jobs", "chain_index"):
        conn.execute(text("ALTER TABLE scan_jobs ADD COLUMN chain_index INTEGER NOT NULL DEFAULT 0"))

    if not _index_exists(conn, "scan_jobs", "ix_scan_jobs_root"):
        conn.execute(text("CREATE INDEX ix_scan_jobs_root ON scan_jobs (root_job_id, chain_index)"))


def _migration_0005_single_active_root_job_per_owner(conn: Connection) -> None:
    if not _table_exists(conn, "scan_jobs"):
        return

    dialect_name = conn.engine.dialect.name
    if dialect_name not in {"sqlite", "postgresql"}:
        return

    conn.execute(
        text(
            "CREATE UNIQUE INDEX IF NOT EXISTS ux_scan_jobs_owner_active_root "
            "ON scan_jobs (owner_id) "
            "WHERE chain_index = 0 AND status IN ('pending', 'running')"
        )
    )


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(
        version=2,
        name="checkpoint_metadata_defaults",
        apply=_migration_0002_checkpoint_metadata_defaults,
    ),
    MigrationStep(
        version=3,
        name="file_index_lookup_indexes",
        apply=_migration_0003_file_index_lookup_indexes,
    ),
    MigrationStep(
        version=4,
        name="scan_jobs_chain_columns",
        apply=_migration_0004_scan_jobs_chain_columns,
    ),
    MigrationStep(
        version=5,
        name="single_active_root_job_per_owner",
        apply=_migration_0005_single_active_root_job_per_owner,
    ),
)


def apply_migrations(engine: Engine) -> list[str]:
    """Apply pending schema steps in version order and return the names of the ones applied."""
    applied: list[str] = []
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
            applied.append(step.name)
    return applied
