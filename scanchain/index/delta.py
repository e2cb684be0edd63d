from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from scanchain.core.config import Settings
from scanchain.core.errors import StoreWriteError
from scanchain.db.models import DeltaType, FileIndexEntry, ScanDelta
from scanchain.index.types import DeltaEvent, DeltaSummary
from scanchain.sources.types import RemoteFileRecord

logger = logging.getLogger(__name__)


def _has_changed(row: FileIndexEntry, record: RemoteFileRecord) -> bool:
    return (
        row.name != record.name
        or row.size != record.size
        or row.modified_time != record.modified_time
    )


class DeltaComputer:
    """Merges observed listing records into the file index and logs created/modified/deleted events.

    Merges are keyed by (owner_id, file_id) and are idempotent for a given scan_id, so replaying a
    page after a resume produces no new events for entries that were already merged.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def apply(
        self,
        owner_id: str,
        observed: Sequence[RemoteFileRecord],
        scan_id: str,
        job_id: str | None = None,
        *,
        trashed_as_deleted: bool = False,
    ) -> DeltaSummary:
        summary = DeltaSummary()
        if not observed:
            return summary

        by_id: dict[str, RemoteFileRecord] = {}
        for record in observed:
            by_id[record.id] = record
        records = list(by_id.values())
        chunk = self._settings.scan_sub_batch_size

        try:
            with self._session_factory() as session:
                for start in range(0, len(records), chunk):
                    batch = records[start : start + chunk]
                    summary.merge(self._apply_batch(session, owner_id, batch, scan_id, job_id, trashed_as_deleted))
                    session.commit()
        except SQLAlchemyError as exc:
            logger.error("File index write failed for owner %s scan %s: %s", owner_id, scan_id, exc)
            raise StoreWriteError(f"File index write failed: {exc}") from exc

        logger.debug(
            "Delta applied for owner %s: created=%d modified=%d deleted=%d unchanged=%d",
            owner_id,
            summary.counts.created,
            summary.counts.modified,
            summary.counts.deleted,
            summary.unchanged,
        )
        return summary

    def _apply_batch(
        self,
        session: Session,
        owner_id: str,
        batch: list[RemoteFileRecord],
        scan_id: str,
        job_id: str | None,
        trashed_as_deleted: bool,
    ) -> DeltaSummary:
        summary = DeltaSummary()
        now = self._now()
        existing = {
            row.file_id: row
            for row in session.scalars(
                select(FileIndexEntry).where(
                    FileIndexEntry.owner_id == owner_id,
                    FileIndexEntry.file_id.in_([record.id for record in batch]),
                )
            ).all()
        }

        for record in batch:
            row = existing.get(record.id)
            if trashed_as_deleted and record.trashed:
                if row is not None and not row.is_deleted:
                    row.is_deleted = True
                    row.last_scan_id = scan_id
                    row.updated_at = now
                    summary.record(DeltaEvent(DeltaType.DELETED, record.id, row.name, -row.size))
                continue

            if row is None:
                session.add(
                    FileIndexEntry(
                        owner_id=owner_id,
                        file_id=record.id,
                        name=record.name,
                        mime_type=record.mime_type,
                        size=record.size,
                        modified_time=record.modified_time,
                        parent_id=record.parent_id,
                        content_hash=record.content_hash,
                        version=1,
                        last_scan_id=scan_id,
                        is_deleted=False,
                        created_at=now,
                        updated_at=now,
                    )
                )
                summary.record(DeltaEvent(DeltaType.CREATED, record.id, record.name))
                continue

            if row.is_deleted:
                event = DeltaEvent(DeltaType.CREATED, record.id, record.name)
                row.is_deleted = False
            elif _has_changed(row, record):
                event = DeltaEvent(DeltaType.MODIFIED, record.id, record.name, record.size - row.size)
                row.version += 1
            else:
                event = None

            row.name = record.name
            row.mime_type = record.mime_type
            row.size = record.size
            row.modified_time = record.modified_time
            row.parent_id = record.parent_id
            row.content_hash = record.content_hash
            row.last_scan_id = scan_id
            row.updated_at = now
            if event is None:
                summary.unchanged += 1
            else:
                summary.record(event)

        self._log_events(session, owner_id, scan_id, job_id, summary.events, now)
        return summary

    def _log_events(
        self,
        session: Session,
        owner_id: str,
        scan_id: str,
        job_id: str | None,
        events: list[DeltaEvent],
        now: datetime,
    ) -> None:
        for event in events:
            session.add(
                ScanDelta(
                    owner_id=owner_id,
                    scan_id=scan_id,
                    job_id=job_id,
                    delta_type=event.delta_type,
                    file_id=event.file_id,
                    file_name=event.file_name,
                    size_change=event.size_change,
                    created_at=now,
                )
            )

    def _scope_ids(self, session: Session, owner_id: str, root_scope_id: str, max_depth: int | None) -> list[str]:
        """Indexed descendants of root_scope_id down to max_depth, following parent_id links."""
        children: dict[str, list[str]] = {}
        for file_id, parent_id in session.execute(
            select(FileIndexEntry.file_id, FileIndexEntry.parent_id).where(FileIndexEntry.owner_id == owner_id)
        ):
            if parent_id is not None:
                children.setdefault(parent_id, []).append(file_id)

        scoped: list[str] = []
        seen = {root_scope_id}
        frontier = [root_scope_id]
        depth = 0
        while frontier and (max_depth is None or depth < max_depth):
            depth += 1
            next_frontier: list[str] = []
            for parent_id in frontier:
                for file_id in children.get(parent_id, ()):
                    if file_id not in seen:
                        seen.add(file_id)
                        scoped.append(file_id)
                        next_frontier.append(file_id)
            frontier = next_frontier
        return sorted(scoped)

    def finalize_full_scan(
        self,
        owner_id: str,
        scan_id: str,
        job_id: str | None = None,
        *,
        root_scope_id: str | None = None,
        max_depth: int | None = None,
    ) -> DeltaSummary:
        """Mark every live entry inside the listed scope that this full scan did not re-observe as deleted.

        Without a root_scope_id the scope is the whole index. A depth limit without a root has no
        anchor in the index, so nothing is reconciled in that case.
        """
        summary = DeltaSummary()
        if root_scope_id is None and max_depth is not None:
            logger.info("Full scan %s was depth-limited without a scope root; skipping deletion reconciliation", scan_id)
            return summary

        batch_size = self._settings.scan_sub_batch_size
        try:
            with self._session_factory() as session:
                scoped = None if root_scope_id is None else self._scope_ids(session, owner_id, root_scope_id, max_depth)
                offset = 0
                while True:
                    stmt = select(FileIndexEntry).where(
                        FileIndexEntry.owner_id == owner_id,
                        FileIndexEntry.is_deleted.is_(False),
                        FileIndexEntry.last_scan_id != scan_id,
                    )
                    if scoped is not None:
                        chunk = scoped[offset : offset + batch_size]
                        if not chunk:
                            break
                        offset += batch_size
                        stmt = stmt.where(FileIndexEntry.file_id.in_(chunk))
                    else:
                        stmt = stmt.limit(batch_size)
                    rows = list(session.scalars(stmt.order_by(FileIndexEntry.file_id.asc())).all())
                    if not rows:
                        if scoped is None:
                            break
                        continue
                    now = self._now()
                    batch = DeltaSummary()
                    for row in rows:
                        row.is_deleted = True
                        row.updated_at = now
                        batch.record(DeltaEvent(DeltaType.DELETED, row.file_id, row.name, -row.size))
                    self._log_events(session, owner_id, scan_id, job_id, batch.events, now)
                    session.commit()
                    summary.merge(batch)
        except SQLAlchemyError as exc:
            logger.error("Deletion reconciliation failed for owner %s scan %s: %s", owner_id, scan_id, exc)
            raise StoreWriteError(f"Deletion reconciliation failed: {exc}") from exc

        if summary.counts.deleted:
            logger.info("Full scan %s marked %d entries deleted for owner %s", scan_id, summary.counts.deleted, owner_id)
        return summary

    def list_deltas(self, owner_id: str, scan_id: str | None = None, *, limit: int | None = None) -> list[DeltaEvent]:
        bounded = max(1, min(limit or self._settings.default_page_size, self._settings.max_page_size))
        with self._session_factory() as session:
            stmt = select(ScanDelta).where(ScanDelta.owner_id == owner_id)
            if scan_id is not None:
                stmt = stmt.where(ScanDelta.scan_id == scan_id)
            stmt = stmt.order_by(ScanDelta.id.asc()).limit(bounded)
            return [
                DeltaEvent(row.delta_type, row.file_id, row.file_name, row.size_change)
                for row in session.scalars(stmt).all()
            ]
