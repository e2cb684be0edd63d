from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import delete, func, select, tuple_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from scanchain.checkpoints.types import (
    CheckpointError,
    CheckpointMetadata,
    CheckpointState,
    CheckpointStats,
    IndexDeltaCounts,
    metadata_from_dict,
    metadata_to_dict,
)
from scanchain.core.config import Settings
from scanchain.core.errors import CheckpointValidationError
from scanchain.db.models import ScanCheckpoint
from scanchain.db.session import coerce_utc

logger = logging.getLogger(__name__)


class CheckpointManager:
    """Durable resume state for scan jobs, one record per (owner_id, job_id).

    Writes are best-effort: a failed save is logged and reported through the return value,
    never raised, so the scan keeps going with a wider re-work window.
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
        self._files_since_checkpoint = 0
        self._last_checkpoint_at = clock()

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _ttl(self) -> timedelta:
        return timedelta(seconds=self._settings.checkpoint_ttl_seconds)

    def _merge_metadata(self, existing: CheckpointMetadata, incoming: CheckpointMetadata) -> CheckpointMetadata:
        seen = {(item.timestamp.isoformat(), item.error) for item in existing.errors}
        errors = list(existing.errors)
        for item in incoming.errors:
            key = (item.timestamp.isoformat(), item.error)
            if key not in seen:
                errors.append(item)
                seen.add(key)
        return CheckpointMetadata(
            duplicates_found=max(existing.duplicates_found, incoming.duplicates_found),
            index_delta=IndexDeltaCounts(
                created=max(existing.index_delta.created, incoming.index_delta.created),
                modified=max(existing.index_delta.modified, incoming.index_delta.modified),
                deleted=max(existing.index_delta.deleted, incoming.index_delta.deleted),
            ),
            pages_processed=max(existing.pages_processed, incoming.pages_processed),
            scan_started_at=existing.scan_started_at or incoming.scan_started_at,
            errors=errors,
        )

    def save(self, checkpoint: CheckpointState) -> bool:
        now = self._now()
        expires_at = now + self._ttl()
        try:
            with self._session_factory() as session:
                row = session.get(ScanCheckpoint, (checkpoint.owner_id, checkpoint.job_id))
                if row is None:
                    row = ScanCheckpoint(
                        owner_id=checkpoint.owner_id,
                        job_id=checkpoint.job_id,
                        created_at=checkpoint.created_at or now,
                        files_processed=checkpoint.files_processed,
                        bytes_processed=checkpoint.bytes_processed,
                        meta=metadata_to_dict(checkpoint.metadata),
                    )
                    session.add(row)
                else:
                    if checkpoint.files_processed < row.files_processed:
                        logger.warning(
                            "Checkpoint counters regressed for job %s (%d < %d); keeping the larger value",
                            checkpoint.job_id,
                            checkpoint.files_processed,
                            row.files_processed,
                        )
                    row.files_processed = max(row.files_processed, checkpoint.files_processed)
                    row.bytes_processed = max(row.bytes_processed, checkpoint.bytes_processed)
                    merged = self._merge_metadata(metadata_from_dict(row.meta), checkpoint.metadata)
                    row.meta = metadata_to_dict(merged)

                row.scan_id = checkpoint.scan_id
                row.scan_type = checkpoint.scan_type
                row.continuation_token = checkpoint.continuation_token
                row.last_file_id = checkpoint.last_file_id
                row.last_modified_time = checkpoint.last_modified_time
                row.updated_at = now
                row.expires_at = expires_at
                session.commit()
                created_at = coerce_utc(row.created_at)
        except SQLAlchemyError as exc:
            logger.error("Failed to save checkpoint for job %s: %s", checkpoint.job_id, exc)
            return False

        checkpoint.created_at = created_at
        checkpoint.updated_at = now
        checkpoint.expires_at = expires_at
        logger.info(
            "Checkpoint saved for job %s: files=%d pages=%d token=%s",
            checkpoint.job_id,
            checkpoint.files_processed,
            checkpoint.metadata.pages_processed,
            "present" if checkpoint.continuation_token else "none",
        )
        return True

    def get(self, owner_id: str, job_id: str) -> CheckpointState | None:
        now = self._now()
        try:
            with self._session_factory() as session:
                row = session.get(ScanCheckpoint, (owner_id, job_id))
                if row is None:
                    return None
                expires_at = coerce_utc(row.expires_at)
                if expires_at is None or expires_at <= now:
                    session.delete(row)
                    session.commit()
                    logger.warning("Checkpoint for job %s expired and was removed", job_id)
                    return None
                state = self._to_state(row)
        except SQLAlchemyError as exc:
            logger.error("Failed to read checkpoint for job %s: %s", job_id, exc)
            return None
        except (LookupError, TypeError, ValueError) as exc:
            raise CheckpointValidationError(f"Invalid checkpoint: unreadable record ({exc})") from exc

        logger.info(
            "Checkpoint retrieved for job %s: files=%d token=%s",
            job_id,
            state.files_processed,
            "present" if state.continuation_token else "none",
        )
        return state

    def delete(self, owner_id: str, job_id: str) -> bool:
        try:
            with self._session_factory() as session:
                session.execute(
                    delete(ScanCheckpoint).where(
                        ScanCheckpoint.owner_id == owner_id,
                        ScanCheckpoint.job_id == job_id,
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to delete checkpoint for job %s: %s", job_id, exc)
            return False
        logger.info("Checkpoint deleted for job %s", job_id)
        return True

    def reset_cadence(self) -> None:
        self._files_since_checkpoint = 0
        self._last_checkpoint_at = self._clock()

    def should_checkpoint(self, files_delta: int) -> bool:
        self._files_since_checkpoint += max(0, files_delta)
        elapsed = self._clock() - self._last_checkpoint_at
        due = (
            self._files_since_checkpoint >= self._settings.checkpoint_file_interval
            or elapsed >= self._settings.checkpoint_time_interval_seconds
        )
        if due:
            self.reset_cadence()
        return due

    def create_recovery_checkpoint(self, error: BaseException | str, last_known_state: CheckpointState) -> bool:
        now = self._now()
        message = str(error) or error.__class__.__name__
        recoverable = bool(getattr(error, "retryable", True))
        metadata = last_known_state.metadata
        state = replace(
            last_known_state,
            scan_id=last_known_state.scan_id or f"recovery_{int(now.timestamp())}",
            files_processed=max(0, last_known_state.files_processed),
            bytes_processed=max(0, last_known_state.bytes_processed),
            metadata=CheckpointMetadata(
                duplicates_found=metadata.duplicates_found,
                index_delta=IndexDeltaCounts(
                    created=metadata.index_delta.created,
                    modified=metadata.index_delta.modified,
                    deleted=metadata.index_delta.deleted,
                ),
                pages_processed=metadata.pages_processed,
                scan_started_at=metadata.scan_started_at,
                errors=[*metadata.errors, CheckpointError(timestamp=now, error=message, recoverable=recoverable)],
            ),
        )
        saved = self.save(state)
        if saved:
            logger.info("Recovery checkpoint created for job %s", state.job_id)
        else:
            logger.error("Failed to create recovery checkpoint for job %s", state.job_id)
        return saved

    def validate(self, checkpoint: CheckpointState) -> None:
        if not checkpoint.job_id or not checkpoint.owner_id or not checkpoint.scan_id:
            raise CheckpointValidationError("Invalid checkpoint: missing required identifiers")
        if checkpoint.files_processed < 0 or checkpoint.bytes_processed < 0:
            raise CheckpointValidationError("Invalid checkpoint: negative progress values")
        if checkpoint.metadata.pages_processed < 0:
            raise CheckpointValidationError("Invalid checkpoint: negative page count")
        expires_at = coerce_utc(checkpoint.expires_at)
        if expires_at is None or expires_at <= self._now():
            raise CheckpointValidationError("Invalid checkpoint: already expired")

    def cleanup_expired(self, batch_size: int | None = None) -> int:
        limit = batch_size or self._settings.maintenance_batch_size
        now = self._now()
        try:
            with self._session_factory() as session:
                keys = list(
                    session.execute(
                        select(ScanCheckpoint.owner_id, ScanCheckpoint.job_id)
                        .where(ScanCheckpoint.expires_at <= now)
                        .order_by(ScanCheckpoint.expires_at.asc())
                        .limit(limit)
                    ).all()
                )
                if not keys:
                    return 0
                session.execute(
                    delete(ScanCheckpoint).where(
                        tuple_(ScanCheckpoint.owner_id, ScanCheckpoint.job_id).in_([tuple(key) for key in keys])
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to clean up expired checkpoints: %s", exc)
            return 0
        logger.info("Expired checkpoints cleaned: %d", len(keys))
        return len(keys)

    def get_stats(self, owner_id: str | None = None) -> CheckpointStats:
        now = self._now()
        with self._session_factory() as session:
            base = select(func.count()).select_from(ScanCheckpoint)
            oldest = select(func.min(ScanCheckpoint.created_at)).where(ScanCheckpoint.expires_at > now)
            if owner_id is not None:
                base = base.where(ScanCheckpoint.owner_id == owner_id)
                oldest = oldest.where(ScanCheckpoint.owner_id == owner_id)
            total = int(session.scalar(base) or 0)
            expired = int(session.scalar(base.where(ScanCheckpoint.expires_at <= now)) or 0)
            oldest_active = session.scalar(oldest)
        return CheckpointStats(
            total=total,
            expired=expired,
            active=total - expired,
            oldest_active=coerce_utc(oldest_active),
        )

    def _to_state(self, row: ScanCheckpoint) -> CheckpointState:
        return CheckpointState(
            job_id=row.job_id,
            owner_id=row.owner_id,
            scan_id=row.scan_id,
            scan_type=row.scan_type,
            continuation_token=row.continuation_token,
            files_processed=row.files_processed,
            bytes_processed=row.bytes_processed,
            last_file_id=row.last_file_id,
            last_modified_time=row.last_modified_time,
            created_at=coerce_utc(row.created_at),
            updated_at=coerce_utc(row.updated_at),
            expires_at=coerce_utc(row.expires_at),
            metadata=metadata_from_dict(row.meta),
        )
