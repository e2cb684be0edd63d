from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import scanchain.db.session as db_session_module
from sqlalchemy import select

from scanchain.core.config import get_settings
from scanchain.db.init_db import initialize_database
from scanchain.db.models import DeltaType, FileIndexEntry, JobStatus, JobType, ScanJob, ScanType
from scanchain.index.delta import DeltaComputer
from scanchain.index.strategy import ScanStrategyAdvisor
from scanchain.sources.types import RemoteFileRecord


def make_computer(tmp_path: Path, **overrides: object) -> DeltaComputer:
    for key in [key for key in os.environ if key.startswith("SCANCHAIN_")]:
        del os.environ[key]
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["SCANCHAIN_STATE_ROOT"] = state_root.as_posix()
    os.environ["SCANCHAIN_SCAN_PAGE_SIZE"] = "10"
    os.environ["SCANCHAIN_SCAN_SUB_BATCH_SIZE"] = "3"
    for key, value in overrides.items():
        os.environ[f"SCANCHAIN_{key.upper()}"] = str(value)

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return DeltaComputer(get_settings(), db_session_module.get_session_factory())


def make_advisor() -> ScanStrategyAdvisor:
    return ScanStrategyAdvisor(get_settings(), db_session_module.get_session_factory())


def record(file_id: str, *, size: int = 100, name: str | None = None, **fields: object) -> RemoteFileRecord:
    return RemoteFileRecord(
        id=file_id,
        name=name or f"{file_id}.txt",
        mime_type="text/plain",
        size=size,
        modified_time=str(fields.pop("modified_time", "2024-01-01T00:00:00+00:00")),
        parent_ids=fields.pop("parent_ids", ("root",)),  # type: ignore[arg-type]
        **fields,  # type: ignore[arg-type]
    )


def live_ids(owner_id: str = "owner-1") -> set[str]:
    with db_session_module.get_session_factory()() as session:
        return set(
            session.scalars(
                select(FileIndexEntry.file_id).where(
                    FileIndexEntry.owner_id == owner_id,
                    FileIndexEntry.is_deleted.is_(False),
                )
            ).all()
        )


def insert_completed_job(owner_id: str, *, completed_at: datetime, scan_started_at: datetime) -> None:
    with db_session_module.get_session_factory()() as session:
        session.add(
            ScanJob(
                id=f"done-{owner_id}-{int(completed_at.timestamp())}",
                owner_id=owner_id,
                status=JobStatus.COMPLETED,
                type=JobType.DRIVE_SCAN,
                progress={},
                config={},
                results={"scan_started_at": scan_started_at.isoformat()},
                root_job_id=f"done-{owner_id}-{int(completed_at.timestamp())}",
                chain_index=0,
                created_at=scan_started_at,
                updated_at=completed_at,
                started_at=scan_started_at,
                completed_at=completed_at,
            )
        )
        session.commit()


def test_first_observation_creates_every_entry(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    summary = computer.apply("owner-1", [record(f"f{index}") for index in range(7)], "scan-1", "job-1")

    assert summary.counts.created == 7
    assert summary.counts.modified == 0
    assert len(summary.events) == 7
    assert live_ids() == {f"f{index}" for index in range(7)}


def test_full_scan_marks_exactly_the_missing_entries_deleted(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    computer.apply("owner-1", [record(f"f{index}") for index in range(10)], "scan-1")

    kept = [record(f"f{index}") for index in range(3, 10)]
    second = computer.apply("owner-1", kept, "scan-2")
    assert second.counts.created == 0
    assert second.counts.modified == 0
    assert second.unchanged == 7

    reconciled = computer.finalize_full_scan("owner-1", "scan-2", "job-2")
    assert reconciled.counts.deleted == 3
    assert sorted(event.file_id for event in reconciled.events) == ["f0", "f1", "f2"]
    assert all(event.size_change == -100 for event in reconciled.events)
    assert live_ids() == {f"f{index}" for index in range(3, 10)}


def test_changed_metadata_is_reported_as_modified(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    computer.apply("owner-1", [record("a"), record("b"), record("c")], "scan-1")

    summary = computer.apply(
        "owner-1",
        [
            record("a", size=150),
            record("b", name="renamed.txt"),
            record("c", modified_time="2025-06-01T00:00:00+00:00"),
        ],
        "scan-2",
    )
    assert summary.counts.modified == 3
    by_id = {event.file_id: event for event in summary.events}
    assert by_id["a"].size_change == 50
    assert by_id["b"].size_change == 0

    with db_session_module.get_session_factory()() as session:
        entry = session.get(FileIndexEntry, ("owner-1", "a"))
        assert entry is not None
        assert entry.version == 2
        assert entry.size == 150


def test_moved_entry_updates_parent_without_a_modified_event(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    computer.apply("owner-1", [record("a")], "scan-1")
    summary = computer.apply("owner-1", [record("a", parent_ids=("other-folder",))], "scan-2")

    assert summary.counts.modified == 0
    assert summary.unchanged == 1
    assert summary.events == []
    with db_session_module.get_session_factory()() as session:
        entry = session.get(FileIndexEntry, ("owner-1", "a"))
        assert entry is not None
        assert entry.parent_id == "other-folder"
        assert entry.version == 1
        assert entry.last_scan_id == "scan-2"


def test_replaying_a_batch_in_the_same_scan_is_idempotent(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    batch = [record(f"f{index}") for index in range(5)]
    computer.apply("owner-1", batch, "scan-1")
    replay = computer.apply("owner-1", batch, "scan-1")

    assert replay.counts.created == 0
    assert replay.counts.modified == 0
    assert replay.unchanged == 5
    assert len(computer.list_deltas("owner-1", "scan-1", limit=200)) == 5


def test_reappearing_entry_is_created_again(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    computer.apply("owner-1", [record("a"), record("b")], "scan-1")
    computer.apply("owner-1", [record("b")], "scan-2")
    computer.finalize_full_scan("owner-1", "scan-2")
    assert live_ids() == {"b"}

    summary = computer.apply("owner-1", [record("a"), record("b")], "scan-3")
    assert summary.counts.created == 1
    assert summary.events[0].file_id == "a"
    assert live_ids() == {"a", "b"}


def test_trashed_records_become_deletions_when_requested(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    computer.apply("owner-1", [record("a"), record("b")], "scan-1")

    summary = computer.apply(
        "owner-1",
        [record("a", trashed=True), record("ghost", trashed=True)],
        "scan-2",
        trashed_as_deleted=True,
    )
    assert summary.counts.deleted == 1
    assert summary.events[0].delta_type == DeltaType.DELETED
    assert live_ids() == {"b"}


def test_owners_do_not_see_each_other(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    computer.apply("owner-1", [record("a")], "scan-1")
    computer.apply("owner-2", [record("z")], "scan-9")
    computer.finalize_full_scan("owner-2", "scan-9")

    assert live_ids("owner-1") == {"a"}
    assert [event.file_id for event in computer.list_deltas("owner-2")] == ["z"]


def test_list_deltas_filters_by_scan(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    computer.apply("owner-1", [record("a"), record("b")], "scan-1")
    computer.apply("owner-1", [record("a", size=1)], "scan-2")

    events = computer.list_deltas("owner-1", "scan-2")
    assert [(event.delta_type, event.file_id) for event in events] == [(DeltaType.MODIFIED, "a")]
    assert len(computer.list_deltas("owner-1", limit=1)) == 1


def test_strategy_requires_full_scan_without_history(tmp_path: Path) -> None:
    make_computer(tmp_path)
    decision = make_advisor().decide("owner-1")
    assert decision.scan_type == ScanType.FULL
    assert decision.reason == "No previous scan found"

    forced = make_advisor().decide("owner-1", force_delta=True)
    assert forced.scan_type == ScanType.FULL


def test_strategy_prefers_delta_for_recent_complete_index(tmp_path: Path) -> None:
    computer = make_computer(tmp_path, min_index_completeness=5)
    computer.apply("owner-1", [record(f"f{index}") for index in range(5)], "scan-1")
    started = datetime.now(tz=timezone.utc) - timedelta(hours=2)
    insert_completed_job("owner-1", completed_at=started + timedelta(minutes=5), scan_started_at=started)

    decision = make_advisor().decide("owner-1")
    assert decision.scan_type == ScanType.DELTA
    assert decision.reason == "Delta scan sufficient"
    assert decision.modified_since == started
    assert decision.index_count == 5

    forced = make_advisor().decide("owner-1", force_full=True)
    assert forced.scan_type == ScanType.FULL
    assert forced.reason == "Full scan forced"


def test_strategy_requires_full_scan_for_small_index(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    computer.apply("owner-1", [record(f"f{index}") for index in range(5)], "scan-1")
    started = datetime.now(tz=timezone.utc) - timedelta(hours=1)
    insert_completed_job("owner-1", completed_at=started, scan_started_at=started)

    decision = make_advisor().decide("owner-1")
    assert decision.scan_type == ScanType.FULL
    assert decision.reason == "File index is incomplete (<100 files)"

    forced = make_advisor().decide("owner-1", force_delta=True)
    assert forced.scan_type == ScanType.DELTA
    assert forced.modified_since == started


def test_strategy_requires_full_scan_when_stale(tmp_path: Path) -> None:
    computer = make_computer(tmp_path, min_index_completeness=1)
    computer.apply("owner-1", [record("a")], "scan-1")
    started = datetime.now(tz=timezone.utc) - timedelta(days=8)
    insert_completed_job("owner-1", completed_at=started, scan_started_at=started)

    decision = make_advisor().decide("owner-1")
    assert decision.scan_type == ScanType.FULL
    assert decision.reason == "Last scan is more than 7 days old"


def test_scoped_reconciliation_stays_inside_the_scope_root(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    tree = [
        record("A", parent_ids=("root",)),
        record("B", parent_ids=("root",)),
        record("a1", parent_ids=("A",)),
        record("a2", parent_ids=("A",)),
        record("a-sub", parent_ids=("A",)),
        record("a-deep", parent_ids=("a-sub",)),
        record("b1", parent_ids=("B",)),
    ]
    by_id = {item.id: item for item in tree}
    computer.apply("owner-1", tree, "scan-1")

    computer.apply("owner-1", [by_id["a1"], by_id["a-sub"], by_id["a-deep"]], "scan-2")
    scoped = computer.finalize_full_scan("owner-1", "scan-2", root_scope_id="A")

    assert [event.file_id for event in scoped.events] == ["a2"]
    assert live_ids() == {"A", "B", "a1", "a-sub", "a-deep", "b1"}

    computer.apply("owner-1", [by_id["a1"], by_id["a-sub"]], "scan-3")
    shallow = computer.finalize_full_scan("owner-1", "scan-3", root_scope_id="A", max_depth=1)

    assert shallow.counts.deleted == 0
    assert "a-deep" in live_ids()


def test_depth_limit_without_scope_root_skips_reconciliation(tmp_path: Path) -> None:
    computer = make_computer(tmp_path)
    computer.apply("owner-1", [record("f1"), record("f2")], "scan-1")
    computer.apply("owner-1", [record("f1")], "scan-2")

    summary = computer.finalize_full_scan("owner-1", "scan-2", max_depth=2)

    assert summary.counts.deleted == 0
    assert live_ids() == {"f1", "f2"}
