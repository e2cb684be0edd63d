from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from scanchain.api.schemas.duplicates import (
    DeltaEventResponse,
    DeltaListResponse,
    DuplicateReportResponse,
)
from scanchain.core.config import get_settings
from scanchain.db.session import get_session_factory
from scanchain.duplicates.service import DuplicateDetector, duplicate_report_to_dict
from scanchain.index.delta import DeltaComputer

router = APIRouter(tags=["duplicates"])


def get_duplicate_detector() -> DuplicateDetector:
    return DuplicateDetector(settings=get_settings(), session_factory=get_session_factory())


def get_delta_computer() -> DeltaComputer:
    return DeltaComputer(settings=get_settings(), session_factory=get_session_factory())


@router.get("/duplicates", response_model=DuplicateReportResponse)
def get_duplicates(
    owner_id: str = Query(min_length=1, max_length=128),
    limit: int = Query(default=50, ge=1, le=200),
    detector: DuplicateDetector = Depends(get_duplicate_detector),
) -> DuplicateReportResponse:
    report = detector.detect_for_owner(owner_id)
    return DuplicateReportResponse(owner_id=owner_id, **duplicate_report_to_dict(report, max_groups=limit))


@router.get("/deltas", response_model=DeltaListResponse)
def list_deltas(
    owner_id: str = Query(min_length=1, max_length=128),
    scan_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    deltas: DeltaComputer = Depends(get_delta_computer),
) -> DeltaListResponse:
    events = deltas.list_deltas(owner_id, scan_id, limit=limit)
    return DeltaListResponse(
        owner_id=owner_id,
        scan_id=scan_id,
        items=[
            DeltaEventResponse(
                delta_type=event.delta_type.value,
                file_id=event.file_id,
                file_name=event.file_name,
                size_change=event.size_change,
            )
            for event in events
        ],
    )
