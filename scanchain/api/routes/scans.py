from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from scanchain.api.schemas.scans import (
    CancelScanRequest,
    ChainLinkResponse,
    ChainResponse,
    CreateScanRequest,
    ScanJobListResponse,
    ScanJobResponse,
)
from scanchain.chains.manager import JobChainManager, chain_aggregate_to_dict, chain_link_to_dict
from scanchain.core.config import get_settings
from scanchain.db.session import get_session_factory
from scanchain.jobs.service import (
    InvalidJobStateError,
    JobConflictError,
    JobNotFoundError,
    JobPolicyError,
    JobService,
    snapshot_to_dict,
)
from scanchain.jobs.types import ScanJobConfig

router = APIRouter(prefix="/scans", tags=["scans"])


def get_job_service() -> JobService:
    return JobService(settings=get_settings(), session_factory=get_session_factory())


def get_chain_manager() -> JobChainManager:
    return JobChainManager(settings=get_settings(), session_factory=get_session_factory())


@router.post("", response_model=ScanJobResponse, status_code=status.HTTP_202_ACCEPTED)
def create_scan(request: CreateScanRequest, service: JobService = Depends(get_job_service)) -> ScanJobResponse:
    config = ScanJobConfig(
        max_depth=request.max_depth,
        include_trashed=request.include_trashed,
        root_scope_id=request.root_scope_id,
        force_full=request.force_full,
        force_delta=request.force_delta,
    )
    try:
        job = service.create_job(request.owner_id, config)
    except (JobPolicyError, JobConflictError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return ScanJobResponse.model_validate(snapshot_to_dict(job))


@router.get("", response_model=ScanJobListResponse)
def list_scans(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = None,
    owner_id: str | None = None,
    service: JobService = Depends(get_job_service),
) -> ScanJobListResponse:
    try:
        result = service.list_jobs(limit=limit, cursor=cursor, owner_id=owner_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return ScanJobListResponse(
        items=[ScanJobResponse.model_validate(snapshot_to_dict(item)) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.get("/{job_id}", response_model=ScanJobResponse)
def get_scan(job_id: str, service: JobService = Depends(get_job_service)) -> ScanJobResponse:
    try:
        job = service.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ScanJobResponse.model_validate(snapshot_to_dict(job))


@router.get("/{job_id}/chain", response_model=ChainResponse)
def get_scan_chain(
    job_id: str,
    service: JobService = Depends(get_job_service),
    chains: JobChainManager = Depends(get_chain_manager),
) -> ChainResponse:
    try:
        job = service.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    aggregate = chains.aggregate_chain_results(job.root_job_id)
    links = chains.get_full_chain(job.root_job_id)
    return ChainResponse(
        **chain_aggregate_to_dict(aggregate),
        links=[ChainLinkResponse.model_validate(chain_link_to_dict(link)) for link in links],
    )


@router.post("/{job_id}/cancel", response_model=ScanJobResponse)
def cancel_scan(
    job_id: str,
    request: CancelScanRequest | None = None,
    service: JobService = Depends(get_job_service),
) -> ScanJobResponse:
    try:
        job = service.cancel_job(job_id, error_message=request.error_message if request else None)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ScanJobResponse.model_validate(snapshot_to_dict(job))


@router.post("/{job_id}/reset", response_model=ScanJobResponse)
def reset_failed_scan(job_id: str, service: JobService = Depends(get_job_service)) -> ScanJobResponse:
    try:
        job = service.reset_failed_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (InvalidJobStateError, JobConflictError, JobPolicyError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ScanJobResponse.model_validate(snapshot_to_dict(job))
