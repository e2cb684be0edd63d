from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from scanchain.api.schemas.maintenance import (
    CheckpointStatsResponse,
    CleanupRequest,
    CleanupResponse,
    StoreMetricsResponse,
)
from scanchain.core.config import get_settings
from scanchain.db.session import get_session_factory
from scanchain.maintenance.service import (
    MaintenancePolicyError,
    MaintenanceService,
    checkpoint_stats_to_dict,
    cleanup_report_to_dict,
    store_metrics_to_dict,
)

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


def get_maintenance_service() -> MaintenanceService:
    return MaintenanceService(settings=get_settings(), session_factory=get_session_factory())


@router.post("/cleanup", response_model=CleanupResponse)
def run_cleanup(
    request: CleanupRequest | None = None,
    service: MaintenanceService = Depends(get_maintenance_service),
) -> CleanupResponse:
    request = request or CleanupRequest()
    try:
        report = service.run_cleanup(batch_size=request.batch_size, retention_days=request.retention_days)
    except MaintenancePolicyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return CleanupResponse.model_validate(cleanup_report_to_dict(report))


@router.get("/checkpoints/stats", response_model=CheckpointStatsResponse)
def get_checkpoint_stats(
    owner_id: str | None = None,
    service: MaintenanceService = Depends(get_maintenance_service),
) -> CheckpointStatsResponse:
    return CheckpointStatsResponse.model_validate(checkpoint_stats_to_dict(service.checkpoint_stats(owner_id)))


@router.get("/metrics", response_model=StoreMetricsResponse)
def get_store_metrics(service: MaintenanceService = Depends(get_maintenance_service)) -> StoreMetricsResponse:
    return StoreMetricsResponse.model_validate(store_metrics_to_dict(service.get_metrics()))
