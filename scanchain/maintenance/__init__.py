from scanchain.maintenance.service import (
    MaintenancePolicyError,
    MaintenanceService,
    checkpoint_stats_to_dict,
    cleanup_report_to_dict,
    store_metrics_to_dict,
)
from scanchain.maintenance.types import CleanupReport, StoreMetrics

__all__ = [
    "MaintenancePolicyError",
    "MaintenanceService",
    "CleanupReport",
    "StoreMetrics",
    "checkpoint_stats_to_dict",
    "cleanup_report_to_dict",
    "store_metrics_to_dict",
]
