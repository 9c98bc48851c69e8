"""Refresh pipeline services."""

from .exchange_rate_service import ExchangeRateService
from .refresh_orchestrator import RefreshOrchestrator
from .scheduler import RefreshScheduler
from .snapshot_reconciler import SnapshotReconciler, compute_day_change
from .token_lifecycle import TokenLifecycleManager

__all__ = [
    "ExchangeRateService",
    "RefreshOrchestrator",
    "RefreshScheduler",
    "SnapshotReconciler",
    "TokenLifecycleManager",
    "compute_day_change",
]
