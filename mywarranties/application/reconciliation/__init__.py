"""Motor de reconciliación offline-first: pull, push y purga de tombstones."""

from mywarranties.application.reconciliation.engine import COALESCED_METRIC, PENDING_GAUGE, ReconciliationEngine
from mywarranties.application.reconciliation.retry import CancellationToken, RetryPolicy, SyncCancelledError

__all__ = [
    "COALESCED_METRIC",
    "PENDING_GAUGE",
    "CancellationToken",
    "ReconciliationEngine",
    "RetryPolicy",
    "SyncCancelledError",
]
