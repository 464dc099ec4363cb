"""Reconciliation engine: diff, order, apply, track."""

from .diff import Changes, diff_states
from .executor import apply_operation, apply_plan
from .ordering import order_changes
from .plan import (
    Operation,
    OperationResult,
    OpKind,
    OpStatus,
    SyncPlan,
    SyncResult,
)
from .sync import apply_sync_plan, compute_sync_plan
from .tracking import OrphanTracker

__all__ = [
    "Changes",
    "Operation",
    "OperationResult",
    "OpKind",
    "OpStatus",
    "OrphanTracker",
    "SyncPlan",
    "SyncResult",
    "apply_operation",
    "apply_plan",
    "apply_sync_plan",
    "compute_sync_plan",
    "diff_states",
    "order_changes",
]
