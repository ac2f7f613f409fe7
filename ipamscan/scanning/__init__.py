"""Scan orchestration subpackage.

Runs scan jobs over configured subnets, streams their progress to
subscribers and reconciles probe results into the device inventory.
"""

from ipamscan.scanning.broadcaster import ProgressBroadcaster, Subscription
from ipamscan.scanning.coordinator import ScanCoordinator
from ipamscan.scanning.models import (
    EventType,
    ScanEvent,
    ScanJob,
    ScanPhase,
    ScanStatus,
    ScanSummary,
    ScanTrigger,
    TargetProgress,
)
from ipamscan.scanning.reconciler import ReconcileResult, ResultReconciler
from ipamscan.scanning.registry import ScanRegistry
from ipamscan.scanning.scheduler import ScanScheduler

__all__ = [
    "ProgressBroadcaster",
    "Subscription",
    "ScanCoordinator",
    "EventType",
    "ScanEvent",
    "ScanJob",
    "ScanPhase",
    "ScanStatus",
    "ScanSummary",
    "ScanTrigger",
    "TargetProgress",
    "ReconcileResult",
    "ResultReconciler",
    "ScanRegistry",
    "ScanScheduler",
]
