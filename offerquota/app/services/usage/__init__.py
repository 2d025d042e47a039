"""Monthly usage accounting.

Atomic server-side procedures are the primary path, with a multi-statement
fallback when they are not installed.
"""

from .capability import AtomicCapability, CapabilityState
from .incrementers import (
    AtomicIncrementer,
    FallbackIncrementer,
    ProcedureUnavailableError,
    UsageIncrementer,
    is_missing_procedure,
)
from .models import (
    IncrementResult,
    PendingQuotaResult,
    QuotaSnapshot,
    ReconciliationReport,
    Reservation,
    RollbackOutcome,
)
from .reconciliation import reconcile_period, reconcile_usage
from .service import UsageService, get_usage_service, reset_usage_service
from .snapshot import QuotaSnapshotService, get_snapshot_service

__all__ = [
    "AtomicCapability",
    "CapabilityState",
    "AtomicIncrementer",
    "FallbackIncrementer",
    "ProcedureUnavailableError",
    "UsageIncrementer",
    "is_missing_procedure",
    "IncrementResult",
    "PendingQuotaResult",
    "QuotaSnapshot",
    "ReconciliationReport",
    "Reservation",
    "RollbackOutcome",
    "reconcile_period",
    "reconcile_usage",
    "UsageService",
    "get_usage_service",
    "reset_usage_service",
    "QuotaSnapshotService",
    "get_snapshot_service",
]
