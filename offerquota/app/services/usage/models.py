"""Result types for usage accounting."""

from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class IncrementResult:
    """Outcome of a check-and-increment.

    Attributes:
        allowed: Whether a unit was reserved
        offers_generated: Confirmed count after the operation
        period_start: Billing period the counter belongs to
        source: 'atomic' or 'fallback'
    """
    allowed: bool
    offers_generated: int
    period_start: date
    source: str = field(default="atomic", compare=False)


@dataclass(frozen=True)
class PendingQuotaResult:
    """Outcome of a pending-inclusive check. Nothing is reserved."""
    allowed: bool
    confirmed_count: int
    pending_count: int
    total_count: int
    source: str = field(default="atomic", compare=False)


class RollbackOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED_NOT_FOUND = "skipped_not_found"
    SKIPPED_PERIOD_MISMATCH = "skipped_period_mismatch"
    SKIPPED_NON_POSITIVE = "skipped_non_positive"
    # Row changed between read and guarded update
    SKIPPED_CONFLICT = "skipped_conflict"
    FAILED = "failed"

    @property
    def applied(self) -> bool:
        return self is RollbackOutcome.APPLIED


@dataclass(frozen=True)
class Reservation:
    """One unit of quota reserved for a piece of paid work."""
    user_id: str
    period_start: date
    user_count: int
    plan: str
    limit: Optional[int]
    device_id: Optional[str] = None
    device_count: Optional[int] = None

    @property
    def device_reserved(self) -> bool:
        return self.device_id is not None and self.device_count is not None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["period_start"] = self.period_start.isoformat()
        return data


@dataclass(frozen=True)
class QuotaSnapshot:
    """Read-only quota view for display. Never used for allow/deny."""
    plan: str
    limit: Optional[int]
    confirmed: int
    pending_user: int
    remaining: Optional[int]
    period_start: date
    pending_device: Optional[int] = None
    confirmed_device: Optional[int] = None
    device_limit: Optional[int] = None

    @property
    def user_exhausted(self) -> bool:
        if self.limit is None:
            return False
        return self.confirmed + self.pending_user >= self.limit

    @property
    def remaining_device(self) -> Optional[int]:
        if self.device_limit is None or self.limit is None:
            return None
        used = (self.confirmed_device or 0) + (self.pending_device or 0)
        return max(0, self.device_limit - used)

    @property
    def device_exhausted(self) -> bool:
        remaining = self.remaining_device
        return remaining is not None and remaining <= 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["period_start"] = self.period_start.isoformat()
        data["remaining_device"] = self.remaining_device
        data["user_exhausted"] = self.user_exhausted
        data["device_exhausted"] = self.device_exhausted
        return data


@dataclass(frozen=True)
class ReconciliationReport:
    """Counter value versus completed work for one subject."""
    user_id: str
    period_start: date
    counter_value: int
    actual_count: int
    device_id: Optional[str] = None

    @property
    def discrepancy(self) -> int:
        return self.actual_count - self.counter_value

    def to_dict(self) -> dict:
        data = asdict(self)
        data["period_start"] = self.period_start.isoformat()
        data["discrepancy"] = self.discrepancy
        return data
