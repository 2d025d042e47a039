"""Read-only quota view for display.

Answers "how much is left" for the UI. Allow/deny decisions always go
through UsageService; a snapshot can be stale the moment it is returned.
"""

from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from offerquota.app.core.logging import get_log_context, get_logger
from offerquota.app.core.periods import current_period
from offerquota.app.db.crud import (
    UsageSubject,
    count_pending_jobs,
    device_limit,
    get_plan,
    load_counter,
    plan_limit,
)

from .models import QuotaSnapshot

logger = get_logger(__name__)

# Last-resort limits for plans that are never unlimited
_KNOWN_PLAN_LIMITS = {"free": 3, "standard": 10}


async def _confirmed_count(session: AsyncSession, subject: UsageSubject, period: date) -> int:
    # A row from an earlier period has not been reset yet; it counts as zero
    row = await load_counter(session, subject)
    if row is None or row.resolved_period(period) != period:
        return 0
    return row.offers_generated


class QuotaSnapshotService:
    """Combines plan, confirmed count and in-flight jobs. Writes nothing."""

    async def snapshot(
        self,
        session: AsyncSession,
        user_id: str,
        device_id: Optional[str] = None,
        period: Optional[date] = None,
    ) -> QuotaSnapshot:
        period = period or current_period()
        plan = await get_plan(session, user_id)

        limit = plan.limit
        if limit is None and not plan.unlimited:
            substitute = plan_limit(plan.plan)
            if substitute is None:
                substitute = _KNOWN_PLAN_LIMITS.get(plan.plan)
            if substitute is not None:
                logger.warning(
                    f"Plan {plan.plan} resolved without a limit for {user_id}; "
                    f"showing default limit {substitute}",
                    extra=get_log_context(user_id=user_id, period_start=period),
                )
                limit = substitute

        confirmed = await _confirmed_count(session, UsageSubject(user_id), period)
        pending_user = await count_pending_jobs(session, user_id, period)
        remaining = None if limit is None else max(0, limit - confirmed - pending_user)

        confirmed_device = pending_device = per_device = None
        if device_id:
            confirmed_device = await _confirmed_count(
                session, UsageSubject(user_id, device_id), period
            )
            pending_device = await count_pending_jobs(session, user_id, period, device_id)
            if limit is not None:
                per_device = device_limit(plan.plan)

        return QuotaSnapshot(
            plan=plan.plan,
            limit=limit,
            confirmed=confirmed,
            pending_user=pending_user,
            remaining=remaining,
            period_start=period,
            pending_device=pending_device,
            confirmed_device=confirmed_device,
            device_limit=per_device,
        )


_snapshot_service: Optional[QuotaSnapshotService] = None


def get_snapshot_service() -> QuotaSnapshotService:
    """Get the global snapshot service instance."""
    global _snapshot_service
    if _snapshot_service is None:
        _snapshot_service = QuotaSnapshotService()
    return _snapshot_service
