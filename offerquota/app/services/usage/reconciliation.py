"""Compare usage counters with completed work.

A reservation whose caller crashed between increment and rollback leaves
the counter one unit too high. These reports surface such drift for an
operator; they never write the counter.
"""

from datetime import date
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from offerquota.app.core.logging import get_log_context, get_logger
from offerquota.app.core.periods import current_period
from offerquota.app.db.crud import (
    UsageSubject,
    count_completed_jobs,
    list_counter_users,
    list_device_counters,
    load_counter,
)

from .models import ReconciliationReport

logger = get_logger(__name__)


async def reconcile_usage(
    session: AsyncSession,
    user_id: str,
    period: Optional[date] = None,
    include_devices: bool = True,
) -> List[ReconciliationReport]:
    """Report counter value vs. completed jobs for one user (and their devices).

    Args:
        session: Database session
        user_id: User to check
        period: Billing period (defaults to the current one)
        include_devices: Also report each device counter held in the period

    Returns:
        One report for the user, followed by one per device
    """
    period = period or current_period()

    row = await load_counter(session, UsageSubject(user_id), period)
    reports = [
        ReconciliationReport(
            user_id=user_id,
            period_start=period,
            counter_value=row.offers_generated if row else 0,
            actual_count=await count_completed_jobs(session, user_id, period),
        )
    ]

    if include_devices:
        for device_id, counter_value in await list_device_counters(session, user_id, period):
            reports.append(
                ReconciliationReport(
                    user_id=user_id,
                    period_start=period,
                    counter_value=counter_value,
                    actual_count=await count_completed_jobs(session, user_id, period, device_id),
                    device_id=device_id,
                )
            )

    for report in reports:
        if report.discrepancy:
            logger.warning(
                f"Usage counter drift for {user_id}"
                f"{' device ' + report.device_id if report.device_id else ''}: "
                f"counter={report.counter_value} completed={report.actual_count}",
                extra=get_log_context(
                    user_id=user_id,
                    device_id=report.device_id,
                    period_start=period,
                    scope="device" if report.device_id else "user",
                ),
            )
    return reports


async def reconcile_period(
    session: AsyncSession,
    period: Optional[date] = None,
    include_devices: bool = True,
) -> List[ReconciliationReport]:
    """Report drift for every user holding a counter in ``period``."""
    period = period or current_period()
    reports: List[ReconciliationReport] = []
    for user_id in await list_counter_users(session, period):
        reports.extend(await reconcile_usage(session, user_id, period, include_devices))

    drifted = sum(1 for report in reports if report.discrepancy)
    logger.info(
        f"Reconciled {len(reports)} usage counters for {period.isoformat()}: {drifted} with drift",
        extra=get_log_context(period_start=period),
    )
    return reports
