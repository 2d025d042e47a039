"""PDF job ledger CRUD operations.

The ledger belongs to the PDF pipeline. The quota core only creates
pending entries as units of reservation, resolves them, and counts them.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from offerquota.app.core.periods import period_iso
from offerquota.app.db.models import JOB_STATUSES, PENDING_JOB_STATUSES, PdfJob


def _job_filters(user_id: str, period: date, device_id: Optional[str]) -> list:
    filters = [
        PdfJob.user_id == user_id,
        PdfJob.payload["usagePeriodStart"].as_string() == period_iso(period),
    ]
    if device_id:
        filters.append(PdfJob.payload["deviceId"].as_string() == device_id)
    return filters


async def create_pending_job(
    session: AsyncSession,
    user_id: str,
    period: date,
    device_id: Optional[str] = None,
    offer_id: Optional[str] = None,
    payload: Optional[dict[str, Any]] = None,
    auto_commit: bool = True,
) -> PdfJob:
    """Create a pending job that reserves one unit of quota.

    The billing period is embedded in the payload and never recomputed.

    Args:
        session: Database session
        user_id: Owner of the reservation
        period: Billing period the reservation counts against
        device_id: Device the reservation counts against, if any
        offer_id: Offer the job renders
        payload: Extra payload fields for the PDF worker
        auto_commit: Whether to commit the transaction

    Returns:
        The created PdfJob
    """
    job_payload = dict(payload or {})
    job_payload["usagePeriodStart"] = period_iso(period)
    if device_id:
        job_payload["deviceId"] = device_id

    job = PdfJob(
        id=str(uuid.uuid4()),
        user_id=user_id,
        offer_id=offer_id,
        status="pending",
        payload=job_payload,
    )
    session.add(job)
    if auto_commit:
        await session.commit()
        await session.refresh(job)
    else:
        await session.flush()
    return job


async def update_job_status(
    session: AsyncSession,
    job_id: str,
    status: str,
    error_message: Optional[str] = None,
    auto_commit: bool = True,
) -> bool:
    """Move a job to a new status.

    Returns:
        True if the job exists and was updated
    """
    if status not in JOB_STATUSES:
        raise ValueError(f"Unknown job status: {status}")

    result = await session.execute(
        update(PdfJob)
        .where(PdfJob.id == job_id)
        .values(
            status=status,
            error_message=error_message,
            updated_at=datetime.now(timezone.utc),
        )
        .returning(PdfJob.id)
        .execution_options(synchronize_session=False)
    )
    updated = result.first() is not None
    if auto_commit:
        await session.commit()
    return updated


async def count_pending_jobs(
    session: AsyncSession,
    user_id: str,
    period: date,
    device_id: Optional[str] = None,
) -> int:
    """Count in-flight (pending or processing) jobs for a user and period.

    Args:
        session: Database session
        user_id: Job owner
        period: Billing period embedded in the job payload
        device_id: Restrict to jobs reserved against this device

    Returns:
        Number of in-flight jobs
    """
    result = await session.execute(
        select(func.count(PdfJob.id)).where(
            PdfJob.status.in_(PENDING_JOB_STATUSES),
            *_job_filters(user_id, period, device_id),
        )
    )
    return int(result.scalar_one() or 0)


async def count_completed_jobs(
    session: AsyncSession,
    user_id: str,
    period: date,
    device_id: Optional[str] = None,
) -> int:
    """Count completed jobs for a user and period (reconciliation source)."""
    result = await session.execute(
        select(func.count(PdfJob.id)).where(
            PdfJob.status == "completed",
            *_job_filters(user_id, period, device_id),
        )
    )
    return int(result.scalar_one() or 0)
