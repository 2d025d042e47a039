"""Quota endpoints called by the billing layer and the UI backend."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from offerquota.app.api.dependencies import (
    SnapshotServiceDep,
    UsageServiceDep,
    require_current_period,
    resolve_period,
    run_allocation,
)
from offerquota.app.core.logging import get_logger
from offerquota.app.db.async_session import SessionDep
from offerquota.app.db.crud import UsageSubject, device_limit, get_plan
from offerquota.app.middleware.auth import require_service_token

router = APIRouter(prefix="/api", tags=["quota"], dependencies=[Depends(require_service_token)])
logger = get_logger(__name__)


class ReserveRequest(BaseModel):
    """Schema for reserving one offer."""

    device_id: Optional[str] = Field(None, max_length=255)


class CheckRequest(BaseModel):
    """Schema for a pending-inclusive quota check."""

    device_id: Optional[str] = Field(None, max_length=255)
    period_start: Optional[str] = None


class RollbackRequest(BaseModel):
    """Schema for giving back a failed reservation."""

    expected_period: str = Field(..., min_length=1, description="Period the unit was reserved in")
    device_id: Optional[str] = Field(None, max_length=255)


@router.get("/quota/{user_id}")
async def get_quota(
    user_id: str,
    session: SessionDep,
    snapshot_service: SnapshotServiceDep,
    device_id: Optional[str] = None,
    period_start: Optional[str] = None,
) -> dict[str, Any]:
    """Remaining quota for display. Not an allow/deny decision."""
    snapshot = await snapshot_service.snapshot(
        session, user_id, device_id=device_id, period=resolve_period(period_start)
    )
    return snapshot.to_dict()


@router.post("/usage/{user_id}/reserve")
async def reserve(
    user_id: str,
    data: ReserveRequest,
    session: SessionDep,
    usage_service: UsageServiceDep,
) -> dict[str, Any]:
    """Reserve one offer; 429 with the exhausted scope when denied."""
    reservation = await run_allocation(
        usage_service.reserve_unit(session, user_id, device_id=data.device_id),
        "usage reservation",
    )
    return reservation.to_dict()


@router.post("/usage/{user_id}/check")
async def check(
    user_id: str,
    data: CheckRequest,
    session: SessionDep,
    usage_service: UsageServiceDep,
) -> dict[str, Any]:
    """Whether a new job may be queued, counting jobs already in flight."""
    period = require_current_period(data.period_start)

    async def evaluate() -> dict[str, Any]:
        plan = await get_plan(session, user_id)
        user = await usage_service.check_with_pending(
            session, UsageSubject(user_id), plan.limit, period
        )
        response: dict[str, Any] = {
            "allowed": user.allowed,
            "scope": None if user.allowed else "user",
            "plan": plan.plan,
            "limit": plan.limit,
            "period_start": period.isoformat(),
            "user": {
                "confirmed": user.confirmed_count,
                "pending": user.pending_count,
                "total": user.total_count,
            },
        }

        per_device = device_limit(plan.plan)
        if data.device_id and plan.limit is not None and per_device is not None:
            device = await usage_service.check_with_pending(
                session, UsageSubject(user_id, data.device_id), per_device, period
            )
            response["device"] = {
                "confirmed": device.confirmed_count,
                "pending": device.pending_count,
                "total": device.total_count,
                "limit": per_device,
            }
            if user.allowed and not device.allowed:
                response["allowed"] = False
                response["scope"] = "device"
        return response

    return await run_allocation(evaluate(), "pending-inclusive quota check")


@router.post("/usage/{user_id}/rollback", status_code=status.HTTP_202_ACCEPTED)
async def rollback(
    user_id: str,
    data: RollbackRequest,
    session: SessionDep,
    usage_service: UsageServiceDep,
) -> dict[str, Any]:
    """Give back a reservation whose work failed. Always accepted."""
    period = resolve_period(data.expected_period)
    outcomes = {
        "user": await usage_service.rollback(session, UsageSubject(user_id), period),
    }
    if data.device_id:
        outcomes["device"] = await usage_service.rollback(
            session, UsageSubject(user_id, data.device_id), period
        )
    return {
        "period_start": period.isoformat(),
        "outcomes": {scope: outcome.value for scope, outcome in outcomes.items()},
    }
