"""Operator endpoints."""

from typing import Any, Optional

from fastapi import APIRouter, Depends

from offerquota.app.api.dependencies import resolve_period
from offerquota.app.db.async_session import SessionDep
from offerquota.app.middleware.auth import require_service_token
from offerquota.app.services.usage import reconcile_period, reconcile_usage

router = APIRouter(
    prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_service_token)]
)


@router.post("/reconcile-quota")
async def reconcile_quota(
    session: SessionDep,
    user_id: Optional[str] = None,
    period_start: Optional[str] = None,
    include_devices: bool = True,
) -> dict[str, Any]:
    """Report counters that disagree with completed jobs. Nothing is changed."""
    period = resolve_period(period_start)
    if user_id:
        reports = await reconcile_usage(session, user_id, period, include_devices)
    else:
        reports = await reconcile_period(session, period, include_devices)

    return {
        "period_start": period.isoformat(),
        "checked": len(reports),
        "drifted": sum(1 for report in reports if report.discrepancy),
        "reports": [report.to_dict() for report in reports],
    }
