"""Shared FastAPI dependencies for the quota routes."""

import asyncio
from datetime import date
from typing import Awaitable, Optional, TypeVar

from fastapi import Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from typing_extensions import Annotated

from offerquota.app.core.config import settings
from offerquota.app.core.logging import get_logger
from offerquota.app.core.periods import current_period, normalize_period
from offerquota.app.exceptions import UsageStoreError
from offerquota.app.services.usage import (
    QuotaSnapshotService,
    UsageService,
    get_snapshot_service,
    get_usage_service,
)

logger = get_logger(__name__)

T = TypeVar("T")

UsageServiceDep = Annotated[UsageService, Depends(get_usage_service)]
SnapshotServiceDep = Annotated[QuotaSnapshotService, Depends(get_snapshot_service)]


def resolve_period(value: Optional[str]) -> date:
    """Period from a request parameter; missing or unparsable means the current month.

    Any day of a month resolves to the first day of that month.
    """
    today = current_period()
    if value is None:
        return today
    return normalize_period(value, today).replace(day=1)


def require_current_period(value: Optional[str]) -> date:
    """Period for an allocation decision; only the current month is accepted.

    Counters are reset when asked about another period, so a stale or
    future period from a caller must never reach them.

    Raises:
        HTTPException: 422 if the value names any other month
    """
    period = resolve_period(value)
    if period != current_period():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"period_start {period.isoformat()} is not the current period",
        )
    return period


async def run_allocation(operation: Awaitable[T], description: str) -> T:
    """Run an allocation decision under the caller-side timeout.

    A timeout is reported as 504 and unexpected storage failures as 503; in
    both cases the caller must not assume a unit was reserved.
    """
    try:
        return await asyncio.wait_for(operation, timeout=settings.usage_request_timeout)
    except asyncio.TimeoutError:
        logger.error(
            f"{description} timed out after {settings.usage_request_timeout}s"
        )
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=f"{description} timed out",
        )
    except SQLAlchemyError as e:
        logger.error(f"Database error during {description}: {e}")
        raise UsageStoreError(f"Usage store error during {description}") from e
