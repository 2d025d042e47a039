"""Plan lookup for quota decisions."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from offerquota.app.core.config import settings
from offerquota.app.db.models import Profile

PLANS = ("free", "standard", "pro")

# Plan names used by older billing records
_PLAN_ALIASES = {"starter": "standard"}


@dataclass(frozen=True)
class PlanInfo:
    plan: str
    limit: Optional[int]
    # Explicitly unlimited account (overrides the plan's default limit)
    unlimited: bool = False


def normalize_plan(raw: Optional[str]) -> str:
    """Map a stored plan value to free/standard/pro; unknown values are free."""
    value = (raw or "").strip().lower()
    value = _PLAN_ALIASES.get(value, value)
    return value if value in PLANS else "free"


def plan_limit(plan: str) -> Optional[int]:
    """Default monthly offer limit for a plan (None = unlimited)."""
    if plan == "pro":
        return settings.pro_monthly_limit
    if plan == "standard":
        return settings.standard_monthly_limit
    return settings.free_monthly_limit


def device_limit(plan: str) -> Optional[int]:
    """Per-device sub-limit; only the free plan has one."""
    return settings.free_device_limit if plan == "free" else None


async def get_plan(session: AsyncSession, user_id: str) -> PlanInfo:
    """Resolve a user's plan and monthly limit.

    Users without a profile are treated as free.
    """
    result = await session.execute(select(Profile.plan).where(Profile.id == user_id))
    plan = normalize_plan(result.scalar_one_or_none())
    if user_id in settings.unlimited_user_ids:
        return PlanInfo(plan=plan, limit=None, unlimited=True)
    return PlanInfo(plan=plan, limit=plan_limit(plan))
