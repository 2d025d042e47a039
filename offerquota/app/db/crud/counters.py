"""Usage counter CRUD operations.

A subject is either a user or a (user, device) pair; each kind has its own
counter table. Rows are created lazily and reset in place when a new
billing period starts, never deleted.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from offerquota.app.core.periods import normalize_period
from offerquota.app.db.models import DeviceUsageCounter, UsageCounter


@dataclass(frozen=True)
class UsageSubject:
    """Entity whose quota is tracked: a user, or a user on one device."""

    user_id: str
    device_id: Optional[str] = None

    @property
    def kind(self) -> str:
        return "device" if self.device_id else "user"

    def for_user(self) -> "UsageSubject":
        return UsageSubject(self.user_id)


@dataclass(frozen=True)
class CounterState:
    """Current-period view of a counter row."""

    period_start: date
    offers_generated: int


@dataclass(frozen=True)
class CounterRow:
    """A counter row exactly as stored.

    ``raw_period_start`` is kept untouched so conditional updates can be
    guarded by the value that was actually read.
    """

    raw_period_start: Any
    offers_generated: int
    updated_at: Optional[datetime] = None

    def resolved_period(self, fallback: date) -> date:
        if self.raw_period_start is None and self.updated_at is not None:
            return normalize_period(self.updated_at, fallback).replace(day=1)
        return normalize_period(self.raw_period_start, fallback)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def counter_model(subject: UsageSubject):
    """Return the counter table mapped class for a subject."""
    return DeviceUsageCounter if subject.device_id else UsageCounter


def subject_filters(subject: UsageSubject) -> list:
    """Identity predicates for the subject's counter row."""
    model = counter_model(subject)
    filters = [model.user_id == subject.user_id]
    if subject.device_id:
        filters.append(model.device_id == subject.device_id)
    return filters


async def load_counter(
    session: AsyncSession,
    subject: UsageSubject,
    period: Optional[date] = None,
) -> Optional[CounterRow]:
    """Read the subject's counter row without creating or resetting it.

    Args:
        session: Database session
        subject: Counter owner
        period: If given, only return the row when it belongs to this period

    Returns:
        The stored row, or None if absent (or in another period)
    """
    model = counter_model(subject)
    stmt = select(model.period_start, model.offers_generated, model.updated_at).where(
        *subject_filters(subject)
    )
    if period is not None:
        stmt = stmt.where(model.period_start == period)
    row = (await session.execute(stmt)).first()
    if row is None:
        return None
    return CounterRow(
        raw_period_start=row[0],
        offers_generated=int(row[1] or 0),
        updated_at=row[2],
    )


async def _insert_counter(session: AsyncSession, subject: UsageSubject, period: date) -> bool:
    """Insert a zeroed counter row. Returns False if another caller won the race."""
    model = counter_model(subject)
    values = {
        "user_id": subject.user_id,
        "period_start": period,
        "offers_generated": 0,
        "updated_at": _utcnow(),
    }
    if subject.device_id:
        values["device_id"] = subject.device_id

    dialect = session.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        dialect_insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        result = await session.execute(
            dialect_insert(model).values(**values).on_conflict_do_nothing()
        )
        return bool(result.rowcount)

    try:
        async with session.begin_nested():
            await session.execute(insert(model).values(**values))
    except IntegrityError:
        return False
    return True


async def ensure_counter(
    session: AsyncSession,
    subject: UsageSubject,
    period: date,
    auto_commit: bool = True,
) -> CounterState:
    """Make sure the subject has a counter row for ``period`` and return it.

    Creates the row when absent. When the stored period differs (the month
    rolled over since the last touch) the row is reset to
    ``{period, 0}`` with an update guarded by the stored period, so the
    reset happens exactly once even with concurrent callers.

    Storage errors propagate; decisions depend on a correct baseline.
    """
    model = counter_model(subject)
    row = await load_counter(session, subject)

    if row is None:
        await _insert_counter(session, subject, period)
        row = await load_counter(session, subject)
        if row is None:
            raise RuntimeError(
                f"Usage counter for {subject.kind} {subject.user_id} vanished after insert"
            )

    state = CounterState(row.resolved_period(period), row.offers_generated)

    if state.period_start != period:
        result = await session.execute(
            update(model)
            .where(*subject_filters(subject), model.period_start == row.raw_period_start)
            .values(period_start=period, offers_generated=0, updated_at=_utcnow())
            .returning(model.period_start, model.offers_generated)
            .execution_options(synchronize_session=False)
        )
        reset = result.first()
        if reset is None:
            # Someone else reset (or bumped) the row in between; re-read it
            current = await load_counter(session, subject)
            if current is None:
                raise RuntimeError(
                    f"Usage counter for {subject.kind} {subject.user_id} vanished during reset"
                )
            state = CounterState(current.resolved_period(period), current.offers_generated)
        else:
            state = CounterState(normalize_period(reset[0], period), int(reset[1] or 0))

    if auto_commit:
        await session.commit()
    return state


async def apply_increment(
    session: AsyncSession,
    subject: UsageSubject,
    period: date,
    auto_commit: bool = True,
) -> Optional[CounterState]:
    """Increment the counter by one, guarded by the period that was read.

    Returns:
        The post-update state, or None if the row is no longer in ``period``
    """
    model = counter_model(subject)
    result = await session.execute(
        update(model)
        .where(*subject_filters(subject), model.period_start == period)
        .values(offers_generated=model.offers_generated + 1, updated_at=_utcnow())
        .returning(model.period_start, model.offers_generated)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    if auto_commit:
        await session.commit()
    if row is None:
        return None
    return CounterState(normalize_period(row[0], period), int(row[1]))


async def apply_decrement(
    session: AsyncSession,
    subject: UsageSubject,
    raw_period_start: Any,
    auto_commit: bool = True,
) -> Optional[int]:
    """Decrement the counter by one if it is positive and still in the read period.

    Returns:
        The new count, or None if nothing matched
    """
    model = counter_model(subject)
    result = await session.execute(
        update(model)
        .where(
            *subject_filters(subject),
            model.period_start == raw_period_start,
            model.offers_generated > 0,
        )
        .values(offers_generated=model.offers_generated - 1, updated_at=_utcnow())
        .returning(model.offers_generated)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    if auto_commit:
        await session.commit()
    return int(row[0]) if row is not None else None


async def list_device_counters(
    session: AsyncSession,
    user_id: str,
    period: date,
) -> list[tuple[str, int]]:
    """List (device_id, offers_generated) for a user's devices in a period."""
    result = await session.execute(
        select(DeviceUsageCounter.device_id, DeviceUsageCounter.offers_generated)
        .where(
            DeviceUsageCounter.user_id == user_id,
            DeviceUsageCounter.period_start == period,
        )
        .order_by(DeviceUsageCounter.device_id)
    )
    return [(row[0], int(row[1] or 0)) for row in result.all()]


async def list_counter_users(session: AsyncSession, period: date) -> list[str]:
    """List user ids that hold a user counter in the given period."""
    result = await session.execute(
        select(UsageCounter.user_id)
        .where(UsageCounter.period_start == period)
        .order_by(UsageCounter.user_id)
    )
    return [row[0] for row in result.all()]

