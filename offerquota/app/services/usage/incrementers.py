"""Check-and-increment strategies.

Two implementations of the same contract:

- AtomicIncrementer calls a server-side function that locks the counter row,
  handles period rollover, evaluates the limit and increments in one round
  trip. This is the only path that is correct under true concurrency.
- FallbackIncrementer emulates it with separate statements
  (select, maybe insert, maybe reset, conditional update). Between the limit
  check and the update another caller can slip in, so concurrent requests
  for the same subject can overshoot the limit. It exists for databases
  where the functions are not installed (local SQLite, fresh deployments).
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional

from sqlalchemy import Date, Integer, String, bindparam, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from offerquota.app.core.logging import get_logger
from offerquota.app.core.periods import normalize_period
from offerquota.app.db.crud import (
    UsageSubject,
    apply_increment,
    count_pending_jobs,
    ensure_counter,
)
from offerquota.app.db.procedures import (
    CHECK_AND_INCREMENT_DEVICE_USAGE,
    CHECK_AND_INCREMENT_USAGE,
    CHECK_DEVICE_QUOTA_WITH_PENDING,
    CHECK_QUOTA_WITH_PENDING,
)

from .models import IncrementResult, PendingQuotaResult

logger = get_logger(__name__)

# Fragments the store uses when a function is missing or ambiguous
_MISSING_PROCEDURE_FRAGMENTS = ("could not find function", "multiple function variants")


class ProcedureUnavailableError(Exception):
    """The atomic server-side function is not installed in this database."""

    def __init__(self, procedure: str, cause: Optional[BaseException] = None):
        self.procedure = procedure
        self.cause = cause
        super().__init__(f"Atomic procedure '{procedure}' is not available")


def is_missing_procedure(error: BaseException, procedure: str) -> bool:
    """Detect a "function not found" error by its message.

    The store does not reliably distinguish error kinds, so this inspects
    the message for the procedure's name or a known fragment. For wrapped
    driver errors only the driver message is used, since the wrapper's text
    also carries the SQL statement (which always names the procedure).
    """
    orig = getattr(error, "orig", None)
    message = str(orig if orig is not None else error).lower()
    if procedure.lower() in message:
        return True
    return any(fragment in message for fragment in _MISSING_PROCEDURE_FRAGMENTS)


def increment_procedure(subject: UsageSubject) -> str:
    return CHECK_AND_INCREMENT_DEVICE_USAGE if subject.device_id else CHECK_AND_INCREMENT_USAGE


def pending_procedure(subject: UsageSubject) -> str:
    return CHECK_DEVICE_QUOTA_WITH_PENDING if subject.device_id else CHECK_QUOTA_WITH_PENDING


class UsageIncrementer(ABC):
    """Contract shared by the atomic and the fallback strategy."""

    source: str = "unknown"

    @abstractmethod
    async def increment(
        self,
        session: AsyncSession,
        subject: UsageSubject,
        limit: Optional[int],
        period: date,
    ) -> IncrementResult:
        """Reserve one unit if ``confirmed < limit`` (always when limit is None)."""

    @abstractmethod
    async def check_pending(
        self,
        session: AsyncSession,
        subject: UsageSubject,
        limit: Optional[int],
        period: date,
    ) -> PendingQuotaResult:
        """Decide on ``confirmed + pending < limit`` without reserving."""


class AtomicIncrementer(UsageIncrementer):
    """Single-round-trip decisions through the server-side functions."""

    source = "atomic"

    @staticmethod
    def _statement(procedure: str, subject: UsageSubject):
        if subject.device_id:
            sql = f"SELECT * FROM {procedure}(:p_user_id, :p_device_id, :p_limit, :p_period_start)"
            params = [bindparam("p_device_id", type_=String)]
        else:
            sql = f"SELECT * FROM {procedure}(:p_user_id, :p_limit, :p_period_start)"
            params = []
        return text(sql).bindparams(
            bindparam("p_user_id", type_=String),
            bindparam("p_limit", type_=Integer),
            bindparam("p_period_start", type_=Date),
            *params,
        )

    async def _call(
        self,
        session: AsyncSession,
        procedure: str,
        subject: UsageSubject,
        limit: Optional[int],
        period: date,
    ) -> dict:
        params = {
            "p_user_id": subject.user_id,
            "p_limit": limit,
            "p_period_start": period,
        }
        if subject.device_id:
            params["p_device_id"] = subject.device_id

        try:
            result = await session.execute(self._statement(procedure, subject), params)
            row = result.mappings().first()
        except DBAPIError as e:
            # The failed statement aborts the transaction either way
            await session.rollback()
            if is_missing_procedure(e, procedure):
                raise ProcedureUnavailableError(procedure, e) from e
            raise

        await session.commit()
        if row is None:
            raise RuntimeError(f"Atomic procedure '{procedure}' returned no rows")
        return dict(row)

    async def increment(
        self,
        session: AsyncSession,
        subject: UsageSubject,
        limit: Optional[int],
        period: date,
    ) -> IncrementResult:
        row = await self._call(session, increment_procedure(subject), subject, limit, period)
        return IncrementResult(
            allowed=bool(row.get("allowed")),
            offers_generated=int(row.get("offers_generated") or 0),
            period_start=normalize_period(row.get("period_start"), period),
            source=self.source,
        )

    async def check_pending(
        self,
        session: AsyncSession,
        subject: UsageSubject,
        limit: Optional[int],
        period: date,
    ) -> PendingQuotaResult:
        row = await self._call(session, pending_procedure(subject), subject, limit, period)
        confirmed = int(row.get("confirmed_count") or 0)
        pending = int(row.get("pending_count") or 0)
        total = row.get("total_count")
        return PendingQuotaResult(
            allowed=bool(row.get("allowed")),
            confirmed_count=confirmed,
            pending_count=pending,
            total_count=int(total) if total is not None else confirmed + pending,
            source=self.source,
        )


class FallbackIncrementer(UsageIncrementer):
    """Multi-statement emulation of the atomic functions. Not atomic as a whole."""

    source = "fallback"

    # A conditional update can miss only if the row moved to a newer period
    # between the read and the write; one re-read settles it.
    MAX_ATTEMPTS = 2

    async def increment(
        self,
        session: AsyncSession,
        subject: UsageSubject,
        limit: Optional[int],
        period: date,
    ) -> IncrementResult:
        for _ in range(self.MAX_ATTEMPTS):
            state = await ensure_counter(session, subject, period, auto_commit=False)

            if limit is not None and state.offers_generated >= limit:
                # Persist a lazy insert or period reset even when denying
                await session.commit()
                return IncrementResult(
                    allowed=False,
                    offers_generated=state.offers_generated,
                    period_start=state.period_start,
                    source=self.source,
                )

            updated = await apply_increment(
                session, subject, state.period_start, auto_commit=False
            )
            await session.commit()
            if updated is not None:
                return IncrementResult(
                    allowed=True,
                    offers_generated=updated.offers_generated,
                    period_start=updated.period_start,
                    source=self.source,
                )
            logger.debug(
                f"Usage counter for {subject.kind} {subject.user_id} changed period "
                "between read and update; re-reading"
            )

        raise RuntimeError(
            f"Usage counter for {subject.kind} {subject.user_id} kept changing during increment"
        )

    async def check_pending(
        self,
        session: AsyncSession,
        subject: UsageSubject,
        limit: Optional[int],
        period: date,
    ) -> PendingQuotaResult:
        state = await ensure_counter(session, subject, period)
        pending = await count_pending_jobs(session, subject.user_id, period, subject.device_id)
        total = state.offers_generated + pending
        return PendingQuotaResult(
            allowed=limit is None or total < limit,
            confirmed_count=state.offers_generated,
            pending_count=pending,
            total_count=total,
            source=self.source,
        )
