"""Usage accounting service: monthly offer quota per user and per device.

Entry points for the billing layer:
- check_and_increment: reserve one confirmed unit if under the limit
- check_with_pending: decide on confirmed + in-flight work without reserving
- rollback: compensate a reservation whose work failed
- reserve_unit / release: user + device reservation as one step

Atomic server-side procedures are preferred. When one is missing the
service falls back to the multi-statement path (unless fallback is
disabled), and remembers the missing procedure for a limited time.
"""

import asyncio
from datetime import date
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from offerquota.app.core.config import settings
from offerquota.app.core.logging import get_log_context, get_logger
from offerquota.app.core.periods import current_period, normalize_period
from offerquota.app.db.crud import (
    UsageSubject,
    apply_decrement,
    device_limit,
    get_plan,
    load_counter,
)
from offerquota.app.exceptions import QuotaExhaustedError, UsageStoreError
from offerquota.app.services.retry import RetryPolicy, with_retry

from .capability import AtomicCapability
from .incrementers import (
    AtomicIncrementer,
    FallbackIncrementer,
    ProcedureUnavailableError,
    UsageIncrementer,
    increment_procedure,
    pending_procedure,
)
from .models import IncrementResult, PendingQuotaResult, Reservation, RollbackOutcome

logger = get_logger(__name__)

T = TypeVar("T")


class UsageService:
    """Quota decisions and compensation against the counter store.

    Holds no per-subject state; all serialization happens in the database.
    The only process-local state is the capability record.
    """

    def __init__(
        self,
        capability: Optional[AtomicCapability] = None,
        retry_policy: Optional[RetryPolicy] = None,
        allow_fallback: Optional[bool] = None,
        atomic: Optional[UsageIncrementer] = None,
        fallback: Optional[UsageIncrementer] = None,
    ) -> None:
        self.capability = capability or AtomicCapability(
            ttl_seconds=settings.usage_capability_ttl_seconds
        )
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.allow_fallback = (
            settings.usage_allow_fallback if allow_fallback is None else allow_fallback
        )
        self._atomic = atomic or AtomicIncrementer()
        self._fallback = fallback or FallbackIncrementer()

    async def _dispatch(
        self,
        procedure: str,
        subject: UsageSubject,
        call: Callable[[UsageIncrementer], Awaitable[T]],
    ) -> T:
        """Run ``call`` on the atomic path, or on the fallback if the procedure is missing."""
        if self.capability.should_attempt(procedure):
            try:
                result = await call(self._atomic)
            except ProcedureUnavailableError as e:
                if self.capability.mark_unavailable(procedure):
                    logger.warning(
                        f"Atomic procedure {procedure} unavailable, using fallback: {e.cause}",
                        extra=get_log_context(user_id=subject.user_id, scope=subject.kind),
                    )
            else:
                self.capability.mark_available(procedure)
                return result

        if not self.allow_fallback:
            raise UsageStoreError(
                f"Atomic procedure '{procedure}' is not installed and fallback is disabled"
            )
        return await call(self._fallback)

    async def check_and_increment(
        self,
        session: AsyncSession,
        subject: UsageSubject,
        limit: Optional[int],
        period: Optional[date] = None,
    ) -> IncrementResult:
        """Reserve one unit for ``subject`` if ``confirmed < limit``.

        A None limit always allows and still increments. Storage errors
        propagate; the caller must then assume nothing was reserved.
        """
        period = (period or current_period()).replace(day=1)
        result = await self._dispatch(
            increment_procedure(subject),
            subject,
            lambda inc: inc.increment(session, subject, limit, period),
        )
        logger.info(
            f"Usage {'allowed' if result.allowed else 'denied'} for {subject.kind} "
            f"{subject.user_id}: {result.offers_generated}/{limit if limit is not None else 'unlimited'} "
            f"({result.source})",
            extra=get_log_context(
                user_id=subject.user_id,
                device_id=subject.device_id,
                period_start=result.period_start,
                scope=subject.kind,
            ),
        )
        return result

    async def check_with_pending(
        self,
        session: AsyncSession,
        subject: UsageSubject,
        limit: Optional[int],
        period: Optional[date] = None,
    ) -> PendingQuotaResult:
        """Decide whether new work may be queued, counting in-flight jobs.

        Nothing is reserved here; the caller creates the pending job.
        """
        period = (period or current_period()).replace(day=1)
        result = await self._dispatch(
            pending_procedure(subject),
            subject,
            lambda inc: inc.check_pending(session, subject, limit, period),
        )
        logger.info(
            f"Pending-inclusive check {'allowed' if result.allowed else 'denied'} for "
            f"{subject.kind} {subject.user_id}: confirmed={result.confirmed_count} "
            f"pending={result.pending_count} limit={limit} ({result.source})",
            extra=get_log_context(
                user_id=subject.user_id,
                device_id=subject.device_id,
                period_start=period,
                scope=subject.kind,
            ),
        )
        return result

    async def rollback(
        self,
        session: AsyncSession,
        subject: UsageSubject,
        expected_period: object,
    ) -> RollbackOutcome:
        """Give back one unit reserved in ``expected_period``.

        Never raises. Stale state (row gone, rolled over, already zero) is a
        logged no-op; storage errors are retried with backoff and, once the
        retries are used up, logged at error level. Call at most once per
        failed reservation.
        """
        expected = normalize_period(expected_period, current_period()).replace(day=1)
        context = get_log_context(
            user_id=subject.user_id,
            device_id=subject.device_id,
            period_start=expected,
            scope=subject.kind,
        )

        async def reset_session(attempt: int, exc: Exception) -> None:
            await session.rollback()

        @with_retry(policy=self.retry_policy, on_retry=reset_session)
        async def decrement_once() -> RollbackOutcome:
            row = await load_counter(session, subject)
            if row is None:
                logger.warning(
                    f"Usage rollback skipped for {subject.kind} {subject.user_id}: no counter row",
                    extra=context,
                )
                return RollbackOutcome.SKIPPED_NOT_FOUND

            if row.resolved_period(expected) != expected:
                row = await load_counter(session, subject, expected)
                if row is None or row.resolved_period(expected) != expected:
                    logger.warning(
                        f"Usage rollback skipped for {subject.kind} {subject.user_id}: "
                        f"counter is no longer in period {expected.isoformat()}",
                        extra=context,
                    )
                    return RollbackOutcome.SKIPPED_PERIOD_MISMATCH

            if row.offers_generated <= 0:
                logger.warning(
                    f"Usage rollback skipped for {subject.kind} {subject.user_id}: "
                    f"counter is {row.offers_generated}",
                    extra=context,
                )
                return RollbackOutcome.SKIPPED_NON_POSITIVE

            remaining = await apply_decrement(session, subject, row.raw_period_start)
            if remaining is None:
                logger.warning(
                    f"Usage rollback skipped for {subject.kind} {subject.user_id}: "
                    "counter changed concurrently",
                    extra=context,
                )
                return RollbackOutcome.SKIPPED_CONFLICT

            logger.info(
                f"Usage rolled back for {subject.kind} {subject.user_id}: now {remaining}",
                extra=context,
            )
            return RollbackOutcome.APPLIED

        try:
            return await decrement_once()
        except Exception as e:
            logger.error(
                f"Usage rollback failed for {subject.kind} {subject.user_id}: "
                f"{type(e).__name__}: {e}",
                extra=context,
            )
            await self._discard_transaction(session)
            return RollbackOutcome.FAILED

    async def _compensate(
        self, session: AsyncSession, subject: UsageSubject, period: date
    ) -> RollbackOutcome:
        """Drop whatever the failed step left in the transaction, then give the unit back."""
        await self._discard_transaction(session)
        return await self.rollback(session, subject, period)

    @staticmethod
    async def _discard_transaction(session: AsyncSession) -> None:
        try:
            await session.rollback()
        except SQLAlchemyError as e:
            logger.debug(f"Session rollback after failed usage rollback also failed: {e}")

    async def reserve_unit(
        self,
        session: AsyncSession,
        user_id: str,
        device_id: Optional[str] = None,
        period: Optional[date] = None,
    ) -> Reservation:
        """Reserve one offer for a user, and for the device on the free plan.

        Raises:
            QuotaExhaustedError: user or device allowance is used up; any
                user unit taken before a device denial is given back
        """
        period = (period or current_period()).replace(day=1)
        plan = await get_plan(session, user_id)
        user_subject = UsageSubject(user_id)

        user = await self.check_and_increment(session, user_subject, plan.limit, period)
        if not user.allowed:
            raise QuotaExhaustedError(
                scope="user",
                limit=plan.limit,
                used=user.offers_generated,
                period_start=user.period_start,
            )

        per_device = device_limit(plan.plan)
        if not device_id or plan.limit is None or per_device is None:
            return Reservation(
                user_id=user_id,
                period_start=user.period_start,
                user_count=user.offers_generated,
                plan=plan.plan,
                limit=plan.limit,
            )

        device_subject = UsageSubject(user_id, device_id)
        try:
            device = await self.check_and_increment(session, device_subject, per_device, period)
        except (Exception, asyncio.CancelledError):
            # The user unit is already committed, also when the caller was cancelled
            await asyncio.shield(self._compensate(session, user_subject, user.period_start))
            raise

        if not device.allowed:
            await self.rollback(session, user_subject, user.period_start)
            raise QuotaExhaustedError(
                scope="device",
                limit=per_device,
                used=device.offers_generated,
                period_start=device.period_start,
            )

        return Reservation(
            user_id=user_id,
            period_start=user.period_start,
            user_count=user.offers_generated,
            plan=plan.plan,
            limit=plan.limit,
            device_id=device_id,
            device_count=device.offers_generated,
        )

    async def release(
        self, session: AsyncSession, reservation: Reservation
    ) -> Dict[str, RollbackOutcome]:
        """Give back everything a reservation took. Never raises."""
        outcomes = {
            "user": await self.rollback(
                session, UsageSubject(reservation.user_id), reservation.period_start
            )
        }
        if reservation.device_reserved:
            outcomes["device"] = await self.rollback(
                session,
                UsageSubject(reservation.user_id, reservation.device_id),
                reservation.period_start,
            )
        return outcomes


# Global instance
_usage_service: Optional[UsageService] = None


def get_usage_service() -> UsageService:
    """Get the global usage service instance."""
    global _usage_service
    if _usage_service is None:
        _usage_service = UsageService()
    return _usage_service


def reset_usage_service() -> None:
    """Reset the global usage service instance (for testing)."""
    global _usage_service
    _usage_service = None
