"""Tests for UsageService.

Tests cover:
- Atomic/fallback dispatch and the capability record
- Fallback parity with the atomic semantics
- Unlimited passthrough
- No over-allocation under concurrent callers (serialized atomic stand-in)
- Reservation orchestration across user and device counters
"""

import asyncio
import logging
from datetime import date
from typing import Dict, Tuple
from unittest.mock import AsyncMock

import pytest

from offerquota.app.core.config import settings
from offerquota.app.db.crud import UsageSubject, load_counter
from offerquota.app.exceptions import QuotaExhaustedError, UsageStoreError
from offerquota.app.services.usage import (
    AtomicCapability,
    CapabilityState,
    IncrementResult,
    ProcedureUnavailableError,
    UsageIncrementer,
    UsageService,
    get_usage_service,
    reset_usage_service,
)

JUNE = date(2024, 6, 1)
JULY = date(2024, 7, 1)
USER = UsageSubject("user-1")


class SerializedAtomicIncrementer(UsageIncrementer):
    """In-memory stand-in for the row-locking procedure.

    Each subject's read-evaluate-write runs under one lock, like a row held
    with SELECT ... FOR UPDATE.
    """

    source = "atomic"

    def __init__(self) -> None:
        self.counters: Dict[UsageSubject, Tuple[date, int]] = {}
        self._lock = asyncio.Lock()

    async def increment(self, session, subject, limit, period):
        async with self._lock:
            stored_period, count = self.counters.get(subject, (period, 0))
            if stored_period != period:
                count = 0
            # Yield while "holding the row lock" so other callers queue up
            await asyncio.sleep(0)
            if limit is not None and count >= limit:
                self.counters[subject] = (period, count)
                return IncrementResult(False, count, period, self.source)
            count += 1
            self.counters[subject] = (period, count)
            return IncrementResult(True, count, period, self.source)

    async def check_pending(self, session, subject, limit, period):
        raise NotImplementedError


def _unavailable_error(procedure: str) -> ProcedureUnavailableError:
    return ProcedureUnavailableError(procedure, Exception(f"function {procedure} does not exist"))


class TestDispatch:
    """Test selection between the atomic and the fallback path."""

    @pytest.mark.asyncio
    async def test_sqlite_falls_back_and_records_capability(self, session, fast_retry):
        service = UsageService(capability=AtomicCapability(), retry_policy=fast_retry, allow_fallback=True)

        result = await service.check_and_increment(session, USER, 3, JULY)

        assert result.allowed is True
        assert result.source == "fallback"
        assert service.capability.state("check_and_increment_usage") is CapabilityState.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_fallback_warning_logged_once(self, caplog):
        atomic = AsyncMock(spec=UsageIncrementer)
        atomic.increment.side_effect = _unavailable_error("check_and_increment_usage")
        fallback = AsyncMock(spec=UsageIncrementer)
        fallback.increment.return_value = IncrementResult(True, 1, JULY, "fallback")
        clock_now = [0.0]
        service = UsageService(
            capability=AtomicCapability(ttl_seconds=10, clock=lambda: clock_now[0]),
            allow_fallback=True,
            atomic=atomic,
            fallback=fallback,
        )

        with caplog.at_level(logging.WARNING):
            await service.check_and_increment(AsyncMock(), USER, 3, JULY)
            await service.check_and_increment(AsyncMock(), USER, 3, JULY)

        warnings = [r for r in caplog.records if "unavailable, using fallback" in r.getMessage()]
        assert len(warnings) == 1
        # Within the TTL the atomic call is not attempted again
        assert atomic.increment.await_count == 1
        assert fallback.increment.await_count == 2

    @pytest.mark.asyncio
    async def test_reprobes_after_ttl(self):
        atomic = AsyncMock(spec=UsageIncrementer)
        atomic.increment.return_value = IncrementResult(True, 1, JULY, "atomic")
        fallback = AsyncMock(spec=UsageIncrementer)
        clock_now = [0.0]
        capability = AtomicCapability(
            ttl_seconds=10,
            initial={"check_and_increment_usage": CapabilityState.UNAVAILABLE},
            clock=lambda: clock_now[0],
        )
        service = UsageService(capability=capability, allow_fallback=True, atomic=atomic, fallback=fallback)

        clock_now[0] = 10.0
        result = await service.check_and_increment(AsyncMock(), USER, 3, JULY)

        assert result.source == "atomic"
        fallback.increment.assert_not_awaited()
        assert capability.state("check_and_increment_usage") is CapabilityState.AVAILABLE

    @pytest.mark.asyncio
    async def test_available_procedure_is_used(self):
        atomic = AsyncMock(spec=UsageIncrementer)
        atomic.increment.return_value = IncrementResult(False, 3, JULY, "atomic")
        fallback = AsyncMock(spec=UsageIncrementer)
        service = UsageService(capability=AtomicCapability(), allow_fallback=True, atomic=atomic, fallback=fallback)

        result = await service.check_and_increment(AsyncMock(), UsageSubject("user-1", "device-a"), 3, JULY)

        assert result.allowed is False
        fallback.increment.assert_not_awaited()
        assert service.capability.state("check_and_increment_device_usage") is CapabilityState.AVAILABLE

    @pytest.mark.asyncio
    async def test_fallback_disabled_is_fatal(self):
        atomic = AsyncMock(spec=UsageIncrementer)
        atomic.increment.side_effect = _unavailable_error("check_and_increment_usage")
        fallback = AsyncMock(spec=UsageIncrementer)
        service = UsageService(capability=AtomicCapability(), allow_fallback=False, atomic=atomic, fallback=fallback)

        with pytest.raises(UsageStoreError):
            await service.check_and_increment(AsyncMock(), USER, 3, JULY)
        fallback.increment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_storage_errors_propagate(self):
        atomic = AsyncMock(spec=UsageIncrementer)
        atomic.increment.side_effect = RuntimeError("disk full")
        fallback = AsyncMock(spec=UsageIncrementer)
        service = UsageService(capability=AtomicCapability(), allow_fallback=True, atomic=atomic, fallback=fallback)

        with pytest.raises(RuntimeError, match="disk full"):
            await service.check_and_increment(AsyncMock(), USER, 3, JULY)
        fallback.increment.assert_not_awaited()


class TestCheckAndIncrement:
    """Test decision properties."""

    @pytest.mark.asyncio
    async def test_fallback_parity_with_atomic(self, session, usage_service, seed_counter):
        """Single-threaded sequences give identical decisions on both paths."""
        atomic_service = UsageService(
            capability=AtomicCapability(), allow_fallback=False, atomic=SerializedAtomicIncrementer()
        )
        calls = [(3, JUNE)] * 4 + [(3, JULY)] * 2 + [(None, JULY)] * 2 + [(4, JULY)] * 3

        atomic_results = []
        fallback_results = []
        for limit, period in calls:
            a = await atomic_service.check_and_increment(None, USER, limit, period)
            f = await usage_service.check_and_increment(session, USER, limit, period)
            atomic_results.append((a.allowed, a.offers_generated, a.period_start))
            fallback_results.append((f.allowed, f.offers_generated, f.period_start))

        assert fallback_results == atomic_results
        assert [allowed for allowed, _, _ in fallback_results] == [
            True, True, True, False, True, True, True, True, False, False, False,
        ]

    @pytest.mark.asyncio
    async def test_unlimited_passthrough(self, session, usage_service):
        results = [await usage_service.check_and_increment(session, USER, None, JULY) for _ in range(20)]

        assert all(r.allowed for r in results)
        assert [r.offers_generated for r in results] == list(range(1, 21))

    @pytest.mark.asyncio
    async def test_concurrent_calls_never_over_allocate(self):
        """N concurrent callers against limit L with C confirmed get at most L - C units."""
        atomic = SerializedAtomicIncrementer()
        atomic.counters[USER] = (JULY, 2)
        service = UsageService(capability=AtomicCapability(), allow_fallback=False, atomic=atomic)

        results = await asyncio.gather(
            *[service.check_and_increment(None, USER, 5, JULY) for _ in range(25)]
        )

        assert sum(1 for r in results if r.allowed) == 3
        assert atomic.counters[USER] == (JULY, 5)

    @pytest.mark.asyncio
    async def test_rollover_resets_once(self, session, usage_service, seed_counter):
        await seed_counter(session, "user-1", JUNE, 3)

        first = await usage_service.check_and_increment(session, USER, 3, JULY)
        second = await usage_service.check_and_increment(session, USER, 3, JULY)

        assert (first.period_start, first.offers_generated) == (JULY, 1)
        assert (second.period_start, second.offers_generated) == (JULY, 2)

    @pytest.mark.asyncio
    async def test_device_limit_denies_while_user_allows(self, session, usage_service, seed_counter):
        """Device at 3/3 is denied even though the user is well under 10."""
        await seed_counter(session, "user-1", JULY, 4)
        await seed_counter(session, "user-1", JULY, 3, device_id="device-a")

        device = await usage_service.check_and_increment(
            session, UsageSubject("user-1", "device-a"), 3, JULY
        )
        user = await usage_service.check_and_increment(session, USER, 10, JULY)

        assert device.allowed is False
        assert device.offers_generated == 3
        assert user.allowed is True


    @pytest.mark.asyncio
    async def test_mid_month_period_keeps_current_count(self, session, usage_service, seed_counter):
        """Any day of July stands for July; the counter is not reset."""
        await seed_counter(session, "user-1", JULY, 3)

        result = await usage_service.check_and_increment(session, USER, 3, date(2024, 7, 15))
        pending = await usage_service.check_with_pending(session, USER, 3, date(2024, 7, 31))

        assert (result.allowed, result.offers_generated, result.period_start) == (False, 3, JULY)
        assert (pending.allowed, pending.confirmed_count) == (False, 3)
        row = await load_counter(session, USER)
        assert (row.raw_period_start, row.offers_generated) == (JULY, 3)


class TestReserveUnit:
    """Test user + device reservation orchestration."""

    @pytest.mark.asyncio
    async def test_free_plan_exhausts_after_three(self, session, usage_service):
        reservations = [await usage_service.reserve_unit(session, "user-1", period=JULY) for _ in range(3)]

        assert [r.user_count for r in reservations] == [1, 2, 3]
        with pytest.raises(QuotaExhaustedError) as exc_info:
            await usage_service.reserve_unit(session, "user-1", period=JULY)

        assert exc_info.value.scope == "user"
        assert exc_info.value.limit == 3
        assert exc_info.value.used == 3

    @pytest.mark.asyncio
    async def test_device_denial_gives_back_user_unit(
        self, session, usage_service, seed_counter, monkeypatch
    ):
        monkeypatch.setattr(settings, "free_monthly_limit", 10)
        await seed_counter(session, "user-1", JULY, 4)
        await seed_counter(session, "user-1", JULY, 3, device_id="device-a")

        with pytest.raises(QuotaExhaustedError) as exc_info:
            await usage_service.reserve_unit(session, "user-1", device_id="device-a", period=JULY)

        assert exc_info.value.scope == "device"
        assert exc_info.value.limit == 3
        assert (await load_counter(session, USER)).offers_generated == 4

    @pytest.mark.asyncio
    async def test_free_plan_counts_device(self, session, usage_service):
        reservation = await usage_service.reserve_unit(
            session, "user-1", device_id="device-a", period=JULY
        )

        assert reservation.device_reserved
        assert (reservation.user_count, reservation.device_count) == (1, 1)
        assert reservation.to_dict()["period_start"] == "2024-07-01"

    @pytest.mark.asyncio
    async def test_paid_plans_skip_device_counter(self, session, usage_service, seed_profile):
        await seed_profile(session, "user-1", "pro")

        reservation = await usage_service.reserve_unit(
            session, "user-1", device_id="device-a", period=JULY
        )

        assert reservation.limit is None
        assert reservation.device_reserved is False
        assert await load_counter(session, UsageSubject("user-1", "device-a")) is None

    @pytest.mark.asyncio
    async def test_release_gives_back_both_counters(self, session, usage_service):
        reservation = await usage_service.reserve_unit(
            session, "user-1", device_id="device-a", period=JULY
        )

        outcomes = await usage_service.release(session, reservation)

        assert {scope: outcome.applied for scope, outcome in outcomes.items()} == {
            "user": True,
            "device": True,
        }
        assert (await load_counter(session, USER)).offers_generated == 0
        assert (await load_counter(session, UsageSubject("user-1", "device-a"))).offers_generated == 0


    @pytest.mark.asyncio
    async def test_cancelled_device_step_gives_back_user_unit(
        self, session, usage_service, monkeypatch
    ):
        """A caller timeout during the device step must not leave the user unit counted."""
        increment = usage_service.check_and_increment

        async def slow_device_increment(session, subject, limit, period=None):
            if subject.device_id:
                await asyncio.sleep(5)
            return await increment(session, subject, limit, period)

        monkeypatch.setattr(usage_service, "check_and_increment", slow_device_increment)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                usage_service.reserve_unit(session, "user-1", device_id="device-a", period=JULY),
                timeout=0.2,
            )

        assert (await load_counter(session, USER)).offers_generated == 0
        assert await load_counter(session, UsageSubject("user-1", "device-a")) is None


def test_global_service_is_reset():
    service = get_usage_service()
    assert get_usage_service() is service

    reset_usage_service()
    assert get_usage_service() is not service
