"""Tests for the read-only quota snapshot."""

from datetime import date
from unittest.mock import AsyncMock, patch

import pytest

from offerquota.app.db.crud import PlanInfo, UsageSubject, load_counter
from offerquota.app.services.usage import QuotaSnapshotService

JUNE = date(2024, 6, 1)
JULY = date(2024, 7, 1)


@pytest.fixture
def snapshot_service() -> QuotaSnapshotService:
    return QuotaSnapshotService()


class TestQuotaSnapshot:

    @pytest.mark.asyncio
    async def test_remaining_subtracts_confirmed_and_pending(
        self, session, snapshot_service, seed_profile, seed_counter, seed_job
    ):
        await seed_profile(session, "user-1", "standard")
        await seed_counter(session, "user-1", JULY, 6)
        await seed_job(session, "user-1", JULY)
        await seed_job(session, "user-1", JULY, "processing")

        snapshot = await snapshot_service.snapshot(session, "user-1", period=JULY)

        assert snapshot.plan == "standard"
        assert snapshot.limit == 10
        assert (snapshot.confirmed, snapshot.pending_user, snapshot.remaining) == (6, 2, 2)
        assert snapshot.user_exhausted is False

    @pytest.mark.asyncio
    async def test_remaining_never_negative(self, session, snapshot_service, seed_counter, seed_job):
        await seed_counter(session, "user-1", JULY, 3)
        await seed_job(session, "user-1", JULY)

        snapshot = await snapshot_service.snapshot(session, "user-1", period=JULY)

        assert snapshot.remaining == 0
        assert snapshot.user_exhausted is True

    @pytest.mark.asyncio
    async def test_stale_counter_counts_as_zero_and_is_not_reset(
        self, session, snapshot_service, seed_counter
    ):
        await seed_counter(session, "user-1", JUNE, 3)

        snapshot = await snapshot_service.snapshot(session, "user-1", period=JULY)

        assert snapshot.confirmed == 0
        assert snapshot.remaining == 3
        row = await load_counter(session, UsageSubject("user-1"))
        assert (row.raw_period_start, row.offers_generated) == (JUNE, 3)

    @pytest.mark.asyncio
    async def test_does_not_create_rows(self, session, snapshot_service):
        await snapshot_service.snapshot(session, "user-1", device_id="device-a", period=JULY)

        assert await load_counter(session, UsageSubject("user-1")) is None
        assert await load_counter(session, UsageSubject("user-1", "device-a")) is None

    @pytest.mark.asyncio
    async def test_unlimited_plan(self, session, snapshot_service, seed_profile, seed_counter):
        await seed_profile(session, "user-1", "pro")
        await seed_counter(session, "user-1", JULY, 250)

        snapshot = await snapshot_service.snapshot(session, "user-1", device_id="device-a", period=JULY)

        assert snapshot.limit is None
        assert snapshot.remaining is None
        assert snapshot.device_limit is None
        assert snapshot.remaining_device is None
        assert snapshot.user_exhausted is False

    @pytest.mark.asyncio
    async def test_device_view_on_free_plan(self, session, snapshot_service, seed_counter, seed_job):
        await seed_counter(session, "user-1", JULY, 2)
        await seed_counter(session, "user-1", JULY, 2, device_id="device-a")
        await seed_job(session, "user-1", JULY, device_id="device-a")

        snapshot = await snapshot_service.snapshot(session, "user-1", device_id="device-a", period=JULY)

        assert (snapshot.confirmed_device, snapshot.pending_device, snapshot.device_limit) == (2, 1, 3)
        assert snapshot.remaining_device == 0
        assert snapshot.device_exhausted is True
        data = snapshot.to_dict()
        assert data["period_start"] == "2024-07-01"
        assert data["device_exhausted"] is True

    @pytest.mark.asyncio
    async def test_finite_plan_without_limit_shows_default(self, session, snapshot_service):
        """A finite plan whose lookup lost its limit still displays a limit."""
        with patch(
            "offerquota.app.services.usage.snapshot.get_plan",
            AsyncMock(return_value=PlanInfo(plan="standard", limit=None)),
        ):
            snapshot = await snapshot_service.snapshot(session, "user-1", period=JULY)

        assert snapshot.limit == 10
        assert snapshot.remaining == 10

    @pytest.mark.asyncio
    async def test_explicitly_unlimited_user_stays_unlimited(self, session, snapshot_service):
        with patch(
            "offerquota.app.services.usage.snapshot.get_plan",
            AsyncMock(return_value=PlanInfo(plan="free", limit=None, unlimited=True)),
        ):
            snapshot = await snapshot_service.snapshot(session, "user-1", period=JULY)

        assert snapshot.limit is None
        assert snapshot.remaining is None
