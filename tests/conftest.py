"""Shared fixtures: file-backed SQLite databases and pre-wired services.

SQLite has none of the atomic procedures, so every real-database test
exercises the fallback path end to end.
"""

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from offerquota.app.db import models  # noqa: F401 - import to register models
from offerquota.app.db.base import Base
from offerquota.app.db.models import DeviceUsageCounter, PdfJob, Profile, UsageCounter
from offerquota.app.db.procedures import ALL_PROCEDURES
from offerquota.app.services.retry import RetryPolicy
from offerquota.app.services.usage import (
    AtomicCapability,
    CapabilityState,
    UsageService,
    reset_usage_service,
)


def _sqlite_url_from_absolute_path(path: str) -> str:
    # SQLAlchemy expects 4 slashes for absolute paths. The path already starts
    # with '/', so strip it when appending after '////'.
    return f"sqlite+aiosqlite:////{path.lstrip('/')}"


@pytest.fixture(autouse=True)
def reset_globals(monkeypatch):
    """Reset global state and let app loggers reach caplog."""
    reset_usage_service()
    monkeypatch.setattr(logging.getLogger("offerquota"), "propagate", True)
    yield
    reset_usage_service()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(_sqlite_url_from_absolute_path(str(tmp_path / "quota.db")))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=3, base_delay=0.001, max_delay=0.01)


@pytest.fixture
def fallback_capability() -> AtomicCapability:
    """Capability record that already knows every procedure is missing."""
    return AtomicCapability(
        initial={name: CapabilityState.UNAVAILABLE for name in ALL_PROCEDURES}
    )


@pytest.fixture
def usage_service(fallback_capability, fast_retry) -> UsageService:
    return UsageService(
        capability=fallback_capability,
        retry_policy=fast_retry,
        allow_fallback=True,
    )


@pytest.fixture
def seed_counter():
    """Insert a counter row directly, bypassing the service."""

    async def _seed(
        session,
        user_id: str,
        period_start: date,
        offers_generated: int,
        device_id: Optional[str] = None,
    ) -> None:
        if device_id:
            row = DeviceUsageCounter(
                user_id=user_id,
                device_id=device_id,
                period_start=period_start,
                offers_generated=offers_generated,
            )
        else:
            row = UsageCounter(
                user_id=user_id,
                period_start=period_start,
                offers_generated=offers_generated,
            )
        session.add(row)
        await session.commit()

    return _seed


@pytest.fixture
def seed_profile():
    async def _seed(session, user_id: str, plan: str) -> None:
        session.add(Profile(id=user_id, email=f"{user_id}@example.com", plan=plan))
        await session.commit()

    return _seed


@pytest.fixture
def seed_job():
    """Insert a ledger entry with the given status."""

    async def _seed(
        session,
        user_id: str,
        period_start: date,
        status: str = "pending",
        device_id: Optional[str] = None,
    ) -> str:
        payload = {"usagePeriodStart": period_start.isoformat()}
        if device_id:
            payload["deviceId"] = device_id
        job_id = str(uuid.uuid4())
        session.add(
            PdfJob(
                id=job_id,
                user_id=user_id,
                status=status,
                payload=payload,
                created_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()
        return job_id

    return _seed
