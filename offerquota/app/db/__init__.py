"""Database package for the quota service.

This package provides:
- Database models (UsageCounter, DeviceUsageCounter, PdfJob, Profile)
- Asynchronous session management
- CRUD operations for counters, the job ledger and plans
- Server-side atomic procedures (PostgreSQL)
"""

from offerquota.app.db.base import Base
from offerquota.app.db.models import DeviceUsageCounter, PdfJob, Profile, UsageCounter
from offerquota.app.db.async_session import (
    SessionDep,
    close_async_engine,
    get_async_engine,
    get_async_session,
    get_async_session_maker,
    get_db,
)

__all__ = [
    "Base",
    "DeviceUsageCounter",
    "PdfJob",
    "Profile",
    "UsageCounter",
    "SessionDep",
    "close_async_engine",
    "get_async_engine",
    "get_async_session",
    "get_async_session_maker",
    "get_db",
]
