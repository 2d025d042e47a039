from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Date, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from offerquota.app.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Job statuses that count as in-flight usage
PENDING_JOB_STATUSES = ("pending", "processing")
JOB_STATUSES = PENDING_JOB_STATUSES + ("completed", "failed")


class UsageCounter(Base):
    """Monthly offer counter for a user."""

    __tablename__ = "usage_counters"
    __table_args__ = (
        CheckConstraint("offers_generated >= 0", name="ck_usage_counters_non_negative"),
    )

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    offers_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Only a period-inference fallback, never authoritative
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class DeviceUsageCounter(Base):
    """Monthly offer counter for a (user, device) pair."""

    __tablename__ = "device_usage_counters"
    __table_args__ = (
        CheckConstraint("offers_generated >= 0", name="ck_device_usage_counters_non_negative"),
        Index("idx_device_usage_counters_period", "user_id", "period_start"),
    )

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    device_id: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    offers_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class PdfJob(Base):
    """Asynchronous PDF generation job.

    The payload carries ``usagePeriodStart`` (and ``deviceId`` for
    device-scoped reservations), fixed when the job is created.
    """

    __tablename__ = "pdf_jobs"
    __table_args__ = (
        Index("idx_pdf_jobs_user_status", "user_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    offer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    plan: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
