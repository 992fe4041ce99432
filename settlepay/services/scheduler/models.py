"""Payout policy per developer and the scheduler's run lock."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from settlepay.common.db import Base, JSONType, utcnow


class DeveloperPayoutProfile(Base):
    """Automatic payout settings and stored payee account for one developer.

    The payout path also locks this row while checking the balance, which
    serializes concurrent payouts for the same developer.
    """

    __tablename__ = "developer_payout_profiles"

    developer_id: Mapped[str] = mapped_column(String, primary_key=True)
    auto_payout_enabled: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    # Platform currency minor units.
    payout_threshold: Mapped[int] = mapped_column(Integer, default=0)
    payout_interval_days: Mapped[int] = mapped_column(Integer, default=7)
    preferred_method: Mapped[str | None] = mapped_column(String, nullable=True)
    payout_currency: Mapped[str] = mapped_column(String(3), default="USD")
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    region: Mapped[str | None] = mapped_column(String, nullable=True)
    account_details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    flagged_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    flagged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class SchedulerLock(Base):
    """Single-row lease preventing overlapping scheduler runs."""

    __tablename__ = "scheduler_locks"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    holder: Mapped[str | None] = mapped_column(String, nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
