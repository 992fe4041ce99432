"""Persisted conversion quotes. Rows are written once and never updated."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from settlepay.common.db import Base


class Quote(Base):
    __tablename__ = "quotes"

    quote_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    source_currency: Mapped[str] = mapped_column(String(3))
    target_currency: Mapped[str] = mapped_column(String(3))
    source_amount: Mapped[int] = mapped_column(Integer)
    target_amount: Mapped[int] = mapped_column(Integer)
    # Decimal rendered as text to keep the exact rate.
    rate: Mapped[str] = mapped_column(String)
    fee: Mapped[int] = mapped_column(Integer)
    rate_source: Mapped[str] = mapped_column(String)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
