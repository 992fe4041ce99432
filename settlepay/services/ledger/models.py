"""Ledger Store models.

This DB is the source of truth for payment/payout state, gateway attempts,
the status timeline, purchases, the settlement event log and the
webhook inbox/outbox records.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from settlepay.common.db import Base, JSONType, utcnow


class SubjectColumns:
    """Columns shared by payment transactions and payouts."""

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    idempotency_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    region: Mapped[str] = mapped_column(String)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    method: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meta: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    quote_id: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_code: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class Transaction(SubjectColumns, Base):
    """A payment attempt from a payer, optionally crediting a developer."""

    __tablename__ = "transactions"

    payer_ref: Mapped[str] = mapped_column(String, index=True)
    developer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    product_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    # Amount in platform currency used for earnings.
    settlement_amount: Mapped[int] = mapped_column(Integer)


class Payout(SubjectColumns, Base):
    """A disbursement to a developer."""

    __tablename__ = "payouts"

    developer_id: Mapped[str] = mapped_column(String, index=True)
    account_details: Mapped[dict] = mapped_column(JSONType, default=dict)
    source: Mapped[str] = mapped_column(String, default="manual")
    # Amount debited from the developer balance, in platform currency.
    debit_amount: Mapped[int] = mapped_column(Integer)
    estimated_arrival: Mapped[str | None] = mapped_column(String, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class GatewayAttempt(Base):
    """One create call against one candidate gateway."""

    __tablename__ = "gateway_attempts"

    attempt_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    subject_type: Mapped[str] = mapped_column(String)
    subject_id: Mapped[str] = mapped_column(String, index=True)
    gateway: Mapped[str] = mapped_column(String)
    attempt_number: Mapped[int] = mapped_column(Integer)
    outcome: Mapped[str] = mapped_column(String)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class StatusTimeline(Base):
    """Immutable audit trail of every applied status transition."""

    __tablename__ = "status_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    subject_type: Mapped[str] = mapped_column(String)
    subject_id: Mapped[str] = mapped_column(String, index=True)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Purchase(Base):
    """Entitlement granted once per completed payment."""

    __tablename__ = "purchases"

    purchase_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    transaction_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    payer_ref: Mapped[str] = mapped_column(String, index=True)
    product_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    developer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class SettlementEventLog(Base):
    """Append-only log of every normalized webhook event and its outcome."""

    __tablename__ = "settlement_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    provider: Mapped[str] = mapped_column(String)
    provider_event_id: Mapped[str] = mapped_column(String, index=True)
    subject_type: Mapped[str] = mapped_column(String)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    gateway_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    fingerprint: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String, index=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    replayed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WebhookInbox(Base):
    """Deduplication window for provider webhook deliveries."""

    __tablename__ = "webhook_inbox"

    provider: Mapped[str] = mapped_column(String, primary_key=True)
    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )


class OutboxEvent(Base):
    """Notification events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
