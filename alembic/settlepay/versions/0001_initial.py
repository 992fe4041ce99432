"""initial settlement schema

Revision ID: 0001_settlepay
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_settlepay"
down_revision = None
branch_labels = None
depends_on = None


def _subject_columns() -> list[sa.Column]:
    # Shared by transactions and payouts.
    return [
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("region", sa.String(), nullable=False),
        sa.Column("country", sa.String(length=2), nullable=True),
        sa.Column("method", sa.String(), nullable=True),
        sa.Column("gateway", sa.String(), nullable=True),
        sa.Column("gateway_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("quote_id", sa.String(), nullable=True),
        sa.Column("failure_code", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "transactions",
        *_subject_columns(),
        sa.Column("payer_ref", sa.String(), nullable=False),
        sa.Column("developer_id", sa.String(), nullable=True),
        sa.Column("product_ref", sa.String(), nullable=True),
        sa.Column("settlement_amount", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_transactions_idempotency_key", "transactions", ["idempotency_key"], unique=True)
    op.create_index("ix_transactions_gateway_id", "transactions", ["gateway_id"], unique=True)
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index("ix_transactions_payer_ref", "transactions", ["payer_ref"])
    op.create_index("ix_transactions_developer_id", "transactions", ["developer_id"])

    op.create_table(
        "payouts",
        *_subject_columns(),
        sa.Column("developer_id", sa.String(), nullable=False),
        sa.Column("account_details", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("debit_amount", sa.Integer(), nullable=False),
        sa.Column("estimated_arrival", sa.String(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payouts_idempotency_key", "payouts", ["idempotency_key"], unique=True)
    op.create_index("ix_payouts_gateway_id", "payouts", ["gateway_id"], unique=True)
    op.create_index("ix_payouts_status", "payouts", ["status"])
    op.create_index("ix_payouts_developer_id", "payouts", ["developer_id"])

    op.create_table(
        "gateway_attempts",
        sa.Column("attempt_id", sa.String(), nullable=False),
        sa.Column("subject_type", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("gateway", sa.String(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("attempt_id"),
    )
    op.create_index("ix_gateway_attempts_subject_id", "gateway_attempts", ["subject_id"])

    op.create_table(
        "status_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("subject_type", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("from_status", sa.String(), nullable=True),
        sa.Column("to_status", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_status_timeline_subject_id", "status_timeline", ["subject_id"])
    op.create_index("ix_status_timeline_event_id", "status_timeline", ["event_id"])

    op.create_table(
        "purchases",
        sa.Column("purchase_id", sa.String(), nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("payer_ref", sa.String(), nullable=False),
        sa.Column("product_ref", sa.String(), nullable=True),
        sa.Column("developer_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("purchase_id"),
    )
    op.create_index("ix_purchases_transaction_id", "purchases", ["transaction_id"], unique=True)
    op.create_index("ix_purchases_payer_ref", "purchases", ["payer_ref"])

    op.create_table(
        "settlement_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("provider_event_id", sa.String(), nullable=False),
        sa.Column("subject_type", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("gateway_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("fingerprint", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("replayed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_settlement_events_provider_event_id", "settlement_events", ["provider_event_id"])
    op.create_index("ix_settlement_events_idempotency_key", "settlement_events", ["idempotency_key"])
    op.create_index("ix_settlement_events_gateway_id", "settlement_events", ["gateway_id"])
    op.create_index("ix_settlement_events_outcome", "settlement_events", ["outcome"])

    op.create_table(
        "webhook_inbox",
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("provider", "event_id"),
    )
    op.create_index("ix_webhook_inbox_received_at", "webhook_inbox", ["received_at"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])

    op.create_table(
        "quotes",
        sa.Column("quote_id", sa.String(), nullable=False),
        sa.Column("source_currency", sa.String(length=3), nullable=False),
        sa.Column("target_currency", sa.String(length=3), nullable=False),
        sa.Column("source_amount", sa.Integer(), nullable=False),
        sa.Column("target_amount", sa.Integer(), nullable=False),
        sa.Column("rate", sa.String(), nullable=False),
        sa.Column("fee", sa.Integer(), nullable=False),
        sa.Column("rate_source", sa.String(), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("quote_id"),
    )
    op.create_index("ix_quotes_expires_at", "quotes", ["expires_at"])

    op.create_table(
        "developer_payout_profiles",
        sa.Column("developer_id", sa.String(), nullable=False),
        sa.Column("auto_payout_enabled", sa.Boolean(), nullable=False),
        sa.Column("payout_threshold", sa.Integer(), nullable=False),
        sa.Column("payout_interval_days", sa.Integer(), nullable=False),
        sa.Column("preferred_method", sa.String(), nullable=True),
        sa.Column("payout_currency", sa.String(length=3), nullable=False),
        sa.Column("country", sa.String(length=2), nullable=True),
        sa.Column("region", sa.String(), nullable=True),
        sa.Column("account_details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("flagged_reason", sa.String(), nullable=True),
        sa.Column("flagged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("developer_id"),
    )
    op.create_index(
        "ix_developer_payout_profiles_auto_payout_enabled", "developer_payout_profiles", ["auto_payout_enabled"]
    )

    op.create_table(
        "scheduler_locks",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("holder", sa.String(), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("ix_developer_payout_profiles_auto_payout_enabled", table_name="developer_payout_profiles")
    op.drop_table("developer_payout_profiles")
    op.drop_index("ix_quotes_expires_at", table_name="quotes")
    op.drop_table("quotes")
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_webhook_inbox_received_at", table_name="webhook_inbox")
    op.drop_table("webhook_inbox")
    op.drop_index("ix_settlement_events_outcome", table_name="settlement_events")
    op.drop_index("ix_settlement_events_gateway_id", table_name="settlement_events")
    op.drop_index("ix_settlement_events_idempotency_key", table_name="settlement_events")
    op.drop_index("ix_settlement_events_provider_event_id", table_name="settlement_events")
    op.drop_table("settlement_events")
    op.drop_index("ix_purchases_payer_ref", table_name="purchases")
    op.drop_index("ix_purchases_transaction_id", table_name="purchases")
    op.drop_table("purchases")
    op.drop_index("ix_status_timeline_event_id", table_name="status_timeline")
    op.drop_index("ix_status_timeline_subject_id", table_name="status_timeline")
    op.drop_table("status_timeline")
    op.drop_index("ix_gateway_attempts_subject_id", table_name="gateway_attempts")
    op.drop_table("gateway_attempts")
    op.drop_index("ix_payouts_developer_id", table_name="payouts")
    op.drop_index("ix_payouts_status", table_name="payouts")
    op.drop_index("ix_payouts_gateway_id", table_name="payouts")
    op.drop_index("ix_payouts_idempotency_key", table_name="payouts")
    op.drop_table("payouts")
    op.drop_index("ix_transactions_developer_id", table_name="transactions")
    op.drop_index("ix_transactions_payer_ref", table_name="transactions")
    op.drop_index("ix_transactions_status", table_name="transactions")
    op.drop_index("ix_transactions_gateway_id", table_name="transactions")
    op.drop_index("ix_transactions_idempotency_key", table_name="transactions")
    op.drop_table("transactions")
