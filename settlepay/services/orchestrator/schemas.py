"""API request/response schemas for payments, payouts, quotes and earnings."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class PaymentCreateRequest(BaseModel):
    """Payment creation payload."""

    idempotency_key: str = Field(min_length=5, max_length=255)
    amount: int = Field(gt=0, strict=True)
    currency: str = Field(min_length=3, max_length=3)
    region: str | None = None
    country: str | None = Field(default=None, min_length=2, max_length=2)
    method: str | None = None
    payer_ref: str = Field(min_length=1)
    developer_id: str | None = None
    product_ref: str | None = None
    quote_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class PayoutCreateRequest(BaseModel):
    """Payout creation payload. `developer_id` is the payee."""

    idempotency_key: str = Field(min_length=5, max_length=255)
    amount: int = Field(gt=0, strict=True)
    currency: str = Field(min_length=3, max_length=3)
    region: str | None = None
    country: str | None = Field(default=None, min_length=2, max_length=2)
    method: str | None = None
    developer_id: str = Field(min_length=1)
    account_details: dict[str, Any] | None = None
    quote_id: str | None = None
    source: Literal["manual", "automatic"] = "manual"
    metadata: dict[str, str] = Field(default_factory=dict)


class SubjectResponse(BaseModel):
    """Current view of a payment or payout."""

    transaction_id: str
    subject_type: str
    status: str
    gateway: str | None
    amount: int
    currency: str
    region: str
    quote_id: str | None = None
    failure_code: str | None = None
    failure_reason: str | None = None
    client_secret: str | None = None
    estimated_arrival: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class QuoteRequest(BaseModel):
    amount: int = Field(gt=0, strict=True)
    source_currency: str = Field(min_length=3, max_length=3)
    target_currency: str = Field(min_length=3, max_length=3)


class QuoteResponse(BaseModel):
    quote_id: str
    source_currency: str
    target_currency: str
    source_amount: int
    target_amount: int
    rate: str
    fee: int
    expires_at: datetime


class PayoutSettingsUpdate(BaseModel):
    """Partial update of a developer's payout policy and payee account."""

    auto_payout_enabled: bool | None = None
    payout_threshold: int | None = Field(default=None, ge=0)
    payout_interval_days: int | None = Field(default=None, ge=1)
    preferred_method: str | None = None
    payout_currency: str | None = Field(default=None, min_length=3, max_length=3)
    country: str | None = Field(default=None, min_length=2, max_length=2)
    region: str | None = None
    account_details: dict[str, Any] | None = None


class PayoutSettingsResponse(BaseModel):
    developer_id: str
    auto_payout_enabled: bool
    payout_threshold: int
    payout_interval_days: int
    preferred_method: str | None
    payout_currency: str
    country: str | None
    region: str | None
    account_details: dict[str, str]
    flagged_reason: str | None


class MonthlyEarningsResponse(BaseModel):
    month: str
    revenue: int
    platform_fee: int
    net: int
    transactions: int


class EarningsResponse(BaseModel):
    developer_id: str
    currency: str
    total_revenue: int
    platform_fee: int
    completed_payouts: int
    in_flight_payouts: int
    available_balance: int
    monthly: list[MonthlyEarningsResponse] = Field(default_factory=list)


class PayoutRecordResponse(BaseModel):
    payout_id: str
    status: str
    source: str
    amount: int
    currency: str
    debit_amount: int
    gateway: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class PayoutHistoryResponse(BaseModel):
    """Payout history page; totals cover the whole requested range."""

    developer_id: str
    currency: str
    total_paid: int
    total_in_flight: int
    average_payout: int
    count_by_status: dict[str, int]
    last_paid_at: datetime | None = None
    payouts: list[PayoutRecordResponse] = Field(default_factory=list)
