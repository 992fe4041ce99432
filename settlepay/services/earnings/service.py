"""Earnings Calculator.

Balances are recomputed from the ledger on every call; nothing is maintained
incrementally. All figures are in platform currency minor units.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select

from settlepay.common.config import settings
from settlepay.common.db import ensure_utc, utcnow
from settlepay.common.errors import ValidationError
from settlepay.common.money import percent_of
from settlepay.common.state_machine import CanonicalStatus
from settlepay.services.ledger.models import Payout, Transaction


IN_FLIGHT = (CanonicalStatus.PENDING.value, CanonicalStatus.PROCESSING.value)


@dataclass
class DeveloperEarningsSnapshot:
    developer_id: str
    currency: str
    total_revenue: int
    platform_fee: int
    completed_payouts: int
    in_flight_payouts: int
    available_balance: int


@dataclass
class MonthlyEarnings:
    month: str
    revenue: int
    platform_fee: int
    net: int
    transactions: int


@dataclass
class PayoutRecord:
    payout_id: str
    status: str
    source: str
    amount: int
    currency: str
    debit_amount: int
    gateway: str | None
    failure_reason: str | None
    created_at: datetime
    completed_at: datetime | None


@dataclass
class PayoutHistory:
    """One page of a developer's payouts plus totals over the whole filtered range.

    `total_paid`, `total_in_flight` and `average_payout` are debit amounts in
    platform currency; `count_by_status` counts every payout in the range.
    """

    developer_id: str
    currency: str
    total_paid: int
    total_in_flight: int
    average_payout: int
    count_by_status: dict[str, int]
    last_paid_at: datetime | None
    payouts: list[PayoutRecord]


class EarningsCalculator:
    def __init__(self, session_factory, fee_percent: float | None = None, currency: str | None = None) -> None:
        self.session_factory = session_factory
        self.fee_percent = settings.platform_fee_percent if fee_percent is None else fee_percent
        self.currency = currency or settings.platform_currency

    def compute_balance(self, developer_id: str, db=None) -> DeveloperEarningsSnapshot:
        """Snapshot of a developer's balance.

        Pass `db` to read inside an existing transaction (the payout path holds
        a row lock on the developer while it checks the balance).
        """

        if db is None:
            with self.session_factory() as session:
                return self._snapshot(session, developer_id)
        return self._snapshot(db, developer_id)

    def _snapshot(self, db, developer_id: str) -> DeveloperEarningsSnapshot:
        revenue = db.execute(
            select(func.coalesce(func.sum(Transaction.settlement_amount), 0)).where(
                Transaction.developer_id == developer_id,
                Transaction.status == CanonicalStatus.COMPLETED.value,
            )
        ).scalar_one()
        completed = db.execute(
            select(func.coalesce(func.sum(Payout.debit_amount), 0)).where(
                Payout.developer_id == developer_id,
                Payout.status == CanonicalStatus.COMPLETED.value,
            )
        ).scalar_one()
        in_flight = db.execute(
            select(func.coalesce(func.sum(Payout.debit_amount), 0)).where(
                Payout.developer_id == developer_id,
                Payout.status.in_(IN_FLIGHT),
            )
        ).scalar_one()
        revenue = int(revenue)
        fee = percent_of(revenue, self.fee_percent)
        return DeveloperEarningsSnapshot(
            developer_id=developer_id,
            currency=self.currency,
            total_revenue=revenue,
            platform_fee=fee,
            completed_payouts=int(completed),
            in_flight_payouts=int(in_flight),
            available_balance=max(0, revenue - fee - int(completed) - int(in_flight)),
        )

    def monthly_earnings(self, developer_id: str, months: int = 12, now: datetime | None = None) -> list[MonthlyEarnings]:
        """Completed revenue per calendar month, oldest first, including empty months."""

        now = now or utcnow()
        keys = []
        year, month = now.year, now.month
        for _ in range(max(1, months)):
            keys.append(f"{year:04d}-{month:02d}")
            month -= 1
            if month == 0:
                year, month = year - 1, 12
        keys.reverse()
        start = datetime(int(keys[0][:4]), int(keys[0][5:]), 1, tzinfo=now.tzinfo)

        with self.session_factory() as db:
            rows = db.execute(
                select(Transaction.settlement_amount, Transaction.created_at).where(
                    Transaction.developer_id == developer_id,
                    Transaction.status == CanonicalStatus.COMPLETED.value,
                    Transaction.created_at >= start,
                )
            ).all()

        totals = {key: [0, 0] for key in keys}
        for amount, created_at in rows:
            key = ensure_utc(created_at).strftime("%Y-%m")
            if key in totals:
                totals[key][0] += amount
                totals[key][1] += 1
        result = []
        for key in keys:
            revenue, count = totals[key]
            fee = percent_of(revenue, self.fee_percent)
            result.append(MonthlyEarnings(month=key, revenue=revenue, platform_fee=fee, net=revenue - fee, transactions=count))
        return result

    def payout_history(
        self,
        developer_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> PayoutHistory:
        """Newest-first payouts created in `[start, end)`, with totals for that range."""

        start, end = ensure_utc(start), ensure_utc(end)
        if start is not None and end is not None and start >= end:
            raise ValidationError("payout history range must start before it ends")
        if status is not None:
            try:
                status = CanonicalStatus(status.upper()).value
            except ValueError as exc:
                raise ValidationError(f"unknown payout status {status}") from exc

        filters = [Payout.developer_id == developer_id]
        if start is not None:
            filters.append(Payout.created_at >= start)
        if end is not None:
            filters.append(Payout.created_at < end)

        with self.session_factory() as db:
            grouped = db.execute(
                select(Payout.status, func.count(), func.coalesce(func.sum(Payout.debit_amount), 0))
                .where(*filters)
                .group_by(Payout.status)
            ).all()
            last_paid_at = db.execute(
                select(func.max(Payout.completed_at)).where(
                    *filters, Payout.status == CanonicalStatus.COMPLETED.value
                )
            ).scalar_one()
            page_filters = filters + ([Payout.status == status] if status else [])
            rows = db.execute(
                select(Payout)
                .where(*page_filters)
                .order_by(Payout.created_at.desc(), Payout.id)
                .limit(max(1, min(limit, 200)))
                .offset(max(0, offset))
            ).scalars().all()
            payouts = [
                PayoutRecord(
                    payout_id=row.id,
                    status=row.status,
                    source=row.source,
                    amount=row.amount,
                    currency=row.currency,
                    debit_amount=row.debit_amount,
                    gateway=row.gateway,
                    failure_reason=row.failure_reason,
                    created_at=ensure_utc(row.created_at),
                    completed_at=ensure_utc(row.completed_at),
                )
                for row in rows
            ]

        counts = {value: 0 for value in (member.value for member in CanonicalStatus)}
        sums = dict.fromkeys(counts, 0)
        for row_status, count, debit in grouped:
            counts[row_status] = int(count)
            sums[row_status] = int(debit)
        paid = sums[CanonicalStatus.COMPLETED.value]
        completed_count = counts[CanonicalStatus.COMPLETED.value]
        return PayoutHistory(
            developer_id=developer_id,
            currency=self.currency,
            total_paid=paid,
            total_in_flight=sum(sums[value] for value in IN_FLIGHT),
            average_payout=paid // completed_count if completed_count else 0,
            count_by_status=counts,
            last_paid_at=ensure_utc(last_paid_at),
            payouts=payouts,
        )
