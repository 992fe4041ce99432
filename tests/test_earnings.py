"""Earnings Calculator: balance formula, clamping, monthly buckets and payout history."""

from datetime import datetime, timezone

import pytest

from settlepay.common.errors import ValidationError
from settlepay.common.state_machine import CanonicalStatus


def _payment(ledger, db, key, amount, status=CanonicalStatus.COMPLETED, created_at=None, developer_id="dev-1"):
    fields = {"created_at": created_at} if created_at else {}
    payment = ledger.create_transaction(
        db,
        idempotency_key=key,
        payer_ref="payer-1",
        developer_id=developer_id,
        amount=amount,
        currency="USD",
        region="US",
        settlement_amount=amount,
        meta={},
        **fields,
    )
    if status != CanonicalStatus.PENDING:
        ledger.apply_status(db, payment, status, reason="seed")
    return payment


def _payout(ledger, db, key, debit, status, created_at=None, developer_id="dev-1"):
    fields = {"created_at": created_at} if created_at else {}
    payout = ledger.create_payout(
        db,
        idempotency_key=key,
        developer_id=developer_id,
        amount=debit,
        currency="USD",
        region="US",
        account_details={"iban": "DE00"},
        debit_amount=debit,
        meta={},
        **fields,
    )
    if status != CanonicalStatus.PENDING:
        ledger.apply_status(db, payout, status, reason="seed")
    return payout


def test_balance_subtracts_fee_and_payouts(session_factory, ledger, earnings):
    with session_factory() as db:
        _payment(ledger, db, "pay-0001", 10_000)
        _payment(ledger, db, "pay-0002", 2_000, status=CanonicalStatus.PENDING)
        _payment(ledger, db, "pay-0003", 7_000, developer_id="dev-2")
        _payout(ledger, db, "out-0001", 3_000, CanonicalStatus.COMPLETED)
        _payout(ledger, db, "out-0002", 1_000, CanonicalStatus.PROCESSING)
        _payout(ledger, db, "out-0003", 5_000, CanonicalStatus.FAILED)
        db.commit()

    snapshot = earnings.compute_balance("dev-1")
    assert snapshot.total_revenue == 10_000
    assert snapshot.platform_fee == 2_000
    assert snapshot.completed_payouts == 3_000
    assert snapshot.in_flight_payouts == 1_000
    assert snapshot.available_balance == 4_000
    assert snapshot.currency == "USD"


def test_balance_never_goes_negative(session_factory, ledger, earnings):
    with session_factory() as db:
        _payment(ledger, db, "pay-0001", 1_000)
        _payout(ledger, db, "out-0001", 5_000, CanonicalStatus.COMPLETED)
        db.commit()

    assert earnings.compute_balance("dev-1").available_balance == 0


def test_unknown_developer_has_zero_balance(earnings):
    snapshot = earnings.compute_balance("nobody")
    assert (snapshot.total_revenue, snapshot.available_balance) == (0, 0)


def test_monthly_earnings_include_empty_months(session_factory, ledger, earnings):
    with session_factory() as db:
        _payment(ledger, db, "pay-dec", 9_000, created_at=datetime(2025, 12, 20, tzinfo=timezone.utc))
        _payment(ledger, db, "pay-feb", 5_000, created_at=datetime(2026, 2, 10, tzinfo=timezone.utc))
        _payment(ledger, db, "pay-mar1", 1_000, created_at=datetime(2026, 3, 1, tzinfo=timezone.utc))
        _payment(ledger, db, "pay-mar2", 2_000, created_at=datetime(2026, 3, 14, tzinfo=timezone.utc))
        _payment(
            ledger,
            db,
            "pay-mar3",
            4_000,
            status=CanonicalStatus.FAILED,
            created_at=datetime(2026, 3, 14, tzinfo=timezone.utc),
        )
        db.commit()

    rows = earnings.monthly_earnings("dev-1", months=3, now=datetime(2026, 3, 15, tzinfo=timezone.utc))
    assert [(r.month, r.revenue, r.platform_fee, r.net, r.transactions) for r in rows] == [
        ("2026-01", 0, 0, 0, 0),
        ("2026-02", 5_000, 1_000, 4_000, 1),
        ("2026-03", 3_000, 600, 2_400, 2),
    ]


def test_monthly_earnings_cross_year_boundary(earnings):
    rows = earnings.monthly_earnings("dev-1", months=2, now=datetime(2026, 1, 5, tzinfo=timezone.utc))
    assert [r.month for r in rows] == ["2025-12", "2026-01"]


def _utc(year, month, day):
    return datetime(year, month, day, tzinfo=timezone.utc)


def test_payout_history_totals_cover_range_not_page(session_factory, ledger, earnings):
    with session_factory() as db:
        _payout(ledger, db, "out-jan", 1_000, CanonicalStatus.COMPLETED, created_at=_utc(2026, 1, 10))
        _payout(ledger, db, "out-feb1", 3_000, CanonicalStatus.COMPLETED, created_at=_utc(2026, 2, 10))
        _payout(ledger, db, "out-feb2", 2_000, CanonicalStatus.FAILED, created_at=_utc(2026, 2, 11))
        _payout(ledger, db, "out-mar", 4_000, CanonicalStatus.PROCESSING, created_at=_utc(2026, 3, 10))
        _payout(
            ledger, db, "out-dev2", 9_000, CanonicalStatus.COMPLETED, created_at=_utc(2026, 2, 10), developer_id="dev-2"
        )
        db.commit()

    history = earnings.payout_history("dev-1")
    assert [row.debit_amount for row in history.payouts] == [4_000, 2_000, 3_000, 1_000]
    assert (history.total_paid, history.total_in_flight, history.average_payout) == (4_000, 4_000, 2_000)
    assert history.count_by_status == {
        "PENDING": 0,
        "PROCESSING": 1,
        "COMPLETED": 2,
        "FAILED": 1,
        "CANCELLED": 0,
    }
    assert history.last_paid_at is not None

    february = earnings.payout_history("dev-1", start=_utc(2026, 2, 1), end=_utc(2026, 3, 1))
    assert [row.debit_amount for row in february.payouts] == [2_000, 3_000]
    assert (february.total_paid, february.total_in_flight) == (3_000, 0)

    page = earnings.payout_history("dev-1", status="completed", limit=1)
    assert [row.debit_amount for row in page.payouts] == [3_000]
    assert page.total_paid == 4_000


def test_payout_history_for_unknown_developer_is_empty(earnings):
    history = earnings.payout_history("nobody")
    assert (history.payouts, history.total_paid, history.average_payout, history.last_paid_at) == ([], 0, 0, None)


def test_payout_history_rejects_bad_filters(earnings):
    with pytest.raises(ValidationError):
        earnings.payout_history("dev-1", start=_utc(2026, 3, 1), end=_utc(2026, 2, 1))
    with pytest.raises(ValidationError):
        earnings.payout_history("dev-1", status="LOST")
