"""Payout Scheduler: threshold and interval policy, flags, run lock."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from settlepay.common.db import utcnow
from settlepay.common.state_machine import CanonicalStatus
from settlepay.services.ledger.models import Payout
from settlepay.services.orchestrator.schemas import PayoutSettingsUpdate
from settlepay.services.scheduler.models import DeveloperPayoutProfile
from settlepay.services.scheduler.service import MISSING_ACCOUNT, PayoutScheduler


ACCOUNT = {"iban": "DE89370400440532013000", "holder": "Dev One"}


@pytest.fixture
def gateway(make_gateway):
    return make_gateway("a", payout_currencies=("USD", "EUR"))


@pytest.fixture
def scheduler(session_factory, build_orchestrator, gateway, earnings, conversion):
    orchestrator = build_orchestrator(gateway)
    return PayoutScheduler(
        session_factory, orchestrator, earnings, conversion, lease_seconds=60, platform_currency="USD"
    )


def _seed(session_factory, ledger, revenue=10_000, paid_out=3_000, paid_days_ago=10, developer_id="dev-1"):
    """Completed revenue and one completed payout; 20% fee leaves 0.8 * revenue - paid_out."""

    with session_factory() as db:
        payment = ledger.create_transaction(
            db,
            idempotency_key=f"seed-pay-{developer_id}",
            payer_ref="payer-1",
            developer_id=developer_id,
            amount=revenue,
            currency="USD",
            region="US",
            settlement_amount=revenue,
            meta={},
        )
        ledger.apply_status(db, payment, CanonicalStatus.COMPLETED, reason="seed")
        payout = ledger.create_payout(
            db,
            idempotency_key=f"seed-out-{developer_id}",
            developer_id=developer_id,
            amount=paid_out,
            currency="USD",
            region="US",
            account_details=ACCOUNT,
            debit_amount=paid_out,
            meta={},
        )
        ledger.apply_status(db, payout, CanonicalStatus.COMPLETED, reason="seed")
        payout.completed_at = utcnow() - timedelta(days=paid_days_ago)
        db.commit()


def _complete_payment(session_factory, ledger, key, amount, developer_id="dev-1"):
    with session_factory() as db:
        payment = ledger.create_transaction(
            db,
            idempotency_key=key,
            payer_ref="payer-2",
            developer_id=developer_id,
            amount=amount,
            currency="USD",
            region="US",
            settlement_amount=amount,
            meta={},
        )
        ledger.apply_status(db, payment, CanonicalStatus.COMPLETED, reason="seed")
        db.commit()


def _enable(scheduler, **overrides):
    fields = dict(
        auto_payout_enabled=True,
        payout_threshold=4_000,
        payout_interval_days=7,
        account_details=ACCOUNT,
    )
    fields.update(overrides)
    return scheduler.update_auto_payout_settings("dev-1", PayoutSettingsUpdate(**fields))


async def test_due_developer_gets_one_payout(scheduler, session_factory, ledger, gateway, earnings):
    """$50 available, $40 threshold, last payout 10 days ago on a 7 day interval."""

    _seed(session_factory, ledger)
    _enable(scheduler)

    summary = await scheduler.run_once()
    assert (summary.submitted, summary.skipped, summary.failed) == (1, 0, 0)
    assert len(gateway.creates) == 1
    with session_factory() as db:
        payout = db.execute(select(Payout).where(Payout.source == "automatic")).scalar_one()
        assert (payout.amount, payout.currency, payout.debit_amount) == (5_000, "USD", 5_000)
        assert payout.idempotency_key.startswith("auto:dev-1:")

    # New revenue clears the threshold again; only the interval holds the payout back.
    _complete_payment(session_factory, ledger, "late-pay-dev-1", 10_000)
    assert earnings.compute_balance("dev-1").available_balance == 8_000
    rerun = await scheduler.run_once()
    assert (rerun.submitted, rerun.skipped) == (0, 1)
    assert len(gateway.creates) == 1

    later = await scheduler.run_once(now=utcnow() + timedelta(days=8))
    assert later.submitted == 1
    assert len(gateway.creates) == 2


async def test_below_threshold_is_skipped(scheduler, session_factory, ledger, gateway):
    _seed(session_factory, ledger)
    _enable(scheduler, payout_threshold=6_000)

    summary = await scheduler.run_once()
    assert (summary.submitted, summary.skipped) == (0, 1)
    assert gateway.creates == []


async def test_interval_not_elapsed_is_skipped(scheduler, session_factory, ledger, gateway):
    _seed(session_factory, ledger, paid_days_ago=3)
    _enable(scheduler)

    summary = await scheduler.run_once()
    assert (summary.submitted, summary.skipped) == (0, 1)
    assert gateway.creates == []


async def test_missing_account_is_flagged_once(scheduler, session_factory, ledger, gateway):
    _seed(session_factory, ledger)
    scheduler.update_auto_payout_settings(
        "dev-1", PayoutSettingsUpdate(auto_payout_enabled=True, payout_threshold=1_000)
    )

    first = await scheduler.run_once()
    second = await scheduler.run_once()
    assert (first.flagged, second.flagged, second.skipped) == (1, 0, 1)
    assert gateway.creates == []

    profile = scheduler.update_payout_account("dev-1", ACCOUNT)
    assert profile.flagged_reason is None
    with session_factory() as db:
        assert db.get(DeveloperPayoutProfile, "dev-1").flagged_reason is None


async def test_flag_reason_is_recorded(scheduler):
    scheduler.update_auto_payout_settings("dev-1", PayoutSettingsUpdate(auto_payout_enabled=True))
    await scheduler.run_once()
    with scheduler.session_factory() as db:
        profile = db.get(DeveloperPayoutProfile, "dev-1")
        assert profile.flagged_reason == MISSING_ACCOUNT
        assert profile.flagged_at is not None


async def test_foreign_payout_currency_is_quoted(scheduler, session_factory, ledger):
    _seed(session_factory, ledger)
    _enable(scheduler, payout_currency="eur")

    summary = await scheduler.run_once()
    assert summary.submitted == 1
    with session_factory() as db:
        payout = db.execute(select(Payout).where(Payout.source == "automatic")).scalar_one()
        assert payout.currency == "EUR"
        assert payout.debit_amount == 5_000
        assert payout.quote_id is not None


async def test_disabled_developers_are_not_considered(scheduler, session_factory, ledger, gateway):
    _seed(session_factory, ledger)
    _enable(scheduler, auto_payout_enabled=False)

    summary = await scheduler.run_once()
    assert (summary.submitted, summary.skipped, summary.flagged) == (0, 0, 0)


async def test_developers_are_decided_independently(scheduler, session_factory, ledger, gateway):
    _seed(session_factory, ledger)
    _enable(scheduler)
    scheduler.update_auto_payout_settings(
        "dev-2", PayoutSettingsUpdate(auto_payout_enabled=True, account_details=ACCOUNT)
    )

    summary = await scheduler.run_once()
    # dev-2 has no earnings, so only dev-1 reaches the gateway.
    assert (summary.submitted, summary.skipped) == (1, 1)


async def test_one_failing_developer_does_not_abort_the_run(scheduler, session_factory, ledger, gateway):
    _seed(session_factory, ledger, developer_id="dev-0")
    scheduler.update_auto_payout_settings(
        "dev-0",
        PayoutSettingsUpdate(auto_payout_enabled=True, account_details=ACCOUNT, payout_currency="XYZ"),
    )
    _seed(session_factory, ledger)
    _enable(scheduler)

    summary = await scheduler.run_once()
    assert (summary.failed, summary.submitted) == (1, 1)
    assert len(gateway.creates) == 1


async def test_held_lock_stops_overlapping_run(scheduler, session_factory, ledger, gateway):
    _seed(session_factory, ledger)
    _enable(scheduler)
    now = utcnow()
    assert scheduler.acquire_lock("other-run", now)

    summary = await scheduler.run_once(now=now)
    assert summary.locked
    assert gateway.creates == []

    scheduler.release_lock("other-run")
    assert (await scheduler.run_once(now=now)).submitted == 1


async def test_expired_lease_can_be_taken_over(scheduler):
    now = utcnow()
    assert scheduler.acquire_lock("crashed-run", now - timedelta(minutes=5))
    assert not scheduler.acquire_lock("second", now - timedelta(minutes=4, seconds=30))
    assert scheduler.acquire_lock("third", now)
