"""Orchestrator: idempotency, failover, ambiguous creates, quotes, balance, cancel and refresh."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from settlepay.common.db import utcnow
from settlepay.common.errors import (
    CancellationNotSupported,
    GatewayError,
    IdempotencyConflict,
    InsufficientBalance,
    NotFound,
    QuoteExpired,
)
from settlepay.common.state_machine import CanonicalStatus, SubjectType
from settlepay.services.ledger.models import GatewayAttempt, Purchase, Transaction
from settlepay.services.orchestrator.schemas import PaymentCreateRequest, PayoutCreateRequest


def _payment_req(key="order-0001", amount=999, currency="USD", **extra):
    return PaymentCreateRequest(
        idempotency_key=key, amount=amount, currency=currency, country="US", payer_ref="payer-1", developer_id="dev-1", **extra
    )


def _seed_revenue(session_factory, ledger, developer_id="dev-1", amount=10_000, key="seed-0001"):
    with session_factory() as db:
        payment = ledger.create_transaction(
            db,
            idempotency_key=key,
            payer_ref="payer-9",
            developer_id=developer_id,
            amount=amount,
            currency="USD",
            region="US",
            settlement_amount=amount,
            meta={},
        )
        ledger.apply_status(db, payment, CanonicalStatus.COMPLETED, reason="seed")
        db.commit()


async def test_same_key_returns_same_transaction(build_orchestrator, make_gateway, session_factory):
    """Idempotency: one ledger row, one provider create."""

    gateway = make_gateway("a")
    orchestrator = build_orchestrator(gateway)
    first = await orchestrator.create_payment(_payment_req())
    second = await orchestrator.create_payment(_payment_req())
    assert first.transaction_id == second.transaction_id
    assert gateway.creates == ["order-0001"]
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(Transaction)).scalar_one() == 1


async def test_same_key_different_amount_conflicts(build_orchestrator, make_gateway):
    orchestrator = build_orchestrator(make_gateway("a"))
    await orchestrator.create_payment(_payment_req())
    with pytest.raises(IdempotencyConflict):
        await orchestrator.create_payment(_payment_req(amount=1999))


async def test_failover_records_second_gateway(build_orchestrator, make_gateway, session_factory):
    """Gateway A rejects the create; B succeeds and is recorded, not A."""

    a = make_gateway("a", priority=1)
    b = make_gateway("b", priority=2)
    a.create_error = GatewayError("a", "card declined")
    orchestrator = build_orchestrator(a, b)

    response = await orchestrator.create_payment(_payment_req())

    assert response.gateway == "b"
    assert response.client_secret == "secret_order-0001"
    with session_factory() as db:
        attempts = db.execute(select(GatewayAttempt.gateway, GatewayAttempt.outcome)).all()
    assert sorted(attempts) == [("a", "ERROR"), ("b", "SUCCESS")]


async def test_all_gateways_failing_returns_failed(build_orchestrator, make_gateway):
    a = make_gateway("a")
    a.create_error = GatewayError("a", "card declined")
    response = await build_orchestrator(a).create_payment(_payment_req())
    assert response.status == "FAILED"
    assert response.failure_code == "GATEWAYS_EXHAUSTED"
    assert "card declined" in response.failure_reason


async def test_ambiguous_create_resolved_by_lookup(build_orchestrator, make_gateway):
    """A timed-out create that did succeed is adopted; B is never tried."""

    a = make_gateway("a", priority=1)
    b = make_gateway("b", priority=2)
    a.create_error = GatewayError("a", "timed out", transient=True, ambiguous=True)
    a.remember("order-0001", "a_remote")
    orchestrator = build_orchestrator(a, b)

    response = await orchestrator.create_payment(_payment_req())

    assert response.gateway == "a"
    assert b.creates == []


async def test_ambiguous_create_not_found_fails_over(build_orchestrator, make_gateway):
    a = make_gateway("a", priority=1)
    b = make_gateway("b", priority=2)
    a.create_error = GatewayError("a", "timed out", transient=True, ambiguous=True)
    response = await build_orchestrator(a, b).create_payment(_payment_req())
    assert response.gateway == "b"


async def test_unresolved_ambiguous_create_stays_pending(build_orchestrator, make_gateway, session_factory):
    """No second gateway while the first may hold the money; refresh resolves it later."""

    a = make_gateway("a", priority=1)
    b = make_gateway("b", priority=2)
    a.create_error = GatewayError("a", "timed out", transient=True, ambiguous=True)
    a.lookup_error = GatewayError("a", "lookup failed", transient=True)
    orchestrator = build_orchestrator(a, b)

    response = await orchestrator.create_payment(_payment_req())
    assert response.status == "PENDING"
    assert response.gateway == "a"
    assert b.creates == []

    a.lookup_error = None
    a.remember("order-0001", "a_1")
    refreshed = await orchestrator.refresh_status(SubjectType.PAYMENT, response.transaction_id)
    assert refreshed.status == "PROCESSING"
    with session_factory() as db:
        row = db.get(Transaction, response.transaction_id)
        assert row.gateway_id == "a_1"
        assert "ambiguous_gateway" not in row.meta


async def test_expired_quote_is_rejected(build_orchestrator, make_gateway, conversion):
    orchestrator = build_orchestrator(make_gateway("a", payment_currencies=("USD", "EUR")))
    stale = await conversion.quote(1000, "EUR", "USD", now=utcnow() - timedelta(minutes=10))
    with pytest.raises(QuoteExpired):
        await orchestrator.create_payment(_payment_req(amount=1000, currency="EUR", quote_id=stale.quote_id))


async def test_foreign_currency_payment_is_priced_in_platform_currency(build_orchestrator, make_gateway, session_factory):
    orchestrator = build_orchestrator(make_gateway("a", payment_currencies=("USD", "EUR")))
    response = await orchestrator.create_payment(_payment_req(amount=1000, currency="EUR"))
    assert response.quote_id is not None
    with session_factory() as db:
        assert db.get(Transaction, response.transaction_id).settlement_amount == 1174


async def test_payout_over_balance_is_rejected_before_provider(build_orchestrator, make_gateway, session_factory, ledger):
    gateway = make_gateway("a")
    orchestrator = build_orchestrator(gateway)
    _seed_revenue(session_factory, ledger, amount=1000)
    with pytest.raises(InsufficientBalance):
        await orchestrator.create_payout(
            PayoutCreateRequest(
                idempotency_key="payout-0001",
                amount=900,
                currency="USD",
                country="US",
                developer_id="dev-1",
                account_details={"iban": "DE89370400440532013000"},
            )
        )
    assert gateway.creates == []


async def test_payout_within_balance_is_submitted(build_orchestrator, make_gateway, session_factory, ledger, earnings):
    gateway = make_gateway("a")
    orchestrator = build_orchestrator(gateway)
    _seed_revenue(session_factory, ledger, amount=10_000)
    response = await orchestrator.create_payout(
        PayoutCreateRequest(
            idempotency_key="payout-0002",
            amount=5000,
            currency="USD",
            country="US",
            developer_id="dev-1",
            account_details={"iban": "DE89370400440532013000"},
        )
    )
    assert response.subject_type == "payout"
    assert response.gateway == "a"
    assert earnings.compute_balance("dev-1").available_balance == 3000


async def test_cancel_goes_to_provider_once_created(build_orchestrator, make_gateway):
    gateway = make_gateway("a", cancellable=(SubjectType.PAYMENT,))
    orchestrator = build_orchestrator(gateway)
    created = await orchestrator.create_payment(_payment_req())
    cancelled = await orchestrator.cancel(SubjectType.PAYMENT, created.transaction_id)
    assert cancelled.status == "CANCELLED"
    assert gateway.cancels == ["a_1"]


async def test_cancel_unsupported_by_provider(build_orchestrator, make_gateway):
    orchestrator = build_orchestrator(make_gateway("a"))
    created = await orchestrator.create_payment(_payment_req())
    with pytest.raises(CancellationNotSupported):
        await orchestrator.cancel(SubjectType.PAYMENT, created.transaction_id)


async def test_refresh_applies_provider_status(build_orchestrator, make_gateway, session_factory):
    gateway = make_gateway("a")
    orchestrator = build_orchestrator(gateway)
    created = await orchestrator.create_payment(_payment_req())
    gateway.remote_status["a_1"] = "succeeded"
    refreshed = await orchestrator.refresh_status(SubjectType.PAYMENT, created.transaction_id)
    assert refreshed.status == "COMPLETED"
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(Purchase)).scalar_one() == 1


def test_unknown_subject_is_not_found(build_orchestrator, make_gateway):
    with pytest.raises(NotFound):
        build_orchestrator(make_gateway("a")).get_subject(SubjectType.PAYMENT, "missing")


def _cancel_during_create(orchestrator, seen):
    async def hook(reference, metadata):
        seen.append(await orchestrator.cancel(SubjectType.PAYMENT, metadata["transaction_id"]))

    return hook


async def test_cancel_during_create_cancels_the_provider_object(build_orchestrator, make_gateway, session_factory):
    """The row is cancelled while the create is in flight; the late provider object is cancelled too."""

    gateway = make_gateway("a", cancellable=(SubjectType.PAYMENT,))
    orchestrator = build_orchestrator(gateway)
    seen = []
    gateway.before_create = _cancel_during_create(orchestrator, seen)

    response = await orchestrator.create_payment(_payment_req())

    assert seen[0].status == "CANCELLED"
    assert (response.status, response.gateway, response.client_secret) == ("CANCELLED", "a", None)
    assert gateway.cancels == ["a_1"]
    with session_factory() as db:
        row = db.get(Transaction, response.transaction_id)
        assert (row.status, row.gateway_id) == ("CANCELLED", "a_1")
        assert "orphaned_gateway_id" not in row.meta


async def test_uncancellable_late_object_is_flagged(build_orchestrator, make_gateway, session_factory):
    gateway = make_gateway("a")
    orchestrator = build_orchestrator(gateway)
    gateway.before_create = _cancel_during_create(orchestrator, [])

    response = await orchestrator.create_payment(_payment_req())

    assert response.status == "CANCELLED"
    assert gateway.cancels == []
    with session_factory() as db:
        assert db.get(Transaction, response.transaction_id).meta["orphaned_gateway_id"] == "a_1"


async def test_cancel_stops_failover(build_orchestrator, make_gateway):
    a = make_gateway("a", priority=1)
    b = make_gateway("b", priority=2)
    orchestrator = build_orchestrator(a, b)
    a.before_create = _cancel_during_create(orchestrator, [])
    a.create_error = GatewayError("a", "card declined")

    response = await orchestrator.create_payment(_payment_req())

    assert response.status == "CANCELLED"
    assert response.failure_code is None
    assert b.creates == []


async def test_create_stranded_by_crash_is_resolved_by_refresh(build_orchestrator, make_gateway, session_factory):
    """The candidate is on the row before the create leaves, so a crash mid-create is recoverable."""

    a = make_gateway("a", priority=1)
    b = make_gateway("b", priority=2)
    a.create_error = RuntimeError("worker died")
    orchestrator = build_orchestrator(a, b)
    with pytest.raises(RuntimeError):
        await orchestrator.create_payment(_payment_req())
    with session_factory() as db:
        row = db.execute(select(Transaction)).scalar_one()
        assert (row.status, row.gateway_id, row.meta["submitting_gateway"]) == ("PENDING", None, "a")
        stranded_id = row.id

    # The provider accepted the create before the worker died.
    a.remember("order-0001", "a_remote")
    refreshed = await orchestrator.refresh_status(SubjectType.PAYMENT, stranded_id)

    assert (refreshed.status, refreshed.gateway) == ("PROCESSING", "a")
    assert b.creates == []
    with session_factory() as db:
        row = db.get(Transaction, stranded_id)
        assert row.gateway_id == "a_remote"
        assert "submitting_gateway" not in row.meta


async def test_retry_of_stranded_create_adopts_the_provider_object(build_orchestrator, make_gateway):
    gateway = make_gateway("a")
    gateway.create_error = RuntimeError("worker died")
    orchestrator = build_orchestrator(gateway)
    with pytest.raises(RuntimeError):
        await orchestrator.create_payment(_payment_req())

    gateway.create_error = None
    gateway.remember("order-0001", "a_remote")
    retried = await orchestrator.create_payment(_payment_req())

    assert (retried.status, retried.gateway) == ("PROCESSING", "a")
    assert gateway.creates == ["order-0001"]


async def test_cancel_of_stranded_create_goes_to_provider(build_orchestrator, make_gateway, session_factory):
    gateway = make_gateway("a", cancellable=(SubjectType.PAYMENT,))
    gateway.create_error = RuntimeError("worker died")
    orchestrator = build_orchestrator(gateway)
    with pytest.raises(RuntimeError):
        await orchestrator.create_payment(_payment_req())
    with session_factory() as db:
        stranded_id = db.execute(select(Transaction.id)).scalar_one()

    gateway.remember("order-0001", "a_remote")
    cancelled = await orchestrator.cancel(SubjectType.PAYMENT, stranded_id)

    assert cancelled.status == "CANCELLED"
    assert gateway.cancels == ["a_remote"]
