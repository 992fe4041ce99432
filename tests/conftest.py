"""Shared fixtures: in-memory Ledger Store and a scripted fake gateway."""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["API_KEY"] = "test-key"
os.environ["TRACING_ENABLED"] = "false"
os.environ["OUTBOX_PUBLISHER_ENABLED"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from settlepay.common.db import Base
from settlepay.common.state_machine import CanonicalStatus
from settlepay.services.conversion import models as conversion_models  # noqa: F401
from settlepay.services.conversion.service import ConversionService
from settlepay.services.earnings.service import EarningsCalculator
from settlepay.services.gateways.base import (
    AmountLimits,
    GatewayAdapter,
    GatewayProfile,
    ProviderStatus,
    hmac_hex_matches,
)
from settlepay.services.gateways.registry import GatewayRegistry
from settlepay.services.ledger import models as ledger_models  # noqa: F401
from settlepay.services.ledger.service import LedgerWriter
from settlepay.services.orchestrator.service import PaymentOrchestrator
from settlepay.services.router.service import GatewayRouter
from settlepay.services.scheduler import models as scheduler_models  # noqa: F401


class FakeStatus(ProviderStatus):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    UNKNOWN = "__unknown__"


class FakeGateway(GatewayAdapter):
    """In-process gateway whose answers are set by the test."""

    status_map = {
        FakeStatus.PENDING: CanonicalStatus.PENDING,
        FakeStatus.PROCESSING: CanonicalStatus.PROCESSING,
        FakeStatus.SUCCEEDED: CanonicalStatus.COMPLETED,
        FakeStatus.FAILED: CanonicalStatus.FAILED,
        FakeStatus.CANCELED: CanonicalStatus.CANCELLED,
    }

    def __init__(
        self,
        name: str,
        regions=("DEFAULT",),
        payment_currencies=("USD",),
        payout_currencies=("USD",),
        limits=(1, 10_000_000),
        priority: int = 10,
        methods=(),
        cancellable=(),
    ) -> None:
        super().__init__("http://fake.test")
        self.name = name
        self.profile = GatewayProfile(
            kind="card",
            regions=frozenset(regions),
            payment_currencies=frozenset(payment_currencies),
            payout_currencies=frozenset(payout_currencies),
            default_limits=AmountLimits(*limits),
            methods=frozenset(methods),
            priority=priority,
            cancellable=frozenset(cancellable),
        )
        self.create_status = "pending"
        self.create_error = None
        self.lookup_error = None
        self.remote = {}
        self.remote_status = {}
        self.creates = []
        self.cancels = []
        self.before_create = None

    def remember(self, reference, gateway_id, status="processing"):
        """Pretend an earlier create for `reference` reached the provider."""

        self.remote[reference] = self.result(gateway_id, FakeStatus.parse(status))

    async def _create(self, reference, metadata):
        if self.before_create is not None:
            await self.before_create(reference, metadata)
        self.creates.append(reference)
        if self.create_error is not None:
            raise self.create_error
        result = self.result(
            f"{self.name}_{len(self.creates)}",
            FakeStatus.parse(self.create_status),
            client_secret=f"secret_{reference}",
        )
        self.remote[reference] = result
        return result

    async def create_payment(self, amount, currency, payer_ref, reference, metadata):
        return await self._create(reference, metadata)

    async def create_payout(self, amount, currency, payee_account, reference, metadata):
        return await self._create(reference, metadata)

    async def get_status(self, subject_type, gateway_id, context=None):
        return self.result(gateway_id, FakeStatus.parse(self.remote_status.get(gateway_id, "processing")))

    async def find_by_reference(self, subject_type, reference, context=None):
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.remote.get(reference)

    async def cancel(self, subject_type, gateway_id, context=None):
        self.cancels.append(gateway_id)
        return self.result(gateway_id, FakeStatus.CANCELED)

    def verify_webhook(self, raw_body, headers, secret):
        return hmac_hex_matches(secret, raw_body, headers.get("x-fake-signature"))


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def make_gateway():
    return FakeGateway


@pytest.fixture
def ledger():
    return LedgerWriter()


@pytest.fixture
def conversion(session_factory):
    return ConversionService(session_factory, fee_bps=50, ttl_seconds=300, bucket_seconds=60)


@pytest.fixture
def earnings(session_factory):
    return EarningsCalculator(session_factory, fee_percent=20.0, currency="USD")


@pytest.fixture
def build_orchestrator(session_factory, ledger, conversion, earnings):
    """Factory wiring an orchestrator around the given adapters."""

    def build(*adapters):
        registry = GatewayRegistry(list(adapters))
        return PaymentOrchestrator(
            session_factory,
            registry,
            GatewayRouter(registry),
            ledger,
            conversion,
            earnings,
            platform_currency="USD",
        )

    return build
