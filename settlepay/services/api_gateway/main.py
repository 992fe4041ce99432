"""Public HTTP surface for payments, payouts, quotes, earnings and webhooks.

Non-webhook routes require the `X-API-Key` header. Webhook routes are
authenticated by the provider signature instead and answer 2xx for every
verified delivery, including duplicates and rejected transitions.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from dataclasses import asdict, dataclass
from datetime import datetime
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from settlepay.common.config import settings
from settlepay.common.db import SessionLocal
from settlepay.common.errors import SettlePayError
from settlepay.common.logging import configure_logging, logger, mask_account, trace_id_ctx
from settlepay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from settlepay.common.startup import log_startup_config
from settlepay.common.state_machine import SubjectType
from settlepay.common.tracing import instrument_app, setup_tracing
from settlepay.services.conversion.service import ConversionService, LiveRateSource
from settlepay.services.earnings.service import EarningsCalculator
from settlepay.services.gateways.registry import GatewayRegistry, build_registry, webhook_secrets
from settlepay.services.ledger.service import LedgerWriter, OutboxPublisher
from settlepay.services.orchestrator.schemas import (
    EarningsResponse,
    MonthlyEarningsResponse,
    PaymentCreateRequest,
    PayoutCreateRequest,
    PayoutHistoryResponse,
    PayoutRecordResponse,
    PayoutSettingsResponse,
    PayoutSettingsUpdate,
    QuoteRequest,
    QuoteResponse,
    SubjectResponse,
)
from settlepay.services.orchestrator.service import PaymentOrchestrator
from settlepay.services.router.service import GatewayRouter
from settlepay.services.scheduler.service import PayoutScheduler
from settlepay.services.webhooks.service import WebhookProcessor

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_URL",
        "KAFKA_BOOTSTRAP_SERVERS",
        "PLATFORM_CURRENCY",
        "PLATFORM_FEE_PERCENT",
        "QUOTE_TTL_SECONDS",
        "STRIPE_SECRET_KEY",
        "RAZORPAY_KEY_ID",
        "PAYONEER_PROGRAM_ID",
        "WISE_PROFILE_ID",
    ],
)


@dataclass
class ServiceContainer:
    """Everything the routes need, wired once per process."""

    registry: GatewayRegistry
    ledger: LedgerWriter
    conversion: ConversionService
    earnings: EarningsCalculator
    orchestrator: PaymentOrchestrator
    scheduler: PayoutScheduler
    webhooks: WebhookProcessor
    publisher: OutboxPublisher | None = None


def build_container(session_factory=SessionLocal, registry: GatewayRegistry | None = None) -> ServiceContainer:
    registry = registry if registry is not None else build_registry(settings)
    ledger = LedgerWriter(settings.service_name)
    live_rates = LiveRateSource(settings.exchange_rate_url) if settings.exchange_rate_url else None
    conversion = ConversionService(session_factory, live_rates=live_rates)
    earnings = EarningsCalculator(session_factory)
    orchestrator = PaymentOrchestrator(
        session_factory,
        registry,
        GatewayRouter(registry),
        ledger,
        conversion,
        earnings,
        service_name=settings.service_name,
    )
    return ServiceContainer(
        registry=registry,
        ledger=ledger,
        conversion=conversion,
        earnings=earnings,
        orchestrator=orchestrator,
        scheduler=PayoutScheduler(session_factory, orchestrator, earnings, conversion, settings.service_name),
        webhooks=WebhookProcessor(
            session_factory, registry, ledger, webhook_secrets(settings), settings.service_name
        ),
        publisher=OutboxPublisher(session_factory, service_name=settings.service_name)
        if settings.outbox_publisher_enabled
        else None,
    )


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def _settings_response(profile) -> PayoutSettingsResponse:
    return PayoutSettingsResponse(
        developer_id=profile.developer_id,
        auto_payout_enabled=profile.auto_payout_enabled,
        payout_threshold=profile.payout_threshold,
        payout_interval_days=profile.payout_interval_days,
        preferred_method=profile.preferred_method,
        payout_currency=profile.payout_currency,
        country=profile.country,
        region=profile.region,
        account_details=mask_account(profile.account_details),
        flagged_reason=profile.flagged_reason,
    )


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    services = container or build_container()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the outbox publisher with the app lifecycle."""

        publisher_task = None
        if services.publisher is not None:
            publisher_task = asyncio.create_task(services.publisher.run_forever())
        yield
        if publisher_task is not None:
            publisher_task.cancel()
            with suppress(asyncio.CancelledError):
                await publisher_task
            await services.publisher.kafka.close()
        await services.registry.close()

    app = FastAPI(title="SettlePay", lifespan=lifespan)
    instrument_app(app)

    @app.exception_handler(SettlePayError)
    async def settlepay_error_handler(_: Request, exc: SettlePayError):
        if exc.http_status >= 500:
            logger.error("request_failed code=%s message=%s", exc.code, exc.message)
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": {"code": exc.code, "message": exc.message}},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": {"code": "VALIDATION_ERROR", "message": str(exc.errors())}},
        )

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.post("/payments", response_model=SubjectResponse)
    async def create_payment(req: PaymentCreateRequest, x_api_key: str | None = Header(default=None)):
        """Create (or fetch existing) payment for the idempotency key."""

        enforce_api_key(x_api_key)
        return await services.orchestrator.create_payment(req)

    @app.post("/payouts", response_model=SubjectResponse)
    async def create_payout(req: PayoutCreateRequest, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        return await services.orchestrator.create_payout(req)

    @app.get("/payments/{transaction_id}", response_model=SubjectResponse)
    async def get_payment(transaction_id: str, refresh: bool = False, x_api_key: str | None = Header(default=None)):
        """Current status; `refresh=true` re-queries the provider first."""

        enforce_api_key(x_api_key)
        if refresh:
            return await services.orchestrator.refresh_status(SubjectType.PAYMENT, transaction_id)
        return services.orchestrator.get_subject(SubjectType.PAYMENT, transaction_id)

    @app.get("/payouts/{payout_id}", response_model=SubjectResponse)
    async def get_payout(payout_id: str, refresh: bool = False, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        if refresh:
            return await services.orchestrator.refresh_status(SubjectType.PAYOUT, payout_id)
        return services.orchestrator.get_subject(SubjectType.PAYOUT, payout_id)

    @app.post("/payments/{transaction_id}/cancel", response_model=SubjectResponse)
    async def cancel_payment(transaction_id: str, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        return await services.orchestrator.cancel(SubjectType.PAYMENT, transaction_id)

    @app.post("/payouts/{payout_id}/cancel", response_model=SubjectResponse)
    async def cancel_payout(payout_id: str, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        return await services.orchestrator.cancel(SubjectType.PAYOUT, payout_id)

    @app.post("/quotes", response_model=QuoteResponse)
    async def create_quote(req: QuoteRequest, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        quote = await services.conversion.quote(req.amount, req.source_currency, req.target_currency)
        return QuoteResponse(
            quote_id=quote.quote_id,
            source_currency=quote.source_currency,
            target_currency=quote.target_currency,
            source_amount=quote.source_amount,
            target_amount=quote.target_amount,
            rate=quote.rate,
            fee=quote.fee,
            expires_at=quote.expires_at,
        )

    @app.get("/developers/{developer_id}/earnings", response_model=EarningsResponse)
    def get_earnings(developer_id: str, months: int = 12, x_api_key: str | None = Header(default=None)):
        """Balance snapshot plus monthly completed revenue."""

        enforce_api_key(x_api_key)
        snapshot = services.earnings.compute_balance(developer_id)
        monthly = services.earnings.monthly_earnings(developer_id, months=months)
        return EarningsResponse(
            **asdict(snapshot),
            monthly=[MonthlyEarningsResponse(**asdict(row)) for row in monthly],
        )

    @app.get("/developers/{developer_id}/payouts", response_model=PayoutHistoryResponse)
    def get_payout_history(
        developer_id: str,
        start: datetime | None = Query(default=None, alias="from"),
        end: datetime | None = Query(default=None, alias="to"),
        status: str | None = None,
        limit: int = Query(default=50, ge=1, le=200),
        offset: int = Query(default=0, ge=0),
        x_api_key: str | None = Header(default=None),
    ):
        """Payouts created in `[from, to)`, newest first, with range totals."""

        enforce_api_key(x_api_key)
        history = services.earnings.payout_history(
            developer_id, start=start, end=end, status=status, limit=limit, offset=offset
        )
        return PayoutHistoryResponse(
            **{key: value for key, value in asdict(history).items() if key != "payouts"},
            payouts=[PayoutRecordResponse(**asdict(row)) for row in history.payouts],
        )

    @app.put("/developers/{developer_id}/payout-settings", response_model=PayoutSettingsResponse)
    def update_payout_settings(
        developer_id: str, req: PayoutSettingsUpdate, x_api_key: str | None = Header(default=None)
    ):
        enforce_api_key(x_api_key)
        profile = services.scheduler.update_auto_payout_settings(developer_id, req)
        return _settings_response(profile)

    @app.post("/webhooks/{provider}")
    async def receive_webhook(provider: str, request: Request):
        """Verify, normalize and apply one provider delivery."""

        raw_body = await request.body()
        outcome = services.webhooks.process(provider, raw_body, request.headers)
        return asdict(outcome)

    @app.post("/internal/scheduler/run")
    async def run_scheduler(x_api_key: str | None = Header(default=None)):
        """Cron trigger for one automatic payout pass."""

        enforce_api_key(x_api_key)
        summary = await services.scheduler.run_once()
        return asdict(summary)

    @app.post("/internal/webhooks/purge")
    def purge_webhooks(older_than_days: int | None = None, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        return {"removed": services.webhooks.purge_inbox(older_than_days)}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


app = create_app()
