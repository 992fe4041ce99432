"""Payment/payout orchestration.

Creates the PENDING row under the caller's idempotency key, prices
cross-currency requests, then walks the router's candidates until one
adapter accepts the create. An ambiguous create (timeout or 5xx after the
request left) is resolved by re-querying that provider by idempotency key,
never by re-sending the create or moving on blindly.
"""

from time import perf_counter

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from settlepay.common.config import settings
from settlepay.common.errors import (
    CancellationNotSupported,
    GatewayError,
    IdempotencyConflict,
    InsufficientBalance,
    InvalidStateTransition,
    NotFound,
    QuoteExpired,
    ValidationError,
)
from settlepay.common.logging import logger, mask_account, subject_id_ctx
from settlepay.common.metrics import gateway_failover_total, subject_requests_total
from settlepay.common.state_machine import CanonicalStatus, SubjectType, is_terminal
from settlepay.services.conversion.models import Quote
from settlepay.services.conversion.service import ConversionService
from settlepay.services.earnings.service import EarningsCalculator
from settlepay.services.gateways.base import GatewayAdapter
from settlepay.services.gateways.registry import GatewayRegistry
from settlepay.services.ledger.models import Payout
from settlepay.services.ledger.service import LedgerWriter
from settlepay.services.orchestrator.schemas import PaymentCreateRequest, PayoutCreateRequest, SubjectResponse
from settlepay.services.router.regions import resolve_region
from settlepay.services.router.service import GatewayRouter, RouteRequest
from settlepay.services.scheduler.models import DeveloperPayoutProfile


class PaymentOrchestrator:
    """Entry point for creating, querying, cancelling and refreshing subjects."""

    def __init__(
        self,
        session_factory,
        registry: GatewayRegistry,
        router: GatewayRouter,
        ledger: LedgerWriter,
        conversion: ConversionService,
        earnings: EarningsCalculator,
        service_name: str = "settlepay",
        platform_currency: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.router = router
        self.ledger = ledger
        self.conversion = conversion
        self.earnings = earnings
        self.service_name = service_name
        self.platform_currency = (platform_currency or settings.platform_currency).upper()

    def _response(self, subject, client_secret: str | None = None) -> SubjectResponse:
        return SubjectResponse(
            transaction_id=subject.id,
            subject_type="payout" if isinstance(subject, Payout) else "payment",
            status=subject.status,
            gateway=subject.gateway,
            amount=subject.amount,
            currency=subject.currency,
            region=subject.region,
            quote_id=subject.quote_id,
            failure_code=subject.failure_code,
            failure_reason=subject.failure_reason,
            client_secret=client_secret,
            estimated_arrival=getattr(subject, "estimated_arrival", None),
            created_at=subject.created_at,
            updated_at=subject.updated_at,
        )

    def _check_same_request(self, existing, amount: int, currency: str) -> None:
        if existing.amount != amount or existing.currency != currency:
            raise IdempotencyConflict(
                f"idempotency key {existing.idempotency_key} was used for "
                f"{existing.amount} {existing.currency}"
            )

    def _load_quote(self, quote_id: str) -> Quote:
        try:
            return self.conversion.get_quote(quote_id)
        except NotFound as exc:
            raise ValidationError(f"unknown quote {quote_id}") from exc

    def _context(self, subject) -> dict:
        context = dict(subject.meta or {})
        if isinstance(subject, Payout) and subject.account_details:
            stripe_account = subject.account_details.get("stripe_account_id")
            if stripe_account:
                context.setdefault("stripe_account", stripe_account)
        return context

    def get_subject(self, subject_type: SubjectType, subject_id: str) -> SubjectResponse:
        with self.session_factory() as db:
            subject = self.ledger.get_subject(db, subject_type, subject_id)
            if subject is None:
                raise NotFound(f"{subject_type.value} {subject_id} not found")
            return self._response(subject)

    async def _repeat(self, subject_type: SubjectType, existing) -> SubjectResponse:
        """Answer a repeated key; a row stranded mid-create is looked up first."""

        if existing.gateway_id is None and not is_terminal(existing.status) and self._unconfirmed_gateway(existing):
            existing = await self._resolve_unconfirmed(subject_type, existing)
        return self._response(existing)

    async def create_payment(self, req: PaymentCreateRequest) -> SubjectResponse:
        """Create (or return the existing) payment for `req.idempotency_key`."""

        subject_requests_total.labels(service=self.service_name, subject_type=SubjectType.PAYMENT.value).inc()
        currency = req.currency.upper()
        with self.session_factory() as db:
            existing = self.ledger.find_subject(db, SubjectType.PAYMENT, idempotency_key=req.idempotency_key)
        if existing is not None:
            self._check_same_request(existing, req.amount, currency)
            return await self._repeat(SubjectType.PAYMENT, existing)

        candidates = self.router.rank(
            RouteRequest(SubjectType.PAYMENT, req.amount, currency, req.region, req.country, req.method)
        )
        settlement_amount, quote_id = await self._price_payment(req, currency)

        with self.session_factory() as db:
            try:
                transaction = self.ledger.create_transaction(
                    db,
                    idempotency_key=req.idempotency_key,
                    payer_ref=req.payer_ref,
                    developer_id=req.developer_id,
                    product_ref=req.product_ref,
                    amount=req.amount,
                    currency=currency,
                    region=resolve_region(req.country, req.region),
                    country=req.country.upper() if req.country else None,
                    method=req.method,
                    meta=dict(req.metadata),
                    quote_id=quote_id,
                    settlement_amount=settlement_amount,
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = self.ledger.find_subject(db, SubjectType.PAYMENT, idempotency_key=req.idempotency_key)
                if existing is None:
                    raise
                self._check_same_request(existing, req.amount, currency)
                return self._response(existing)
        subject_id_ctx.set(transaction.id)
        logger.info(
            "payment_created transaction_id=%s amount=%s currency=%s candidates=%s",
            transaction.id,
            req.amount,
            currency,
            [adapter.name for adapter in candidates],
        )

        metadata = {**req.metadata, "transaction_id": transaction.id}
        return await self._submit(
            SubjectType.PAYMENT,
            transaction.id,
            req.idempotency_key,
            candidates,
            lambda adapter: adapter.create_payment(
                req.amount, currency, req.payer_ref, req.idempotency_key, metadata
            ),
            context={},
        )

    async def _price_payment(self, req: PaymentCreateRequest, currency: str) -> tuple[int, str | None]:
        """Return the platform-currency settlement amount and the quote it used."""

        if req.quote_id:
            quote = self.conversion.ensure_valid(self._load_quote(req.quote_id))
            if (
                quote.source_currency != currency
                or quote.source_amount != req.amount
                or quote.target_currency != self.platform_currency
            ):
                raise ValidationError(f"quote {quote.quote_id} does not price this payment")
            return quote.target_amount, quote.quote_id
        if currency == self.platform_currency:
            return req.amount, None
        quote = await self.conversion.quote(req.amount, currency, self.platform_currency)
        return quote.target_amount, quote.quote_id

    async def _price_payout(self, req: PayoutCreateRequest, currency: str) -> tuple[int, int, str | None]:
        """Return `(amount, debit_amount, quote_id)` for a payout.

        Payout quotes convert platform currency (debit) into the payout
        currency. An expired quote is rejected for manual payouts; automatic
        payouts are re-quoted for the same debit.
        """

        if req.quote_id:
            quote = self._load_quote(req.quote_id)
            if (
                quote.source_currency != self.platform_currency
                or quote.target_currency != currency
                or quote.target_amount != req.amount
            ):
                raise ValidationError(f"quote {quote.quote_id} does not price this payout")
            try:
                self.conversion.ensure_valid(quote)
            except QuoteExpired:
                if req.source != "automatic":
                    raise
                logger.info("requoting expired quote quote_id=%s", quote.quote_id)
                quote = await self.conversion.quote(quote.source_amount, quote.source_currency, currency)
            return quote.target_amount, quote.source_amount, quote.quote_id
        if currency == self.platform_currency:
            return req.amount, req.amount, None
        quote = await self.conversion.quote_for_target(req.amount, self.platform_currency, currency)
        return req.amount, quote.source_amount, quote.quote_id

    def _lock_profile(self, db, developer_id: str) -> DeveloperPayoutProfile:
        profile = db.execute(
            select(DeveloperPayoutProfile)
            .where(DeveloperPayoutProfile.developer_id == developer_id)
            .with_for_update()
        ).scalar_one_or_none()
        if profile is None:
            profile = DeveloperPayoutProfile(developer_id=developer_id, payout_currency=self.platform_currency)
            db.add(profile)
            db.flush()
        return profile

    async def create_payout(self, req: PayoutCreateRequest) -> SubjectResponse:
        """Create (or return the existing) payout after a point-in-time balance check."""

        subject_requests_total.labels(service=self.service_name, subject_type=SubjectType.PAYOUT.value).inc()
        currency = req.currency.upper()
        with self.session_factory() as db:
            existing = self.ledger.find_subject(db, SubjectType.PAYOUT, idempotency_key=req.idempotency_key)
            profile = db.get(DeveloperPayoutProfile, req.developer_id)
        if existing is not None:
            self._check_same_request(existing, req.amount, currency)
            return await self._repeat(SubjectType.PAYOUT, existing)

        account = req.account_details or (profile.account_details if profile else None)
        if not account:
            raise ValidationError(f"developer {req.developer_id} has no payout account details")
        country = req.country or (profile.country if profile else None)
        region = req.region or (profile.region if profile else None)
        candidates = self.router.rank(
            RouteRequest(SubjectType.PAYOUT, req.amount, currency, region, country, req.method)
        )
        amount, debit_amount, quote_id = await self._price_payout(req, currency)

        with self.session_factory() as db:
            self._lock_profile(db, req.developer_id)
            snapshot = self.earnings.compute_balance(req.developer_id, db=db)
            if debit_amount > snapshot.available_balance:
                raise InsufficientBalance(
                    f"payout needs {debit_amount} {self.platform_currency}, "
                    f"available {snapshot.available_balance}"
                )
            try:
                payout = self.ledger.create_payout(
                    db,
                    idempotency_key=req.idempotency_key,
                    developer_id=req.developer_id,
                    account_details=account,
                    source=req.source,
                    amount=amount,
                    currency=currency,
                    debit_amount=debit_amount,
                    region=resolve_region(country, region),
                    country=country.upper() if country else None,
                    method=req.method,
                    meta=dict(req.metadata),
                    quote_id=quote_id,
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = self.ledger.find_subject(db, SubjectType.PAYOUT, idempotency_key=req.idempotency_key)
                if existing is None:
                    raise
                self._check_same_request(existing, req.amount, currency)
                return self._response(existing)
        subject_id_ctx.set(payout.id)
        logger.info(
            "payout_created payout_id=%s developer_id=%s amount=%s currency=%s debit=%s account=%s source=%s",
            payout.id,
            req.developer_id,
            amount,
            currency,
            debit_amount,
            mask_account(account),
            req.source,
        )

        metadata = {**req.metadata, "payout_id": payout.id}
        context = self._context(payout)
        return await self._submit(
            SubjectType.PAYOUT,
            payout.id,
            req.idempotency_key,
            candidates,
            lambda adapter: adapter.create_payout(amount, currency, account, req.idempotency_key, metadata),
            context=context,
        )

    async def _submit(
        self,
        subject_type: SubjectType,
        subject_id: str,
        reference: str,
        candidates: list[GatewayAdapter],
        create,
        context: dict,
    ) -> SubjectResponse:
        """Try candidates in order; the first accepted create wins.

        Each candidate is written onto the row before its create leaves, so a
        subject stranded by a crash can still be looked up at that provider.
        """

        errors: list[str] = []
        for attempt_number, adapter in enumerate(candidates, start=1):
            with self.session_factory() as db:
                subject = self.ledger.get_subject(db, subject_type, subject_id)
                if is_terminal(subject.status):
                    logger.info(
                        "submit_stopped subject_type=%s subject_id=%s status=%s",
                        subject_type.value,
                        subject_id,
                        subject.status,
                    )
                    return self._response(subject)
                self.ledger.mark_submitting(db, subject, adapter.name)
                db.commit()

            start = perf_counter()
            try:
                result = await create(adapter)
                outcome = "SUCCESS"
            except GatewayError as exc:
                latency_ms = int((perf_counter() - start) * 1000)
                if not exc.ambiguous:
                    self._record_failure(subject_type, subject_id, adapter, attempt_number, latency_ms, exc)
                    errors.append(exc.message)
                    continue
                try:
                    result = await adapter.find_by_reference(subject_type, reference, context)
                except GatewayError as lookup_error:
                    # Another gateway could double-charge; stay PENDING until resolved.
                    with self.session_factory() as db:
                        subject = self.ledger.get_subject(db, subject_type, subject_id)
                        self.ledger.record_attempt(
                            db, subject, adapter.name, attempt_number, "AMBIGUOUS",
                            latency_ms=latency_ms, error_code=exc.provider_code, error_message=str(lookup_error),
                        )
                        self.ledger.mark_ambiguous(db, subject, adapter.name)
                        db.commit()
                        return self._response(subject)
                if result is None:
                    self._record_failure(subject_type, subject_id, adapter, attempt_number, latency_ms, exc)
                    errors.append(f"{exc.message} (not created)")
                    continue
                outcome = "RESOLVED"

            latency_ms = int((perf_counter() - start) * 1000)
            with self.session_factory() as db:
                subject = self.ledger.get_subject(db, subject_type, subject_id)
                already_linked = subject.gateway_id == result.gateway_id
                self.ledger.record_attempt(db, subject, adapter.name, attempt_number, outcome, latency_ms=latency_ms)
                self.ledger.assign_gateway(
                    db,
                    subject,
                    adapter.name,
                    result.gateway_id,
                    result.status,
                    reason=f"created:{adapter.name}",
                    meta=result.metadata,
                    estimated_arrival=result.estimated_arrival,
                )
                db.commit()
                # Cancelled locally while the create was in flight.
                orphaned = subject.status == CanonicalStatus.CANCELLED.value and not already_linked
                response = self._response(subject, client_secret=None if orphaned else result.client_secret)
            if orphaned:
                await self._cancel_orphan(subject_type, subject_id, adapter, result.gateway_id, context)
            return response

        with self.session_factory() as db:
            subject = self.ledger.get_subject(db, subject_type, subject_id)
            if is_terminal(subject.status):
                return self._response(subject)
            self.ledger.mark_failed(db, subject, "GATEWAYS_EXHAUSTED", "; ".join(errors) or "no candidates")
            db.commit()
            logger.error(
                "gateways_exhausted subject_type=%s subject_id=%s errors=%s", subject_type.value, subject_id, errors
            )
            return self._response(subject)

    def _record_failure(self, subject_type, subject_id, adapter, attempt_number, latency_ms, exc: GatewayError) -> None:
        gateway_failover_total.labels(service=self.service_name, gateway=adapter.name).inc()
        logger.warning(
            "gateway_create_failed subject_type=%s subject_id=%s gateway=%s error=%s",
            subject_type.value,
            subject_id,
            adapter.name,
            exc,
        )
        with self.session_factory() as db:
            subject = self.ledger.get_subject(db, subject_type, subject_id)
            self.ledger.record_attempt(
                db,
                subject,
                adapter.name,
                attempt_number,
                "ERROR",
                latency_ms=latency_ms,
                error_code=exc.provider_code,
                error_message=exc.message,
            )
            db.commit()

    async def _cancel_orphan(
        self, subject_type: SubjectType, subject_id: str, adapter: GatewayAdapter, gateway_id: str, context: dict
    ) -> None:
        """Cancel a provider object created for a subject that is already CANCELLED."""

        if subject_type in adapter.profile.cancellable:
            try:
                await adapter.cancel(subject_type, gateway_id, context)
            except GatewayError as exc:
                error = exc.message
            else:
                logger.warning(
                    "orphan_cancelled subject_type=%s subject_id=%s gateway=%s gateway_id=%s",
                    subject_type.value,
                    subject_id,
                    adapter.name,
                    gateway_id,
                )
                return
        else:
            error = f"{adapter.name} cannot cancel a {subject_type.value}"

        # Left for reconciliation: the row is CANCELLED but the provider object is live.
        logger.error(
            "orphaned_provider_object subject_type=%s subject_id=%s gateway=%s gateway_id=%s error=%s",
            subject_type.value,
            subject_id,
            adapter.name,
            gateway_id,
            error,
        )
        with self.session_factory() as db:
            subject = self.ledger.get_subject(db, subject_type, subject_id)
            self.ledger.annotate(db, subject, orphaned_gateway_id=gateway_id)
            db.commit()

    @staticmethod
    def _unconfirmed_gateway(subject) -> str | None:
        """Gateway that may hold a create this row has not linked yet."""

        meta = subject.meta or {}
        return meta.get("ambiguous_gateway") or meta.get("submitting_gateway")

    async def _resolve_unconfirmed(self, subject_type: SubjectType, subject):
        """Adopt a create the provider holds but the row never recorded."""

        adapter = self.registry.get(self._unconfirmed_gateway(subject))
        found = await adapter.find_by_reference(subject_type, subject.idempotency_key, self._context(subject))
        if found is None:
            logger.warning(
                "unconfirmed_create_not_found subject_type=%s subject_id=%s gateway=%s",
                subject_type.value,
                subject.id,
                adapter.name,
            )
            return subject
        with self.session_factory() as db:
            subject = self.ledger.get_subject(db, subject_type, subject.id)
            self.ledger.assign_gateway(
                db, subject, adapter.name, found.gateway_id, found.status,
                reason="unconfirmed_create_resolved", meta=found.metadata,
            )
            db.commit()
            return subject

    async def cancel(self, subject_type: SubjectType, subject_id: str) -> SubjectResponse:
        """Cancel locally while nothing exists at the provider; otherwise ask the provider."""

        with self.session_factory() as db:
            subject = self.ledger.get_subject(db, subject_type, subject_id)
            if subject is None:
                raise NotFound(f"{subject_type.value} {subject_id} not found")
        if is_terminal(subject.status):
            raise InvalidStateTransition(subject.status, CanonicalStatus.CANCELLED.value)

        if subject.gateway_id is None and self._unconfirmed_gateway(subject):
            subject = await self._resolve_unconfirmed(subject_type, subject)
            if is_terminal(subject.status):
                raise InvalidStateTransition(subject.status, CanonicalStatus.CANCELLED.value)

        if subject.gateway_id is None:
            if subject.status != CanonicalStatus.PENDING.value:
                raise CancellationNotSupported(f"{subject_type.value} {subject_id} is already {subject.status}")
            with self.session_factory() as db:
                subject = self.ledger.get_subject(db, subject_type, subject_id)
                self.ledger.apply_status(db, subject, CanonicalStatus.CANCELLED, reason="cancelled_locally")
                db.commit()
                return self._response(subject)

        adapter = self.registry.get(subject.gateway)
        if subject_type not in adapter.profile.cancellable:
            raise CancellationNotSupported(f"{adapter.name} cannot cancel a {subject_type.value}")
        result = await adapter.cancel(subject_type, subject.gateway_id, self._context(subject))
        with self.session_factory() as db:
            subject = self.ledger.get_subject(db, subject_type, subject_id)
            self.ledger.apply_status(db, subject, result.status, reason=f"provider_cancel:{adapter.name}")
            db.commit()
            return self._response(subject)

    async def refresh_status(self, subject_type: SubjectType, subject_id: str) -> SubjectResponse:
        """Poll the provider for a non-terminal subject and apply what it reports."""

        with self.session_factory() as db:
            subject = self.ledger.get_subject(db, subject_type, subject_id)
            if subject is None:
                raise NotFound(f"{subject_type.value} {subject_id} not found")
        if is_terminal(subject.status):
            return self._response(subject)

        if subject.gateway_id is None:
            if self._unconfirmed_gateway(subject):
                subject = await self._resolve_unconfirmed(subject_type, subject)
            return self._response(subject)

        adapter = self.registry.get(subject.gateway)
        result = await adapter.get_status(subject_type, subject.gateway_id, self._context(subject))
        with self.session_factory() as db:
            subject = self.ledger.get_subject(db, subject_type, subject_id)
            try:
                self.ledger.apply_status(db, subject, result.status, reason=f"status_poll:{adapter.name}")
            except InvalidStateTransition:
                # Logged by the ledger; the stored terminal state stands.
                pass
            db.commit()
            return self._response(subject)
