"""Uniform contract every money-movement provider is adapted to.

Adapters own their HTTP client, credentials, currency allow-lists and amount
limits. Every transport failure, non-2xx answer and malformed body is
translated into `GatewayError`; nothing else escapes an adapter.
"""

import asyncio
import hashlib
import hmac
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any

import httpx

from settlepay.common.config import settings
from settlepay.common.errors import GatewayError
from settlepay.common.logging import logger
from settlepay.common.metrics import gateway_call_seconds, gateway_calls_total, retries_total
from settlepay.common.state_machine import CanonicalStatus, SubjectType


class ProviderStatus(Enum):
    """Closed set of statuses documented by one provider for one object type.

    Every subclass declares `UNKNOWN`, which `parse` returns for values the
    provider did not document.
    """

    @classmethod
    def parse(cls, raw: Any) -> "ProviderStatus":
        try:
            return cls(str(raw).lower())
        except ValueError:
            logger.warning("unknown_provider_status enum=%s value=%s", cls.__name__, raw)
            return cls["UNKNOWN"]


@dataclass(frozen=True)
class AmountLimits:
    minimum: int
    maximum: int

    def allows(self, amount: int) -> bool:
        return self.minimum <= amount <= self.maximum


@dataclass(frozen=True)
class GatewayProfile:
    """Static capability description used by the router."""

    kind: str
    regions: frozenset[str]
    payment_currencies: frozenset[str]
    payout_currencies: frozenset[str]
    default_limits: AmountLimits
    currency_limits: dict[str, AmountLimits] = field(default_factory=dict)
    methods: frozenset[str] = frozenset()
    priority: int = 10
    cancellable: frozenset[SubjectType] = frozenset()

    @property
    def global_fallback(self) -> bool:
        return "DEFAULT" in self.regions

    def currencies_for(self, subject_type: SubjectType) -> frozenset[str]:
        return self.payment_currencies if subject_type == SubjectType.PAYMENT else self.payout_currencies

    def limits_for(self, currency: str) -> AmountLimits:
        return self.currency_limits.get(currency, self.default_limits)


@dataclass
class GatewayResult:
    """Adapter answer for create/status/cancel calls."""

    gateway_id: str
    provider_status: ProviderStatus
    status: CanonicalStatus
    client_secret: str | None = None
    estimated_arrival: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def hmac_hex_matches(secret: str, message: bytes, signature: str | None, digest=hashlib.sha256) -> bool:
    """Constant-time check of a hex HMAC signature."""

    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), message, digest).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


class GatewayAdapter(ABC):
    """Base class wrapping one provider API behind the uniform contract."""

    name: str = ""
    profile: GatewayProfile
    status_map: dict[ProviderStatus, CanonicalStatus] = {}

    def __init__(
        self,
        base_url: str,
        timeout: float | None = None,
        read_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        auth: Any = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.read_retries = max(1, read_retries if read_retries is not None else settings.gateway_read_retries)
        self.retry_backoff_seconds = (
            retry_backoff_seconds if retry_backoff_seconds is not None else settings.gateway_retry_backoff_seconds
        )
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout if timeout is not None else settings.gateway_timeout_seconds,
            transport=transport,
            auth=auth,
            headers=headers,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def supports(self, subject_type: SubjectType) -> bool:
        return bool(self.profile.currencies_for(subject_type))

    def map_status(self, provider_status: ProviderStatus) -> CanonicalStatus:
        """Total mapping into canonical status; undocumented values stay PENDING."""

        mapped = self.status_map.get(provider_status)
        if mapped is None:
            logger.warning("unmapped_provider_status gateway=%s status=%s", self.name, provider_status)
            return CanonicalStatus.PENDING
        return mapped

    def result(self, gateway_id: str, provider_status: ProviderStatus, **extra) -> GatewayResult:
        return GatewayResult(
            gateway_id=gateway_id,
            provider_status=provider_status,
            status=self.map_status(provider_status),
            **extra,
        )

    def require(self, body: Mapping, key: str, kind: type | tuple = str) -> Any:
        """Read a mandatory field from a provider response or fail closed."""

        value = body.get(key) if isinstance(body, Mapping) else None
        if value is None or not isinstance(value, kind) or isinstance(value, bool):
            raise GatewayError(self.name, f"malformed response: missing or invalid '{key}'")
        return value

    def error_code(self, body: Any) -> str | None:
        """Provider-specific error code extraction from an error body."""

        if isinstance(body, Mapping):
            error = body.get("error")
            if isinstance(error, Mapping):
                return error.get("code")
        return None

    async def send(
        self,
        operation: str,
        method: str,
        url: str,
        idempotent: bool,
        allow_not_found: bool = False,
        **kwargs,
    ) -> Any:
        """Perform one provider call.

        Idempotent reads are retried on transient failures with exponential
        backoff. Writes are sent once; a timeout or 5xx after the request left
        is reported as an ambiguous `GatewayError`.
        """

        attempts = self.read_retries if idempotent else 1
        for attempt in range(1, attempts + 1):
            start = perf_counter()
            error: GatewayError
            try:
                response = await self.client.request(method, url, **kwargs)
            except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
                error = GatewayError(self.name, f"{operation} connect failed: {exc}", transient=True)
            except httpx.TimeoutException:
                error = GatewayError(
                    self.name, f"{operation} timed out", transient=True, ambiguous=not idempotent
                )
            except httpx.HTTPError as exc:
                error = GatewayError(
                    self.name, f"{operation} transport error: {exc}", transient=True, ambiguous=not idempotent
                )
            else:
                gateway_call_seconds.labels(
                    service=settings.service_name, gateway=self.name, operation=operation
                ).observe(max(0.0, perf_counter() - start))
                if allow_not_found and response.status_code == 404:
                    self._count(operation, "not_found")
                    return None
                if response.status_code >= 500:
                    error = GatewayError(
                        self.name,
                        f"{operation} provider error {response.status_code}",
                        transient=True,
                        ambiguous=not idempotent,
                        provider_code=str(response.status_code),
                    )
                elif response.status_code == 429:
                    error = GatewayError(self.name, f"{operation} rate limited", transient=True, provider_code="429")
                elif response.status_code >= 400:
                    error = GatewayError(
                        self.name,
                        f"{operation} rejected with {response.status_code}",
                        provider_code=self.error_code(self._json_or_none(response)) or str(response.status_code),
                    )
                else:
                    body = self._json_or_none(response)
                    if body is None:
                        self._count(operation, "malformed")
                        raise GatewayError(self.name, f"{operation} returned a malformed body")
                    self._count(operation, "ok")
                    return body

            self._count(operation, "error")
            if not error.transient or attempt == attempts:
                raise error
            retries_total.labels(service=settings.service_name, dependency=self.name).inc()
            backoff_seconds = self.retry_backoff_seconds * 2 ** (attempt - 1)
            logger.warning(
                "gateway retry gateway=%s operation=%s attempt=%s backoff_s=%s error=%s",
                self.name,
                operation,
                attempt,
                backoff_seconds,
                error,
            )
            await asyncio.sleep(backoff_seconds)
        raise GatewayError(self.name, f"{operation} retries exhausted", transient=True)

    def _json_or_none(self, response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, (dict, list)):
            return None
        return body

    def _count(self, operation: str, outcome: str) -> None:
        gateway_calls_total.labels(
            service=settings.service_name, gateway=self.name, operation=operation, outcome=outcome
        ).inc()

    async def create_payment(
        self, amount: int, currency: str, payer_ref: str, reference: str, metadata: dict[str, Any]
    ) -> GatewayResult:
        raise GatewayError(self.name, "payments are not supported")

    async def create_payout(
        self,
        amount: int,
        currency: str,
        payee_account: dict[str, Any],
        reference: str,
        metadata: dict[str, Any],
    ) -> GatewayResult:
        raise GatewayError(self.name, "payouts are not supported")

    @abstractmethod
    async def get_status(
        self, subject_type: SubjectType, gateway_id: str, context: dict[str, Any] | None = None
    ) -> GatewayResult:
        """Fetch the provider's current view of one object."""

    @abstractmethod
    async def find_by_reference(
        self, subject_type: SubjectType, reference: str, context: dict[str, Any] | None = None
    ) -> GatewayResult | None:
        """Look up an object created with our idempotency key, if any."""

    async def cancel(
        self, subject_type: SubjectType, gateway_id: str, context: dict[str, Any] | None = None
    ) -> GatewayResult:
        raise GatewayError(self.name, f"cancelling a {subject_type.value} is not supported")

    @abstractmethod
    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        """Check the provider signature over the raw request body."""
