"""Card processor adapter (Stripe PaymentIntents and connected-account payouts)."""

import hashlib
import hmac
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import httpx

from settlepay.common.config import settings
from settlepay.common.errors import GatewayError
from settlepay.common.state_machine import CanonicalStatus, SubjectType
from settlepay.services.gateways.base import (
    AmountLimits,
    GatewayAdapter,
    GatewayProfile,
    GatewayResult,
    ProviderStatus,
)


def search_literal(value: str) -> str:
    """Quote `value` as a string literal in Stripe's search query language."""

    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class StripeIntentStatus(ProviderStatus):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    UNKNOWN = "__unknown__"


class StripePayoutStatus(ProviderStatus):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    PAID = "paid"
    FAILED = "failed"
    CANCELED = "canceled"
    UNKNOWN = "__unknown__"


STRIPE_CURRENCIES = frozenset(
    {"USD", "EUR", "GBP", "CAD", "AUD", "JPY", "SGD", "HKD", "MYR", "THB", "PHP", "IDR", "VND", "KRW", "TWD"}
)


class StripeAdapter(GatewayAdapter):
    name = "stripe"
    profile = GatewayProfile(
        kind="card",
        regions=frozenset({"US", "CA", "GB", "EU", "DEFAULT"}),
        payment_currencies=STRIPE_CURRENCIES,
        payout_currencies=STRIPE_CURRENCIES,
        default_limits=AmountLimits(50, 99_999_999),
        methods=frozenset({"card", "stripe"}),
        priority=1,
        cancellable=frozenset({SubjectType.PAYMENT, SubjectType.PAYOUT}),
    )
    status_map = {
        StripeIntentStatus.REQUIRES_PAYMENT_METHOD: CanonicalStatus.PENDING,
        StripeIntentStatus.REQUIRES_CONFIRMATION: CanonicalStatus.PENDING,
        StripeIntentStatus.REQUIRES_ACTION: CanonicalStatus.PENDING,
        StripeIntentStatus.PROCESSING: CanonicalStatus.PROCESSING,
        StripeIntentStatus.REQUIRES_CAPTURE: CanonicalStatus.PROCESSING,
        StripeIntentStatus.SUCCEEDED: CanonicalStatus.COMPLETED,
        StripeIntentStatus.CANCELED: CanonicalStatus.CANCELLED,
        StripePayoutStatus.PENDING: CanonicalStatus.PENDING,
        StripePayoutStatus.IN_TRANSIT: CanonicalStatus.PROCESSING,
        StripePayoutStatus.PAID: CanonicalStatus.COMPLETED,
        StripePayoutStatus.FAILED: CanonicalStatus.FAILED,
        StripePayoutStatus.CANCELED: CanonicalStatus.CANCELLED,
    }
    signature_header = "stripe-signature"

    def __init__(
        self,
        secret_key: str,
        base_url: str | None = None,
        signature_tolerance_seconds: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ) -> None:
        super().__init__(
            base_url or settings.stripe_api_url,
            transport=transport,
            headers={"Authorization": f"Bearer {secret_key}"},
            **kwargs,
        )
        self.signature_tolerance_seconds = (
            signature_tolerance_seconds
            if signature_tolerance_seconds is not None
            else settings.stripe_signature_tolerance_seconds
        )

    def error_code(self, body: Any) -> str | None:
        if isinstance(body, Mapping) and isinstance(body.get("error"), Mapping):
            error = body["error"]
            return error.get("decline_code") or error.get("code") or error.get("type")
        return None

    def _intent_result(self, body: Mapping) -> GatewayResult:
        return self.result(
            self.require(body, "id"),
            StripeIntentStatus.parse(self.require(body, "status")),
            client_secret=body.get("client_secret"),
        )

    def _payout_result(self, body: Mapping, account: str | None) -> GatewayResult:
        arrival = body.get("arrival_date")
        estimated_arrival = None
        if isinstance(arrival, int):
            estimated_arrival = datetime.fromtimestamp(arrival, tz=timezone.utc).date().isoformat()
        return self.result(
            self.require(body, "id"),
            StripePayoutStatus.parse(self.require(body, "status")),
            estimated_arrival=estimated_arrival,
            metadata={"stripe_account": account} if account else {},
        )

    def _account_headers(self, context: Mapping | None) -> dict[str, str]:
        account = (context or {}).get("stripe_account")
        return {"Stripe-Account": account} if account else {}

    async def create_payment(self, amount, currency, payer_ref, reference, metadata) -> GatewayResult:
        form = {
            "amount": str(amount),
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
            "metadata[idempotency_key]": reference,
            "metadata[payer_ref]": payer_ref,
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = str(value)
        body = await self.send(
            "create_payment",
            "POST",
            "/v1/payment_intents",
            idempotent=False,
            data=form,
            headers={"Idempotency-Key": reference},
        )
        return self._intent_result(body)

    async def create_payout(self, amount, currency, payee_account, reference, metadata) -> GatewayResult:
        account = payee_account.get("stripe_account_id")
        if not account:
            raise GatewayError(self.name, "payee account has no stripe_account_id")
        form = {
            "amount": str(amount),
            "currency": currency.lower(),
            "metadata[idempotency_key]": reference,
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = str(value)
        body = await self.send(
            "create_payout",
            "POST",
            "/v1/payouts",
            idempotent=False,
            data=form,
            headers={"Idempotency-Key": reference, "Stripe-Account": account},
        )
        return self._payout_result(body, account)

    async def get_status(self, subject_type, gateway_id, context=None) -> GatewayResult:
        if subject_type == SubjectType.PAYMENT:
            body = await self.send("get_status", "GET", f"/v1/payment_intents/{gateway_id}", idempotent=True)
            return self._intent_result(body)
        body = await self.send(
            "get_status",
            "GET",
            f"/v1/payouts/{gateway_id}",
            idempotent=True,
            headers=self._account_headers(context),
        )
        return self._payout_result(body, (context or {}).get("stripe_account"))

    async def find_by_reference(self, subject_type, reference, context=None) -> GatewayResult | None:
        if subject_type == SubjectType.PAYMENT:
            body = await self.send(
                "find_by_reference",
                "GET",
                "/v1/payment_intents/search",
                idempotent=True,
                params={"query": f"metadata['idempotency_key']:{search_literal(reference)}"},
            )
            matches = [
                item
                for item in self.require(body, "data", list)
                if isinstance(item, Mapping) and (item.get("metadata") or {}).get("idempotency_key") == reference
            ]
            return self._intent_result(matches[0]) if matches else None
        body = await self.send(
            "find_by_reference",
            "GET",
            "/v1/payouts",
            idempotent=True,
            params={"limit": 100},
            headers=self._account_headers(context),
        )
        for item in self.require(body, "data", list):
            if isinstance(item, Mapping) and (item.get("metadata") or {}).get("idempotency_key") == reference:
                return self._payout_result(item, (context or {}).get("stripe_account"))
        return None

    async def cancel(self, subject_type, gateway_id, context=None) -> GatewayResult:
        if subject_type == SubjectType.PAYMENT:
            body = await self.send(
                "cancel", "POST", f"/v1/payment_intents/{gateway_id}/cancel", idempotent=False
            )
            return self._intent_result(body)
        body = await self.send(
            "cancel",
            "POST",
            f"/v1/payouts/{gateway_id}/cancel",
            idempotent=False,
            headers=self._account_headers(context),
        )
        return self._payout_result(body, (context or {}).get("stripe_account"))

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        """Check `Stripe-Signature: t=<ts>,v1=<hex>` within the timestamp tolerance."""

        header = headers.get(self.signature_header)
        if not header or not secret:
            return False
        timestamp = None
        signatures = []
        for part in header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if timestamp is None or not timestamp.isdigit() or not signatures:
            return False
        if abs(time.time() - int(timestamp)) > self.signature_tolerance_seconds:
            return False
        expected = hmac.new(
            secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + raw_body, hashlib.sha256
        ).hexdigest()
        return any(hmac.compare_digest(expected, signature) for signature in signatures)
