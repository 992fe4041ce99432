"""Regional instant-payment adapter for India (Razorpay Orders and RazorpayX payouts)."""

from collections.abc import Mapping

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
    hmac_hex_matches,
)


class RazorpayOrderStatus(ProviderStatus):
    CREATED = "created"
    ATTEMPTED = "attempted"
    PAID = "paid"
    UNKNOWN = "__unknown__"


class RazorpayPaymentStatus(ProviderStatus):
    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    FAILED = "failed"
    UNKNOWN = "__unknown__"


class RazorpayPayoutStatus(ProviderStatus):
    QUEUED = "queued"
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    FAILED = "failed"
    REVERSED = "reversed"
    UNKNOWN = "__unknown__"


# Razorpay caps receipt/reference_id at 40 characters.
REFERENCE_LIMIT = 40


class RazorpayAdapter(GatewayAdapter):
    name = "razorpay"
    profile = GatewayProfile(
        kind="regional",
        regions=frozenset({"IN"}),
        payment_currencies=frozenset({"INR", "USD"}),
        payout_currencies=frozenset({"INR"}),
        default_limits=AmountLimits(100, 1_500_000_000),
        methods=frozenset({"upi", "netbanking", "imps", "neft", "razorpay"}),
        priority=1,
        cancellable=frozenset({SubjectType.PAYOUT}),
    )
    status_map = {
        RazorpayOrderStatus.CREATED: CanonicalStatus.PENDING,
        RazorpayOrderStatus.ATTEMPTED: CanonicalStatus.PROCESSING,
        RazorpayOrderStatus.PAID: CanonicalStatus.COMPLETED,
        RazorpayPaymentStatus.CREATED: CanonicalStatus.PENDING,
        RazorpayPaymentStatus.AUTHORIZED: CanonicalStatus.PROCESSING,
        RazorpayPaymentStatus.CAPTURED: CanonicalStatus.COMPLETED,
        # Refunds are tracked separately; the payment itself did complete.
        RazorpayPaymentStatus.REFUNDED: CanonicalStatus.COMPLETED,
        RazorpayPaymentStatus.FAILED: CanonicalStatus.FAILED,
        RazorpayPayoutStatus.QUEUED: CanonicalStatus.PENDING,
        RazorpayPayoutStatus.PENDING: CanonicalStatus.PENDING,
        RazorpayPayoutStatus.PROCESSING: CanonicalStatus.PROCESSING,
        RazorpayPayoutStatus.PROCESSED: CanonicalStatus.COMPLETED,
        RazorpayPayoutStatus.CANCELLED: CanonicalStatus.CANCELLED,
        RazorpayPayoutStatus.REJECTED: CanonicalStatus.FAILED,
        RazorpayPayoutStatus.FAILED: CanonicalStatus.FAILED,
        RazorpayPayoutStatus.REVERSED: CanonicalStatus.FAILED,
    }
    signature_header = "x-razorpay-signature"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        account_number: str = "",
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ) -> None:
        super().__init__(
            base_url or settings.razorpay_api_url,
            transport=transport,
            auth=(key_id, key_secret),
            **kwargs,
        )
        self.key_id = key_id
        self.account_number = account_number

    def error_code(self, body) -> str | None:
        if isinstance(body, Mapping) and isinstance(body.get("error"), Mapping):
            error = body["error"]
            return error.get("reason") or error.get("code")
        return None

    def _order_result(self, body: Mapping) -> GatewayResult:
        order_id = self.require(body, "id")
        return self.result(
            order_id,
            RazorpayOrderStatus.parse(self.require(body, "status")),
            metadata={"order_id": order_id, "key_id": self.key_id},
        )

    def _payout_result(self, body: Mapping) -> GatewayResult:
        return self.result(self.require(body, "id"), RazorpayPayoutStatus.parse(self.require(body, "status")))

    async def create_payment(self, amount, currency, payer_ref, reference, metadata) -> GatewayResult:
        body = await self.send(
            "create_payment",
            "POST",
            "/v1/orders",
            idempotent=False,
            json={
                "amount": amount,
                "currency": currency,
                "receipt": reference[:REFERENCE_LIMIT],
                "notes": {"idempotency_key": reference, "payer_ref": payer_ref, **metadata},
            },
        )
        return self._order_result(body)

    async def create_payout(self, amount, currency, payee_account, reference, metadata) -> GatewayResult:
        fund_account_id = payee_account.get("fund_account_id")
        if not fund_account_id:
            raise GatewayError(self.name, "payee account has no fund_account_id")
        if not self.account_number:
            raise GatewayError(self.name, "RazorpayX account number is not configured")
        body = await self.send(
            "create_payout",
            "POST",
            "/v1/payouts",
            idempotent=False,
            json={
                "account_number": self.account_number,
                "fund_account_id": fund_account_id,
                "amount": amount,
                "currency": currency,
                "mode": payee_account.get("mode", "IMPS"),
                "purpose": "payout",
                "queue_if_low_balance": True,
                "reference_id": reference[:REFERENCE_LIMIT],
                "narration": metadata.get("narration", "Developer payout"),
                "notes": {"idempotency_key": reference},
            },
            headers={"X-Payout-Idempotency": reference},
        )
        return self._payout_result(body)

    async def get_status(self, subject_type, gateway_id, context=None) -> GatewayResult:
        if subject_type == SubjectType.PAYMENT:
            body = await self.send("get_status", "GET", f"/v1/orders/{gateway_id}", idempotent=True)
            return self._order_result(body)
        body = await self.send("get_status", "GET", f"/v1/payouts/{gateway_id}", idempotent=True)
        return self._payout_result(body)

    async def find_by_reference(self, subject_type, reference, context=None) -> GatewayResult | None:
        if subject_type == SubjectType.PAYMENT:
            body = await self.send(
                "find_by_reference",
                "GET",
                "/v1/orders",
                idempotent=True,
                params={"receipt": reference[:REFERENCE_LIMIT]},
            )
            items = [item for item in self.require(body, "items", list) if isinstance(item, Mapping)]
            return self._order_result(items[0]) if items else None
        body = await self.send(
            "find_by_reference",
            "GET",
            "/v1/payouts",
            idempotent=True,
            params={"account_number": self.account_number, "reference_id": reference[:REFERENCE_LIMIT]},
        )
        items = [item for item in self.require(body, "items", list) if isinstance(item, Mapping)]
        return self._payout_result(items[0]) if items else None

    async def cancel(self, subject_type, gateway_id, context=None) -> GatewayResult:
        if subject_type != SubjectType.PAYOUT:
            return await super().cancel(subject_type, gateway_id, context)
        body = await self.send("cancel", "POST", f"/v1/payouts/{gateway_id}/cancel", idempotent=False)
        return self._payout_result(body)

    def verify_webhook(self, raw_body, headers, secret) -> bool:
        return hmac_hex_matches(secret, raw_body, headers.get(self.signature_header))
