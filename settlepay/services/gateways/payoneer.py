"""Cross-border remittance adapter (Payoneer mass payouts). Payouts only."""

from collections.abc import Mapping

import httpx

from settlepay.common.config import settings
from settlepay.common.errors import GatewayError
from settlepay.common.money import to_major
from settlepay.common.state_machine import CanonicalStatus, SubjectType
from settlepay.services.gateways.base import (
    AmountLimits,
    GatewayAdapter,
    GatewayProfile,
    GatewayResult,
    ProviderStatus,
    hmac_hex_matches,
)


class PayoneerPayoutStatus(ProviderStatus):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "__unknown__"


class PayoneerAdapter(GatewayAdapter):
    """Payouts are addressed by `client_reference_id`, which is our idempotency key.

    The provider-side id is therefore known before the create call returns.
    """

    name = "payoneer"
    profile = GatewayProfile(
        kind="remittance",
        regions=frozenset({"AF", "LATAM", "DEFAULT"}),
        payment_currencies=frozenset(),
        payout_currencies=frozenset({"USD", "EUR"}),
        default_limits=AmountLimits(2_000, 2_000_000_000),
        methods=frozenset({"payoneer"}),
        priority=2,
        cancellable=frozenset({SubjectType.PAYOUT}),
    )
    status_map = {
        PayoneerPayoutStatus.PENDING: CanonicalStatus.PENDING,
        PayoneerPayoutStatus.PROCESSING: CanonicalStatus.PROCESSING,
        PayoneerPayoutStatus.COMPLETED: CanonicalStatus.COMPLETED,
        PayoneerPayoutStatus.FAILED: CanonicalStatus.FAILED,
        PayoneerPayoutStatus.CANCELLED: CanonicalStatus.CANCELLED,
    }
    signature_header = "x-payoneer-signature"

    def __init__(
        self,
        username: str,
        password: str,
        program_id: str,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ) -> None:
        super().__init__(
            base_url or settings.payoneer_api_url,
            transport=transport,
            auth=(username, password),
            **kwargs,
        )
        self.program_id = program_id

    def error_code(self, body) -> str | None:
        if isinstance(body, Mapping):
            code = body.get("code") or body.get("error")
            return str(code) if code is not None else None
        return None

    def _status_result(self, reference: str, body: Mapping) -> GatewayResult:
        result = body.get("result") if isinstance(body.get("result"), Mapping) else body
        return self.result(reference, PayoneerPayoutStatus.parse(self.require(result, "status")))

    async def create_payout(self, amount, currency, payee_account, reference, metadata) -> GatewayResult:
        payee_id = payee_account.get("payee_id")
        if not payee_id:
            raise GatewayError(self.name, "payee account has no payee_id")
        body = await self.send(
            "create_payout",
            "POST",
            f"/v4/programs/{self.program_id}/masspayouts",
            idempotent=False,
            json={
                "Payments": [
                    {
                        "client_reference_id": reference,
                        "payee_id": payee_id,
                        "amount": str(to_major(amount, currency)),
                        "currency": currency,
                        "description": metadata.get("description", "Developer payout"),
                    }
                ]
            },
        )
        code = body.get("code") if isinstance(body, Mapping) else None
        if code not in (0, "0"):
            raise GatewayError(
                self.name,
                f"mass payout rejected: {body.get('description', 'unknown error') if isinstance(body, Mapping) else body}",
                provider_code=str(code),
            )
        return self.result(reference, PayoneerPayoutStatus.PENDING)

    async def get_status(self, subject_type, gateway_id, context=None) -> GatewayResult:
        body = await self.send(
            "get_status",
            "GET",
            f"/v4/programs/{self.program_id}/payouts/{gateway_id}/status",
            idempotent=True,
        )
        return self._status_result(gateway_id, body)

    async def find_by_reference(self, subject_type, reference, context=None) -> GatewayResult | None:
        if subject_type != SubjectType.PAYOUT:
            return None
        body = await self.send(
            "find_by_reference",
            "GET",
            f"/v4/programs/{self.program_id}/payouts/{reference}/status",
            idempotent=True,
            allow_not_found=True,
        )
        if body is None:
            return None
        return self._status_result(reference, body)

    async def cancel(self, subject_type, gateway_id, context=None) -> GatewayResult:
        if subject_type != SubjectType.PAYOUT:
            return await super().cancel(subject_type, gateway_id, context)
        body = await self.send(
            "cancel",
            "POST",
            f"/v4/programs/{self.program_id}/payouts/{gateway_id}/cancel",
            idempotent=False,
        )
        return self._status_result(gateway_id, body)

    def verify_webhook(self, raw_body, headers, secret) -> bool:
        return hmac_hex_matches(secret, raw_body, headers.get(self.signature_header))
