"""Global transfer network adapter (Wise quote -> transfer -> fund). Payouts only."""

import base64
from collections.abc import Mapping
from uuid import NAMESPACE_URL, uuid5

import httpx
from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15

from settlepay.common.config import settings
from settlepay.common.errors import GatewayError
from settlepay.common.logging import logger
from settlepay.common.money import to_major
from settlepay.common.state_machine import CanonicalStatus, SubjectType
from settlepay.services.gateways.base import (
    AmountLimits,
    GatewayAdapter,
    GatewayProfile,
    GatewayResult,
    ProviderStatus,
)


class WiseTransferStatus(ProviderStatus):
    INCOMING_PAYMENT_WAITING = "incoming_payment_waiting"
    INCOMING_PAYMENT_INITIATED = "incoming_payment_initiated"
    WAITING_RECIPIENT_INPUT = "waiting_recipient_input_to_proceed"
    PROCESSING = "processing"
    FUNDS_CONVERTED = "funds_converted"
    OUTGOING_PAYMENT_SENT = "outgoing_payment_sent"
    CANCELLED = "cancelled"
    FUNDS_REFUNDED = "funds_refunded"
    BOUNCED_BACK = "bounced_back"
    CHARGED_BACK = "charged_back"
    UNKNOWN = "__unknown__"


def transaction_uuid(reference: str) -> str:
    """Stable `customerTransactionId` for one idempotency key."""

    return str(uuid5(NAMESPACE_URL, f"settlepay:{reference}"))


class WiseAdapter(GatewayAdapter):
    name = "wise"
    profile = GatewayProfile(
        kind="global",
        regions=frozenset({"AF", "LATAM", "EU", "DEFAULT"}),
        payment_currencies=frozenset(),
        payout_currencies=frozenset({"USD", "EUR", "GBP", "CAD", "AUD", "SGD", "JPY"}),
        default_limits=AmountLimits(100, 1_000_000_000),
        methods=frozenset({"bank_transfer", "wise"}),
        priority=3,
        cancellable=frozenset({SubjectType.PAYOUT}),
    )
    status_map = {
        WiseTransferStatus.INCOMING_PAYMENT_WAITING: CanonicalStatus.PENDING,
        WiseTransferStatus.INCOMING_PAYMENT_INITIATED: CanonicalStatus.PENDING,
        WiseTransferStatus.WAITING_RECIPIENT_INPUT: CanonicalStatus.PENDING,
        WiseTransferStatus.PROCESSING: CanonicalStatus.PROCESSING,
        WiseTransferStatus.FUNDS_CONVERTED: CanonicalStatus.PROCESSING,
        WiseTransferStatus.OUTGOING_PAYMENT_SENT: CanonicalStatus.COMPLETED,
        WiseTransferStatus.CANCELLED: CanonicalStatus.CANCELLED,
        WiseTransferStatus.FUNDS_REFUNDED: CanonicalStatus.FAILED,
        WiseTransferStatus.BOUNCED_BACK: CanonicalStatus.FAILED,
        WiseTransferStatus.CHARGED_BACK: CanonicalStatus.FAILED,
    }
    signature_header = "x-signature-sha256"

    def __init__(
        self,
        api_token: str,
        profile_id: str,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ) -> None:
        super().__init__(
            base_url or settings.wise_api_url,
            transport=transport,
            headers={"Authorization": f"Bearer {api_token}"},
            **kwargs,
        )
        self.profile_id = profile_id

    def error_code(self, body) -> str | None:
        if isinstance(body, Mapping):
            errors = body.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], Mapping):
                return errors[0].get("code")
            return body.get("error")
        return None

    def _transfer_result(self, body: Mapping) -> GatewayResult:
        transfer_id = self.require(body, "id", (int, str))
        return self.result(str(transfer_id), WiseTransferStatus.parse(self.require(body, "status")))

    async def create_payout(self, amount, currency, payee_account, reference, metadata) -> GatewayResult:
        recipient_id = payee_account.get("recipient_id")
        if not recipient_id:
            raise GatewayError(self.name, "payee account has no recipient_id")

        # Quotes move no money, so this step is safe to retry.
        quote = await self.send(
            "create_quote",
            "POST",
            f"/v3/profiles/{self.profile_id}/quotes",
            idempotent=True,
            json={
                "sourceCurrency": currency,
                "targetCurrency": currency,
                "targetAmount": float(to_major(amount, currency)),
                "payOut": "BALANCE",
            },
        )
        transfer = await self.send(
            "create_payout",
            "POST",
            "/v1/transfers",
            idempotent=False,
            json={
                "targetAccount": recipient_id,
                "quoteUuid": self.require(quote, "id"),
                "customerTransactionId": transaction_uuid(reference),
                "details": {"reference": metadata.get("narration", "Payout")[:35]},
            },
        )
        result = self._transfer_result(transfer)
        funding = await self.send(
            "fund_transfer",
            "POST",
            f"/v3/profiles/{self.profile_id}/transfers/{result.gateway_id}/payments",
            idempotent=False,
            json={"type": "BALANCE"},
        )
        if self.require(funding, "status") != "COMPLETED":
            logger.warning(
                "wise funding rejected transfer_id=%s error_code=%s",
                result.gateway_id,
                funding.get("errorCode"),
            )
            raise GatewayError(
                self.name,
                f"transfer {result.gateway_id} could not be funded",
                provider_code=funding.get("errorCode"),
            )
        result.metadata = {"quote_id": quote["id"]}
        return result

    async def get_status(self, subject_type, gateway_id, context=None) -> GatewayResult:
        body = await self.send("get_status", "GET", f"/v1/transfers/{gateway_id}", idempotent=True)
        return self._transfer_result(body)

    async def find_by_reference(self, subject_type, reference, context=None) -> GatewayResult | None:
        if subject_type != SubjectType.PAYOUT:
            return None
        body = await self.send(
            "find_by_reference",
            "GET",
            "/v1/transfers",
            idempotent=True,
            params={"profile": self.profile_id, "limit": 100},
        )
        if not isinstance(body, list):
            raise GatewayError(self.name, "malformed response: expected a transfer list")
        wanted = transaction_uuid(reference)
        for item in body:
            if isinstance(item, Mapping) and item.get("customerTransactionId") == wanted:
                return self._transfer_result(item)
        return None

    async def cancel(self, subject_type, gateway_id, context=None) -> GatewayResult:
        if subject_type != SubjectType.PAYOUT:
            return await super().cancel(subject_type, gateway_id, context)
        body = await self.send("cancel", "PUT", f"/v1/transfers/{gateway_id}/cancel", idempotent=False)
        return self._transfer_result(body)

    def verify_webhook(self, raw_body, headers, secret) -> bool:
        """RSA-SHA256 signature over the raw body, checked with the Wise public key."""

        signature = headers.get(self.signature_header)
        if not signature or not secret:
            return False
        try:
            public_key = RSA.import_key(secret)
            digest = SHA256.new(raw_body)
            pkcs1_15.new(public_key).verify(digest, base64.b64decode(signature))
            return True
        except (ValueError, TypeError, IndexError):
            return False
