"""Provider webhook payloads normalized into `SettlementEvent`.

Each normalizer receives an already verified payload. It returns None for
event types that do not move a payment or payout (refunds and disputes are a
separate subject type). Any lookup, type or value error raised here means
the payload is malformed.
"""

from collections.abc import Callable, Mapping
from typing import Any

from settlepay.common.events import SettlementEvent
from settlepay.common.state_machine import CanonicalStatus, SubjectType
from settlepay.services.gateways.base import GatewayAdapter
from settlepay.services.gateways.payoneer import PayoneerPayoutStatus
from settlepay.services.gateways.razorpay import RazorpayOrderStatus, RazorpayPaymentStatus, RazorpayPayoutStatus
from settlepay.services.gateways.stripe import StripeIntentStatus, StripePayoutStatus
from settlepay.services.gateways.wise import WiseTransferStatus


Normalizer = Callable[[GatewayAdapter, Mapping[str, Any], Mapping[str, str], str], SettlementEvent | None]


def normalize_stripe(adapter, payload, headers, fingerprint) -> SettlementEvent | None:
    event_type = payload["type"]
    obj = payload["data"]["object"]
    metadata = obj.get("metadata") or {}
    if event_type.startswith("payment_intent."):
        status = adapter.map_status(StripeIntentStatus.parse(obj["status"]))
        if event_type == "payment_intent.payment_failed":
            status = CanonicalStatus.FAILED
        error = obj.get("last_payment_error") or {}
        return SettlementEvent(
            provider=adapter.name,
            provider_event_id=payload["id"],
            subject_type=SubjectType.PAYMENT,
            idempotency_key=metadata.get("idempotency_key"),
            gateway_id=obj["id"],
            status=status,
            failure_reason=error.get("message"),
            fingerprint=fingerprint,
        )
    if event_type.startswith("payout."):
        return SettlementEvent(
            provider=adapter.name,
            provider_event_id=payload["id"],
            subject_type=SubjectType.PAYOUT,
            idempotency_key=metadata.get("idempotency_key"),
            gateway_id=obj["id"],
            status=adapter.map_status(StripePayoutStatus.parse(obj["status"])),
            failure_reason=obj.get("failure_message"),
            fingerprint=fingerprint,
        )
    # charge.refunded, charge.dispute.*
    return None


def normalize_razorpay(adapter, payload, headers, fingerprint) -> SettlementEvent | None:
    event_type = payload["event"]
    entities = payload["payload"]
    event_id = headers.get("x-razorpay-event-id") or fingerprint
    if event_type.startswith("payment."):
        payment = entities["payment"]["entity"]
        return SettlementEvent(
            provider=adapter.name,
            provider_event_id=event_id,
            subject_type=SubjectType.PAYMENT,
            gateway_id=payment["order_id"],
            status=adapter.map_status(RazorpayPaymentStatus.parse(payment["status"])),
            failure_reason=payment.get("error_description"),
            fingerprint=fingerprint,
        )
    if event_type.startswith("order."):
        order = entities["order"]["entity"]
        return SettlementEvent(
            provider=adapter.name,
            provider_event_id=event_id,
            subject_type=SubjectType.PAYMENT,
            gateway_id=order["id"],
            status=adapter.map_status(RazorpayOrderStatus.parse(order["status"])),
            fingerprint=fingerprint,
        )
    if event_type.startswith("payout."):
        payout = entities["payout"]["entity"]
        return SettlementEvent(
            provider=adapter.name,
            provider_event_id=event_id,
            subject_type=SubjectType.PAYOUT,
            gateway_id=payout["id"],
            status=adapter.map_status(RazorpayPayoutStatus.parse(payout["status"])),
            failure_reason=payout.get("failure_reason"),
            fingerprint=fingerprint,
        )
    return None


def normalize_payoneer(adapter, payload, headers, fingerprint) -> SettlementEvent | None:
    # client_reference_id is both our idempotency key and the provider-side id.
    reference = payload["client_reference_id"]
    return SettlementEvent(
        provider=adapter.name,
        provider_event_id=str(payload["event_id"]),
        subject_type=SubjectType.PAYOUT,
        idempotency_key=reference,
        gateway_id=reference,
        status=adapter.map_status(PayoneerPayoutStatus.parse(payload["status"])),
        failure_reason=payload.get("reason"),
        fingerprint=fingerprint,
    )


def normalize_wise(adapter, payload, headers, fingerprint) -> SettlementEvent | None:
    if payload.get("event_type") != "transfers#state-change":
        return None
    data = payload["data"]
    return SettlementEvent(
        provider=adapter.name,
        provider_event_id=headers.get("x-delivery-id") or fingerprint,
        subject_type=SubjectType.PAYOUT,
        gateway_id=str(data["resource"]["id"]),
        status=adapter.map_status(WiseTransferStatus.parse(data["current_state"])),
        fingerprint=fingerprint,
    )


NORMALIZERS: dict[str, Normalizer] = {
    "stripe": normalize_stripe,
    "razorpay": normalize_razorpay,
    "payoneer": normalize_payoneer,
    "wise": normalize_wise,
}
