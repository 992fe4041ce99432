"""Adapter behaviour against simulated provider APIs (httpx.MockTransport)."""

import base64
import hashlib
import hmac
import json
import time

import httpx
import pytest
from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15

from settlepay.common.errors import GatewayError
from settlepay.common.state_machine import CanonicalStatus, SubjectType
from settlepay.services.gateways.payoneer import PayoneerAdapter
from settlepay.services.gateways.razorpay import RazorpayAdapter
from settlepay.services.gateways.stripe import StripeAdapter, StripeIntentStatus
from settlepay.services.gateways.wise import WiseAdapter, transaction_uuid


def _stripe(handler):
    return StripeAdapter("sk_test", base_url="https://stripe.test", transport=httpx.MockTransport(handler), retry_backoff_seconds=0)


async def test_stripe_create_payment_sends_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers.get("idempotency-key")
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"id": "pi_1", "status": "requires_payment_method", "client_secret": "pi_1_secret"})

    adapter = _stripe(handler)
    result = await adapter.create_payment(999, "USD", "payer-1", "order-0001", {})
    assert seen == {"key": "order-0001", "auth": "Bearer sk_test"}
    assert result.gateway_id == "pi_1"
    assert result.status == CanonicalStatus.PENDING
    assert result.client_secret == "pi_1_secret"


async def test_stripe_lookup_escapes_reference_in_search_query():
    """Quotes and backslashes in a client key cannot break out of the search literal."""

    seen = {}
    reference = "o'brien\\order"

    def handler(request: httpx.Request) -> httpx.Response:
        seen["query"] = request.url.params["query"]
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": "pi_other", "status": "succeeded", "metadata": {"idempotency_key": "o"}},
                    {"id": "pi_1", "status": "processing", "metadata": {"idempotency_key": reference}},
                ]
            },
        )

    result = await _stripe(handler).find_by_reference(SubjectType.PAYMENT, reference)
    assert seen["query"] == "metadata['idempotency_key']:'o\\'brien\\\\order'"
    assert (result.gateway_id, result.status) == ("pi_1", CanonicalStatus.PROCESSING)


async def test_status_read_retries_transient_errors():
    """Idempotent reads are retried with backoff."""

    calls = []

    def handler(request):
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(503, json={"error": {"message": "try later"}})
        return httpx.Response(200, json={"id": "pi_1", "status": "succeeded"})

    result = await _stripe(handler).get_status(SubjectType.PAYMENT, "pi_1")
    assert len(calls) == 2
    assert result.status == CanonicalStatus.COMPLETED


async def test_create_5xx_is_ambiguous_and_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(GatewayError) as info:
        await _stripe(handler).create_payment(999, "USD", "payer-1", "order-0002", {})
    assert len(calls) == 1
    assert info.value.ambiguous is True


async def test_create_timeout_is_ambiguous():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GatewayError) as info:
        await _stripe(handler).create_payment(999, "USD", "payer-1", "order-0003", {})
    assert info.value.ambiguous and info.value.transient


async def test_connect_failure_is_not_ambiguous():
    """Nothing reached the provider, so failover is safe."""

    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayError) as info:
        await _stripe(handler).create_payment(999, "USD", "payer-1", "order-0004", {})
    assert info.value.ambiguous is False


async def test_client_error_carries_provider_code():
    def handler(request):
        return httpx.Response(402, json={"error": {"code": "card_declined", "decline_code": "insufficient_funds"}})

    with pytest.raises(GatewayError) as info:
        await _stripe(handler).create_payment(999, "USD", "payer-1", "order-0005", {})
    assert info.value.transient is False
    assert info.value.provider_code == "insufficient_funds"


async def test_malformed_success_body_is_gateway_error():
    def handler(request):
        return httpx.Response(200, json={"status": "succeeded"})

    with pytest.raises(GatewayError):
        await _stripe(handler).get_status(SubjectType.PAYMENT, "pi_1")


def test_unknown_provider_status_maps_to_pending():
    adapter = _stripe(lambda request: httpx.Response(200, json={}))
    status = StripeIntentStatus.parse("brand_new_state")
    assert status is StripeIntentStatus.UNKNOWN
    assert adapter.map_status(status) == CanonicalStatus.PENDING


async def test_stripe_payout_requires_connected_account():
    adapter = _stripe(lambda request: httpx.Response(200, json={}))
    with pytest.raises(GatewayError):
        await adapter.create_payout(5000, "USD", {"iban": "x"}, "payout-0001", {})


def test_stripe_webhook_signature():
    adapter = _stripe(lambda request: httpx.Response(200, json={}))
    body = b'{"id":"evt_1"}'
    ts = str(int(time.time()))
    sig = hmac.new(b"whsec", f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    assert adapter.verify_webhook(body, {"stripe-signature": f"t={ts},v1={sig}"}, "whsec")
    assert not adapter.verify_webhook(body + b" ", {"stripe-signature": f"t={ts},v1={sig}"}, "whsec")
    old = str(int(time.time()) - 3600)
    old_sig = hmac.new(b"whsec", f"{old}.".encode() + body, hashlib.sha256).hexdigest()
    assert not adapter.verify_webhook(body, {"stripe-signature": f"t={old},v1={old_sig}"}, "whsec")


async def test_razorpay_order_and_lookup():
    def handler(request):
        if request.method == "POST":
            payload = json.loads(request.content)
            assert payload["receipt"] == "order-0006"
            return httpx.Response(200, json={"id": "order_A1", "status": "created"})
        assert request.url.params["receipt"] == "order-0006"
        return httpx.Response(200, json={"items": [{"id": "order_A1", "status": "paid"}]})

    adapter = RazorpayAdapter(
        "rzp_key", "rzp_secret", base_url="https://rzp.test", transport=httpx.MockTransport(handler)
    )
    created = await adapter.create_payment(999, "USD", "payer-1", "order-0006", {})
    assert created.gateway_id == "order_A1"
    assert created.metadata["order_id"] == "order_A1"
    found = await adapter.find_by_reference(SubjectType.PAYMENT, "order-0006")
    assert found.status == CanonicalStatus.COMPLETED


def test_razorpay_webhook_signature():
    adapter = RazorpayAdapter("rzp_key", "rzp_secret")
    body = b'{"event":"payment.captured"}'
    sig = hmac.new(b"rzp_whsec", body, hashlib.sha256).hexdigest()
    assert adapter.verify_webhook(body, {"x-razorpay-signature": sig}, "rzp_whsec")
    assert not adapter.verify_webhook(body, {"x-razorpay-signature": "00" * 32}, "rzp_whsec")


async def test_payoneer_lookup_not_found_is_none():
    def handler(request):
        return httpx.Response(404, json={"code": 10005, "description": "not found"})

    adapter = PayoneerAdapter(
        "user", "pass", "100086", base_url="https://payoneer.test", transport=httpx.MockTransport(handler)
    )
    assert await adapter.find_by_reference(SubjectType.PAYOUT, "payout-0002") is None


async def test_wise_payout_quote_transfer_fund():
    paths = []

    def handler(request):
        paths.append((request.method, request.url.path))
        if request.url.path.endswith("/quotes"):
            return httpx.Response(200, json={"id": "quote-uuid"})
        if request.url.path == "/v1/transfers":
            payload = json.loads(request.content)
            assert payload["customerTransactionId"] == transaction_uuid("payout-0003")
            return httpx.Response(200, json={"id": 4711, "status": "incoming_payment_waiting"})
        return httpx.Response(200, json={"status": "COMPLETED", "type": "BALANCE"})

    adapter = WiseAdapter("token", "p1", base_url="https://wise.test", transport=httpx.MockTransport(handler))
    result = await adapter.create_payout(5000, "EUR", {"recipient_id": 99}, "payout-0003", {})
    assert [path for _, path in paths] == [
        "/v3/profiles/p1/quotes",
        "/v1/transfers",
        "/v3/profiles/p1/transfers/4711/payments",
    ]
    assert result.gateway_id == "4711"
    assert result.status == CanonicalStatus.PENDING
    assert result.metadata == {"quote_id": "quote-uuid"}


def test_wise_webhook_rsa_signature():
    key = RSA.generate(2048)
    public_pem = key.publickey().export_key().decode()
    body = b'{"event_type":"transfers#state-change"}'
    signature = base64.b64encode(pkcs1_15.new(key).sign(SHA256.new(body))).decode()
    adapter = WiseAdapter("token", "p1")
    assert adapter.verify_webhook(body, {"x-signature-sha256": signature}, public_pem)
    assert not adapter.verify_webhook(body + b"x", {"x-signature-sha256": signature}, public_pem)
