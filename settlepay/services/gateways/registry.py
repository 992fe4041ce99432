"""Process-wide set of configured gateway adapters.

Built once at startup and passed explicitly to the router, orchestrator and
webhook processor, so tests can register fakes instead of real providers.
"""

import httpx

from settlepay.common.config import CommonSettings
from settlepay.common.errors import NotFound
from settlepay.common.logging import logger
from settlepay.services.gateways.base import GatewayAdapter
from settlepay.services.gateways.payoneer import PayoneerAdapter
from settlepay.services.gateways.razorpay import RazorpayAdapter
from settlepay.services.gateways.stripe import StripeAdapter
from settlepay.services.gateways.wise import WiseAdapter


class GatewayRegistry:
    def __init__(self, adapters: list[GatewayAdapter] | None = None) -> None:
        self._adapters: dict[str, GatewayAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: GatewayAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> GatewayAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise NotFound(f"gateway '{name}' is not configured")
        return adapter

    def names(self) -> list[str]:
        return list(self._adapters)

    def all(self) -> list[GatewayAdapter]:
        return list(self._adapters.values())

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


def build_registry(config: CommonSettings, transport: httpx.AsyncBaseTransport | None = None) -> GatewayRegistry:
    """Register every adapter whose credentials are present in `config`."""

    common = {
        "timeout": config.gateway_timeout_seconds,
        "read_retries": config.gateway_read_retries,
        "retry_backoff_seconds": config.gateway_retry_backoff_seconds,
        "transport": transport,
    }
    registry = GatewayRegistry()
    if config.stripe_secret_key:
        registry.register(
            StripeAdapter(
                config.stripe_secret_key,
                base_url=config.stripe_api_url,
                signature_tolerance_seconds=config.stripe_signature_tolerance_seconds,
                **common,
            )
        )
    if config.razorpay_key_id and config.razorpay_key_secret:
        registry.register(
            RazorpayAdapter(
                config.razorpay_key_id,
                config.razorpay_key_secret,
                account_number=config.razorpay_account_number,
                base_url=config.razorpay_api_url,
                **common,
            )
        )
    if config.payoneer_api_username and config.payoneer_api_password and config.payoneer_program_id:
        registry.register(
            PayoneerAdapter(
                config.payoneer_api_username,
                config.payoneer_api_password,
                config.payoneer_program_id,
                base_url=config.payoneer_api_url,
                **common,
            )
        )
    if config.wise_api_token and config.wise_profile_id:
        registry.register(
            WiseAdapter(config.wise_api_token, config.wise_profile_id, base_url=config.wise_api_url, **common)
        )
    logger.info("gateway_registry_built gateways=%s", registry.names())
    return registry


def webhook_secrets(config: CommonSettings) -> dict[str, str]:
    return {
        "stripe": config.stripe_webhook_secret,
        "razorpay": config.razorpay_webhook_secret,
        "payoneer": config.payoneer_webhook_secret,
        "wise": config.wise_webhook_public_key,
    }
