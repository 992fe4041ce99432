"""Gateway Router: ranks candidate adapters, never calls them."""

from dataclasses import dataclass

from settlepay.common.errors import AmountOutOfRange, NoGatewayAvailable, ValidationError
from settlepay.common.logging import logger
from settlepay.common.state_machine import SubjectType
from settlepay.services.gateways.base import GatewayAdapter
from settlepay.services.gateways.registry import GatewayRegistry
from settlepay.services.router.regions import REGIONAL_DEFAULTS, resolve_region


@dataclass(frozen=True)
class RouteRequest:
    subject_type: SubjectType
    amount: int
    currency: str
    region: str | None = None
    country: str | None = None
    method: str | None = None


class GatewayRouter:
    def __init__(self, registry: GatewayRegistry) -> None:
        self.registry = registry

    def _eligible(self, adapter: GatewayAdapter, subject_type: SubjectType, currency: str, region: str) -> bool:
        profile = adapter.profile
        if currency not in profile.currencies_for(subject_type):
            return False
        return region in profile.regions or profile.global_fallback

    def rank(self, request: RouteRequest) -> list[GatewayAdapter]:
        """Return candidates in the order they should be tried.

        Order: the requested method, the regional default order, other adapters
        serving the region by priority, then global fallbacks by priority.
        Raises `NoGatewayAvailable` when no adapter serves the request and
        `AmountOutOfRange` when some do but none accept the amount.
        """

        if request.amount <= 0:
            raise ValidationError("amount must be a positive integer in minor units")
        currency = request.currency.upper()
        region = resolve_region(request.country, request.region)
        subject_type = request.subject_type

        eligible = [
            adapter for adapter in self.registry.all() if self._eligible(adapter, subject_type, currency, region)
        ]
        if not eligible:
            raise NoGatewayAvailable(f"no gateway handles {subject_type.value} in {currency} for region {region}")
        within_limits = [adapter for adapter in eligible if adapter.profile.limits_for(currency).allows(request.amount)]
        if not within_limits:
            raise AmountOutOfRange(
                f"amount {request.amount} {currency} is outside every eligible gateway's limits"
            )

        ordered: list[GatewayAdapter] = []

        def take(adapter: GatewayAdapter) -> None:
            if adapter not in ordered:
                ordered.append(adapter)

        if request.method:
            method = request.method.lower()
            for adapter in within_limits:
                if adapter.name == method or method in adapter.profile.methods:
                    take(adapter)

        by_name = {adapter.name: adapter for adapter in within_limits}
        defaults = REGIONAL_DEFAULTS[subject_type]
        for name in defaults.get(region, defaults["DEFAULT"]):
            if name in by_name:
                take(by_name[name])

        by_priority = sorted(within_limits, key=lambda adapter: (adapter.profile.priority, adapter.name))
        for adapter in by_priority:
            if region in adapter.profile.regions:
                take(adapter)
        for adapter in by_priority:
            take(adapter)

        logger.info(
            "route_selected subject_type=%s region=%s currency=%s method=%s candidates=%s",
            subject_type.value,
            region,
            currency,
            request.method,
            [adapter.name for adapter in ordered],
        )
        return ordered
