"""Currency Conversion Service.

Quotes are priced from a rate that is fixed per (currency pair, time bucket),
so the same request in the same bucket always yields the same quote amounts.
The optional live source is consulted once per base currency per bucket; the
static table is the fallback.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import httpx

from settlepay.common.config import settings
from settlepay.common.db import ensure_utc, utcnow
from settlepay.common.errors import NotFound, QuoteExpired, ValidationError
from settlepay.common.logging import logger
from settlepay.common.money import round_half_up, to_major, to_minor
from settlepay.services.conversion.models import Quote


FALLBACK_RATES: dict[str, dict[str, Decimal]] = {
    "USD": {"EUR": Decimal("0.85"), "GBP": Decimal("0.73"), "INR": Decimal("83.0"), "BRL": Decimal("5.2"), "MXN": Decimal("17.5")},
    "EUR": {"USD": Decimal("1.18"), "GBP": Decimal("0.86"), "INR": Decimal("97.6"), "BRL": Decimal("6.1"), "MXN": Decimal("20.6")},
    "GBP": {"USD": Decimal("1.37"), "EUR": Decimal("1.16"), "INR": Decimal("113.4"), "BRL": Decimal("7.1"), "MXN": Decimal("24.0")},
    "INR": {"USD": Decimal("0.012"), "EUR": Decimal("0.010"), "GBP": Decimal("0.009"), "BRL": Decimal("0.063"), "MXN": Decimal("0.21")},
}

RATE_PRECISION = Decimal("0.00000001")


def fallback_rate(source: str, target: str) -> Decimal | None:
    """Direct rate, inverse of the opposite rate, or a cross through USD."""

    direct = FALLBACK_RATES.get(source, {}).get(target)
    if direct is not None:
        return direct
    inverse = FALLBACK_RATES.get(target, {}).get(source)
    if inverse is not None:
        return (Decimal(1) / inverse).quantize(RATE_PRECISION)
    if "USD" not in (source, target):
        to_usd = fallback_rate(source, "USD")
        from_usd = fallback_rate("USD", target)
        if to_usd is not None and from_usd is not None:
            return (to_usd * from_usd).quantize(RATE_PRECISION)
    return None


class LiveRateSource:
    """Exchange-rate HTTP source (`GET {url}/{base}` -> `{"rates": {...}}`) cached per bucket."""

    def __init__(self, url: str, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 5.0) -> None:
        self.url = url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._cache: dict[tuple[str, int], dict[str, Decimal]] = {}

    async def rate(self, source: str, target: str, bucket: int) -> Decimal | None:
        key = (source, bucket)
        if key not in self._cache:
            try:
                resp = await self.client.get(f"{self.url}/{source}")
                resp.raise_for_status()
                rates = resp.json()["rates"]
                table = {code: Decimal(str(value)) for code, value in rates.items()}
            except (httpx.HTTPError, ValueError, KeyError, TypeError, ArithmeticError) as exc:
                logger.warning("live_rate_fetch_failed base=%s error=%s", source, exc)
                return None
            # Only the current bucket is ever read again.
            self._cache = {k: v for k, v in self._cache.items() if k[1] >= bucket}
            self._cache[key] = table
        return self._cache[key].get(target)

    async def close(self) -> None:
        await self.client.aclose()


def price(amount: int, source: str, target: str, rate: Decimal, fee_bps: int) -> tuple[int, int]:
    """Return `(fee, target_amount)`; the fee is taken in source currency before conversion."""

    fee = round_half_up(Decimal(amount) * fee_bps / Decimal(10_000))
    target_amount = to_minor(to_major(amount - fee, source) * rate, target)
    return fee, target_amount


class ConversionService:
    def __init__(
        self,
        session_factory,
        live_rates: LiveRateSource | None = None,
        fee_bps: int | None = None,
        ttl_seconds: int | None = None,
        bucket_seconds: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.live_rates = live_rates
        self.fee_bps = settings.conversion_fee_bps if fee_bps is None else fee_bps
        self.ttl_seconds = ttl_seconds or settings.quote_ttl_seconds
        self.bucket_seconds = bucket_seconds or settings.quote_bucket_seconds

    def _bucket(self, now: datetime) -> int:
        return int(now.timestamp()) // self.bucket_seconds

    async def _rate(self, source: str, target: str, bucket: int) -> tuple[Decimal, str]:
        if self.live_rates is not None:
            live = await self.live_rates.rate(source, target, bucket)
            if live is not None:
                return live, "live"
        rate = fallback_rate(source, target)
        if rate is None:
            raise ValidationError(f"no conversion rate for {source}->{target}")
        return rate, "fallback"

    def _validate(self, amount: int, source_currency: str, target_currency: str) -> tuple[str, str]:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("amount must be a positive integer in minor units")
        source = source_currency.upper()
        target = target_currency.upper()
        for code in (source, target):
            if len(code) != 3 or not code.isalpha():
                raise ValidationError(f"invalid currency code '{code}'")
        return source, target

    async def quote(self, amount: int, source_currency: str, target_currency: str, now: datetime | None = None) -> Quote:
        """Issue and persist a quote for converting `amount` minor units of the source currency."""

        source, target = self._validate(amount, source_currency, target_currency)
        now = now or utcnow()
        if source == target:
            return self._store(source, target, amount, amount, Decimal(1), 0, "identity", now)
        rate, rate_source = await self._rate(source, target, self._bucket(now))
        fee, target_amount = price(amount, source, target, rate, self.fee_bps)
        if target_amount <= 0:
            raise ValidationError(f"amount {amount} {source} is too small to convert to {target}")
        return self._store(source, target, amount, target_amount, rate, fee, rate_source, now)

    async def quote_for_target(
        self, target_amount: int, source_currency: str, target_currency: str, now: datetime | None = None
    ) -> Quote:
        """Issue a quote for the source amount (fee included) that delivers `target_amount`."""

        source, target = self._validate(target_amount, source_currency, target_currency)
        now = now or utcnow()
        if source == target:
            return self._store(source, target, target_amount, target_amount, Decimal(1), 0, "identity", now)
        rate, rate_source = await self._rate(source, target, self._bucket(now))
        net_source = to_minor(to_major(target_amount, target) / rate, source)
        source_amount = round_half_up(Decimal(net_source) * 10_000 / Decimal(10_000 - self.fee_bps))
        return self._store(
            source, target, source_amount, target_amount, rate, source_amount - net_source, rate_source, now
        )

    def _store(
        self,
        source: str,
        target: str,
        source_amount: int,
        target_amount: int,
        rate: Decimal,
        fee: int,
        rate_source: str,
        now: datetime,
    ) -> Quote:
        quote = Quote(
            source_currency=source,
            target_currency=target,
            source_amount=source_amount,
            target_amount=target_amount,
            rate=str(rate),
            fee=fee,
            rate_source=rate_source,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        with self.session_factory() as db:
            db.add(quote)
            db.commit()
        logger.info(
            "quote_issued quote_id=%s pair=%s%s source_amount=%s target_amount=%s rate=%s",
            quote.quote_id,
            source,
            target,
            source_amount,
            target_amount,
            quote.rate,
        )
        return quote

    def get_quote(self, quote_id: str) -> Quote:
        with self.session_factory() as db:
            quote = db.get(Quote, quote_id)
        if quote is None:
            raise NotFound(f"quote {quote_id} not found")
        return quote

    def ensure_valid(self, quote: Quote, now: datetime | None = None) -> Quote:
        """Reject quotes at or past their expiry."""

        now = now or utcnow()
        if ensure_utc(quote.expires_at) <= now:
            raise QuoteExpired(f"quote {quote.quote_id} expired at {ensure_utc(quote.expires_at).isoformat()}")
        return quote
