"""Minor-unit helpers shared by conversion, earnings and adapters."""

from decimal import ROUND_HALF_UP, Decimal


# ISO 4217 currencies without a minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)


def exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major(amount: int, currency: str) -> Decimal:
    """Convert integer minor units to a major-unit Decimal (e.g. 999 USD -> 9.99)."""

    return Decimal(amount).scaleb(-exponent(currency))


def to_minor(value: Decimal, currency: str) -> int:
    return round_half_up(value.scaleb(exponent(currency)))


def percent_of(amount: int, percent: float | Decimal) -> int:
    return round_half_up(Decimal(amount) * Decimal(str(percent)) / Decimal(100))
