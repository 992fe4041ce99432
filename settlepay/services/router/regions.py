"""Country -> routing region table and per-region default gateway order."""

from settlepay.common.state_machine import SubjectType


_EU = "AT BE BG CH CY CZ DE DK EE ES FI FR HR HU IE IT LT LU LV MT NL NO PL PT RO SE SI SK"
_AF = (
    "AO BF BW CI CM DZ EG ET GH KE LS LY MA MG ML MW MZ NA NE NG RW SD SN SZ TD TN TZ UG ZA ZM ZW"
)
_LATAM = "AR BO BR BZ CL CO CR CU DO EC GT GY HN JM MX NI PA PE PY SR SV TT UY VE"

COUNTRY_REGIONS: dict[str, str] = {"IN": "IN", "US": "US", "CA": "CA", "GB": "GB"}
COUNTRY_REGIONS.update({country: "EU" for country in _EU.split()})
COUNTRY_REGIONS.update({country: "AF" for country in _AF.split()})
COUNTRY_REGIONS.update({country: "LATAM" for country in _LATAM.split()})

REGIONS = frozenset({"IN", "US", "CA", "GB", "EU", "AF", "LATAM", "DEFAULT"})

# Domestic rail first, then cross-border.
REGIONAL_DEFAULTS: dict[SubjectType, dict[str, list[str]]] = {
    SubjectType.PAYMENT: {
        "IN": ["razorpay", "stripe"],
        "DEFAULT": ["stripe"],
    },
    SubjectType.PAYOUT: {
        "IN": ["razorpay", "wise"],
        "US": ["stripe", "wise"],
        "CA": ["stripe", "wise"],
        "GB": ["wise", "stripe"],
        "EU": ["wise", "stripe"],
        "AF": ["payoneer", "wise"],
        "LATAM": ["payoneer", "wise"],
        "DEFAULT": ["wise", "payoneer"],
    },
}


def resolve_region(country: str | None, region: str | None = None) -> str:
    """Prefer an explicit known region; otherwise derive it from the country."""

    if region and region.upper() in REGIONS:
        return region.upper()
    if country:
        return COUNTRY_REGIONS.get(country.upper(), "DEFAULT")
    return "DEFAULT"
