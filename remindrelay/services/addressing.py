from __future__ import annotations

import re
from dataclasses import dataclass, field


# Brazilian numbering plan: country code 55, two-digit area code (DDD), mobile numbers lead with 9.
COUNTRY_CODE = "55"
GATEWAY_ADDRESS_SUFFIX = "@s.whatsapp.net"
_MIN_MOBILE_AREA_CODE = 11
_NON_DIGITS = re.compile(r"\D")

CORRECTION_STRIPPED_SUFFIX = "stripped_suffix"
CORRECTION_STRIPPED_NON_DIGITS = "stripped_non_digits"
CORRECTION_FIXED_TRUNK_ZERO = "fixed_trunk_zero"
CORRECTION_ADDED_COUNTRY_CODE = "added_country_code"
CORRECTION_INSERTED_MOBILE_DIGIT = "inserted_mobile_digit"


@dataclass(frozen=True)
class NormalizedAddress:
    raw: str
    value: str
    # Every rewrite applied to reach value, in application order.
    corrections: tuple[str, ...] = field(default_factory=tuple)

    @property
    def corrected(self) -> bool:
        return bool(self.corrections)


def normalize_address(raw: str, *, country_code: str = COUNTRY_CODE) -> NormalizedAddress:
    """Canonicalize a recipient phone address and report each correction made.

    The canonical form is digits only, prefixed with the country code, with
    the mobile ``9`` restored for 12-digit numbers whose area code is a
    mobile-capable one. Nothing is rewritten silently: callers receive the
    list of applied corrections alongside the value.
    """
    corrections: list[str] = []
    text = str(raw or "").strip()
    if "@" in text:
        text = text.split("@", 1)[0]
        corrections.append(CORRECTION_STRIPPED_SUFFIX)
    digits = _NON_DIGITS.sub("", text)
    if digits != text:
        corrections.append(CORRECTION_STRIPPED_NON_DIGITS)
    value = digits

    trunk_prefix = f"{country_code}0"
    if value.startswith(trunk_prefix):
        value = country_code + value[len(trunk_prefix):]
        corrections.append(CORRECTION_FIXED_TRUNK_ZERO)

    if not value.startswith(country_code) and len(value) in (10, 11):
        value = country_code + value
        corrections.append(CORRECTION_ADDED_COUNTRY_CODE)

    if value.startswith(country_code) and len(value) == 12:
        cc = len(country_code)
        area_code, local = value[cc : cc + 2], value[cc + 2 :]
        if not local.startswith("9") and int(area_code) >= _MIN_MOBILE_AREA_CODE:
            value = f"{country_code}{area_code}9{local}"
            corrections.append(CORRECTION_INSERTED_MOBILE_DIGIT)

    return NormalizedAddress(raw=str(raw or ""), value=value, corrections=tuple(corrections))


def address_variants(raw: str, *, country_code: str = COUNTRY_CODE) -> list[str]:
    """Return the ordered, de-duplicated address formats to try against the gateway.

    Order: canonical form, canonical form with the gateway suffix, national
    form without country code, then the alternate with or without the mobile
    ``9``. An address with no digits yields no variants.
    """
    canonical = normalize_address(raw, country_code=country_code).value
    if not canonical:
        return []
    variants = [canonical, f"{canonical}{GATEWAY_ADDRESS_SUFFIX}"]
    if canonical.startswith(country_code) and len(canonical) >= 12:
        variants.append(canonical[len(country_code):])
    cc = len(country_code)
    if canonical.startswith(country_code) and len(canonical) == 13 and canonical[cc + 2] == "9":
        variants.append(canonical[: cc + 2] + canonical[cc + 3 :])
    elif canonical.startswith(country_code) and len(canonical) == 12:
        area_code, local = canonical[cc : cc + 2], canonical[cc + 2 :]
        if not local.startswith("9"):
            variants.append(f"{country_code}{area_code}9{local}")
    # dict preserves first-seen order while dropping duplicates.
    return list(dict.fromkeys(variants))
