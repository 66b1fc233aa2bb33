from __future__ import annotations

import re


COUNTRY_DIAL_CODES: dict[str, str] = {
    "US": "+1",
    "CA": "+1",
    "GB": "+44",
    "AU": "+61",
    "NZ": "+64",
    "DE": "+49",
    "FR": "+33",
    "ES": "+34",
    "IT": "+39",
    "NL": "+31",
    "BE": "+32",
    "AT": "+43",
    "CH": "+41",
    "SE": "+46",
    "NO": "+47",
    "DK": "+45",
    "FI": "+358",
    "IE": "+353",
    "PT": "+351",
    "PL": "+48",
    "CZ": "+420",
    "HU": "+36",
    "RO": "+40",
    "BG": "+359",
    "GR": "+30",
    "HR": "+385",
    "SK": "+421",
    "SI": "+386",
}
_DEFAULT_DIAL_CODE = "+1"
_NON_DIGIT = re.compile(r"\D")


def to_e164(phone: str | None, country_code: str | None) -> str | None:
    if not phone or not phone.strip():
        return None
    raw = phone.strip()
    digits = _NON_DIGIT.sub("", raw)
    if not digits:
        return None
    if raw.startswith("+"):
        return f"+{digits}"
    dial_code = COUNTRY_DIAL_CODES.get((country_code or "").upper(), _DEFAULT_DIAL_CODE)
    dial_digits = dial_code.lstrip("+")
    # Numbers longer than a national number that already lead with the dial code only need the plus.
    if digits.startswith(dial_digits) and len(digits) > 10:
        return f"+{digits}"
    # Drop the national trunk prefix (07700 900123 -> +447700900123).
    if digits.startswith("0"):
        digits = digits.lstrip("0")
    return f"{dial_code}{digits}"
