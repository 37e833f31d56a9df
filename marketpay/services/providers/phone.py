"""Phone number normalization and per-provider numbering whitelists.

Côte d'Ivoire numbers went from eight to ten national digits in 2021. The
older checkout whitelists matched `^\+22507\d{7}$` and its siblings for the
`05`, `01`, `47`, `48` and `49` prefixes: `+225`, a two-digit operator prefix
and seven digits. That shape fits the eight-digit plan only, so a current
ten-digit number typed as `0707123456` could never pass it.

The patterns below use the ten-digit plan. `format_phone_number` drops the
national leading `0`, leaving `+225`, a network digit, the two-digit operator
prefix and six digits: `0707123456` becomes `+225707123456`. A number written
in the old shape, such as `+22507123456`, is still normalized but matches no
whitelist, so it is rejected before any provider call.
"""

import re

# Côte d'Ivoire national numbers are written 0 + network digit + two-digit
# operator prefix + six digits, e.g. 07 07 12 34 56.
MTN_PATTERNS = (
    re.compile(r"^\+225[157](?:01|05|07|47|48|49)\d{6}$"),
)

ORANGE_PATTERNS = (
    re.compile(r"^\+225[157](?:01|05|07)\d{6}$"),  # Côte d'Ivoire
    re.compile(r"^\+22177\d{7}$"),  # Sénégal
    re.compile(r"^\+23769\d{7}$"),  # Cameroun
    re.compile(r"^\+223\d{8}$"),  # Mali
    re.compile(r"^\+226\d{8}$"),  # Burkina Faso
)

WAVE_PATTERNS = (
    re.compile(r"^\+225[157](?:01|05|07|47|48|49)\d{6}$"),  # MTN + Orange CI
    re.compile(r"^\+22177\d{7}$"),  # Orange SN
    re.compile(r"^\+22176\d{7}$"),  # Free SN
)

COUNTRY_BY_DIAL_CODE = {
    "225": "CI",
    "221": "SN",
    "237": "CM",
    "233": "GH",
    "223": "ML",
    "226": "BF",
    "224": "GN",
}


def format_phone_number(phone_number: str, default_country_code: str = "225") -> str:
    """Normalize a phone number to `+<country code><national number>`.

    Whitespace and punctuation are dropped, a `00` international prefix
    becomes `+`, a national leading `0` is replaced by the default country
    code, and numbers with no `+` at all get the default country code.
    Already-normalized numbers come back unchanged.
    """

    raw = phone_number.strip()
    cleaned = re.sub(r"\D", "", raw)
    if raw.startswith("+"):
        return "+" + cleaned
    if cleaned.startswith("00"):
        return "+" + cleaned[2:]
    if cleaned.startswith("0"):
        return f"+{default_country_code}{cleaned[1:]}"
    return f"+{default_country_code}{cleaned}"


def matches_any(phone_number: str, patterns) -> bool:
    return any(pattern.match(phone_number) for pattern in patterns)


def is_valid_mtn_number(phone_number: str, default_country_code: str = "225") -> bool:
    return matches_any(format_phone_number(phone_number, default_country_code), MTN_PATTERNS)


def is_valid_orange_number(phone_number: str, default_country_code: str = "225") -> bool:
    return matches_any(format_phone_number(phone_number, default_country_code), ORANGE_PATTERNS)


def is_valid_wave_number(phone_number: str, default_country_code: str = "225") -> bool:
    return matches_any(format_phone_number(phone_number, default_country_code), WAVE_PATTERNS)


def detect_country(phone_number: str) -> str | None:
    """Return the ISO country of a normalized number, when it is one we serve."""

    digits = phone_number.lstrip("+")
    for dial_code, country in COUNTRY_BY_DIAL_CODE.items():
        if digits.startswith(dial_code):
            return country
    return None
