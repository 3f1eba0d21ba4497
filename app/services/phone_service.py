"""Brazilian phone number canonicalization.

Numbers arrive as typed in web forms ("(85) 99620-1636"), as WhatsApp chat ids
("5585996201636@c.us") and as stored by the directory, which is not consistent.
Everything is reduced to one key: the national number, with the mobile ninth
digit always present.
"""

import re

COUNTRY_CODE = "55"
MIN_PHONE_DIGITS = 10
MOBILE_PREFIXES = "6789"

_NON_DIGIT = re.compile(r"\D")


class InvalidPhoneError(ValueError):
    def __init__(self, raw: str | None, reason: str):
        self.raw = raw
        self.reason = reason
        super().__init__(f"Invalid phone {raw!r}: {reason}")


def sanitize_phone(raw: str | None) -> str:
    """Digits only. Drops any chat id suffix such as @c.us."""
    if not raw:
        return ""
    return _NON_DIGIT.sub("", str(raw).split("@", 1)[0])


def normalize_phone(raw: str | None) -> str:
    digits = sanitize_phone(raw).lstrip("0")

    if len(digits) < MIN_PHONE_DIGITS:
        raise InvalidPhoneError(raw, f"expected at least {MIN_PHONE_DIGITS} digits")

    if digits.startswith(COUNTRY_CODE) and len(digits) in (12, 13):
        digits = digits[len(COUNTRY_CODE) :]

    if len(digits) not in (10, 11):
        raise InvalidPhoneError(raw, "national number must have 10 or 11 digits")

    if len(digits) == 10 and digits[2] in MOBILE_PREFIXES:
        # Pre-2016 mobile format, without the ninth digit
        digits = f"{digits[:2]}9{digits[2:]}"
    elif len(digits) == 11 and digits[2] != "9":
        raise InvalidPhoneError(raw, "11-digit numbers must be mobiles starting with 9")

    return digits


def is_mobile(canonical: str) -> bool:
    return len(canonical) == 11


def phone_variants(raw: str | None) -> list[str]:
    """Encodings worth trying against systems that do not normalize.

    Ordered, canonical key first; callers that stop at the first hit depend on it.
    """
    canonical = normalize_phone(raw)
    variants = [canonical, f"{COUNTRY_CODE}{canonical}"]
    if is_mobile(canonical):
        legacy = canonical[:2] + canonical[3:]
        variants.extend([legacy, f"{COUNTRY_CODE}{legacy}"])

    seen: set[str] = set()
    ordered = []
    for variant in variants:
        if variant not in seen:
            seen.add(variant)
            ordered.append(variant)
    return ordered


def format_phone_mask(raw: str | None) -> str:
    canonical = normalize_phone(raw)
    if is_mobile(canonical):
        return f"({canonical[:2]}) {canonical[2:7]}-{canonical[7:]}"
    return f"({canonical[:2]}) {canonical[2:6]}-{canonical[6:]}"


def to_chat_id(raw: str | None) -> str:
    """Gateway chat id for a number, e.g. 5585996201636@c.us."""
    return f"{COUNTRY_CODE}{normalize_phone(raw)}@c.us"
