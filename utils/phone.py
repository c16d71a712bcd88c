"""
Phone identity — one canonical form plus the aliases a number is stored under.

Provider webhooks, lineup data, and legacy records spell the same number in
several ways ("whatsapp:+447700900123", "07700 900123", "447700900123").
Everything in the engine keys on the canonical E.164 form; lookups that must
tolerate older data match against the alias set.

Usage:
    identity = phone_identity("whatsapp:07700 900123")
    identity.canonical    # "+447700900123"
    identity.aliases      # ("+447700900123", "07700900123", "447700900123")
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

DEFAULT_COUNTRY_CODE = "44"
_CHANNEL_PREFIX = re.compile(r"^(whatsapp|sms|tel):", re.IGNORECASE)


@dataclass(frozen=True)
class PhoneIdentity:
    canonical: str
    aliases: tuple[str, ...]

    def matches(self, other: Optional[str]) -> bool:
        if not other:
            return False
        return to_e164(other) == self.canonical


def _clean(raw: str) -> str:
    value = _CHANNEL_PREFIX.sub("", (raw or "").strip())
    has_plus = value.startswith("+")
    digits = re.sub(r"[^\d]", "", value)
    return f"+{digits}" if has_plus else digits


def to_e164(raw: Optional[str], country_code: str = DEFAULT_COUNTRY_CODE) -> Optional[str]:
    """Canonical E.164 form, or None when the input is not a usable number."""
    if not raw:
        return None
    value = _clean(raw)
    if value.startswith("+"):
        e164 = value
    elif value.startswith("00"):
        e164 = "+" + value[2:]
    elif value.startswith("0"):
        e164 = f"+{country_code}{value[1:]}"
    elif value.startswith(country_code):
        e164 = "+" + value
    else:
        e164 = "+" + value
    if not re.fullmatch(r"\+\d{8,15}", e164):
        return None
    return e164


def phone_identity(raw: Optional[str], country_code: str = DEFAULT_COUNTRY_CODE) -> Optional[PhoneIdentity]:
    canonical = to_e164(raw, country_code)
    if canonical is None:
        return None
    digits = canonical[1:]
    aliases = [canonical]
    if digits.startswith(country_code):
        aliases.append("0" + digits[len(country_code):])
    aliases.append(digits)
    return PhoneIdentity(canonical=canonical, aliases=tuple(dict.fromkeys(aliases)))


def same_phone(a: Optional[str], b: Optional[str]) -> bool:
    ca, cb = to_e164(a), to_e164(b)
    return ca is not None and ca == cb
