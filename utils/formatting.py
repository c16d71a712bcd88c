"""
Message rendering helpers — dates, addresses, fees, and the outbound texts.

Every outbound message is rendered twice: once as channel variables for the
WhatsApp content template and once as a plain-text SMS fallback, so the
fallback never has to be re-derived at send time.
"""
from __future__ import annotations

import re
from datetime import date
from typing import Optional


def ordinal(n: int) -> str:
    if 11 <= n % 100 <= 13:
        return f"{n}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def format_date_with_ordinal(date_iso: str) -> str:
    """'2026-06-06' -> 'Saturday, 6th Jun 2026'. Unparseable input is returned as is."""
    try:
        d = date.fromisoformat(date_iso[:10])
    except (TypeError, ValueError):
        return date_iso or ""
    return f"{d.strftime('%A')}, {ordinal(d.day)} {d.strftime('%b %Y')}"


def short_address(address: Optional[str]) -> str:
    """Last two comma-separated parts of an address, without a trailing ', UK'."""
    if not address:
        return ""
    cleaned = re.sub(r",\s*UK\s*$", "", address.strip(), flags=re.IGNORECASE)
    parts = [p.strip() for p in cleaned.split(",") if p.strip()]
    return ", ".join(parts[-2:])


def sanitize_fee(fee) -> str:
    """Amount without currency symbols or separators; "TBC" when there is none."""
    amount = re.sub(r"[^\d.]", "", str(fee if fee is not None else "")).strip(".")
    return amount or "TBC"


def first_name(full_name: Optional[str]) -> str:
    name = (full_name or "").strip()
    return name.split()[0] if name else "there"


def is_lead_role(duty_role: str, lead_roles: list[str]) -> bool:
    role = (duty_role or "").strip().lower()
    return role in {r.lower() for r in lead_roles}


# ── Outbound texts ────────────────────────────────────────────

def availability_variables(name: str, formatted_date: str, area: str, fee: Optional[str],
                           duties: str, act_name: str, correlation_id: str = "") -> dict[str, str]:
    """
    Numbered content-template variables, in template order. "7" is the
    correlation id the quick-reply buttons echo back (`YES{{7}}`).
    """
    variables = {
        "1": first_name(name),
        "2": formatted_date,
        "3": area,
        "4": sanitize_fee(fee),
        "5": duties or "performance",
        "6": act_name,
    }
    if correlation_id:
        variables["7"] = correlation_id
    return variables


def availability_text(variables: dict[str, str], correlation_id: str = "") -> str:
    text = (
        f"Hi {variables['1']}, you've received an enquiry for {variables['2']} in "
        f"{variables['3']} at a rate of £{variables['4']} for {variables['5']} "
        f"with {variables['6']}. Reply YES or NO."
    )
    if correlation_id:
        text += f" (ref {correlation_id})"
    return text


def booking_text(name: str, formatted_date: str, area: str, act_name: str,
                 fee: Optional[str], correlation_id: str) -> str:
    return (
        f"Hi {first_name(name)}, {act_name} has been booked for {formatted_date} in "
        f"{area} at £{sanitize_fee(fee)}. Please confirm you can perform: reply "
        f"YESBOOK_{correlation_id} to confirm or NOBOOK_{correlation_id} to decline."
    )


def reminder_text(name: str, formatted_date: str, area: str, act_name: str) -> str:
    return (
        f"Hi {first_name(name)}, a quick reminder about the enquiry for "
        f"{formatted_date} in {area} with {act_name}. Reply YES or NO."
    )


def chase_text(name: str, formatted_date: str, address: str, act_name: str) -> str:
    return (
        f"Hi {first_name(name)}, just checking you saw the booking request for "
        f"{formatted_date} at {address} with {act_name}. If you're available, "
        f"reply YES. If you're already booked, reply NO. If it's too far, reply NOLOC."
    )


def courtesy_text(formatted_date: str) -> str:
    return (
        f"No worries if you were busy, we've now passed the request for "
        f"{formatted_date} to the next musician. Thanks anyway!"
    )
