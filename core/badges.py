"""
Badge Aggregator — the "currently available performer" view per (act, date).

The badge is a pure projection of the YES replies stored for an act/date:

    project(act, asks) → Badge

  - earliest lead YES            → active, is_deputy=False, that lead on the badge
  - only deputy YESes            → inactive, is_deputy=True, newest deputy on the badge
  - no YES                       → empty, inactive badge
  - deputies[]                   → deputy YES repliers, newest first, one entry
                                   per musician, at most `max_deputies`

Timestamps come from the replies themselves, so projecting the same history
twice yields an identical badge. `rebuild` writes only when the projection
changed and retries on a concurrent write.
"""
from __future__ import annotations

import structlog
from typing import Optional, Union

from core.errors import ConcurrencyError
from database.store_base import BaseAvailabilityStore
from models.schemas import (
    Act, AskKind, AvailabilityRequest, Badge, BadgeEntry, Deputy, LineupMember, ReplyCode,
)
from utils.formatting import is_lead_role
from utils.phone import same_phone

logger = structlog.get_logger()

_MAX_WRITE_ATTEMPTS = 3


def find_person(act: Optional[Act], ask: AvailabilityRequest) -> Optional[Union[LineupMember, Deputy]]:
    """Directory entry for the person behind an ask: by musician id, then by phone."""
    if act is None:
        return None
    people = []
    for lineup in act.lineups:
        for member in lineup.members:
            people.append(member)
            people.extend(member.deputies)
    if ask.musician_id:
        for person in people:
            if person.musician_id == ask.musician_id:
                return person
    for person in people:
        if same_phone(person.phone, ask.recipient):
            return person
    return None


def _directory_entry(act: Optional[Act], ask: AvailabilityRequest) -> tuple[str, str, Optional[str]]:
    """(name, photo_url, musician_id) for the person behind an ask."""
    person = find_person(act, ask)
    if person is None:
        return ask.musician_name, "", ask.musician_id
    return person.display_name or ask.musician_name, person.photo_url, person.musician_id or ask.musician_id


def project(act_id: str, date_iso: str, asks: list[AvailabilityRequest],
            act: Optional[Act] = None, public_site_url: str = "",
            max_deputies: int = 3, lead_roles: Optional[list[str]] = None) -> Badge:
    """
    Fold YES replies into a badge. Pure: no I/O, no clock.

    With `lead_roles`, only asks for those duty roles (leads and the deputies
    covering them) count towards the badge.
    """
    yes_asks = sorted(
        (a for a in asks
         if a.reply == ReplyCode.YES and a.kind == AskKind.AVAILABILITY
         and a.act_id == act_id and a.date_iso == date_iso
         and (lead_roles is None or is_lead_role(a.duty_role, lead_roles))),
        key=lambda a: (a.replied_at, a.id),
    )
    badge = Badge(act_id=act_id, date_iso=date_iso)
    if not yes_asks:
        return badge

    def entry_for(ask: AvailabilityRequest) -> BadgeEntry:
        name, photo, musician_id = _directory_entry(act, ask)
        profile = f"{public_site_url.rstrip('/')}/musician/{musician_id}" if musician_id else ""
        return BadgeEntry(musician_id=musician_id, vocalist_name=name, photo_url=photo,
                          profile_url=profile, set_at=ask.replied_at)

    deputies: list[tuple[str, BadgeEntry, AvailabilityRequest]] = []
    for ask in (a for a in yes_asks if a.is_deputy):
        entry = entry_for(ask)
        key = entry.musician_id or ask.recipient
        deputies = [d for d in deputies if d[0] != key]
        deputies.insert(0, (key, entry, ask))
        deputies = deputies[:max_deputies]
    badge.deputies = [entry for _, entry, _ in deputies]

    leads = [a for a in yes_asks if not a.is_deputy]
    if leads:
        featured_ask, featured = leads[0], entry_for(leads[0])
        badge.active = True
        badge.is_deputy = False
    elif deputies:
        _, featured, featured_ask = deputies[0]
        badge.active = False
        badge.is_deputy = True
    else:
        return badge

    badge.vocalist_name = featured.vocalist_name
    badge.musician_id = featured.musician_id
    badge.photo_url = featured.photo_url
    badge.profile_url = featured.profile_url
    badge.address = featured_ask.venue_address
    badge.set_at = max(a.replied_at for a in yes_asks if a.replied_at is not None)
    return badge


class BadgeAggregator:
    """Recomputes and stores badges from reply history."""

    def __init__(self, store: BaseAvailabilityStore, public_site_url: str = "",
                 max_deputies: int = 3, lead_roles: Optional[list[str]] = None):
        self.store = store
        self.public_site_url = public_site_url
        self.max_deputies = max_deputies
        self.lead_roles = lead_roles

    async def compute(self, act_id: str, date_iso: str) -> Badge:
        act = await self.store.get_act(act_id)
        asks = await self.store.list_asks(act_id, date_iso)
        return project(act_id, date_iso, asks, act, self.public_site_url,
                       self.max_deputies, self.lead_roles)

    async def rebuild(self, act_id: str, date_iso: str) -> Badge:
        for attempt in range(1, _MAX_WRITE_ATTEMPTS + 1):
            badge = await self.compute(act_id, date_iso)
            current = await self.store.get_badge(act_id, date_iso)
            if badge.same_projection(current):
                return current
            try:
                saved = await self.store.save_badge(badge, current.version if current else 0)
                logger.info("badge_rebuilt", act_id=act_id, date_iso=date_iso,
                            active=saved.active, is_deputy=saved.is_deputy,
                            deputies=len(saved.deputies), version=saved.version)
                return saved
            except ConcurrencyError:
                logger.warning("badge_write_conflict", act_id=act_id, date_iso=date_iso, attempt=attempt)
        raise ConcurrencyError(f"badge {act_id}:{date_iso} kept changing during rebuild")

    async def get(self, act_id: str, date_iso: str) -> Badge:
        badge = await self.store.get_badge(act_id, date_iso)
        return badge or Badge(act_id=act_id, date_iso=date_iso)
