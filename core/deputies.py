"""
Deputy Resolver — single-hop escalation to the next untried deputy.

escalate(origin):
  1. find the lineup member the origin ask belongs to (by phone alias; for a
     deputy ask, the member it covers)
  2. no deputies → "no_deputies"
  3. contacted = every recipient already asked for (act, lineup, date)
  4. first deputy in list order not in contacted → new ask; none left → "exhausted"
  5. enqueue + drain the new ask, mark the origin auto-escalated

A chain of N deputies takes N calls, each triggered by the previous ask's
terminal outcome (NO reply or timeout).
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Callable, Optional

from core.availability import AvailabilityService
from core.errors import NotFoundError
from database.store_base import BaseAvailabilityStore
from job_queue.recipient_queue import RecipientQueue
from models.schemas import (
    Act, AvailabilityRequest, EscalationOutcome, Lineup, LineupMember, MessageKind, utcnow,
)
from utils.phone import same_phone, to_e164

logger = structlog.get_logger()


def find_member(lineup: Lineup, ask: AvailabilityRequest) -> Optional[LineupMember]:
    """The lineup member whose slot `ask` is about."""
    if not ask.is_deputy:
        for member in lineup.members:
            if same_phone(member.phone, ask.recipient):
                return member
        return None
    if ask.deputy_for:
        for member in lineup.members:
            if same_phone(member.phone, ask.deputy_for):
                return member
    for member in lineup.members:
        if any(same_phone(d.phone, ask.recipient) for d in member.deputies):
            return member
    return None


class DeputyResolver:

    def __init__(
        self,
        store: BaseAvailabilityStore,
        availability: AvailabilityService,
        queue: RecipientQueue,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.availability = availability
        self.queue = queue
        self.clock = clock

    async def _locate(self, origin: AvailabilityRequest) -> tuple[Act, LineupMember]:
        act = await self.store.get_act(origin.act_id)
        if act is None:
            raise NotFoundError(f"act {origin.act_id} not found")
        lineup = act.get_lineup(origin.lineup_id)
        if lineup is None:
            raise NotFoundError(f"lineup {origin.lineup_id} not found on act {origin.act_id}")
        member = find_member(lineup, origin)
        if member is None:
            raise NotFoundError(f"no lineup member matches {origin.recipient}")
        return act, member

    async def escalate(self, origin: AvailabilityRequest) -> EscalationOutcome:
        try:
            act, member = await self._locate(origin)
        except NotFoundError as e:
            logger.warning("deputy_escalation_not_found", ask_id=origin.id, error=str(e))
            return EscalationOutcome(status="not_found")

        if not member.deputies:
            logger.info("deputy_escalation_no_deputies", ask_id=origin.id,
                        member=member.display_name, act_id=origin.act_id)
            return EscalationOutcome(status="no_deputies")

        contacted = await self.store.distinct_recipients(origin.act_id, origin.lineup_id, origin.date_iso)
        lead_phone = to_e164(member.phone) or member.phone
        contacted.add(lead_phone)

        deputy, phone = None, None
        for candidate in member.deputies:
            candidate_phone = to_e164(candidate.phone)
            if candidate_phone is None:
                logger.warning("deputy_phone_invalid", musician_id=candidate.musician_id,
                               phone=candidate.phone)
                continue
            if candidate_phone not in contacted:
                deputy, phone = candidate, candidate_phone
                break

        if deputy is None:
            logger.info("deputy_chain_exhausted", ask_id=origin.id, act_id=origin.act_id,
                        date_iso=origin.date_iso, tried=len(member.deputies))
            return EscalationOutcome(status="exhausted")

        now = self.clock()
        ask = AvailabilityRequest(
            kind=origin.kind,
            act_id=origin.act_id,
            act_name=origin.act_name or act.name,
            lineup_id=origin.lineup_id,
            recipient=phone,
            musician_id=deputy.musician_id,
            musician_name=deputy.display_name,
            is_deputy=True,
            deputy_for=lead_phone,
            duty_role=origin.duty_role or member.duty_role,
            date_iso=origin.date_iso,
            formatted_date=origin.formatted_date,
            venue_address=origin.venue_address,
            address_short=origin.address_short,
            fee=origin.fee,
            slot_index=origin.slot_index,
            asked_at=now,
            created_at=now,
            updated_at=now,
        )
        ask, created = await self.availability.upsert_ask(ask)
        if created:
            await self.queue.enqueue(phone, MessageKind(ask.kind.value), self.availability.payload_for(ask))
            await self.queue.drain(phone)
        await self.availability.mark_escalated(origin)

        logger.info("deputy_escalated", origin_ask_id=origin.id, ask_id=ask.id,
                    recipient=phone, created=created)
        return EscalationOutcome(status="escalated", ask_id=ask.id, recipient=phone)
