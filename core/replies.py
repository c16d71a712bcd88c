"""
Reply Ingestion — turns an inbound WhatsApp/SMS message into a settled ask.

Pipeline:
  1. parse the provider webhook (channel gateway)
  2. canonicalise the sender into a phone identity with aliases
  3. drop a replayed webhook (receipt keyed by provider message id)
  4. classify: button payload → structured code → plain-language yes/no
  5. find the target ask: embedded correlation id, else the newest open ask
     of the same kind for any alias of the sender
  6. set the reply (first reply wins), then the side effects:
       YES           → drain the recipient's queue, rebuild the badge, calendar invite
       NO / UNAVAIL  → drain the recipient's queue, escalate to the next deputy

Side effects are logged on failure and never undo the reply. Unrecognised
messages are acknowledged and left alone.
"""
from __future__ import annotations

import asyncio
import hashlib
import re
import structlog
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from backend.calendar import CalendarProvider
from channels.gateway import ChannelGateway
from core.availability import AvailabilityService
from core.badges import BadgeAggregator, find_person
from core.deputies import DeputyResolver
from database.store_base import BaseAvailabilityStore
from job_queue.recipient_queue import RecipientQueue
from models.schemas import (
    AskKind, AvailabilityRequest, InboundInfo, InboundReply, OperationResult, ReplyCode, utcnow,
)
from utils.phone import PhoneIdentity, phone_identity

logger = structlog.get_logger()

# Provider message ids are kept for good; a payload digest only within this window.
DIGEST_RECEIPT_TTL_SECONDS = 600

_BOOKING_CODE = re.compile(r"^(YESBOOK|NOBOOK)_([A-Za-z0-9]+)$", re.IGNORECASE)
_STRUCTURED_CODE = re.compile(r"^(YES|NOLOC|UNAVAILABLE)(?:[\s_-]*([0-9a-f]{8}))?$", re.IGNORECASE)

_NO_WORDS = re.compile(r"^(no|n|nope|nah)$|\bnot available\b|\bunavailable\b")
_YES_WORDS = re.compile(r"^(yes|y|yeah|yep|sure|ok|okay)$|\bi am available\b|\bi'm available\b|\bavailable\b")

_CODE_MAP = {
    "YES": ReplyCode.YES,
    "NOLOC": ReplyCode.NO,
    "UNAVAILABLE": ReplyCode.UNAVAILABLE,
    "YESBOOK": ReplyCode.YES,
    "NOBOOK": ReplyCode.NO,
}


@dataclass(frozen=True)
class ReplyIntent:
    code: ReplyCode
    kind: AskKind = AskKind.AVAILABILITY
    correlation_id: str = ""
    source: str = ""                       # "button" | "structured" | "natural"


def _parse_code(text: str, source: str) -> Optional[ReplyIntent]:
    m = _BOOKING_CODE.match(text)
    if m:
        return ReplyIntent(_CODE_MAP[m.group(1).upper()], AskKind.BOOKING, m.group(2), source)
    m = _STRUCTURED_CODE.match(text)
    if m:
        return ReplyIntent(_CODE_MAP[m.group(1).upper()], AskKind.AVAILABILITY,
                           (m.group(2) or "").lower(), source)
    return None


def classify(body: str = "", button_payload: str = "") -> Optional[ReplyIntent]:
    """Map an inbound message onto a reply code. None when nothing matches."""
    if button_payload:
        intent = _parse_code(button_payload.strip(), "button")
        if intent:
            return intent

    text = (body or "").strip()
    if not text:
        return None
    intent = _parse_code(text, "structured")
    if intent:
        return intent

    words = re.sub(r"[^\w\s']", " ", text.lower())
    words = " ".join(words.split())
    if _NO_WORDS.search(words):
        return ReplyIntent(ReplyCode.NO, source="natural")
    if _YES_WORDS.search(words):
        return ReplyIntent(ReplyCode.YES, source="natural")
    return None


def receipt_key(inbound: InboundReply) -> str:
    if inbound.provider_sid:
        return f"sid:{inbound.provider_sid}"
    digest = hashlib.sha256(
        f"{inbound.sender}|{inbound.body}|{inbound.button_payload}".encode()
    ).hexdigest()
    return f"digest:{digest}"


class ReplyIngestion:
    """Applies inbound replies and fans out their side effects."""

    def __init__(
        self,
        store: BaseAvailabilityStore,
        gateway: ChannelGateway,
        availability: AvailabilityService,
        queue: RecipientQueue,
        badges: BadgeAggregator,
        deputies: DeputyResolver,
        calendar: Optional[CalendarProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.availability = availability
        self.queue = queue
        self.badges = badges
        self.deputies = deputies
        self.calendar = calendar
        self.clock = clock
        self._background: set[asyncio.Task] = set()

    async def ingest(self, raw_payload: dict[str, Any]) -> OperationResult:
        inbound = await self.gateway.parse_inbound(raw_payload)
        if inbound is None:
            return OperationResult(success=True, reason="ignored")
        return await self.ingest_reply(inbound)

    async def ingest_reply(self, inbound: InboundReply) -> OperationResult:
        identity = phone_identity(inbound.sender)
        if identity is None:
            logger.warning("inbound_unknown_sender", sender=inbound.sender)
            return OperationResult(success=True, reason="unknown_sender")

        ttl = None if inbound.provider_sid else DIGEST_RECEIPT_TTL_SECONDS
        if not await self.store.record_inbound_receipt(receipt_key(inbound), self.clock(), ttl):
            logger.info("inbound_duplicate", sender=identity.canonical, provider_sid=inbound.provider_sid)
            return OperationResult(success=True, reason="duplicate")

        intent = classify(inbound.body, inbound.button_payload)
        if intent is None:
            logger.info("inbound_unrecognized", sender=identity.canonical, body=inbound.body[:80])
            return OperationResult(success=True, reason="unrecognized")

        ask = await self._resolve_target(identity, intent)
        if ask is None:
            logger.info("inbound_no_matching_ask", sender=identity.canonical,
                        reply=intent.code.value, correlation_id=intent.correlation_id)
            return OperationResult(success=True, reason="no_match")

        trace = InboundInfo(
            provider_sid=inbound.provider_sid,
            body=inbound.body,
            button_payload=inbound.button_payload,
            received_at=inbound.received_at,
        )
        updated = await self.availability.apply_reply(ask, intent.code, trace)
        if updated is None:
            logger.info("inbound_already_settled", ask_id=ask.id, reply=intent.code.value)
            return OperationResult(success=True, reason="already_replied", details={"ask_id": ask.id})

        await self._after_reply(updated)
        return OperationResult(
            success=True,
            reason="applied",
            details={"ask_id": updated.id, "reply": intent.code.value, "source": intent.source},
        )

    async def _resolve_target(self, identity: PhoneIdentity, intent: ReplyIntent) -> Optional[AvailabilityRequest]:
        if intent.correlation_id:
            ask = await self.store.find_ask_by_correlation(intent.correlation_id)
            if ask is not None and identity.matches(ask.recipient) and ask.cancelled_at is None:
                return ask
            logger.debug("correlation_id_unmatched", correlation_id=intent.correlation_id,
                         sender=identity.canonical)
        candidates = await self.store.find_open_asks(list(identity.aliases), intent.kind.value)
        return candidates[0] if candidates else None

    # ── Side effects ──────────────────────────────────────────

    async def _after_reply(self, ask: AvailabilityRequest):
        try:
            await self.queue.release_and_drain_next(ask.recipient)
        except Exception as e:
            logger.error("reply_drain_failed", ask_id=ask.id, error=str(e))

        if ask.reply == ReplyCode.YES:
            if ask.kind == AskKind.AVAILABILITY:
                try:
                    await self.badges.rebuild(ask.act_id, ask.date_iso)
                except Exception as e:
                    logger.error("reply_badge_rebuild_failed", ask_id=ask.id, error=str(e))
            if self.calendar is not None:
                self._spawn(self._invite_to_calendar(ask))
            return

        try:
            outcome = await self.deputies.escalate(ask)
            logger.info("reply_escalation", ask_id=ask.id, status=outcome.status,
                        next_ask_id=outcome.ask_id)
        except Exception as e:
            logger.error("reply_escalation_failed", ask_id=ask.id, error=str(e))

    async def _invite_to_calendar(self, ask: AvailabilityRequest):
        try:
            act = await self.store.get_act(ask.act_id)
            person = find_person(act, ask)
            email = person.email if person else ""
            await self.calendar.add_attendee(ask.act_id, ask.date_iso, email, ask.musician_name)
        except Exception as e:
            logger.warning("calendar_invite_failed", ask_id=ask.id, error=str(e))

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self):
        """Wait for fire-and-forget side effects (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
