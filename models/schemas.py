"""
Core data models for the allocation engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def short_code() -> str:
    return secrets.token_hex(4)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    SMS = "sms"


class ChannelState(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    UNDELIVERED = "undelivered"
    FAILED = "failed"


class ReplyCode(str, Enum):
    YES = "yes"
    NO = "no"
    UNAVAILABLE = "unavailable"
    NO_RESPONSE = "no_response"


class AskKind(str, Enum):
    AVAILABILITY = "availability"
    BOOKING = "booking"


class MessageKind(str, Enum):
    AVAILABILITY = "availability"
    BOOKING = "booking"
    REMINDER = "reminder"
    CHASE = "chase"
    COURTESY = "courtesy"


# ──────────────────────────────────────────────────────────────
#  Act directory — acts, lineups, members, deputies
# ──────────────────────────────────────────────────────────────

class Deputy(BaseModel):
    """A stand-in performer who can cover a lineup member's slot."""
    musician_id: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    email: str = ""
    photo_url: str = ""

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class LineupMember(BaseModel):
    musician_id: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    instrument: str = ""
    duty_role: str = ""                       # e.g. "Lead Vocal", "Drums"
    phone: str = ""
    email: str = ""
    photo_url: str = ""
    fee: Optional[str] = None                 # carried as given, never computed here
    deputies: list[Deputy] = []               # ordered; first is asked first

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Lineup(BaseModel):
    id: str
    name: str = ""
    members: list[LineupMember] = []


class Act(BaseModel):
    id: str
    name: str
    lineups: list[Lineup] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_lineup(self, lineup_id: str) -> Optional[Lineup]:
        for lineup in self.lineups:
            if lineup.id == lineup_id:
                return lineup
        return None


# ──────────────────────────────────────────────────────────────
#  Availability request — one outbound ask to one recipient
# ──────────────────────────────────────────────────────────────

class InboundInfo(BaseModel):
    """Raw trace of the reply that settled an ask."""
    provider_sid: str = ""
    body: str = ""
    button_payload: str = ""
    received_at: Optional[datetime] = None


class AvailabilityRequest(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: AskKind = AskKind.AVAILABILITY
    act_id: str
    act_name: str = ""
    lineup_id: str
    recipient: str                            # canonical E.164
    musician_id: Optional[str] = None
    musician_name: str = ""
    is_deputy: bool = False
    deputy_for: Optional[str] = None          # canonical phone of the covered member
    duty_role: str = ""
    date_iso: str                             # YYYY-MM-DD
    formatted_date: str = ""
    venue_address: str = ""
    address_short: str = ""
    fee: Optional[str] = None
    slot_index: int = 0
    correlation_id: str = Field(default_factory=short_code)

    # Delivery
    channel_state: ChannelState = ChannelState.QUEUED
    channel: Optional[ChannelType] = None
    message_handle: Optional[str] = None
    fallback_handle: Optional[str] = None
    fallback_text: str = ""
    fallback_sent_at: Optional[datetime] = None

    # Reply
    reply: Optional[ReplyCode] = None
    replied_at: Optional[datetime] = None
    inbound: Optional[InboundInfo] = None

    # Escalation markers
    reminder_sent_at: Optional[datetime] = None
    chase_sent_at: Optional[datetime] = None
    auto_escalated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    asked_at: datetime = Field(default_factory=utcnow)
    ask_count: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    @property
    def natural_key(self) -> tuple:
        return (self.act_id, self.lineup_id, self.date_iso,
                self.recipient, self.slot_index, self.kind.value)

    @property
    def is_active(self) -> bool:
        """Unreplied and not cancelled."""
        return self.reply is None and self.cancelled_at is None


# ──────────────────────────────────────────────────────────────
#  Outbound queue
# ──────────────────────────────────────────────────────────────

class QueuePayload(BaseModel):
    template_id: str = ""                     # provider content/template id; blank = free-form
    variables: dict[str, str] = {}
    body: str = ""                            # free-form primary text
    fallback_text: str = ""                   # pre-rendered SMS text
    ask_id: Optional[str] = None
    act_id: str = ""
    date_iso: str = ""
    address_short: str = ""


class QueueItem(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    recipient: str
    kind: MessageKind
    payload: QueuePayload
    dedupe_key: str
    inserted_at: datetime = Field(default_factory=utcnow)
    seq: int = 0


class EnqueueResult(BaseModel):
    enqueued: bool
    skipped_reason: Optional[str] = None      # "invalid" | "missing_keys" | "duplicate"
    item_id: Optional[str] = None


class Lease(BaseModel):
    key: str
    owner: str
    expires_at: datetime


class InboundReceipt(BaseModel):
    key: str
    expires_at: Optional[datetime] = None     # None: never expires


# ──────────────────────────────────────────────────────────────
#  Channel gateway results and webhooks
# ──────────────────────────────────────────────────────────────

class SendResult(BaseModel):
    handle: Optional[str] = None
    status: str = "sent"                      # "sent" | "failed"
    channel: Optional[ChannelType] = None
    error: str = ""


class InboundReply(BaseModel):
    """Normalised inbound message from any channel."""
    sender: str                               # raw address as the provider sent it
    body: str = ""
    button_payload: str = ""
    provider_sid: str = ""
    channel: ChannelType = ChannelType.SMS
    received_at: datetime = Field(default_factory=utcnow)
    raw: dict[str, Any] = {}


class DeliveryStatusUpdate(BaseModel):
    handle: str
    status: str                               # provider status string
    channel: ChannelType = ChannelType.WHATSAPP
    error_code: str = ""


# ──────────────────────────────────────────────────────────────
#  Badge — per (act, date) cached projection
# ──────────────────────────────────────────────────────────────

class BadgeEntry(BaseModel):
    musician_id: Optional[str] = None
    vocalist_name: str = ""
    photo_url: str = ""
    profile_url: str = ""
    set_at: Optional[datetime] = None


class Badge(BaseModel):
    act_id: str
    date_iso: str
    active: bool = False
    is_deputy: bool = False
    vocalist_name: str = ""
    musician_id: Optional[str] = None
    photo_url: str = ""
    profile_url: str = ""
    address: str = ""
    set_at: Optional[datetime] = None
    deputies: list[BadgeEntry] = []
    version: int = 0

    def same_projection(self, other: Optional["Badge"]) -> bool:
        if other is None:
            return False
        return self.model_dump(exclude={"version"}) == other.model_dump(exclude={"version"})


# ──────────────────────────────────────────────────────────────
#  Engine operation results
# ──────────────────────────────────────────────────────────────

class OperationResult(BaseModel):
    success: bool
    reason: str = ""
    details: dict[str, Any] = {}


class EscalationOutcome(BaseModel):
    status: str                               # "escalated" | "no_deputies" | "exhausted" | "not_found"
    ask_id: Optional[str] = None              # new deputy ask, when escalated
    recipient: Optional[str] = None


class SweepReport(BaseModel):
    scanned: int = 0
    reminders: int = 0
    chases: int = 0
    escalations: int = 0
    skipped_quiet_hours: int = 0
    badges_rebuilt: int = 0
