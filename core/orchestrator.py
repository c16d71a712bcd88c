"""
Allocation Engine — the facade every entry point (API, scripts, tests) talks to.

Architecture:
  Outbound: request_availability / request_booking
            → upsert one ask per selected lineup member (dedupe on natural key)
            → recipient queue enqueue → drain → channel gateway
            → delivery state recorded on the ask

  Inbound:  Twilio inbound webhook → ReplyIngestion → reply on the ask
            → badge rebuild (YES) or deputy escalation (NO / UNAVAILABLE)

  Status:   Twilio status webhook → delivery state, one SMS compensation
            for an undeliverable WhatsApp ask

  Periodic: EscalationScheduler sweep → reminder / chase / timeout + deputy

Outbound-triggering operations return an OperationResult with a reason code
instead of raising: "invalid", "not_found", "requested", "duplicate".
"""
from __future__ import annotations

import structlog
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Callable, Optional, Union

from backend.calendar import CalendarProvider, create_calendar_provider
from channels.base import ChannelRegistry
from channels.gateway import ChannelGateway
from channels.sms_adapter import SMSAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import Settings, get_settings
from core.availability import AvailabilityService
from core.badges import BadgeAggregator
from core.deputies import DeputyResolver
from core.errors import AllocationError, NotFoundError, ValidationError
from core.escalation import EscalationScheduler
from core.replies import ReplyIngestion
from database.store_base import BaseAvailabilityStore
from database.store_factory import create_store
from job_queue.locks import LeaseLock, create_lock_backend
from job_queue.recipient_queue import RecipientQueue
from models.schemas import (
    Act, AskKind, AvailabilityRequest, Badge, LineupMember, MessageKind,
    OperationResult, SweepReport, utcnow,
)
from utils.formatting import format_date_with_ordinal, is_lead_role, short_address
from utils.phone import to_e164

logger = structlog.get_logger()

ALL_ROLES = "*"


def channel_configs(settings: Settings) -> dict[str, dict[str, Any]]:
    """Per-channel adapter config: shared Twilio credentials plus channel overrides."""
    shared = asdict(settings.twilio)
    configs = {}
    for name in ("whatsapp", "sms"):
        channel = settings.channels.get(name)
        if channel is not None and not channel.enabled:
            continue
        configs[name] = {**shared, **(channel.credentials if channel else {})}
    return configs


class AllocationEngine:
    """
    Wires the allocation components together and exposes the operations.

    Construct with `build_engine()` for the configured stack, or directly
    with a store and channel registry (tests inject in-memory doubles).
    """

    def __init__(
        self,
        store: BaseAvailabilityStore,
        registry: ChannelRegistry,
        settings: Settings = None,
        locks: Optional[LeaseLock] = None,
        calendar: Optional[CalendarProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.registry = registry
        self.clock = clock

        self.gateway = ChannelGateway(registry)
        self.locks = locks or create_lock_backend(asdict(self.settings.locks), store)
        self.calendar = calendar or create_calendar_provider(self.settings.calendar)
        self.availability = AvailabilityService(
            store, self.gateway, content_sids=self.settings.twilio.content_sids, clock=clock,
        )
        self.queue = RecipientQueue(
            store, self.gateway, self.locks,
            lease_ttl_seconds=self.settings.locks.lease_ttl_seconds,
            on_sent=self.availability.record_send,
            clock=clock,
        )
        self.badges = BadgeAggregator(
            store,
            public_site_url=self.settings.public_site_url,
            max_deputies=self.settings.badge.max_deputies,
            lead_roles=self.settings.badge.lead_roles,
        )
        self.deputies = DeputyResolver(store, self.availability, self.queue, clock=clock)
        self.replies = ReplyIngestion(
            store, self.gateway, self.availability, self.queue,
            self.badges, self.deputies, calendar=self.calendar, clock=clock,
        )
        self.scheduler = EscalationScheduler(
            store, self.availability, self.queue, self.deputies, self.badges,
            config=self.settings.escalation, clock=clock,
        )

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def start(self, run_scheduler: bool = True) -> None:
        if self.settings.database.store_backend == "sql":
            from database.session import init_db
            await init_db()
        await self.registry.initialize_all(channel_configs(self.settings))
        if run_scheduler and self.settings.escalation.enabled:
            await self.scheduler.start()
        logger.info("allocation_engine_started",
                    store=type(self.store).__name__,
                    channels=[c.value for c in self.registry.get_available()])

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.replies.wait_background()
        await self.registry.shutdown_all()
        await self.locks.close()
        await self.calendar.close()
        if self.settings.database.store_backend == "sql":
            from database.session import close_db
            await close_db()
        elif hasattr(self.store, "flush_all"):
            self.store.flush_all()
        logger.info("allocation_engine_stopped")

    # ══════════════════════════════════════════════════════════
    #  ACT DIRECTORY
    # ══════════════════════════════════════════════════════════

    async def upsert_act(self, act: Act) -> Act:
        return await self.store.upsert_act(act)

    async def _load_lineup(self, act_id: str, lineup_id: str):
        act = await self.store.get_act(act_id)
        if act is None:
            raise NotFoundError(f"act {act_id} not found")
        lineup = act.get_lineup(lineup_id)
        if lineup is None:
            raise NotFoundError(f"lineup {lineup_id} not found on act {act_id}")
        return act, lineup

    # ══════════════════════════════════════════════════════════
    #  OUTBOUND — availability and booking requests
    # ══════════════════════════════════════════════════════════

    async def request_availability(
        self,
        act_id: str,
        lineup_id: str,
        date_iso: str,
        address: str,
        role_filter: Union[str, list[str], None] = None,
        fee: Optional[str] = None,
    ) -> OperationResult:
        """
        Ask the lineup members in `role_filter` (default: lead vocal roles)
        whether they are free on `date_iso`. A member with an open ask for
        the same slot is not asked again.
        """
        return await self._request(AskKind.AVAILABILITY, act_id, lineup_id, date_iso,
                                   address, role_filter, fee)

    async def request_booking(
        self,
        act_id: str,
        lineup_id: str,
        date_iso: str,
        address: str,
        fee: Optional[str] = None,
        role_filter: Union[str, list[str], None] = ALL_ROLES,
    ) -> OperationResult:
        """Ask every lineup member (by default) to confirm a booked date."""
        return await self._request(AskKind.BOOKING, act_id, lineup_id, date_iso,
                                   address, role_filter, fee)

    def _validate(self, act_id: str, date_iso: str, address: str) -> None:
        if not act_id or not date_iso or not address:
            raise ValidationError("act_id, date_iso and address are required")
        try:
            date.fromisoformat(date_iso)
        except ValueError:
            raise ValidationError(f"date_iso must be YYYY-MM-DD, got {date_iso!r}")

    def _select_members(self, members: list[LineupMember],
                        role_filter: Union[str, list[str], None]) -> list[tuple[int, LineupMember]]:
        if role_filter is None:
            roles = self.settings.badge.lead_roles
        elif isinstance(role_filter, str):
            roles = [role_filter]
        else:
            roles = list(role_filter)
        if ALL_ROLES in roles:
            return list(enumerate(members))
        return [(i, m) for i, m in enumerate(members)
                if is_lead_role(m.duty_role, roles) or is_lead_role(m.instrument, roles)]

    async def _request(self, kind: AskKind, act_id: str, lineup_id: str, date_iso: str,
                       address: str, role_filter, fee: Optional[str]) -> OperationResult:
        try:
            self._validate(act_id, date_iso, address)
            act, lineup = await self._load_lineup(act_id, lineup_id)
            selected = self._select_members(lineup.members, role_filter)
            if not selected:
                raise NotFoundError(f"no member of lineup {lineup_id} matches {role_filter!r}")
        except AllocationError as e:
            logger.warning("request_rejected", kind=kind.value, act_id=act_id,
                           date_iso=date_iso, reason=e.reason, error=str(e))
            return OperationResult(success=False, reason=e.reason, details={"error": str(e)})

        now = self.clock()
        formatted_date = format_date_with_ordinal(date_iso)
        area = short_address(address)
        entries = []

        for slot_index, member in selected:
            phone = to_e164(member.phone)
            if phone is None:
                logger.warning("member_phone_invalid", act_id=act_id,
                               member=member.display_name, phone=member.phone)
                entries.append({"member": member.display_name, "created": False,
                                "skipped_reason": "invalid"})
                continue

            ask = AvailabilityRequest(
                kind=kind,
                act_id=act_id,
                act_name=act.name,
                lineup_id=lineup_id,
                recipient=phone,
                musician_id=member.musician_id,
                musician_name=member.display_name,
                duty_role=member.duty_role or member.instrument,
                date_iso=date_iso,
                formatted_date=formatted_date,
                venue_address=address,
                address_short=area,
                fee=fee if fee is not None else member.fee,
                slot_index=slot_index,
                asked_at=now,
                created_at=now,
                updated_at=now,
            )
            ask, created = await self.availability.upsert_ask(ask)
            entry = {"ask_id": ask.id, "recipient": phone, "created": created}
            if created:
                enqueued = await self.queue.enqueue(phone, MessageKind(kind.value),
                                                    self.availability.payload_for(ask))
                entry["enqueued"] = enqueued.enqueued
                if enqueued.skipped_reason:
                    entry["skipped_reason"] = enqueued.skipped_reason
                await self.queue.drain(phone)
            entries.append(entry)

        created_count = sum(1 for e in entries if e.get("created"))
        logger.info("request_processed", kind=kind.value, act_id=act_id, date_iso=date_iso,
                    members=len(selected), created=created_count)
        return OperationResult(
            success=True,
            reason="requested" if created_count else "duplicate",
            details={"asks": entries, "created": created_count},
        )

    async def cancel_ask(self, ask_id: str) -> OperationResult:
        ask = await self.store.get_ask(ask_id)
        if ask is None:
            return OperationResult(success=False, reason="not_found")
        cancelled = await self.availability.cancel_ask(ask_id)
        if cancelled is None:
            return OperationResult(success=False, reason="already_settled",
                                   details={"reply": ask.reply.value if ask.reply else None})
        return OperationResult(success=True, reason="cancelled", details={"ask_id": ask_id})

    # ══════════════════════════════════════════════════════════
    #  INBOUND — replies and delivery status
    # ══════════════════════════════════════════════════════════

    async def ingest_inbound_reply(self, raw_payload: dict[str, Any]) -> OperationResult:
        return await self.replies.ingest(raw_payload)

    async def apply_delivery_status(self, raw_payload: dict[str, Any]) -> OperationResult:
        update = self.gateway.parse_status(raw_payload)
        if update is None:
            return OperationResult(success=True, reason="ignored")
        ask = await self.availability.apply_delivery_status(update)
        if ask is None:
            return OperationResult(success=True, reason="unchanged", details={"handle": update.handle})
        return OperationResult(success=True, reason="applied",
                               details={"ask_id": ask.id, "channel_state": ask.channel_state.value})

    # ══════════════════════════════════════════════════════════
    #  BADGES & ESCALATION
    # ══════════════════════════════════════════════════════════

    async def get_badge(self, act_id: str, date_iso: str) -> Badge:
        return await self.badges.get(act_id, date_iso)

    async def force_rebuild_badge(self, act_id: str, date_iso: str) -> Badge:
        return await self.badges.rebuild(act_id, date_iso)

    async def run_escalation_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return await self.scheduler.run_sweep(now)


def build_engine(settings: Settings = None) -> AllocationEngine:
    """Factory: the engine for the configured store, channels and calendar."""
    settings = settings or get_settings()
    store = create_store(asdict(settings.database))
    registry = ChannelRegistry()
    enabled = channel_configs(settings)
    if "whatsapp" in enabled:
        registry.register(WhatsAppAdapter())
    if "sms" in enabled:
        registry.register(SMSAdapter())
    return AllocationEngine(store, registry, settings=settings)
