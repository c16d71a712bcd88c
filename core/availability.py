"""
Availability Service — creation and every guarded transition of an ask.

Provides:
- upsert_ask: idempotent creation keyed by (act, lineup, date, recipient, slot, kind)
- payload_for: the outbound queue payload (template variables + SMS text) for an ask
- record_send: delivery state after the queue sent (or failed to send) an ask
- apply_delivery_status: provider status callbacks, with one SMS compensation
- apply_reply / claim_* / mark_escalated: reply and escalation markers
- cancel_ask

All writes go through `store.update_ask(..., where=...)`; a None return means
another writer got there first and the caller treats it as a no-op.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Callable, Optional

from channels.gateway import ChannelGateway
from core.errors import DuplicateError
from core.state_machine import (
    FAILURE_STATES, allowed_predecessors, map_provider_status, reply_guard,
)
from database.store_base import BaseAvailabilityStore
from models.schemas import (
    AskKind, AvailabilityRequest, ChannelState, ChannelType, DeliveryStatusUpdate,
    InboundInfo, MessageKind, QueueItem, QueuePayload, ReplyCode, SendResult, short_code, utcnow,
)
from utils import formatting

logger = structlog.get_logger()

_ASK_MESSAGE_KINDS = (MessageKind.AVAILABILITY, MessageKind.BOOKING)


class AvailabilityService:
    """Owns AvailabilityRequest state; everything else asks it to move."""

    def __init__(
        self,
        store: BaseAvailabilityStore,
        gateway: ChannelGateway,
        content_sids: Optional[dict[str, str]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.content_sids = content_sids or {}
        self.clock = clock

    # ── Creation ──────────────────────────────────────────────

    async def upsert_ask(self, ask: AvailabilityRequest) -> tuple[AvailabilityRequest, bool]:
        """
        Create the ask unless one already exists for its natural key.

        Returns (ask, created). An active ask, or one that already has a real
        reply, is returned untouched. A cancelled or timed-out record is
        reopened for a new round.
        """
        existing = await self.store.find_ask_by_key(*ask.natural_key)
        if existing is None:
            if not ask.fallback_text:
                ask = ask.model_copy(update={"fallback_text": self.render_text(ask)})
            try:
                inserted = await self.store.insert_ask(ask)
                logger.info("ask_created", ask_id=inserted.id, recipient=inserted.recipient,
                            kind=inserted.kind.value, is_deputy=inserted.is_deputy)
                return inserted, True
            except DuplicateError:
                existing = await self.store.find_ask_by_key(*ask.natural_key)
                logger.info("ask_create_raced", recipient=ask.recipient, act_id=ask.act_id)
                return existing, False

        reopenable = existing.cancelled_at is not None or existing.reply == ReplyCode.NO_RESPONSE
        if existing.is_active or not reopenable:
            return existing, False

        now = self.clock()
        correlation_id = short_code()
        fresh = ask.model_copy(update={"correlation_id": correlation_id})
        reopened = await self.store.update_ask(existing.id, {
            "reply": None, "replied_at": None, "inbound": None,
            "reminder_sent_at": None, "chase_sent_at": None,
            "auto_escalated_at": None, "cancelled_at": None,
            "channel_state": ChannelState.QUEUED, "channel": None,
            "message_handle": None, "fallback_handle": None, "fallback_sent_at": None,
            "fee": ask.fee, "fallback_text": self.render_text(fresh),
            "correlation_id": correlation_id,
            "asked_at": now, "ask_count": existing.ask_count + 1,
        }, where={"version": existing.version})
        if reopened is None:
            return await self.store.get_ask(existing.id), False
        logger.info("ask_reopened", ask_id=reopened.id, ask_count=reopened.ask_count)
        return reopened, True

    def render_text(self, ask: AvailabilityRequest) -> str:
        """Plain-text rendering of the ask, used as the SMS fallback."""
        area = ask.address_short or ask.venue_address
        if ask.kind == AskKind.BOOKING:
            return formatting.booking_text(ask.musician_name, ask.formatted_date, area,
                                           ask.act_name, ask.fee, ask.correlation_id)
        variables = formatting.availability_variables(
            ask.musician_name, ask.formatted_date, area, ask.fee, ask.duty_role, ask.act_name,
            ask.correlation_id)
        return formatting.availability_text(variables, ask.correlation_id)

    def payload_for(self, ask: AvailabilityRequest) -> QueuePayload:
        """Queue payload carrying both the template variables and the SMS text."""
        area = ask.address_short or ask.venue_address
        if ask.kind == AskKind.BOOKING:
            variables = {
                "1": formatting.first_name(ask.musician_name), "2": ask.formatted_date,
                "3": area, "4": formatting.sanitize_fee(ask.fee), "5": ask.act_name,
                "6": ask.correlation_id,
            }
        else:
            variables = formatting.availability_variables(
                ask.musician_name, ask.formatted_date, area, ask.fee, ask.duty_role, ask.act_name,
                ask.correlation_id)
        return QueuePayload(
            template_id=self.content_sids.get(ask.kind.value, ""),
            variables=variables,
            fallback_text=ask.fallback_text or self.render_text(ask),
            ask_id=ask.id,
            act_id=ask.act_id,
            date_iso=ask.date_iso,
            address_short=ask.address_short,
        )

    # ── Delivery ──────────────────────────────────────────────

    async def record_send(self, item: QueueItem, result: SendResult) -> Optional[AvailabilityRequest]:
        """Queue hook: reflect a send attempt onto the ask it belongs to."""
        if item.kind not in _ASK_MESSAGE_KINDS or not item.payload.ask_id:
            return None
        ask_id = item.payload.ask_id

        if result.status != "sent":
            updated = await self.store.update_ask(
                ask_id, {"channel_state": ChannelState.FAILED},
                where={"channel_state": allowed_predecessors(ChannelState.FAILED)},
            )
            logger.warning("ask_send_failed", ask_id=ask_id, error=result.error)
            return updated

        changes = {"channel_state": ChannelState.SENT, "channel": result.channel}
        if result.channel == ChannelType.WHATSAPP:
            changes["message_handle"] = result.handle
        else:
            changes["fallback_handle"] = result.handle
            changes["fallback_sent_at"] = self.clock()
        return await self.store.update_ask(
            ask_id, changes, where={"channel_state": allowed_predecessors(ChannelState.SENT)})

    async def apply_delivery_status(self, update: DeliveryStatusUpdate) -> Optional[AvailabilityRequest]:
        target = map_provider_status(update.status)
        if target is None:
            logger.debug("delivery_status_ignored", handle=update.handle, status=update.status)
            return None
        ask = await self.store.find_ask_by_handle(update.handle)
        if ask is None:
            logger.debug("delivery_status_unmatched", handle=update.handle, status=update.status)
            return None

        via_fallback = update.handle == ask.fallback_handle
        if not via_fallback and ask.channel == ChannelType.SMS and ask.fallback_handle:
            logger.debug("delivery_status_superseded", ask_id=ask.id, handle=update.handle,
                         status=update.status)
            return None
        if (target in FAILURE_STATES and not via_fallback
                and ask.channel == ChannelType.WHATSAPP and ask.reply is None):
            return await self._compensate_with_fallback(ask, target)

        updated = await self.store.update_ask(
            ask.id, {"channel_state": target},
            where={"channel_state": allowed_predecessors(target, via_fallback)},
        )
        if updated is not None:
            logger.info("delivery_state_changed", ask_id=ask.id, state=target.value,
                        via_fallback=via_fallback)
        return updated

    async def _compensate_with_fallback(self, ask: AvailabilityRequest,
                                        failure: ChannelState) -> Optional[AvailabilityRequest]:
        """One SMS retry for a WhatsApp ask the provider could not deliver."""
        claimed = await self.store.update_ask(
            ask.id,
            {"channel_state": failure, "fallback_sent_at": self.clock()},
            where={"fallback_sent_at": None,
                   "channel_state": allowed_predecessors(failure)},
        )
        if claimed is None:
            return None
        text = ask.fallback_text or self.render_text(ask)
        result = await self.gateway.send_fallback(ask.recipient, text)
        if result.status != "sent":
            logger.warning("fallback_compensation_failed", ask_id=ask.id, error=result.error)
            return claimed
        logger.info("fallback_compensation_sent", ask_id=ask.id, handle=result.handle)
        return await self.store.update_ask(
            ask.id,
            {"channel_state": ChannelState.SENT, "channel": ChannelType.SMS,
             "fallback_handle": result.handle},
            where={"channel_state": allowed_predecessors(ChannelState.SENT, via_fallback=True)},
        )

    # ── Replies ───────────────────────────────────────────────

    async def apply_reply(self, ask: AvailabilityRequest, code: ReplyCode,
                          inbound: Optional[InboundInfo] = None) -> Optional[AvailabilityRequest]:
        """Set the reply if none is recorded yet. None means the ask was already settled."""
        updated = await self.store.update_ask(
            ask.id,
            {"reply": code, "replied_at": self.clock(), "inbound": inbound},
            where=reply_guard(),
        )
        if updated is not None:
            logger.info("reply_applied", ask_id=ask.id, reply=code.value, recipient=ask.recipient)
        return updated

    async def cancel_ask(self, ask_id: str) -> Optional[AvailabilityRequest]:
        updated = await self.store.update_ask(
            ask_id, {"cancelled_at": self.clock()},
            where={"reply": None, "cancelled_at": None},
        )
        if updated is not None:
            logger.info("ask_cancelled", ask_id=ask_id)
        return updated

    # ── Escalation markers ────────────────────────────────────

    async def claim_reminder(self, ask: AvailabilityRequest) -> Optional[AvailabilityRequest]:
        return await self.store.update_ask(
            ask.id, {"reminder_sent_at": self.clock()},
            where={"reply": None, "cancelled_at": None,
                   "auto_escalated_at": None, "reminder_sent_at": None},
        )

    async def claim_chase(self, ask: AvailabilityRequest) -> Optional[AvailabilityRequest]:
        return await self.store.update_ask(
            ask.id, {"chase_sent_at": self.clock()},
            where={"reply": None, "cancelled_at": None,
                   "auto_escalated_at": None, "chase_sent_at": None},
        )

    async def claim_no_response(self, ask: AvailabilityRequest) -> Optional[AvailabilityRequest]:
        now = self.clock()
        return await self.store.update_ask(
            ask.id, {"reply": ReplyCode.NO_RESPONSE, "auto_escalated_at": now},
            where={"reply": None, "cancelled_at": None, "auto_escalated_at": None},
        )

    async def mark_escalated(self, ask: AvailabilityRequest) -> Optional[AvailabilityRequest]:
        return await self.store.update_ask(
            ask.id, {"auto_escalated_at": self.clock()}, where={"auto_escalated_at": None})
