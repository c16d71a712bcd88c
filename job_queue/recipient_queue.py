"""
Recipient Queue — per-recipient FIFO of outbound messages with one send in flight.

Queue topology:
  one logical queue per recipient, ordered by (inserted_at, seq), stored in
  the availability store so every engine instance sees the same items.

Item lifecycle:
  enqueue  → insert-if-absent on dedupe key (recipient|kind|act|date|address)
  drain    → lease recipient → pop oldest → gateway send → delete item →
             report result → release lease → repeat until empty
  Failed sends are removed too: each item is attempted at most once and
  recovery belongs to the escalation sweep.

Usage:
    queue = RecipientQueue(store, gateway, locks, on_sent=availability.record_send)
    result = await queue.enqueue("+447700900123", MessageKind.AVAILABILITY, payload)
    await queue.drain("+447700900123")
"""
from __future__ import annotations

import uuid
import structlog
from datetime import datetime
from typing import Awaitable, Callable, Optional

from channels.gateway import ChannelGateway
from database.store_base import BaseAvailabilityStore
from job_queue.locks import LeaseLock, recipient_lock_key
from models.schemas import EnqueueResult, MessageKind, QueueItem, QueuePayload, SendResult, utcnow
from utils.phone import to_e164

logger = structlog.get_logger()

SendHook = Callable[[QueueItem, SendResult], Awaitable[None]]


def make_dedupe_key(recipient: str, kind: MessageKind, act_id: str, date_iso: str, address_short: str) -> str:
    return "|".join([recipient, kind.value, act_id, date_iso, address_short])


class RecipientQueue:
    """
    Serialises outbound sends per recipient.

    At most one drain per recipient holds the lease at a time; a drain that
    finds the lease taken returns immediately and leaves the items for the
    holder, which keeps looping until the queue is empty.
    """

    def __init__(
        self,
        store: BaseAvailabilityStore,
        gateway: ChannelGateway,
        locks: LeaseLock,
        lease_ttl_seconds: float = 120,
        on_sent: Optional[SendHook] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.locks = locks
        self.lease_ttl_seconds = lease_ttl_seconds
        self.on_sent = on_sent
        self.clock = clock

    # ── Enqueue ───────────────────────────────────────────────

    async def enqueue(self, recipient: str, kind: MessageKind, payload: QueuePayload) -> EnqueueResult:
        canonical = to_e164(recipient)
        if canonical is None:
            logger.warning("enqueue_invalid_recipient", recipient=recipient, kind=kind.value)
            return EnqueueResult(enqueued=False, skipped_reason="invalid")
        if not payload.act_id or not payload.date_iso:
            logger.warning("enqueue_missing_keys", recipient=canonical, kind=kind.value)
            return EnqueueResult(enqueued=False, skipped_reason="missing_keys")

        item = QueueItem(
            recipient=canonical,
            kind=kind,
            payload=payload,
            dedupe_key=make_dedupe_key(canonical, kind, payload.act_id,
                                       payload.date_iso, payload.address_short),
            inserted_at=self.clock(),
        )
        if not await self.store.insert_queue_item(item):
            logger.info("enqueue_duplicate", recipient=canonical, kind=kind.value,
                        dedupe_key=item.dedupe_key)
            return EnqueueResult(enqueued=False, skipped_reason="duplicate")

        logger.info("enqueued", recipient=canonical, kind=kind.value, item_id=item.id)
        return EnqueueResult(enqueued=True, item_id=item.id)

    # ── Drain ─────────────────────────────────────────────────

    async def drain(self, recipient: str) -> int:
        """Send everything queued for `recipient`. Returns the number of items processed."""
        canonical = to_e164(recipient) or recipient
        key = recipient_lock_key(canonical)
        owner = uuid.uuid4().hex
        processed = 0

        while True:
            if not await self.locks.acquire(key, owner, self.lease_ttl_seconds, self.clock()):
                logger.debug("drain_skipped_locked", recipient=canonical)
                return processed
            try:
                item = await self.store.oldest_queue_item(canonical)
                if item is not None:
                    await self._deliver(item)
                    processed += 1
            finally:
                await self.locks.release(key, owner)
            # an item enqueued while we held the lease was skipped by its own drain
            if item is None and await self.store.count_queue_items(canonical) == 0:
                return processed

    async def release_and_drain_next(self, recipient: str) -> int:
        """
        Unblock a recipient after a reply or reminder and send what is queued.

        A stale lease left by a crashed drain is reclaimed by the TTL; a live
        one belongs to a drain that will pick up the remaining items itself.
        """
        canonical = to_e164(recipient) or recipient
        lease = await self.locks.get(recipient_lock_key(canonical))
        if lease and lease.expires_at > self.clock():
            logger.debug("release_deferred_to_active_drain", recipient=canonical, owner=lease.owner)
            return 0
        return await self.drain(canonical)

    async def _deliver(self, item: QueueItem) -> SendResult:
        payload = item.payload
        result = await self.gateway.send(
            item.recipient,
            template_id=payload.template_id,
            variables=payload.variables,
            fallback_text=payload.fallback_text,
            body=payload.body,
        )
        await self.store.delete_queue_item(item.id)
        logger.info("queue_item_sent", recipient=item.recipient, kind=item.kind.value,
                    status=result.status, channel=result.channel.value if result.channel else None,
                    handle=result.handle)

        if self.on_sent is not None:
            try:
                await self.on_sent(item, result)
            except Exception as e:
                logger.error("send_hook_failed", item_id=item.id, error=str(e))
        return result

    async def pending(self, recipient: Optional[str] = None) -> int:
        return await self.store.count_queue_items(to_e164(recipient) if recipient else None)
