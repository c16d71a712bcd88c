"""
InMemoryAvailabilityStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlAvailabilityStore
  - Conditional writes are atomic: no await between check and set
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import itertools
import structlog
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from core.errors import ConcurrencyError, DuplicateError
from database.store_base import BaseAvailabilityStore
from models.schemas import Act, AvailabilityRequest, Badge, InboundReceipt, Lease, QueueItem, utcnow

logger = structlog.get_logger()


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def guard_matches(record: Any, where: Optional[dict[str, Any]]) -> bool:
    """Evaluate an update guard against a model instance."""
    for field_name, expected in (where or {}).items():
        actual = _plain(getattr(record, field_name))
        if expected is None:
            if actual is not None:
                return False
        elif isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in {_plain(e) for e in expected}:
                return False
        elif actual != _plain(expected):
            return False
    return True


def badge_key(act_id: str, date_iso: str) -> str:
    return f"{act_id}:{date_iso}"


class InMemoryAvailabilityStore(BaseAvailabilityStore):
    """
    Full-featured in-memory store with the same interface as SqlAvailabilityStore.
    Returns pydantic models; stored values are never handed out by reference.
    """

    def __init__(self):
        self._acts: dict[str, Act] = {}                         # act_id → act
        self._asks: dict[str, AvailabilityRequest] = {}         # ask_id → ask
        self._queue: dict[str, QueueItem] = {}                  # item_id → item
        self._leases: dict[str, Lease] = {}                     # key → lease
        self._badges: dict[str, Badge] = {}                     # "act:date" → badge
        self._receipts: dict[str, InboundReceipt] = {}          # receipt key → receipt

        # Indexes
        self._ask_key_index: dict[tuple, str] = {}              # natural key → ask_id
        self._dedupe_index: dict[str, str] = {}                 # dedupe key → item_id
        self._seq = itertools.count(1)
        logger.info("inmemory_store_initialized")

    # ── Acts ──────────────────────────────────────────────

    async def get_act(self, act_id: str) -> Optional[Act]:
        act = self._acts.get(act_id)
        return act.model_copy(deep=True) if act else None

    async def upsert_act(self, act: Act) -> Act:
        existing = self._acts.get(act.id)
        stored = act.model_copy(deep=True, update={"updated_at": utcnow()})
        if existing:
            stored.created_at = existing.created_at
        self._acts[act.id] = stored
        return stored.model_copy(deep=True)

    # ── Availability requests ─────────────────────────────

    async def get_ask(self, ask_id: str) -> Optional[AvailabilityRequest]:
        ask = self._asks.get(ask_id)
        return ask.model_copy(deep=True) if ask else None

    async def find_ask_by_key(self, act_id, lineup_id, date_iso, recipient, slot_index, kind):
        ask_id = self._ask_key_index.get((act_id, lineup_id, date_iso, recipient, slot_index, _plain(kind)))
        return await self.get_ask(ask_id) if ask_id else None

    async def insert_ask(self, ask: AvailabilityRequest) -> AvailabilityRequest:
        key = ask.natural_key
        if key in self._ask_key_index:
            raise DuplicateError(f"ask already exists for {key}")
        stored = ask.model_copy(deep=True)
        self._asks[stored.id] = stored
        self._ask_key_index[key] = stored.id
        return stored.model_copy(deep=True)

    async def update_ask(self, ask_id, changes, where=None):
        current = self._asks.get(ask_id)
        if current is None or not guard_matches(current, where):
            return None
        data = current.model_dump()
        data.update(changes)
        data["version"] = current.version + 1
        data["updated_at"] = utcnow()
        updated = AvailabilityRequest.model_validate(data)
        self._asks[ask_id] = updated
        return updated.model_copy(deep=True)

    async def find_ask_by_correlation(self, correlation_id: str) -> Optional[AvailabilityRequest]:
        wanted = correlation_id.lower()
        for ask in self._asks.values():
            if ask.correlation_id.lower() == wanted:
                return ask.model_copy(deep=True)
        return None

    async def find_ask_by_handle(self, handle: str) -> Optional[AvailabilityRequest]:
        for ask in self._asks.values():
            if handle and handle in (ask.message_handle, ask.fallback_handle):
                return ask.model_copy(deep=True)
        return None

    async def find_open_asks(self, recipients, kind=None):
        wanted = set(recipients)
        matches = [
            a for a in self._asks.values()
            if a.recipient in wanted and a.is_active and (kind is None or a.kind.value == _plain(kind))
        ]
        matches.sort(key=lambda a: a.asked_at, reverse=True)
        return [a.model_copy(deep=True) for a in matches]

    async def list_asks(self, act_id, date_iso, lineup_id=None):
        matches = [
            a for a in self._asks.values()
            if a.act_id == act_id and a.date_iso == date_iso
            and (lineup_id is None or a.lineup_id == lineup_id)
        ]
        matches.sort(key=lambda a: (a.asked_at, a.created_at))
        return [a.model_copy(deep=True) for a in matches]

    async def list_pending_asks(self, limit: int = 200, after=None):
        pending = sorted((a for a in self._asks.values() if a.is_active), key=lambda a: (a.asked_at, a.id))
        if after is not None:
            pending = [a for a in pending if (a.asked_at, a.id) > after]
        return [a.model_copy(deep=True) for a in pending[:limit]]

    async def distinct_recipients(self, act_id, lineup_id, date_iso):
        return {
            a.recipient for a in self._asks.values()
            if a.act_id == act_id and a.lineup_id == lineup_id and a.date_iso == date_iso
        }

    # ── Outbound queue ────────────────────────────────────

    async def insert_queue_item(self, item: QueueItem) -> bool:
        if item.dedupe_key in self._dedupe_index:
            return False
        stored = item.model_copy(deep=True, update={"seq": next(self._seq)})
        self._queue[stored.id] = stored
        self._dedupe_index[stored.dedupe_key] = stored.id
        return True

    async def oldest_queue_item(self, recipient: str) -> Optional[QueueItem]:
        items = [i for i in self._queue.values() if i.recipient == recipient]
        if not items:
            return None
        oldest = min(items, key=lambda i: (i.inserted_at, i.seq))
        return oldest.model_copy(deep=True)

    async def delete_queue_item(self, item_id: str) -> bool:
        item = self._queue.pop(item_id, None)
        if item is None:
            return False
        self._dedupe_index.pop(item.dedupe_key, None)
        return True

    async def count_queue_items(self, recipient: Optional[str] = None) -> int:
        if recipient is None:
            return len(self._queue)
        return sum(1 for i in self._queue.values() if i.recipient == recipient)

    # ── Leases ────────────────────────────────────────────

    async def acquire_lease(self, key, owner, ttl_seconds, now):
        current = self._leases.get(key)
        if current and current.owner != owner and current.expires_at > now:
            return False
        self._leases[key] = Lease(key=key, owner=owner, expires_at=now + timedelta(seconds=ttl_seconds))
        return True

    async def release_lease(self, key, owner):
        current = self._leases.get(key)
        if current is None or current.owner != owner:
            return False
        del self._leases[key]
        return True

    async def get_lease(self, key):
        lease = self._leases.get(key)
        return lease.model_copy() if lease else None

    # ── Badges ────────────────────────────────────────────

    async def get_badge(self, act_id, date_iso):
        badge = self._badges.get(badge_key(act_id, date_iso))
        return badge.model_copy(deep=True) if badge else None

    async def save_badge(self, badge: Badge, expected_version: int) -> Badge:
        key = badge_key(badge.act_id, badge.date_iso)
        current = self._badges.get(key)
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise ConcurrencyError(
                f"badge {key} at version {current_version}, expected {expected_version}")
        stored = badge.model_copy(deep=True, update={"version": current_version + 1})
        self._badges[key] = stored
        return stored.model_copy(deep=True)

    # ── Inbound receipts ──────────────────────────────────

    async def record_inbound_receipt(self, key, now, ttl_seconds=None):
        stale = [k for k, r in self._receipts.items() if r.expires_at is not None and r.expires_at <= now]
        for k in stale:
            del self._receipts[k]
        if key in self._receipts:
            return False
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None
        self._receipts[key] = InboundReceipt(key=key, expires_at=expires_at)
        return True

    # ── Stats (for testing/debugging) ─────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "acts": len(self._acts),
            "asks": len(self._asks),
            "queue_items": len(self._queue),
            "leases": len(self._leases),
            "badges": len(self._badges),
        }
