"""
Abstract Availability Store — Interface for all storage backends.

Implementations:
  - SqlAvailabilityStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryAvailabilityStore (dict-based, single-process, no persistence)
  - FileAvailabilityStore     (JSON files on disk, single-process, durable)

Every mutation of shared state is a conditional write: `update_ask` takes a
`where` guard, `insert_queue_item` is insert-if-absent on the dedupe key,
`acquire_lease` only succeeds on an absent or expired lease, and
`save_badge` checks the version it read. Callers never read-modify-write.

Guard semantics for `update_ask(..., where=...)`:
    {"reply": None}                       field IS NULL
    {"channel_state": ["queued", "sent"]} field IN (...)
    {"version": 3}                        field == value
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import Act, AvailabilityRequest, Badge, Lease, QueueItem


class BaseAvailabilityStore(ABC):
    """Interface that all availability store backends must implement."""

    # ── Acts ──────────────────────────────────────────────────

    @abstractmethod
    async def get_act(self, act_id: str) -> Optional[Act]:
        ...

    @abstractmethod
    async def upsert_act(self, act: Act) -> Act:
        ...

    # ── Availability requests ─────────────────────────────────

    @abstractmethod
    async def get_ask(self, ask_id: str) -> Optional[AvailabilityRequest]:
        ...

    @abstractmethod
    async def find_ask_by_key(self, act_id: str, lineup_id: str, date_iso: str,
                              recipient: str, slot_index: int, kind: str) -> Optional[AvailabilityRequest]:
        ...

    @abstractmethod
    async def insert_ask(self, ask: AvailabilityRequest) -> AvailabilityRequest:
        """Insert a new ask. Raises DuplicateError when the natural key exists."""
        ...

    @abstractmethod
    async def update_ask(self, ask_id: str, changes: dict[str, Any],
                         where: Optional[dict[str, Any]] = None) -> Optional[AvailabilityRequest]:
        """Apply `changes` only if `where` holds. Returns the updated ask, or None."""
        ...

    @abstractmethod
    async def find_ask_by_correlation(self, correlation_id: str) -> Optional[AvailabilityRequest]:
        ...

    @abstractmethod
    async def find_ask_by_handle(self, handle: str) -> Optional[AvailabilityRequest]:
        """Match either the primary or the fallback message handle."""
        ...

    @abstractmethod
    async def find_open_asks(self, recipients: list[str], kind: Optional[str] = None) -> list[AvailabilityRequest]:
        """Unreplied, non-cancelled asks for any of `recipients`, most recent first."""
        ...

    @abstractmethod
    async def list_asks(self, act_id: str, date_iso: str,
                        lineup_id: Optional[str] = None) -> list[AvailabilityRequest]:
        """All asks for an act/date, oldest first."""
        ...

    @abstractmethod
    async def list_pending_asks(self, limit: int = 200,
                                after: Optional[tuple[datetime, str]] = None) -> list[AvailabilityRequest]:
        """
        Unreplied, non-cancelled asks ordered by (asked_at, id). `after` is
        the (asked_at, id) of the last ask on the previous page.
        """
        ...

    @abstractmethod
    async def distinct_recipients(self, act_id: str, lineup_id: str, date_iso: str) -> set[str]:
        ...

    # ── Outbound queue ────────────────────────────────────────

    @abstractmethod
    async def insert_queue_item(self, item: QueueItem) -> bool:
        """Insert unless an item with the same dedupe key exists. True if inserted."""
        ...

    @abstractmethod
    async def oldest_queue_item(self, recipient: str) -> Optional[QueueItem]:
        ...

    @abstractmethod
    async def delete_queue_item(self, item_id: str) -> bool:
        ...

    @abstractmethod
    async def count_queue_items(self, recipient: Optional[str] = None) -> int:
        ...

    # ── Leases ────────────────────────────────────────────────

    @abstractmethod
    async def acquire_lease(self, key: str, owner: str, ttl_seconds: float, now: datetime) -> bool:
        """Take the lease if absent, expired, or already ours (renewal)."""
        ...

    @abstractmethod
    async def release_lease(self, key: str, owner: str) -> bool:
        ...

    @abstractmethod
    async def get_lease(self, key: str) -> Optional[Lease]:
        ...

    # ── Badges ────────────────────────────────────────────────

    @abstractmethod
    async def get_badge(self, act_id: str, date_iso: str) -> Optional[Badge]:
        ...

    @abstractmethod
    async def save_badge(self, badge: Badge, expected_version: int) -> Badge:
        """Write the badge if the stored version matches. Raises ConcurrencyError otherwise."""
        ...

    # ── Inbound receipts ──────────────────────────────────────

    @abstractmethod
    async def record_inbound_receipt(self, key: str, now: datetime,
                                     ttl_seconds: Optional[float] = None) -> bool:
        """
        True the first time `key` is seen. With a TTL the key can be
        recorded again once the window lapses; without one it is kept for good.
        """
        ...
