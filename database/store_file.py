"""
FileAvailabilityStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    acts.json
    asks.json
    queue.json
    leases.json
    badges.json
    receipts.json

Each file maps record id to the record's JSON form. A collection is
rewritten whole (temp file, then rename) after every mutation, or after
`flush_interval_s` when batching is on. Single process only.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import structlog
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from database.store_memory import InMemoryAvailabilityStore
from models.schemas import Act, AvailabilityRequest, Badge, InboundReceipt, Lease, QueueItem

logger = structlog.get_logger()

# collection → (attribute on the memory store, record model)
_COLLECTIONS: dict[str, tuple[str, type[BaseModel]]] = {
    "acts": ("_acts", Act),
    "asks": ("_asks", AvailabilityRequest),
    "queue": ("_queue", QueueItem),
    "leases": ("_leases", Lease),
    "badges": ("_badges", Badge),
    "receipts": ("_receipts", InboundReceipt),
}


class FileAvailabilityStore(InMemoryAvailabilityStore):
    """InMemoryAvailabilityStore that mirrors every write to JSON files."""

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        for collection in _COLLECTIONS:
            self._load(collection)
        self._reindex()
        logger.info("file_store_initialized", data_dir=str(self._data_dir),
                    asks=len(self._asks), queued=len(self._queue))

    # ── Load / Save ───────────────────────────────────────

    def _path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load(self, collection: str):
        path = self._path(collection)
        if not path.exists():
            return
        attr, model = _COLLECTIONS[collection]
        try:
            raw = json.loads(path.read_text())
            records = {key: model.model_validate(value) for key, value in raw.items()}
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            logger.warning("file_store_load_error", collection=collection, error=str(e))
            return
        setattr(self, attr, records)

    def _reindex(self):
        self._ask_key_index = {ask.natural_key: ask_id for ask_id, ask in self._asks.items()}
        self._dedupe_index = {item.dedupe_key: item_id for item_id, item in self._queue.items()}
        self._seq = itertools.count(max((i.seq for i in self._queue.values()), default=0) + 1)

    def _write(self, collection: str):
        attr, _ = _COLLECTIONS[collection]
        records = {key: value.model_dump(mode="json") for key, value in getattr(self, attr).items()}
        path = self._path(collection)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(records, indent=2))
        tmp.replace(path)

    def _mark_dirty(self, *collections: str):
        if self._flush_interval <= 0:
            for collection in collections:
                self._write(collection)
            return
        self._dirty.update(collections)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        await asyncio.sleep(self._flush_interval)
        dirty, self._dirty = self._dirty, set()
        for collection in dirty:
            self._write(collection)

    def flush_all(self):
        """Write every collection now (shutdown)."""
        for collection in _COLLECTIONS:
            self._write(collection)
        logger.info("file_store_flushed_all", data_dir=str(self._data_dir))

    # ── Override write methods to trigger persistence ──────

    async def upsert_act(self, act: Act) -> Act:
        result = await super().upsert_act(act)
        self._mark_dirty("acts")
        return result

    async def insert_ask(self, ask: AvailabilityRequest) -> AvailabilityRequest:
        result = await super().insert_ask(ask)
        self._mark_dirty("asks")
        return result

    async def update_ask(self, ask_id, changes, where=None):
        result = await super().update_ask(ask_id, changes, where)
        if result is not None:
            self._mark_dirty("asks")
        return result

    async def insert_queue_item(self, item: QueueItem) -> bool:
        inserted = await super().insert_queue_item(item)
        if inserted:
            self._mark_dirty("queue")
        return inserted

    async def delete_queue_item(self, item_id: str) -> bool:
        deleted = await super().delete_queue_item(item_id)
        if deleted:
            self._mark_dirty("queue")
        return deleted

    async def acquire_lease(self, key, owner, ttl_seconds, now):
        acquired = await super().acquire_lease(key, owner, ttl_seconds, now)
        if acquired:
            self._mark_dirty("leases")
        return acquired

    async def release_lease(self, key, owner):
        released = await super().release_lease(key, owner)
        if released:
            self._mark_dirty("leases")
        return released

    async def save_badge(self, badge: Badge, expected_version: int) -> Badge:
        result = await super().save_badge(badge, expected_version)
        self._mark_dirty("badges")
        return result

    async def record_inbound_receipt(self, key, now, ttl_seconds=None):
        recorded = await super().record_inbound_receipt(key, now, ttl_seconds)
        if recorded:
            self._mark_dirty("receipts")
        return recorded
