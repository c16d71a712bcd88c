"""
SqlAvailabilityStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Conditional writes map onto single UPDATE ... WHERE statements and
constraint-backed INSERTs, so concurrent engines never overwrite each other:
  - update_ask         → UPDATE ... WHERE id = :id AND <guard>
  - insert_queue_item  → INSERT, unique(dedupe_key) collision = duplicate
  - acquire_lease      → UPDATE when expired/ours, else INSERT
  - save_badge         → UPDATE ... WHERE version = :expected
No RETURNING clauses (MySQL has none); the row is re-read after an update.
"""
from __future__ import annotations

import itertools
import structlog
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncGenerator, Optional

from pydantic import BaseModel
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import ConcurrencyError, DuplicateError
from database.models import ActRow, AskRow, BadgeRow, InboundReceiptRow, LeaseRow, QueueItemRow
from database.session import session_scope
from database.store_base import BaseAvailabilityStore
from models.schemas import Act, AvailabilityRequest, Badge, Lease, QueueItem, utcnow

logger = structlog.get_logger()

_ASK_FIELDS = list(AvailabilityRequest.model_fields.keys())


def _aware(value: Any) -> Any:
    """SQLite hands back naive datetimes; everything in the engine is UTC."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


class SqlAvailabilityStore(BaseAvailabilityStore):
    """
    Persistent availability store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory
        self._seq = itertools.count(1)

    def _session(self) -> AsyncGenerator[AsyncSession, None]:
        return session_scope(self._session_factory)

    # ── Acts ───────────────────────────────────────────────

    async def get_act(self, act_id: str) -> Optional[Act]:
        async with self._session() as db:
            row = await db.get(ActRow, act_id)
            return self._row_to_act(row) if row else None

    async def upsert_act(self, act: Act) -> Act:
        lineups = [lu.model_dump(mode="json") for lu in act.lineups]
        async with self._session() as db:
            existing = await db.get(ActRow, act.id)
            if existing:
                existing.name = act.name
                existing.lineups = lineups
                existing.updated_at = utcnow()
            else:
                db.add(ActRow(id=act.id, name=act.name, lineups=lineups,
                              created_at=act.created_at, updated_at=utcnow()))
        return act

    # ── Availability requests ──────────────────────────────

    async def get_ask(self, ask_id: str) -> Optional[AvailabilityRequest]:
        async with self._session() as db:
            row = await db.get(AskRow, ask_id)
            return self._row_to_ask(row) if row else None

    async def find_ask_by_key(self, act_id, lineup_id, date_iso, recipient, slot_index, kind):
        stmt = select(AskRow).where(and_(
            AskRow.act_id == act_id,
            AskRow.lineup_id == lineup_id,
            AskRow.date_iso == date_iso,
            AskRow.recipient == recipient,
            AskRow.slot_index == slot_index,
            AskRow.kind == _column_value(kind),
        ))
        async with self._session() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_ask(row) if row else None

    async def insert_ask(self, ask: AvailabilityRequest) -> AvailabilityRequest:
        values = {name: _column_value(getattr(ask, name)) for name in _ASK_FIELDS}
        try:
            async with self._session() as db:
                db.add(AskRow(**values))
        except IntegrityError as e:
            raise DuplicateError(f"ask already exists for {ask.natural_key}") from e
        return ask

    async def update_ask(self, ask_id, changes, where=None):
        values = {name: _column_value(value) for name, value in changes.items()}
        values["version"] = AskRow.version + 1
        values["updated_at"] = utcnow()
        conditions = [AskRow.id == ask_id, *self._guard_clauses(where)]
        async with self._session() as db:
            result = await db.execute(update(AskRow).where(and_(*conditions)).values(**values))
            if result.rowcount != 1:
                return None
        return await self.get_ask(ask_id)

    async def find_ask_by_correlation(self, correlation_id: str) -> Optional[AvailabilityRequest]:
        stmt = (
            select(AskRow)
            .where(func.lower(AskRow.correlation_id) == correlation_id.lower())
            .order_by(AskRow.asked_at.desc())
            .limit(1)
        )
        async with self._session() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_ask(row) if row else None

    async def find_ask_by_handle(self, handle: str) -> Optional[AvailabilityRequest]:
        stmt = (
            select(AskRow)
            .where(or_(AskRow.message_handle == handle, AskRow.fallback_handle == handle))
            .limit(1)
        )
        async with self._session() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_ask(row) if row else None

    async def find_open_asks(self, recipients, kind=None):
        conditions = [
            AskRow.recipient.in_(list(recipients)),
            AskRow.reply.is_(None),
            AskRow.cancelled_at.is_(None),
        ]
        if kind is not None:
            conditions.append(AskRow.kind == _column_value(kind))
        stmt = select(AskRow).where(and_(*conditions)).order_by(AskRow.asked_at.desc())
        async with self._session() as db:
            result = await db.execute(stmt)
            return [self._row_to_ask(r) for r in result.scalars()]

    async def list_asks(self, act_id, date_iso, lineup_id=None):
        conditions = [AskRow.act_id == act_id, AskRow.date_iso == date_iso]
        if lineup_id is not None:
            conditions.append(AskRow.lineup_id == lineup_id)
        stmt = select(AskRow).where(and_(*conditions)).order_by(AskRow.asked_at, AskRow.created_at)
        async with self._session() as db:
            result = await db.execute(stmt)
            return [self._row_to_ask(r) for r in result.scalars()]

    async def list_pending_asks(self, limit: int = 200, after=None):
        conditions = [AskRow.reply.is_(None), AskRow.cancelled_at.is_(None)]
        if after is not None:
            asked_at, ask_id = after
            conditions.append(or_(
                AskRow.asked_at > asked_at,
                and_(AskRow.asked_at == asked_at, AskRow.id > ask_id),
            ))
        stmt = (
            select(AskRow)
            .where(and_(*conditions))
            .order_by(AskRow.asked_at, AskRow.id)
            .limit(limit)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            return [self._row_to_ask(r) for r in result.scalars()]

    async def distinct_recipients(self, act_id, lineup_id, date_iso):
        stmt = select(AskRow.recipient).distinct().where(and_(
            AskRow.act_id == act_id,
            AskRow.lineup_id == lineup_id,
            AskRow.date_iso == date_iso,
        ))
        async with self._session() as db:
            result = await db.execute(stmt)
            return set(result.scalars())

    # ── Outbound queue ─────────────────────────────────────

    async def insert_queue_item(self, item: QueueItem) -> bool:
        row = QueueItemRow(
            id=item.id, recipient=item.recipient, kind=_column_value(item.kind),
            payload=item.payload.model_dump(mode="json"), dedupe_key=item.dedupe_key,
            inserted_at=item.inserted_at, seq=next(self._seq),
        )
        try:
            async with self._session() as db:
                db.add(row)
        except IntegrityError:
            return False
        return True

    async def oldest_queue_item(self, recipient: str) -> Optional[QueueItem]:
        stmt = (
            select(QueueItemRow)
            .where(QueueItemRow.recipient == recipient)
            .order_by(QueueItemRow.inserted_at, QueueItemRow.seq)
            .limit(1)
        )
        async with self._session() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return QueueItem(
                id=row.id, recipient=row.recipient, kind=row.kind, payload=row.payload,
                dedupe_key=row.dedupe_key, inserted_at=_aware(row.inserted_at), seq=row.seq,
            )

    async def delete_queue_item(self, item_id: str) -> bool:
        async with self._session() as db:
            result = await db.execute(delete(QueueItemRow).where(QueueItemRow.id == item_id))
            return result.rowcount == 1

    async def count_queue_items(self, recipient: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(QueueItemRow)
        if recipient is not None:
            stmt = stmt.where(QueueItemRow.recipient == recipient)
        async with self._session() as db:
            return (await db.execute(stmt)).scalar_one()

    # ── Leases ─────────────────────────────────────────────

    async def acquire_lease(self, key, owner, ttl_seconds, now):
        expires_at = now + timedelta(seconds=ttl_seconds)
        stmt = (
            update(LeaseRow)
            .where(and_(LeaseRow.key == key,
                        or_(LeaseRow.owner == owner, LeaseRow.expires_at <= now)))
            .values(owner=owner, expires_at=expires_at)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            if result.rowcount == 1:
                return True
        try:
            async with self._session() as db:
                db.add(LeaseRow(key=key, owner=owner, expires_at=expires_at))
        except IntegrityError:
            return False
        return True

    async def release_lease(self, key, owner):
        async with self._session() as db:
            result = await db.execute(
                delete(LeaseRow).where(and_(LeaseRow.key == key, LeaseRow.owner == owner)))
            return result.rowcount == 1

    async def get_lease(self, key):
        async with self._session() as db:
            row = await db.get(LeaseRow, key)
            if row is None:
                return None
            return Lease(key=row.key, owner=row.owner, expires_at=_aware(row.expires_at))

    # ── Badges ─────────────────────────────────────────────

    async def get_badge(self, act_id, date_iso):
        async with self._session() as db:
            row = await db.get(BadgeRow, f"{act_id}:{date_iso}")
            if row is None:
                return None
            return Badge.model_validate({**row.data, "version": row.version})

    async def save_badge(self, badge: Badge, expected_version: int) -> Badge:
        badge_id = f"{badge.act_id}:{badge.date_iso}"
        data = badge.model_dump(mode="json", exclude={"version"})
        new_version = expected_version + 1
        if expected_version == 0:
            try:
                async with self._session() as db:
                    db.add(BadgeRow(id=badge_id, act_id=badge.act_id, date_iso=badge.date_iso,
                                    data=data, version=new_version))
            except IntegrityError as e:
                raise ConcurrencyError(f"badge {badge_id} created concurrently") from e
        else:
            async with self._session() as db:
                result = await db.execute(
                    update(BadgeRow)
                    .where(and_(BadgeRow.id == badge_id, BadgeRow.version == expected_version))
                    .values(data=data, version=new_version)
                )
                if result.rowcount != 1:
                    raise ConcurrencyError(
                        f"badge {badge_id} changed since version {expected_version}")
        return badge.model_copy(update={"version": new_version})

    # ── Inbound receipts ───────────────────────────────────

    async def record_inbound_receipt(self, key, now, ttl_seconds=None):
        async with self._session() as db:
            await db.execute(delete(InboundReceiptRow).where(InboundReceiptRow.expires_at <= now))
        try:
            async with self._session() as db:
                expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None
                db.add(InboundReceiptRow(key=key, expires_at=expires_at))
        except IntegrityError:
            return False
        return True

    # ── Conversion helpers ─────────────────────────────────

    @staticmethod
    def _guard_clauses(where: Optional[dict[str, Any]]) -> list:
        clauses = []
        for field_name, expected in (where or {}).items():
            column = getattr(AskRow, field_name)
            if expected is None:
                clauses.append(column.is_(None))
            elif isinstance(expected, (list, tuple, set, frozenset)):
                clauses.append(column.in_([_column_value(e) for e in expected]))
            else:
                clauses.append(column == _column_value(expected))
        return clauses

    @staticmethod
    def _row_to_act(row: ActRow) -> Act:
        return Act(
            id=row.id, name=row.name, lineups=row.lineups or [],
            created_at=_aware(row.created_at), updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_ask(row: AskRow) -> AvailabilityRequest:
        data = {name: _aware(getattr(row, name)) for name in _ASK_FIELDS}
        return AvailabilityRequest.model_validate(data)
