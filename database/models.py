"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Uniqueness (ask natural key, queue dedupe key, lease key) is enforced
    by constraints so concurrent writers collide in the database.
  - String primary keys (uuid) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    BigInteger, Boolean, DateTime, Index, Integer, JSON, String, Text, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Acts (directory: lineups, members, deputies as JSON)
# ──────────────────────────────────────────────────────────────

class ActRow(Base):
    __tablename__ = "acts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    lineups: Mapped[Any] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Availability requests
# ──────────────────────────────────────────────────────────────

class AskRow(Base):
    __tablename__ = "availability_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    kind: Mapped[str] = mapped_column(String(16), default="availability")
    act_id: Mapped[str] = mapped_column(String(64), nullable=False)
    act_name: Mapped[str] = mapped_column(String(256), default="")
    lineup_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient: Mapped[str] = mapped_column(String(32), nullable=False)
    musician_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    musician_name: Mapped[str] = mapped_column(String(256), default="")
    is_deputy: Mapped[bool] = mapped_column(Boolean, default=False)
    deputy_for: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    duty_role: Mapped[str] = mapped_column(String(128), default="")
    date_iso: Mapped[str] = mapped_column(String(10), nullable=False)
    formatted_date: Mapped[str] = mapped_column(String(64), default="")
    venue_address: Mapped[str] = mapped_column(Text, default="")
    address_short: Mapped[str] = mapped_column(String(256), default="")
    fee: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    slot_index: Mapped[int] = mapped_column(Integer, default=0)
    correlation_id: Mapped[str] = mapped_column(String(32), nullable=False)

    channel_state: Mapped[str] = mapped_column(String(16), default="queued")
    channel: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    message_handle: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    fallback_handle: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    fallback_text: Mapped[str] = mapped_column(Text, default="")
    fallback_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    reply: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    replied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    inbound: Mapped[Any] = mapped_column(JSON, nullable=True)

    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    chase_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    asked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ask_count: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    version: Mapped[int] = mapped_column(Integer, default=1)

    __table_args__ = (
        UniqueConstraint("act_id", "lineup_id", "date_iso", "recipient", "slot_index", "kind",
                         name="uq_asks_natural_key"),
        Index("ix_asks_act_date", "act_id", "date_iso"),
        Index("ix_asks_recipient_reply", "recipient", "reply"),
        Index("ix_asks_pending", "reply", "cancelled_at", "asked_at"),
        Index("ix_asks_correlation", "correlation_id"),
        Index("ix_asks_message_handle", "message_handle"),
        Index("ix_asks_fallback_handle", "fallback_handle"),
    )


# ──────────────────────────────────────────────────────────────
#  Outbound queue
# ──────────────────────────────────────────────────────────────

class QueueItemRow(Base):
    __tablename__ = "outbound_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    recipient: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    dedupe_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    inserted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    seq: Mapped[int] = mapped_column(BigInteger, default=0)

    __table_args__ = (
        Index("ix_queue_recipient_order", "recipient", "inserted_at", "seq"),
    )


# ──────────────────────────────────────────────────────────────
#  Recipient leases
# ──────────────────────────────────────────────────────────────

class LeaseRow(Base):
    __tablename__ = "recipient_leases"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# ──────────────────────────────────────────────────────────────
#  Badges
# ──────────────────────────────────────────────────────────────

class BadgeRow(Base):
    __tablename__ = "badges"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)     # "act_id:date_iso"
    act_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date_iso: Mapped[str] = mapped_column(String(10), nullable=False)
    data: Mapped[Any] = mapped_column(JSON, default=dict)
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_badges_act", "act_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Inbound receipts (webhook idempotency)
# ──────────────────────────────────────────────────────────────

class InboundReceiptRow(Base):
    __tablename__ = "inbound_receipts"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)  # NULL: never expires
