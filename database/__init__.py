"""
Database layer — Multi-backend persistence for asks, queue items, leases and badges.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  ask = await store.get_ask("a1")
"""
from database.models import (
    Base, ActRow, AskRow, QueueItemRow, LeaseRow, BadgeRow, InboundReceiptRow,
)
from database.session import close_db, create_engine_for, get_engine, init_db, session_scope
from database.store_base import BaseAvailabilityStore
from database.store import SqlAvailabilityStore
from database.store_memory import InMemoryAvailabilityStore
from database.store_file import FileAvailabilityStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ActRow", "AskRow", "QueueItemRow", "LeaseRow", "BadgeRow", "InboundReceiptRow",
    # Session management
    "get_engine", "create_engine_for", "session_scope", "init_db", "close_db",
    # Store interface
    "BaseAvailabilityStore",
    # Store backends
    "SqlAvailabilityStore", "InMemoryAvailabilityStore", "FileAvailabilityStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
