"""
Store Factory — picks the availability store backend named in settings.

    database:
      store_backend: memory      # memory | file | sql
      store_file_dir: ./data     # file backend only
      url: sqlite:///./allocation.db

The first call builds the process-wide store; later calls return it
unchanged until reset_store().
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseAvailabilityStore

logger = structlog.get_logger()

_instance: Optional[BaseAvailabilityStore] = None


def _build(backend: str, config: dict) -> BaseAvailabilityStore:
    if backend == "sql":
        from database.store import SqlAvailabilityStore
        return SqlAvailabilityStore()
    if backend == "file":
        from database.store_file import FileAvailabilityStore
        return FileAvailabilityStore(data_dir=config.get("store_file_dir", "./data"))
    if backend != "memory":
        logger.warning("unknown_store_backend", backend=backend, using="memory")
    from database.store_memory import InMemoryAvailabilityStore
    return InMemoryAvailabilityStore()


def create_store(config: Optional[dict] = None) -> BaseAvailabilityStore:
    global _instance
    if _instance is None:
        config = config or {}
        backend = config.get("store_backend", "memory")
        _instance = _build(backend, config)
        logger.info("store_created", backend=backend, store=type(_instance).__name__)
    return _instance


def get_store() -> BaseAvailabilityStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    """Forget the process-wide store (tests, backend switches)."""
    global _instance
    _instance = None
