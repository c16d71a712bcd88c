"""
Recipient leases — Abstract interface with document-store and Redis backends.

A lease is a TTL-bounded lock keyed by recipient. The holder renews it while
it works; a crashed holder's lease simply expires, so there is no manual
unlock path and no process-local lock map.

Backends:
  StoreLeaseLock  — lease rows in the availability store (default)
  RedisLeaseLock  — SET NX PX with owner-checked renew/release scripts

Usage:
    locks = create_lock_backend({"backend": "store"}, store)
    if await locks.acquire("recipient:+447700900123", owner, ttl_seconds=120, now=now):
        ...
        await locks.release("recipient:+447700900123", owner)
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Optional

from database.store_base import BaseAvailabilityStore
from models.schemas import Lease, utcnow

logger = structlog.get_logger()


def recipient_lock_key(recipient: str) -> str:
    return f"recipient:{recipient}"


class LeaseLock(ABC):
    """Interface for lease backends."""

    @abstractmethod
    async def acquire(self, key: str, owner: str, ttl_seconds: float, now: datetime) -> bool:
        """Take or renew the lease. False if someone else holds a live lease."""
        ...

    @abstractmethod
    async def release(self, key: str, owner: str) -> bool:
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[Lease]:
        ...

    async def close(self) -> None:
        pass


# ──────────────────────────────────────────────────────────────
#  Document-store leases
# ──────────────────────────────────────────────────────────────

class StoreLeaseLock(LeaseLock):
    """Lease rows in the availability store; conditional writes do the exclusion."""

    def __init__(self, store: BaseAvailabilityStore):
        self._store = store

    async def acquire(self, key, owner, ttl_seconds, now):
        return await self._store.acquire_lease(key, owner, ttl_seconds, now)

    async def release(self, key, owner):
        return await self._store.release_lease(key, owner)

    async def get(self, key):
        return await self._store.get_lease(key)


# ──────────────────────────────────────────────────────────────
#  Redis leases
# ──────────────────────────────────────────────────────────────

_RENEW_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisLeaseLock(LeaseLock):
    """
    Redis-backed leases for multi-instance deployments.

    Expiry is Redis's own key TTL, so the `now` argument only matters for the
    store backend.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "allocation:lease:"):
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_lease_connected", url=self._redis_url)

    async def _client(self):
        if self._redis is None:
            await self.connect()
        return self._redis

    async def acquire(self, key, owner, ttl_seconds, now):
        redis = await self._client()
        ttl_ms = int(ttl_seconds * 1000)
        if await redis.set(self._prefix + key, owner, nx=True, px=ttl_ms):
            return True
        renewed = await redis.eval(_RENEW_SCRIPT, 1, self._prefix + key, owner, ttl_ms)
        return bool(renewed)

    async def release(self, key, owner):
        redis = await self._client()
        released = await redis.eval(_RELEASE_SCRIPT, 1, self._prefix + key, owner)
        return bool(released)

    async def get(self, key):
        redis = await self._client()
        owner = await redis.get(self._prefix + key)
        if owner is None:
            return None
        ttl_ms = await redis.pttl(self._prefix + key)
        return Lease(key=key, owner=owner, expires_at=utcnow() + timedelta(milliseconds=max(ttl_ms, 0)))

    async def close(self):
        if self._redis:
            await self._redis.close()


def create_lock_backend(config: dict[str, Any], store: BaseAvailabilityStore) -> LeaseLock:
    """
    Factory: create the lease backend.

    Args:
        config: dict with keys backend ("store" | "redis") and redis_url.
    """
    backend = config.get("backend", "store")
    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        logger.info("lease_backend_created", backend="redis")
        return RedisLeaseLock(redis_url=url)
    logger.info("lease_backend_created", backend="store")
    return StoreLeaseLock(store)
