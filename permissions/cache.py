"""Permission cache.

Holds one boolean per (resource, scopes, user). The API layer reads it to
answer authorization checks without calling the identity service; the
rebuilder keeps it warm.
"""

import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Iterable, Optional, Tuple

import redis.asyncio as aioredis

from core.config import PermissionCacheConfig
from core.observability.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "permission-"


def permission_key(resource: str, scopes: Iterable[str], user_id: str) -> str:
    return f"{KEY_PREFIX}{resource}-{'.'.join(sorted(scopes))}-{user_id}"


class PermissionCache(ABC):
    """Abstract base class for permission caches."""

    @abstractmethod
    async def get(self, resource: str, scopes: Iterable[str], user_id: str) -> Optional[bool]:
        """Return the cached decision, or None when not cached."""
        pass

    @abstractmethod
    async def set(self, resource: str, scopes: Iterable[str], user_id: str, value: bool) -> None:
        pass

    @abstractmethod
    async def unset(self, resource: str, scopes: Iterable[str], user_id: str) -> None:
        pass

    @abstractmethod
    async def flush(self) -> None:
        """Remove every cached permission."""
        pass

    async def close(self) -> None:
        pass


class InMemoryPermissionCache(PermissionCache):
    """In-memory permission cache for development/testing."""

    def __init__(self, expire_time_ms: int = 3600000):
        self.expire_time_ms = expire_time_ms
        self._entries: Dict[str, Tuple[bool, float]] = {}
        self._lock = Lock()

    async def get(self, resource: str, scopes: Iterable[str], user_id: str) -> Optional[bool]:
        key = permission_key(resource, scopes, user_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if time.monotonic() >= expires_at:
                del self._entries[key]
                return None
            return value

    async def set(self, resource: str, scopes: Iterable[str], user_id: str, value: bool) -> None:
        expires_at = time.monotonic() + self.expire_time_ms / 1000
        with self._lock:
            self._entries[permission_key(resource, scopes, user_id)] = (value, expires_at)

    async def unset(self, resource: str, scopes: Iterable[str], user_id: str) -> None:
        with self._lock:
            self._entries.pop(permission_key(resource, scopes, user_id), None)

    async def flush(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self):
        with self._lock:
            return sorted(self._entries)


class RedisPermissionCache(PermissionCache):
    """Redis backed permission cache.

    Values are stored as "true"/"false" strings with a PX expiry.

    Usage:
        cache = RedisPermissionCache.from_config(config.permission_cache)
        await cache.set("chat-group-1", ["chat-group:access"], user_id, True)
    """

    def __init__(self, redis: aioredis.Redis, expire_time_ms: int = 3600000):
        self._redis = redis
        self.expire_time_ms = expire_time_ms

    @classmethod
    def from_config(cls, config: PermissionCacheConfig) -> "RedisPermissionCache":
        redis = aioredis.from_url(config.redis_url, decode_responses=True)
        return cls(redis, config.expire_time_ms)

    async def get(self, resource: str, scopes: Iterable[str], user_id: str) -> Optional[bool]:
        value = await self._redis.get(permission_key(resource, scopes, user_id))
        if value is None:
            return None
        return value == "true"

    async def set(self, resource: str, scopes: Iterable[str], user_id: str, value: bool) -> None:
        await self._redis.set(
            permission_key(resource, scopes, user_id),
            "true" if value else "false",
            px=self.expire_time_ms,
        )

    async def unset(self, resource: str, scopes: Iterable[str], user_id: str) -> None:
        await self._redis.delete(permission_key(resource, scopes, user_id))

    async def flush(self) -> None:
        batch = []
        deleted = 0
        async for key in self._redis.scan_iter(match=f"{KEY_PREFIX}*"):
            batch.append(key)
            if len(batch) >= 500:
                deleted += await self._redis.delete(*batch)
                batch = []
        if batch:
            deleted += await self._redis.delete(*batch)
        logger.info(f"Flushed {deleted} cached permissions")

    async def close(self) -> None:
        await self._redis.close()
