"""Chat permission cache and its periodic rebuilder."""

from permissions.cache import (
    InMemoryPermissionCache,
    PermissionCache,
    RedisPermissionCache,
    permission_key,
)
from permissions.rebuilder import PermissionCacheRebuilder

__all__ = [
    "InMemoryPermissionCache",
    "PermissionCache",
    "PermissionCacheRebuilder",
    "RedisPermissionCache",
    "permission_key",
]
