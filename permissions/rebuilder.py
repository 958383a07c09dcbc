"""Permission cache rebuilder.

Recomputes every user's chat group and chat thread permissions from the
identity service grants and writes them into the permission cache.

Chat group scopes nest: manage implies access, access implies traverse.
Thread access is granted either by the thread's own permission or by access
to the thread's chat group.
"""

from typing import Dict, Iterable, List, Set

from core.config import DEFAULT_DB_PATH
from core.models.entities import ChatGroup, ChatThread
from core.observability.logging import get_logger, with_correlation
from core.storage.db import DbPath
from core.storage.repository import list_chat_groups, list_chat_threads
from identity.provider import IdentityProvider, UserRecord
from permissions.cache import PermissionCache

logger = get_logger(__name__)

CHAT_GROUP_MANAGE = "chat-group:manage"
CHAT_GROUP_ACCESS = "chat-group:access"
CHAT_GROUP_TRAVERSE = "chat-group:traverse"
CHAT_THREAD_ACCESS = "chat-thread:access"

CHAT_GROUP_SCOPES = [CHAT_GROUP_MANAGE, CHAT_GROUP_ACCESS, CHAT_GROUP_TRAVERSE]

IMPLIED_SCOPES: Dict[str, List[str]] = {
    CHAT_GROUP_MANAGE: [CHAT_GROUP_MANAGE, CHAT_GROUP_ACCESS, CHAT_GROUP_TRAVERSE],
    CHAT_GROUP_ACCESS: [CHAT_GROUP_ACCESS, CHAT_GROUP_TRAVERSE],
    CHAT_GROUP_TRAVERSE: [CHAT_GROUP_TRAVERSE],
}


def chat_group_resource_name(chat_group_id: int) -> str:
    return f"chat-group-{chat_group_id}"


def chat_thread_resource_name(chat_thread_id: int) -> str:
    return f"chat-thread-{chat_thread_id}"


def permission_name(scope: str, entity_id: int) -> str:
    return f"{scope}-{entity_id}"


def expand_scopes(scopes: Iterable[str]) -> Set[str]:
    expanded: Set[str] = set()
    for scope in scopes:
        expanded.update(IMPLIED_SCOPES.get(scope, [scope]))
    return expanded


class PermissionCacheRebuilder:
    """Writes the effective permissions of every user into the cache.

    Usage:
        rebuilder = PermissionCacheRebuilder(identity, cache, db_path)
        written = await rebuilder.rebuild_once()
    """

    def __init__(self, identity: IdentityProvider, cache: PermissionCache, db_path: DbPath = DEFAULT_DB_PATH):
        self.identity = identity
        self.cache = cache
        self.db_path = db_path

    async def rebuild_once(self) -> int:
        """Run one full pass over all users.

        Returns:
            Number of cache entries written
        """
        chat_groups = list_chat_groups(db_path=self.db_path)
        threads = {
            chat_group.id: list_chat_threads(chat_group.id, db_path=self.db_path)
            for chat_group in chat_groups
        }
        # Grants are looked up once per pass, not once per user
        grants: Dict[str, Set[str]] = {}

        written = 0
        users = 0
        with with_correlation(stage="permission_rebuild"):
            async for user in self.identity.iter_users():
                users += 1
                written += await self._rebuild_user(user, chat_groups, threads, grants)

            logger.info(f"Rebuilt permission cache: {written} entries for {users} users")
        return written

    async def _granted_groups(self, name: str, grants: Dict[str, Set[str]]) -> Set[str]:
        if name not in grants:
            grants[name] = set(await self.identity.list_permission_group_ids(name))
        return grants[name]

    async def _rebuild_user(
        self,
        user: UserRecord,
        chat_groups: List[ChatGroup],
        threads: Dict[int, List[ChatThread]],
        grants: Dict[str, Set[str]],
    ) -> int:
        user_groups = {group.id for group in await self.identity.list_user_groups(user.id)}
        written = 0

        for chat_group in chat_groups:
            granted = [
                scope for scope in CHAT_GROUP_SCOPES
                if user_groups & await self._granted_groups(permission_name(scope, chat_group.id), grants)
            ]
            scopes = expand_scopes(granted)

            resource = chat_group_resource_name(chat_group.id)
            for scope in CHAT_GROUP_SCOPES:
                await self.cache.set(resource, [scope], user.id, scope in scopes)
                written += 1

            if CHAT_GROUP_TRAVERSE not in scopes:
                for thread in threads.get(chat_group.id, []):
                    await self.cache.unset(chat_thread_resource_name(thread.id), [CHAT_THREAD_ACCESS], user.id)
                continue

            group_access = CHAT_GROUP_ACCESS in scopes
            for thread in threads.get(chat_group.id, []):
                thread_access = group_access or bool(
                    user_groups & await self._granted_groups(permission_name(CHAT_THREAD_ACCESS, thread.id), grants)
                )
                await self.cache.set(chat_thread_resource_name(thread.id), [CHAT_THREAD_ACCESS], user.id, thread_access)
                written += 1

        return written
