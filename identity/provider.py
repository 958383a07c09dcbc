"""Identity service interface.

Users, their attributes and group memberships live in the identity service
(Keycloak in production). Contact synchronization writes ERP data into user
attributes; the permission cache rebuilder reads group memberships and the
group grants of chat permissions.
"""

import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Set

from pydantic import BaseModel, Field


class IdentityError(Exception):
    """Identity service failure or ambiguous lookup."""
    pass


class UserAttribute(str, Enum):
    """User attribute names holding ERP business partner data."""
    SAP_ID = "sapId"
    COMPANY_NAME = "yritys"
    BIC = "BIC"
    IBAN = "IBAN"
    TAX_CODE = "verotunniste"
    VAT_LIABLE = "arvonlisäverovelvollisuus"
    AUDIT = "auditointi"
    PHONE_1 = "Puhelin 1"
    PHONE_2 = "Puhelin 2"
    POSTAL_CODE_1 = "Postinro"
    POSTAL_CODE_2 = "tilan postinro"
    STREET_1 = "Postiosoite"
    STREET_2 = "Tilan osoite"
    CITY_1 = "Kaupunki"
    CITY_2 = "Tilan kaupunki"


class UserRecord(BaseModel):
    """User as seen by the engine.

    Attributes are multi-valued; single-valued accessors treat anything but
    exactly one non-empty value as unset.
    """
    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    enabled: bool = True
    attributes: Dict[str, List[str]] = Field(default_factory=dict)

    def get_single_attribute(self, name: str) -> Optional[str]:
        values = [value for value in self.attributes.get(name, []) if value]
        return values[0] if len(values) == 1 else None

    def set_single_attribute(self, name: str, value: Optional[str]) -> None:
        if value:
            self.attributes[name] = [value]
        else:
            self.attributes.pop(name, None)


class UserGroup(BaseModel):
    id: str
    name: str


class IdentityProvider(ABC):
    """Abstract base class for identity services."""

    ATTRIBUTE_SEARCH_PAGE_SIZE = 25
    ATTRIBUTE_SEARCH_MAX_PAGES = 50

    @abstractmethod
    async def list_users(self, first: int = 0, max_results: int = 100) -> List[UserRecord]:
        """Return one page of users."""
        pass

    @abstractmethod
    async def find_user(self, user_id: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    async def search_users_by_email(self, email: str) -> List[UserRecord]:
        """Return users whose e-mail equals `email`, ignoring case."""
        pass

    @abstractmethod
    async def update_user(self, user: UserRecord) -> None:
        pass

    @abstractmethod
    async def list_user_groups(self, user_id: str) -> List[UserGroup]:
        pass

    @abstractmethod
    async def list_permission_group_ids(self, permission_name: str) -> List[str]:
        """Return ids of the user groups a named permission is granted to."""
        pass

    async def iter_users(self, page_size: int = 100) -> AsyncIterator[UserRecord]:
        """Iterate over every user, page by page."""
        first = 0
        while True:
            page = await self.list_users(first, page_size)
            for user in page:
                yield user
            if len(page) < page_size:
                return
            first += page_size

    async def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        """Find the user with an e-mail.

        Raises:
            IdentityError: If more than one user has the e-mail
        """
        users = await self.search_users_by_email(email)
        if len(users) > 1:
            raise IdentityError(f"Found more than one user with email {email}")
        return users[0] if users else None

    async def find_user_by_attribute(self, name: str, value: str) -> Optional[UserRecord]:
        """Find the user whose single-valued attribute equals `value`.

        Scans at most ATTRIBUTE_SEARCH_MAX_PAGES pages of users.

        Raises:
            IdentityError: If more than one user matches
        """
        matches: List[UserRecord] = []
        page_size = self.ATTRIBUTE_SEARCH_PAGE_SIZE
        for page_index in range(self.ATTRIBUTE_SEARCH_MAX_PAGES):
            page = await self.list_users(page_index * page_size, page_size)
            matches.extend(user for user in page if user.get_single_attribute(name) == value)
            if len(page) < page_size:
                break

        if len(matches) > 1:
            raise IdentityError(f"Found more than one user with attribute {name} = {value}")
        return matches[0] if matches else None


class InMemoryIdentityProvider(IdentityProvider):
    """In-memory identity service for development/testing."""

    def __init__(self):
        self._users: Dict[str, UserRecord] = {}
        self._groups: Dict[str, UserGroup] = {}
        self._memberships: Dict[str, Set[str]] = {}
        self._permissions: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def add_user(self, user: UserRecord) -> UserRecord:
        with self._lock:
            self._users[user.id] = user.model_copy(deep=True)
            return user

    def add_group(self, group: UserGroup) -> UserGroup:
        with self._lock:
            self._groups[group.id] = group
            return group

    def add_user_to_group(self, user_id: str, group_id: str) -> None:
        with self._lock:
            self._memberships.setdefault(user_id, set()).add(group_id)

    def grant_permission(self, permission_name: str, group_id: str) -> None:
        with self._lock:
            self._permissions.setdefault(permission_name, set()).add(group_id)

    async def list_users(self, first: int = 0, max_results: int = 100) -> List[UserRecord]:
        with self._lock:
            users = sorted(self._users.values(), key=lambda u: u.id)
            return [u.model_copy(deep=True) for u in users[first:first + max_results]]

    async def find_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    async def search_users_by_email(self, email: str) -> List[UserRecord]:
        wanted = email.lower()
        with self._lock:
            return [
                u.model_copy(deep=True)
                for u in self._users.values()
                if u.email and u.email.lower() == wanted
            ]

    async def update_user(self, user: UserRecord) -> None:
        with self._lock:
            if user.id not in self._users:
                raise IdentityError(f"User {user.id} does not exist")
            self._users[user.id] = user.model_copy(deep=True)

    async def list_user_groups(self, user_id: str) -> List[UserGroup]:
        with self._lock:
            return [
                self._groups.get(group_id) or UserGroup(id=group_id, name=group_id)
                for group_id in sorted(self._memberships.get(user_id, set()))
            ]

    async def list_permission_group_ids(self, permission_name: str) -> List[str]:
        with self._lock:
            return sorted(self._permissions.get(permission_name, set()))
