"""Identity service integration - users, attributes, groups and permission grants."""

from identity.provider import (
    IdentityError,
    IdentityProvider,
    InMemoryIdentityProvider,
    UserAttribute,
    UserGroup,
    UserRecord,
)

__all__ = [
    "IdentityError",
    "IdentityProvider",
    "InMemoryIdentityProvider",
    "UserAttribute",
    "UserGroup",
    "UserRecord",
]
