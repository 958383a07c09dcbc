"""Keycloak admin API identity provider.

Authenticates with the client credentials grant and talks to the admin REST
API. Chat permissions are Keycloak authorization permissions on a resource
server client; the user groups they are granted to are read from their
associated group policies.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import aiohttp

from core.config import KeycloakConfig
from core.observability.logging import get_logger
from identity.provider import IdentityError, IdentityProvider, UserGroup, UserRecord

logger = get_logger(__name__)


@dataclass
class AdminToken:
    """Admin API access token with expiration tracking."""
    access_token: str
    expires_in: int
    obtained_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_expired(self) -> bool:
        """Check if token is expired (with 30-second buffer)."""
        expires_at = self.obtained_at + timedelta(seconds=self.expires_in)
        return datetime.utcnow() >= (expires_at - timedelta(seconds=30))


def _to_user_record(data: Dict[str, Any]) -> UserRecord:
    attributes = {
        name: values if isinstance(values, list) else [values]
        for name, values in (data.get("attributes") or {}).items()
    }
    return UserRecord(
        id=data["id"],
        email=data.get("email"),
        username=data.get("username"),
        first_name=data.get("firstName"),
        last_name=data.get("lastName"),
        enabled=data.get("enabled", True),
        attributes=attributes,
    )


class KeycloakIdentityProvider(IdentityProvider):
    """Identity provider backed by the Keycloak admin REST API.

    Usage:
        provider = KeycloakIdentityProvider(config, http)
        user = await provider.find_user_by_email("grower@example.com")
    """

    def __init__(self, config: KeycloakConfig, http: aiohttp.ClientSession):
        self.config = config
        self.http = http
        self._token: Optional[AdminToken] = None
        self._token_lock = asyncio.Lock()
        self._authz_client_uuid: Optional[str] = None

    @property
    def _admin_url(self) -> str:
        return f"{self.config.url}/admin/realms/{self.config.realm}"

    async def _get_token(self) -> str:
        async with self._token_lock:
            if self._token and not self._token.is_expired:
                return self._token.access_token

            url = f"{self.config.url}/realms/{self.config.realm}/protocol/openid-connect/token"
            form = {
                "grant_type": "client_credentials",
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            }
            async with self.http.post(url, data=form) as response:
                if response.status != 200:
                    raise IdentityError(
                        f"Keycloak authentication failed with status {response.status}: {await response.text()}"
                    )
                data = await response.json()

            self._token = AdminToken(access_token=data["access_token"], expires_in=int(data.get("expires_in", 60)))
            return self._token.access_token

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Any] = None,
    ) -> Optional[Any]:
        """Admin API request. Returns None for 404."""
        headers = {"Authorization": f"Bearer {await self._get_token()}"}
        async with self.http.request(
            method,
            f"{self._admin_url}/{path}",
            headers=headers,
            params=params,
            json=json_body,
        ) as response:
            if response.status == 404:
                return None
            if response.status >= 300:
                raise IdentityError(
                    f"Keycloak {method} {path} failed with status {response.status}: {await response.text()}"
                )
            text = await response.text()
            return await response.json(content_type=None) if text else None

    async def list_users(self, first: int = 0, max_results: int = 100) -> List[UserRecord]:
        data = await self._request("GET", "users", params={
            "first": str(first),
            "max": str(max_results),
            "briefRepresentation": "false",
        })
        return [_to_user_record(user) for user in data or []]

    async def find_user(self, user_id: str) -> Optional[UserRecord]:
        data = await self._request("GET", f"users/{user_id}")
        return _to_user_record(data) if data else None

    async def search_users_by_email(self, email: str) -> List[UserRecord]:
        data = await self._request("GET", "users", params={"email": email, "exact": "true"})
        wanted = email.lower()
        return [
            _to_user_record(user)
            for user in data or []
            if (user.get("email") or "").lower() == wanted
        ]

    async def update_user(self, user: UserRecord) -> None:
        await self._request("PUT", f"users/{user.id}", json_body={
            "email": user.email,
            "firstName": user.first_name,
            "lastName": user.last_name,
            "enabled": user.enabled,
            "attributes": user.attributes,
        })

    async def list_user_groups(self, user_id: str) -> List[UserGroup]:
        data = await self._request("GET", f"users/{user_id}/groups")
        return [UserGroup(id=group["id"], name=group.get("name", "")) for group in data or []]

    async def _get_authz_client_uuid(self) -> str:
        if self._authz_client_uuid:
            return self._authz_client_uuid

        client_id = self.config.authz_client_id
        if not client_id:
            raise IdentityError("KEYCLOAK_AUTHZ_CLIENT_ID is not configured")

        clients = await self._request("GET", "clients", params={"clientId": client_id})
        if not clients:
            raise IdentityError(f"Keycloak client {client_id} was not found")
        self._authz_client_uuid = clients[0]["id"]
        return self._authz_client_uuid

    async def list_permission_group_ids(self, permission_name: str) -> List[str]:
        client_uuid = await self._get_authz_client_uuid()
        resource_server = f"clients/{client_uuid}/authz/resource-server"

        permissions = await self._request("GET", f"{resource_server}/permission", params={"name": permission_name})
        permission = next((p for p in permissions or [] if p.get("name") == permission_name), None)
        if not permission:
            return []

        policies = await self._request("GET", f"{resource_server}/policy/{permission['id']}/associatedPolicies")
        group_ids: List[str] = []
        for policy in policies or []:
            if policy.get("type") != "group":
                continue
            group_policy = await self._request("GET", f"{resource_server}/policy/group/{policy['id']}")
            for group in (group_policy or {}).get("groups", []):
                if group["id"] not in group_ids:
                    group_ids.append(group["id"])

        return group_ids
