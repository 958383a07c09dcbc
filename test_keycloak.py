"""
Tests for the Keycloak admin API identity provider against a fake Keycloak.

Run with: pytest test_keycloak.py -v
"""

from typing import Any, Dict, List

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from core.config import KeycloakConfig
from identity.keycloak import KeycloakIdentityProvider
from identity.provider import IdentityError

REALM = "berries"
TOKEN = "admin-token"


class FakeKeycloak:
    """Users, groups and one authorization resource server client."""

    def __init__(self):
        self.users: List[Dict[str, Any]] = []
        self.groups: Dict[str, List[Dict[str, str]]] = {}
        self.permissions: Dict[str, List[str]] = {}
        self.token_requests = 0
        self.updates: List[Dict[str, Any]] = []

    def build_app(self) -> web.Application:
        admin = f"/admin/realms/{REALM}"
        authz = f"{admin}/clients/authz-uuid/authz/resource-server"
        app = web.Application(middlewares=[self._require_token])
        app.router.add_post(f"/realms/{REALM}/protocol/openid-connect/token", self._token)
        app.router.add_get(f"{admin}/users", self._list_users)
        app.router.add_get(f"{admin}/users/{{user_id}}", self._get_user)
        app.router.add_put(f"{admin}/users/{{user_id}}", self._update_user)
        app.router.add_get(f"{admin}/users/{{user_id}}/groups", self._user_groups)
        app.router.add_get(f"{admin}/clients", self._clients)
        app.router.add_get(f"{authz}/permission", self._permission)
        app.router.add_get(f"{authz}/policy/{{permission_id}}/associatedPolicies", self._policies)
        app.router.add_get(f"{authz}/policy/group/{{policy_id}}", self._group_policy)
        return app

    @web.middleware
    async def _require_token(self, request, handler):
        if request.path.startswith("/admin/") and request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return web.Response(status=401, text="unauthorized")
        return await handler(request)

    async def _token(self, request):
        form = await request.post()
        self.token_requests += 1
        if form.get("client_secret") != "secret":
            return web.Response(status=401, text='{"error":"unauthorized_client"}')
        return web.json_response({"access_token": TOKEN, "expires_in": 300})

    async def _list_users(self, request):
        users = self.users
        if "email" in request.query:
            users = [u for u in users if (u.get("email") or "").lower() == request.query["email"].lower()]
        first = int(request.query.get("first", 0))
        limit = int(request.query.get("max", 100))
        return web.json_response(users[first:first + limit])

    async def _get_user(self, request):
        user = next((u for u in self.users if u["id"] == request.match_info["user_id"]), None)
        if user is None:
            return web.Response(status=404, text='{"error":"User not found"}')
        return web.json_response(user)

    async def _update_user(self, request):
        self.updates.append({"id": request.match_info["user_id"], **await request.json()})
        return web.Response(status=204)

    async def _user_groups(self, request):
        return web.json_response(self.groups.get(request.match_info["user_id"], []))

    async def _clients(self, request):
        if request.query.get("clientId") != "berries-api":
            return web.json_response([])
        return web.json_response([{"id": "authz-uuid", "clientId": "berries-api"}])

    async def _permission(self, request):
        name = request.query["name"]
        # Keycloak matches permission names by prefix
        return web.json_response([
            {"id": f"perm-{permission}", "name": permission}
            for permission in self.permissions
            if permission.startswith(name)
        ])

    async def _policies(self, request):
        permission = request.match_info["permission_id"][len("perm-"):]
        return web.json_response([
            {"id": "role-policy", "type": "role"},
            {"id": f"group-policy-{permission}", "type": "group"},
        ])

    async def _group_policy(self, request):
        permission = request.match_info["policy_id"][len("group-policy-"):]
        return web.json_response({"groups": [{"id": group_id} for group_id in self.permissions[permission]]})


@pytest_asyncio.fixture
async def keycloak():
    fake = FakeKeycloak()
    server = TestServer(fake.build_app())
    await server.start_server()
    fake.url = str(server.make_url("")).rstrip("/")
    yield fake
    await server.close()


@pytest.fixture
def provider(keycloak, http):
    config = KeycloakConfig(
        url=keycloak.url,
        realm=REALM,
        client_id="sync",
        client_secret="secret",
        authz_client_id="berries-api",
    )
    return KeycloakIdentityProvider(config, http)


def user(user_id, email=None, **attributes):
    return {"id": user_id, "email": email, "username": user_id, "attributes": attributes}


class TestUsers:
    async def test_token_reused(self, keycloak, provider):
        keycloak.users = [user("u1", "a@example.com")]

        await provider.find_user("u1")
        await provider.list_users()

        assert keycloak.token_requests == 1

    async def test_authentication_failure(self, keycloak, provider):
        provider.config.client_secret = "wrong"

        with pytest.raises(IdentityError, match="Keycloak authentication failed with status 401"):
            await provider.list_users()

    async def test_missing_user(self, keycloak, provider):
        assert await provider.find_user("nobody") is None

    async def test_find_by_email_ignores_case(self, keycloak, provider):
        keycloak.users = [user("u1", "Grower@Example.com")]

        found = await provider.find_user_by_email("grower@example.com")

        assert found.id == "u1"

    async def test_find_by_attribute_pages(self, keycloak, provider):
        keycloak.users = [user(f"u{i}", sapId=[f"S{i:04d}"]) for i in range(60)]

        found = await provider.find_user_by_attribute("sapId", "S0042")

        assert found.id == "u42"

    async def test_duplicate_attribute(self, keycloak, provider):
        keycloak.users = [user("u1", sapId=["S0001"]), user("u2", sapId="S0001")]

        with pytest.raises(IdentityError, match="more than one user with attribute sapId = S0001"):
            await provider.find_user_by_attribute("sapId", "S0001")

    async def test_update_user_sends_attributes(self, keycloak, provider):
        keycloak.users = [user("u1", "a@example.com")]
        record = await provider.find_user("u1")
        record.set_single_attribute("sapId", "S0001")

        await provider.update_user(record)

        [update] = keycloak.updates
        assert update["id"] == "u1"
        assert update["attributes"] == {"sapId": ["S0001"]}
        assert update["email"] == "a@example.com"


class TestPermissions:
    async def test_groups_of_named_permission(self, keycloak, provider):
        keycloak.permissions = {
            "chat-group:access-1": ["g1", "g2"],
            "chat-group:access-10": ["g3"],
        }

        assert await provider.list_permission_group_ids("chat-group:access-1") == ["g1", "g2"]

    async def test_unknown_permission(self, keycloak, provider):
        assert await provider.list_permission_group_ids("chat-thread:access-9") == []

    async def test_user_groups(self, keycloak, provider):
        keycloak.groups["u1"] = [{"id": "g1", "name": "Growers"}]

        groups = await provider.list_user_groups("u1")

        assert [(g.id, g.name) for g in groups] == [("g1", "Growers")]

    async def test_missing_authz_client(self, keycloak, provider):
        provider.config.authz_client_id = "other"

        with pytest.raises(IdentityError, match="Keycloak client other was not found"):
            await provider.list_permission_group_ids("chat-group:access-1")
