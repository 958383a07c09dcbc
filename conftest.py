"""Shared fixtures: temporary database, in-memory collaborators, a fake
SAP Service Layer served by aiohttp.web and a local Temporal dev server.

The Temporal server is started once per session, so every async test and
fixture runs on the session event loop."""

import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from temporalio.testing import WorkflowEnvironment

from core.config import ItemGroupConfig, SapConfig
from core.security.session_store import InMemorySapSessionStore
from core.storage.db import init_db
from identity.provider import InMemoryIdentityProvider


# =============================================================================
# OData filter evaluation
# =============================================================================

_CLAUSE_PATTERN = re.compile(r"^(\w+) (eq|ne|ge|le|gt|lt) ('(?:[^']|'')*'|-?[\d.]+)$")


def _split_top_level(expression: str, separator: str) -> List[str]:
    parts, depth, current = [], 0, ""
    i = 0
    while i < len(expression):
        char = expression[i]
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if depth == 0 and expression.startswith(separator, i):
            parts.append(current)
            current = ""
            i += len(separator)
            continue
        current += char
        i += 1
    parts.append(current)
    return [part.strip() for part in parts]


def _matches_clause(record: Dict[str, Any], clause: str) -> bool:
    if clause.startswith("(") and clause.endswith(")"):
        return any(_matches_clause(record, part) for part in _split_top_level(clause[1:-1], " or "))

    match = _CLAUSE_PATTERN.match(clause)
    assert match, f"Unsupported filter clause {clause}"
    field, op, raw = match.groups()
    expected: Any = raw[1:-1].replace("''", "'") if raw.startswith("'") else float(raw)
    actual = record.get(field)
    if actual is None:
        return op == "ne"
    if isinstance(expected, float):
        actual = float(actual)
    else:
        actual = str(actual)
    return {
        "eq": actual == expected,
        "ne": actual != expected,
        "ge": actual >= expected,
        "le": actual <= expected,
        "gt": actual > expected,
        "lt": actual < expected,
    }[op]


def odata_matches(record: Dict[str, Any], filter_expression: Optional[str]) -> bool:
    if not filter_expression:
        return True
    return all(_matches_clause(record, clause) for clause in _split_top_level(filter_expression, " and "))


# =============================================================================
# Fake Service Layer
# =============================================================================

ENTITY_KEYS = {
    "BusinessPartners": "CardCode",
    "BlanketAgreements": "AgreementNo",
    "ItemGroups": "Number",
    "U_PFZ_TOIMITUSPAIKKA": "Code",
    "PurchaseDeliveryNotes": "DocEntry",
    "StockTransfers": "DocEntry",
}

_ENTITY_PATTERN = re.compile(r"^(\w+)\((.*)\)$")


class FakeServiceLayer:
    """In-process Service Layer.

    Sessions are checked on every request: a request with an unknown
    B1SESSION cookie gets 401. Requests are recorded for assertions.
    """

    PAGE_SIZE = 100

    def __init__(self):
        self.collections: Dict[str, List[Dict[str, Any]]] = {name: [] for name in ENTITY_KEYS}
        self.requests: List[Dict[str, Any]] = []
        self.active_sessions: set = set()
        self.logins = 0
        self.logouts = 0
        self.login_status = 200
        self.login_cookies = ("B1SESSION", "ROUTEID")
        self.logout_status = 204
        self.count_override: Optional[str] = None
        self.fail_patch_status: Optional[int] = None
        self.server: Optional[TestServer] = None

    @property
    def api_url(self) -> str:
        return str(self.server.make_url("/b1s/v1"))

    def add(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        self.collections[collection].append(record)
        return record

    def find(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        key_field = ENTITY_KEYS[collection]
        for record in self.collections[collection]:
            if str(record.get(key_field)) == key:
                return record
        return None

    def requests_to(self, method: str, path_prefix: str) -> List[Dict[str, Any]]:
        return [r for r in self.requests if r["method"] == method and r["path"].startswith(path_prefix)]

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/b1s/v1/Login", self._login)
        app.router.add_post("/b1s/v1/Logout", self._logout)
        app.router.add_route("*", "/b1s/v1/{path:.*}", self._resource)
        return app

    @staticmethod
    def _error(status: int, message: str) -> web.Response:
        body = {"error": {"code": -1, "message": {"lang": "en-us", "value": message}}}
        return web.json_response(body, status=status)

    def _session_id(self, request: web.Request) -> Optional[str]:
        cookie = request.headers.get("Cookie", "")
        for part in cookie.split(";"):
            name, _, value = part.strip().partition("=")
            if name == "B1SESSION":
                return value
        return None

    async def _login(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.requests.append({"method": "POST", "path": "Login", "query": {}, "json": body})
        if self.login_status != 200:
            return self._error(self.login_status, "Invalid login credential.")

        self.logins += 1
        session_id = f"session-{self.logins}"
        self.active_sessions.add(session_id)
        response = web.json_response({"SessionId": session_id, "SessionTimeout": 30})
        if "B1SESSION" in self.login_cookies:
            response.headers.add("Set-Cookie", f"B1SESSION={session_id}; HttpOnly;")
        if "ROUTEID" in self.login_cookies:
            response.headers.add("Set-Cookie", "ROUTEID=.node1; path=/b1s")
        return response

    async def _logout(self, request: web.Request) -> web.Response:
        self.requests.append({"method": "POST", "path": "Logout", "query": {}, "json": None})
        if self.logout_status != 204:
            return self._error(self.logout_status, "Logout failed")
        self.logouts += 1
        self.active_sessions.discard(self._session_id(request))
        return web.Response(status=204)

    async def _resource(self, request: web.Request) -> web.Response:
        path = request.match_info["path"]
        body = await request.json() if request.can_read_body else None
        self.requests.append({
            "method": request.method,
            "path": path,
            "query": dict(request.query),
            "json": body,
        })

        if self._session_id(request) not in self.active_sessions:
            return self._error(401, "Invalid session.")

        if path.endswith("/$count"):
            collection = path[:-len("/$count")]
            if self.count_override is not None:
                return web.Response(text=self.count_override)
            records = [r for r in self.collections[collection] if odata_matches(r, request.query.get("$filter"))]
            return web.Response(text=str(len(records)))

        entity = _ENTITY_PATTERN.match(path)
        if entity:
            collection, key = entity.group(1), entity.group(2).strip("'")
            record = self.find(collection, key)
            if record is None:
                return self._error(404, "No matching records found (ODBC -2028)")
            if request.method == "GET":
                return web.json_response(record)
            if request.method == "PATCH":
                if self.fail_patch_status:
                    return self._error(self.fail_patch_status, "Update rejected")
                record.update(body or {})
                return web.Response(status=204)
            return self._error(405, "Method not allowed")

        collection = path
        if request.method == "POST":
            created = dict(body or {})
            key_field = ENTITY_KEYS[collection]
            if created.get(key_field) is None:
                created[key_field] = len(self.collections[collection]) + 1
            if collection == "BlanketAgreements":
                created.setdefault("DocNum", 1000 + created[key_field])
            self.collections[collection].append(created)
            return web.json_response(created, status=201)

        records = [r for r in self.collections[collection] if odata_matches(r, request.query.get("$filter"))]
        skip = int(request.query.get("$skip", "0"))
        page = records[skip:skip + self.PAGE_SIZE]
        select = request.query.get("$select")
        if select:
            fields = select.split(",")
            page = [{k: v for k, v in r.items() if k in fields} for r in page]
        return web.json_response({"value": page})


class FakeClock:
    """Settable clock for session expiry tests."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 6, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "berries_sync.db"
    init_db(path)
    return path


@pytest.fixture
def identity():
    return InMemoryIdentityProvider()


@pytest.fixture
def item_group_config():
    return ItemGroupConfig.from_dict({
        "item-group-categories": {"FROZEN": ["100", "101"], "FRESH": ["200"]},
        "item-group-display-names": {"100": "Frozen blueberries"},
        "item-group-prerequisites": {"101": "100"},
        "item-group-minimum-profit-estimation": {"100": "0.5"},
    })


@pytest_asyncio.fixture
async def fake_sap():
    fake = FakeServiceLayer()
    fake.server = TestServer(fake.app())
    await fake.server.start_server()
    try:
        yield fake
    finally:
        await fake.server.close()


@pytest.fixture
def sap_config(fake_sap):
    return SapConfig(
        api_url=fake_sap.api_url,
        company_db="SBODEMOFI",
        username="manager",
        password="secret",
    )


@pytest_asyncio.fixture
async def http():
    async with aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar()) as session:
        yield session


@pytest.fixture
def session_store():
    return InMemorySapSessionStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sap_services(sap_config, http, session_store, clock):
    from connectors.sap.sl_client import SapServiceLayerClient
    from connectors.sap.sl_services import SapServices
    from connectors.sap.sl_session import SapSessionManager

    manager = SapSessionManager(sap_config, http, session_store, clock=clock)
    return SapServices.create(SapServiceLayerClient(sap_config, manager, http))




# =============================================================================
# Temporal
# =============================================================================

def pytest_collection_modifyitems(items):
    session_loop = pytest.mark.asyncio(loop_scope="session")
    for item in items:
        if pytest_asyncio.is_async_test(item):
            item.add_marker(session_loop, append=False)


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def temporal_env():
    env = await WorkflowEnvironment.start_local()
    try:
        yield env
    finally:
        await env.shutdown()


@pytest.fixture
def temporal_client(temporal_env):
    return temporal_env.client


@pytest.fixture
def task_queue_prefix():
    """Per-test task queue prefix, so workers of different tests never share a queue."""
    return f"test-{uuid.uuid4().hex[:8]}-"
