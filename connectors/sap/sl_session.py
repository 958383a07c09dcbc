"""SAP Service Layer session management.

Two states per session slot: no session, or an active session persisted in a
SapSessionStore. Sessions are established with POST /Login and end with
POST /Logout.

By default every resource call brackets its own session: it logs in, makes
its request and logs out, so concurrent callers never share a session. With
SAP_POOL_SESSIONS enabled, calls reuse the slot's session until it nears
expiry; acquisition and renewal are serialized with an asyncio.Lock.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, List

import aiohttp

from connectors.sap.sl_client import (
    SapApiError,
    SapLoginError,
    SessionParseError,
    remote_error_message,
)
from core.config import SapConfig
from core.observability.logging import get_logger
from core.security.session_store import DEFAULT_SLOT, SapSession, SapSessionStore

logger = get_logger(__name__)

SESSION_COOKIE = "B1SESSION"
ROUTE_COOKIE = "ROUTEID"


def _parse_cookie_value(cookie: str) -> str:
    return cookie.split(";")[0].split("=", 1)[1]


def parse_login_cookies(set_cookie_headers: List[str], expires_at: datetime) -> SapSession:
    """Build a session from the Set-Cookie headers of a login response.

    Raises:
        SessionParseError: If the session or route cookie is missing
    """
    if not set_cookie_headers:
        raise SessionParseError("No set-cookie header found from SAP Service Layer login response")

    session_cookie = next((c for c in set_cookie_headers if c.startswith(SESSION_COOKIE)), None)
    if not session_cookie:
        raise SessionParseError("No session cookie found from SAP Service Layer login response")

    route_cookie = next((c for c in set_cookie_headers if c.startswith(ROUTE_COOKIE)), None)
    if not route_cookie:
        raise SessionParseError("No route cookie found from SAP Service Layer login response")

    return SapSession(
        session_id=_parse_cookie_value(session_cookie),
        route_id=_parse_cookie_value(route_cookie),
        expires_at=expires_at,
    )


class SapSessionManager:
    """Hands out Service Layer sessions.

    Usage:
        manager = SapSessionManager(config, http, SqliteSapSessionStore(db_path))
        async with manager.session() as session:
            ...  # requests with session.cookie_header
    """

    def __init__(
        self,
        config: SapConfig,
        http: aiohttp.ClientSession,
        store: SapSessionStore,
        clock: Callable[[], datetime] = datetime.utcnow,
        slot: str = DEFAULT_SLOT,
    ):
        config.validate()
        self.config = config
        self.http = http
        self.store = store
        self.clock = clock
        self.slot = slot
        self._lock = asyncio.Lock()

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.config.session_ttl_minutes)

    @property
    def margin(self) -> timedelta:
        return timedelta(minutes=self.config.session_margin_minutes)

    async def get_session(self) -> SapSession:
        """Return the persisted session, renewing it if it is near expiry."""
        stored = await self.store.get(self.slot)
        if stored and stored.is_valid(self.clock(), self.margin):
            return stored

        if stored:
            logger.info("SAP session is about to expire, logging in again")
            try:
                await self.logout(stored)
            except (SapApiError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Failed to log out expiring SAP session: {e}")
            await self.store.delete(self.slot, stored.session_id)

        return await self.login()

    async def create_session(self) -> SapSession:
        """Log in unconditionally."""
        return await self.login()

    async def login(self) -> SapSession:
        """POST /Login and persist the resulting session.

        Raises:
            SapLoginError: Login rejected
            SessionParseError: Response lacks the session cookies
        """
        url = f"{self.config.api_url}/Login"
        body = {
            "CompanyDB": self.config.company_db,
            "UserName": self.config.username,
            "Password": self.config.password,
        }
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)

        async with self.http.post(url, json=body, timeout=timeout) as response:
            if response.status != 200:
                response_text = await response.text()
                raise SapLoginError(
                    f"Error doing login to SAP Service Layer: {remote_error_message(response_text)}",
                    response.status,
                    response_text,
                )
            cookies = response.headers.getall("Set-Cookie", [])

        session = parse_login_cookies(cookies, self.clock() + self.ttl)
        await self.store.save(session, self.slot)
        logger.debug(f"Logged in to SAP Service Layer, session valid until {session.expires_at.isoformat()}")
        return session

    async def logout(self, session: SapSession) -> None:
        """POST /Logout.

        Raises:
            SapApiError: If the Service Layer does not answer 204
        """
        url = f"{self.config.api_url}/Logout"
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)

        async with self.http.post(url, headers={"Cookie": session.cookie_header}, timeout=timeout) as response:
            if response.status != 204:
                response_text = await response.text()
                raise SapApiError(
                    f"Error doing logout to SAP Service Layer: {remote_error_message(response_text)}",
                    response.status,
                    response_text,
                )

    async def end_session(self, session: SapSession) -> None:
        """Log out and clear the slot if it still holds this session."""
        try:
            await self.logout(session)
        finally:
            await self.store.delete(self.slot, session.session_id)

    async def invalidate(self, session: SapSession) -> None:
        """Forget a session the server no longer accepts."""
        await self.store.delete(self.slot, session.session_id)

    async def acquire(self) -> SapSession:
        """Shared session for pooled mode."""
        async with self._lock:
            return await self.get_session()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[SapSession]:
        """Session for the duration of one logical call."""
        if self.config.pool_sessions:
            yield await self.acquire()
            return

        session = await self.create_session()
        try:
            yield session
        finally:
            try:
                await self.end_session(session)
            except (SapApiError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Failed to log out SAP session after request: {e}")
