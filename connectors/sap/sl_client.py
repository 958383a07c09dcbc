"""SAP Service Layer HTTP Client.

Low-level HTTP client for Service Layer calls.
Handles session cookies, $count based pagination and error handling.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode
import asyncio
import json
import math

import aiohttp

from core.config import SapConfig
from core.observability.logging import get_logger

logger = get_logger(__name__)


class SapApiError(Exception):
    """Base exception for Service Layer errors.

    Carries the remote error payload and the outgoing request body so a
    report item message can be understood without the stack trace.
    """
    def __init__(
        self,
        message: str,
        status_code: int = 0,
        response_body: str = "",
        request_body: Optional[Any] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.request_body = request_body

    @classmethod
    def wrap(cls, context: str, cause: BaseException) -> "SapApiError":
        """Stack a context string on top of a cause, keeping its diagnostics."""
        if isinstance(cause, SapApiError):
            return type(cause)(
                f"{context}: {cause}",
                cause.status_code,
                cause.response_body,
                cause.request_body,
            )
        return SapApiError(f"{context}: {type(cause).__name__}: {cause}")


class SapLoginError(SapApiError):
    """Login rejected by the Service Layer."""
    pass


class SessionParseError(SapApiError):
    """Login response did not carry the session or route cookie."""
    pass


class SapCountError(SapApiError):
    """$count response was not a number."""
    pass


def remote_error_message(response_text: str) -> str:
    """Extract error.message.value from a Service Layer error body."""
    try:
        data = json.loads(response_text)
        return data["error"]["message"]["value"]
    except (ValueError, KeyError, TypeError):
        return response_text


def entity_path(resource: str, key: Any) -> str:
    """Entity URL path, e.g. BusinessPartners('S001') or ItemGroups(100)."""
    if isinstance(key, int):
        return f"{resource}({key})"
    escaped = str(key).replace("'", "''")
    return f"{resource}('{escaped}')"


class SapServiceLayerClient:
    """HTTP client for the SAP Service Layer.

    Provides:
    - Session bracketed requests
    - $count + parallel $skip pagination
    - 404 as "no result", other non-2xx responses as SapApiError

    Usage:
        client = SapServiceLayerClient(config, session_manager)
        partners = await client.list_all("BusinessPartners", filter="CardType eq 'cSupplier'")
        partner = await client.request("GET", entity_path("BusinessPartners", "S001"))
    """

    def __init__(self, config: SapConfig, session_manager, http: Optional[aiohttp.ClientSession] = None):
        """Initialize API client.

        Args:
            config: Service Layer configuration
            session_manager: SapSessionManager handing out sessions
            http: aiohttp session, defaults to the session manager's

        Raises:
            ConfigurationError: If the Service Layer credentials are incomplete
        """
        from connectors.sap.sl_session import SapSessionManager

        config.validate()
        self.config = config
        self.session_manager: SapSessionManager = session_manager
        self.http = http or session_manager.http

    def _build_url(self, resource: str, params: Optional[Dict[str, str]] = None) -> str:
        path = quote(resource, safe="/$()',")
        url = f"{self.config.api_url}/{path}"
        if params:
            url += "?" + urlencode(params, quote_via=quote, safe="$,()'")
        return url

    def _get_headers(self, session) -> Dict[str, str]:
        return {
            "Cookie": session.cookie_header,
            "Prefer": f"odata.maxpagesize={self.config.page_size}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def async_fetch(
        self,
        method: str,
        resource: str,
        session,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        expected_status: Optional[int] = None,
    ) -> Optional[Any]:
        """Make one request within an open session.

        Returns:
            Parsed JSON, {} for an empty body, None for 404

        Raises:
            SapApiError: Non-2xx response, or a status other than expected_status
        """
        url = self._build_url(resource, params)
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)

        async with self.http.request(
            method,
            url,
            headers=self._get_headers(session),
            json=body,
            timeout=timeout,
        ) as response:
            response_text = await response.text()

            if response.status == 404:
                logger.debug(f"{method} {resource} returned 404")
                return None

            if response.status == 401:
                # Session dropped by the server, next call logs in again
                await self.session_manager.invalidate(session)

            if response.status >= 300 or (expected_status is not None and response.status != expected_status):
                raise SapApiError(
                    f"{method} {resource} failed with status {response.status}: "
                    f"{remote_error_message(response_text)}",
                    response.status,
                    response_text,
                    body,
                )

            if not response_text:
                return {}
            return json.loads(response_text)

    async def fetch_count(self, resource: str, session, filter: Optional[str] = None) -> int:
        """Count the records of a collection with $count.

        Raises:
            SapCountError: If the response body is not a number
        """
        params = {"$filter": filter} if filter else None
        url = self._build_url(f"{resource}/$count", params)
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)

        async with self.http.get(url, headers=self._get_headers(session), timeout=timeout) as response:
            response_text = await response.text()
            if response.status >= 300:
                raise SapApiError(
                    f"GET {resource}/$count failed with status {response.status}: "
                    f"{remote_error_message(response_text)}",
                    response.status,
                    response_text,
                )

        try:
            return int(response_text.strip().lstrip("\ufeff"))
        except ValueError:
            raise SapCountError("Item count was not number", response.status, response_text)

    async def list_all(
        self,
        resource: str,
        filter: Optional[str] = None,
        select: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """List every record of a collection.

        Counts first, then fetches all pages concurrently. Pages may complete
        in any order; records are returned in page order.
        """
        async with self.session_manager.session() as session:
            count = await self.fetch_count(resource, session, filter)
            page_size = self.config.page_size

            params: Dict[str, str] = {}
            if filter:
                params["$filter"] = filter
            if select:
                params["$select"] = ",".join(select)

            pages = await asyncio.gather(*[
                self.async_fetch("GET", resource, session, params={**params, "$skip": str(skip)})
                for skip in range(0, count, page_size)
            ])

        logger.debug(f"Listed {count} {resource} in {math.ceil(count / page_size)} pages")
        return [record for page in pages if page for record in page.get("value", [])]

    async def request(
        self,
        method: str,
        resource: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        expected_status: Optional[int] = None,
    ) -> Optional[Any]:
        """Make one request in its own session."""
        async with self.session_manager.session() as session:
            return await self.async_fetch(
                method, resource, session,
                body=body,
                params=params,
                expected_status=expected_status,
            )
