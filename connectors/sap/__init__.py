"""SAP Business One Service Layer connector.

- sl_session: login/logout and session slot lifecycle
- sl_client: HTTP primitive, pagination, error types
- sl_services: typed services per Service Layer collection
- sl_models: Service Layer payload models
"""

from connectors.sap.sl_client import (
    SapApiError,
    SapCountError,
    SapLoginError,
    SapServiceLayerClient,
    SessionParseError,
)
from connectors.sap.sl_session import SapSessionManager
from connectors.sap.sl_services import SapServices

__all__ = [
    "SapApiError",
    "SapCountError",
    "SapLoginError",
    "SapServiceLayerClient",
    "SapServices",
    "SapSessionManager",
    "SessionParseError",
]
