"""Security module - SAP Service Layer session storage."""

from core.security.session_store import (
    DEFAULT_SLOT,
    InMemorySapSessionStore,
    SapSession,
    SapSessionStore,
    SqliteSapSessionStore,
)

__all__ = [
    "DEFAULT_SLOT",
    "InMemorySapSessionStore",
    "SapSession",
    "SapSessionStore",
    "SqliteSapSessionStore",
]
