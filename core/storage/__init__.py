"""Core storage - SQLite schema and domain repository."""

from core.storage.db import connect, init_db

__all__ = [
    "connect",
    "init_db",
]
