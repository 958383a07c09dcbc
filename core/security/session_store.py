"""Storage backends for SAP Service Layer sessions.

A session slot holds at most one live session:
- InMemorySapSessionStore: For development/testing
- SqliteSapSessionStore: Survives restarts, shared by all workers on one database
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from core.config import DEFAULT_DB_PATH
from core.storage.db import DbPath, connect

DEFAULT_SLOT = "default"


@dataclass
class SapSession:
    """Service Layer session established by a login."""
    session_id: str
    route_id: str
    expires_at: datetime

    def is_valid(self, now: Optional[datetime] = None, margin: timedelta = timedelta(minutes=10)) -> bool:
        """Check the session is usable for at least `margin` more."""
        now = now or datetime.utcnow()
        return now < (self.expires_at - margin)

    @property
    def cookie_header(self) -> str:
        return f"B1SESSION={self.session_id}; ROUTEID={self.route_id}"


class SapSessionStore(ABC):
    """Abstract base class for session slot storage."""

    @abstractmethod
    async def get(self, slot: str = DEFAULT_SLOT) -> Optional[SapSession]:
        """Return the session held in a slot."""
        pass

    @abstractmethod
    async def save(self, session: SapSession, slot: str = DEFAULT_SLOT) -> None:
        """Store a session, replacing whatever the slot held."""
        pass

    @abstractmethod
    async def delete(self, slot: str = DEFAULT_SLOT, session_id: Optional[str] = None) -> bool:
        """Clear a slot. With session_id, only if the slot still holds that session."""
        pass


class InMemorySapSessionStore(SapSessionStore):
    """In-memory session storage. Sessions are lost on restart."""

    def __init__(self):
        self._sessions: Dict[str, SapSession] = {}
        self._lock = threading.Lock()

    async def get(self, slot: str = DEFAULT_SLOT) -> Optional[SapSession]:
        with self._lock:
            return self._sessions.get(slot)

    async def save(self, session: SapSession, slot: str = DEFAULT_SLOT) -> None:
        with self._lock:
            self._sessions[slot] = session

    async def delete(self, slot: str = DEFAULT_SLOT, session_id: Optional[str] = None) -> bool:
        with self._lock:
            current = self._sessions.get(slot)
            if current is None:
                return False
            if session_id is not None and current.session_id != session_id:
                return False
            del self._sessions[slot]
            return True


class SqliteSapSessionStore(SapSessionStore):
    """Session slots in the sap_session table."""

    def __init__(self, db_path: DbPath = DEFAULT_DB_PATH):
        self.db_path = db_path

    async def get(self, slot: str = DEFAULT_SLOT) -> Optional[SapSession]:
        conn = connect(self.db_path)
        try:
            row = conn.execute("SELECT * FROM sap_session WHERE slot = ?", (slot,)).fetchone()
            if row is None:
                return None
            return SapSession(
                session_id=row["session_id"],
                route_id=row["route_id"],
                expires_at=datetime.fromisoformat(row["expires_at"]),
            )
        finally:
            conn.close()

    async def save(self, session: SapSession, slot: str = DEFAULT_SLOT) -> None:
        conn = connect(self.db_path)
        try:
            conn.execute("""
                INSERT INTO sap_session (slot, session_id, route_id, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(slot) DO UPDATE SET
                    session_id = excluded.session_id,
                    route_id = excluded.route_id,
                    expires_at = excluded.expires_at
            """, (slot, session.session_id, session.route_id, session.expires_at.isoformat()))
            conn.commit()
        finally:
            conn.close()

    async def delete(self, slot: str = DEFAULT_SLOT, session_id: Optional[str] = None) -> bool:
        conn = connect(self.db_path)
        try:
            if session_id is None:
                cursor = conn.execute("DELETE FROM sap_session WHERE slot = ?", (slot,))
            else:
                cursor = conn.execute(
                    "DELETE FROM sap_session WHERE slot = ? AND session_id = ?", (slot, session_id)
                )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()
