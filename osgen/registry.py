"""Session registry: local session handles to remote OutSystems identifiers."""

import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from osgen.errors import UnknownSession


def new_session_id() -> str:
    return f"sess_{uuid.uuid4().hex[:12]}"


class SessionEntry(BaseModel):
    """Remote identifiers known for one session. Replaced wholesale, never mutated."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    job_id: str
    application_key: Optional[str] = None
    publication_key: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SessionRegistry:
    """Thread-safe in-memory map of session id to :class:`SessionEntry`.

    Entries live for the lifetime of the process unless discarded explicitly.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, SessionEntry] = {}

    def create(self, job_id: str) -> SessionEntry:
        """Issue a fresh session id for a newly created remote job."""
        entry = SessionEntry(session_id=new_session_id(), job_id=job_id)
        self.put(entry.session_id, entry)
        return entry

    def put(self, session_id: str, entry: SessionEntry) -> None:
        if entry.session_id != session_id:
            entry = entry.model_copy(update={"session_id": session_id})
        with self._lock:
            self._entries[session_id] = entry

    def get(self, session_id: str) -> SessionEntry:
        with self._lock:
            entry = self._entries.get(session_id)
        if entry is None:
            raise UnknownSession(session_id)
        return entry

    def update(self, session_id: str, **ids: str) -> SessionEntry:
        """Record newly learned remote identifiers for a session."""
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                raise UnknownSession(session_id)
            entry = entry.model_copy(update=ids)
            self._entries[session_id] = entry
        return entry

    def discard(self, session_id: str) -> bool:
        with self._lock:
            return self._entries.pop(session_id, None) is not None

    def list_sessions(self) -> List[SessionEntry]:
        with self._lock:
            entries = list(self._entries.values())
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
