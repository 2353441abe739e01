from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from models.errors import StateConflictError
from models.game import Session


class RoomCodeTakenError(StateConflictError):
    code = "room_code_taken"


class SessionRepository(ABC):
    """
    Storage seam for sessions. The registry and phase machine only talk to
    this interface, so an in-memory store (tests, single process) and a
    production store are interchangeable.
    """

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    async def get_by_room_code(self, room_code: str) -> Optional[Session]: ...

    @abstractmethod
    async def create(self, session: Session) -> Session:
        """Store a new session. Raises RoomCodeTakenError if the code is in use."""

    @abstractmethod
    async def delete(self, session_id: str) -> bool: ...

    @abstractmethod
    async def list(self) -> List[Session]: ...


class InMemorySessionRepository(SessionRepository):
    """Process-lifetime store. Sessions are live objects, not copies."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._room_codes: Dict[str, str] = {}  # room_code → session_id

    # ── Session CRUD ──────────────────────────────────────────────────────────

    async def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def get_by_room_code(self, room_code: str) -> Optional[Session]:
        session_id = self._room_codes.get(room_code.upper())
        return self._sessions.get(session_id) if session_id else None

    async def create(self, session: Session) -> Session:
        if session.room_code in self._room_codes:
            raise RoomCodeTakenError(f"Room code {session.room_code} is in use")
        if session.id in self._sessions:
            raise StateConflictError(f"Session {session.id} already exists", session_id=session.id)
        self._sessions[session.id] = session
        self._room_codes[session.room_code] = session.id
        return session

    async def delete(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._room_codes.pop(session.room_code, None)
        return True

    async def list(self) -> List[Session]:
        return list(self._sessions.values())


_session_repository: Optional[SessionRepository] = None


def get_session_repository() -> SessionRepository:
    """Lazy singleton, the default store used when none is injected."""
    global _session_repository
    if _session_repository is None:
        _session_repository = InMemorySessionRepository()
    return _session_repository
