"""
Typed error taxonomy for the session engine.

ValidationError, NotFoundError, StateConflictError and CapacityError are raised
synchronously to the caller before any session state is touched.
CollaboratorError is only ever raised inside a collaborator call site, where it
is logged and dropped; it never unwinds core state.
"""
from typing import Optional


class SessionError(Exception):
    """Base class. `code` is a stable machine-readable tag for transports."""

    code = "session_error"

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class ValidationError(SessionError):
    code = "validation_error"


class NotFoundError(SessionError):
    code = "not_found"


class StateConflictError(SessionError):
    code = "state_conflict"


class CapacityError(SessionError):
    code = "capacity"


class CollaboratorError(SessionError):
    code = "collaborator_error"


# ── Concrete errors ───────────────────────────────────────────────────────────

class SessionNotFoundError(NotFoundError):
    code = "session_not_found"


class NotInSessionError(NotFoundError):
    code = "not_in_session"


class AlreadyInSessionError(StateConflictError):
    code = "already_in_session"


class SessionStartedError(StateConflictError):
    code = "session_started"


class WrongPhaseError(StateConflictError):
    code = "wrong_phase"


class EliminatedError(StateConflictError):
    code = "eliminated"


class DuplicateSubmissionError(StateConflictError):
    code = "duplicate_submission"


class SessionFullError(CapacityError):
    code = "session_full"


class InsufficientParticipantsError(CapacityError):
    code = "insufficient_participants"
