"""
Session HTTP endpoints — a thin transport over SessionRegistry.

Routes:
  POST /api/sessions                                  — Create session (creator joins as first participant)
  POST /api/sessions/join                             — Join by session id or room code
  GET  /api/sessions                                  — Active sessions (lobby browser)
  GET  /api/sessions/room/{room_code}                 — Public state by room code
  GET  /api/sessions/{session_id}                     — Public state (roles, salt, actions hidden)
  GET  /api/sessions/{session_id}/participants/{pid}  — State including the participant's own role
  POST /api/sessions/{session_id}/start               — Creator force-starts the lobby
  POST /api/sessions/{session_id}/ready               — Ready signal for the first night
  POST /api/sessions/{session_id}/night-action        — Concealed night action
  POST /api/sessions/{session_id}/task-answer         — Task answer
  POST /api/sessions/{session_id}/vote                — Vote
  GET  /api/sessions/{session_id}/history             — Event log (full log only after the end)
  GET  /api/sessions/{session_id}/commitment          — Roles + salt + verification, after the end

Errors from the core map onto status codes:
  400 validation, 404 not found, 409 state conflict or capacity, 502 collaborator.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from models.errors import (
    CapacityError, CollaboratorError, NotFoundError, SessionError,
    StateConflictError, ValidationError,
)
from models.game import (
    CreateSessionRequest, CreateSessionResponse, JoinSessionRequest,
    NightActionRequest, ParticipantRequest, StartSessionRequest,
    TaskAnswerRequest, VoteRequest,
)
from services.session_registry import SessionRegistry, get_session_registry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


def _http_error(exc: SessionError) -> HTTPException:
    if isinstance(exc, ValidationError):
        status = 400
    elif isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, (StateConflictError, CapacityError)):
        status = 409
    elif isinstance(exc, CollaboratorError):
        status = 502
    else:
        status = 500
    if status >= 500:
        logger.warning(f"[{exc.session_id}] {exc.code} → {status}: {exc.message}")
    else:
        logger.info(f"[{exc.session_id}] {exc.code} → {status}: {exc.message}")
    return HTTPException(status_code=status, detail={"code": exc.code, "message": exc.message})


@router.post("/sessions", response_model=CreateSessionResponse, status_code=201)
async def create_session(
    body: CreateSessionRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Create a new lobby and register the creator as its first participant."""
    try:
        created = await registry.create_session(body.creator_id, body.stake, body.min_participants)
    except SessionError as exc:
        raise _http_error(exc)
    return CreateSessionResponse(**created)


@router.post("/sessions/join")
async def join_session(
    body: JoinSessionRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Join a lobby. Reaching the minimum participant count starts the session."""
    try:
        return await registry.join_session(body.session, body.participant_id)
    except SessionError as exc:
        raise _http_error(exc)


@router.get("/sessions")
async def list_sessions(registry: SessionRegistry = Depends(get_session_registry)):
    return {"sessions": await registry.list_active_sessions()}


@router.get("/sessions/room/{room_code}")
async def get_session_by_room(room_code: str, registry: SessionRegistry = Depends(get_session_registry)):
    try:
        return await registry.get_session_by_room_code(room_code)
    except SessionError as exc:
        raise _http_error(exc)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    """
    Public session state.
    Roles, the commitment salt and pending night actions are NOT included
    until the session has ended.
    """
    try:
        return await registry.get_public_state(session_id)
    except SessionError as exc:
        raise _http_error(exc)


@router.get("/sessions/{session_id}/participants/{participant_id}")
async def get_participant_view(
    session_id: str,
    participant_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
):
    try:
        return await registry.get_state_for_participant(session_id, participant_id)
    except SessionError as exc:
        raise _http_error(exc)


@router.post("/sessions/{session_id}/start")
async def start_session(
    session_id: str,
    body: StartSessionRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Creator starts early. Requires at least 3 participants."""
    try:
        return await registry.start_session(session_id, body.requester_id)
    except SessionError as exc:
        raise _http_error(exc)


@router.post("/sessions/{session_id}/ready")
async def signal_ready(
    session_id: str,
    body: ParticipantRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    try:
        return await registry.signal_ready(session_id, body.participant_id)
    except SessionError as exc:
        raise _http_error(exc)


@router.post("/sessions/{session_id}/night-action")
async def submit_night_action(
    session_id: str,
    body: NightActionRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    try:
        return await registry.submit_night_action(
            session_id, body.participant_id, body.action, body.target
        )
    except SessionError as exc:
        raise _http_error(exc)


@router.post("/sessions/{session_id}/task-answer")
async def submit_task_answer(
    session_id: str,
    body: TaskAnswerRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    try:
        return await registry.submit_task_answer(session_id, body.participant_id, body.answer)
    except SessionError as exc:
        raise _http_error(exc)


@router.post("/sessions/{session_id}/vote")
async def submit_vote(
    session_id: str,
    body: VoteRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    try:
        return await registry.submit_vote(session_id, body.participant_id, body.target)
    except SessionError as exc:
        raise _http_error(exc)


@router.get("/sessions/{session_id}/history")
async def get_history(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    """
    Event log. While the session runs only public events are returned;
    after it ends the hidden night actions are included for the post-game reveal.
    """
    try:
        return await registry.get_history(session_id)
    except SessionError as exc:
        raise _http_error(exc)


@router.get("/sessions/{session_id}/commitment")
async def get_commitment(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    try:
        return await registry.verify_commitment(session_id)
    except SessionError as exc:
        raise _http_error(exc)
