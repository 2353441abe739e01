"""
Session Registry — the core's public surface.

Owns session creation (unique id + 6-char room code), lookup by id or room
code, and reaping of finished sessions. Each live session gets a runtime: its
mailbox (SessionActor) and its PhaseStateMachine. Every mutating or reading
operation is funnelled through that session's mailbox.

Exposed to the transport layer:
  create_session / join_session / start_session
  get_public_state / get_state_for_participant / get_history / verify_commitment
  submit_night_action / submit_task_answer / submit_vote / signal_ready
  list_active_sessions / get_session_by_room_code / reap_completed
"""
import logging
import random
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Union

from agents.phase_machine import PhaseStateMachine
from agents.role_assigner import RoleAssigner
from agents.task_engine import TaskEngine
from config import Settings, settings as default_settings
from models.errors import SessionNotFoundError, ValidationError
from models.game import (
    MIN_PARTICIPANTS_FOR_ROLES, NightActionType, Phase, Session, SessionStatus,
)
from services.collaborators import Broadcast, CollaboratorDispatcher, Settlement
from services.session_actor import SessionActor
from services.session_store import (
    InMemorySessionRepository, RoomCodeTakenError, SessionRepository, get_session_repository,
)

logger = logging.getLogger(__name__)

ROOM_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
_MAX_ROOM_CODE_ATTEMPTS = 100


class SessionRuntime:
    """Process-local companions of a stored session."""

    def __init__(self, session: Session, actor: SessionActor, machine: PhaseStateMachine):
        self.session = session
        self.actor = actor
        self.machine = machine


class SessionRegistry:

    def __init__(
        self,
        repository: Optional[SessionRepository] = None,
        broadcast: Optional[Broadcast] = None,
        settlement: Optional[Settlement] = None,
        config: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository or InMemorySessionRepository()
        self.dispatcher = CollaboratorDispatcher(broadcast, settlement)
        self.config = config or default_settings
        # One RNG drives room codes, role shuffles and tasks; seed it in tests
        self.rng = rng or random.SystemRandom()
        self.role_assigner = RoleAssigner(self.rng)
        self.task_engine = TaskEngine(self.rng)
        self._runtimes: Dict[str, SessionRuntime] = {}
        # Sessions being reaped; lookups treat them as gone
        self._closing: Set[str] = set()

    # ── Runtime management ────────────────────────────────────────────────────

    def _spawn_runtime(self, session: Session) -> SessionRuntime:
        actor = SessionActor(session.id)
        machine = PhaseStateMachine(
            session,
            post=actor.post,
            notify=self.dispatcher.state_changed,
            settle=self.dispatcher.settle,
            durations=self.config.phase_durations,
            ready_grace=self.config.ready_grace_seconds,
            ready_timeout=self.config.ready_timeout_seconds,
            tick_seconds=self.config.tick_seconds,
            roles=self.role_assigner,
            tasks=self.task_engine,
            memory_display=self.config.memory_display_seconds,
        )
        actor.start()
        runtime = SessionRuntime(session, actor, machine)
        self._runtimes[session.id] = runtime
        return runtime

    async def _runtime(self, session_id: str) -> SessionRuntime:
        runtime = self._runtimes.get(session_id)
        if runtime is not None:
            return runtime
        if session_id in self._closing:
            raise SessionNotFoundError(f"Session {session_id} is closed", session_id=session_id)
        session = await self.repository.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)

        # Another request may have loaded it, or a reap started, while we awaited the store
        runtime = self._runtimes.get(session_id)
        if runtime is not None:
            return runtime
        if session_id in self._closing or session.phase == Phase.ENDED:
            raise SessionNotFoundError(f"Session {session_id} is closed", session_id=session_id)

        runtime = self._spawn_runtime(session)
        if session.phase != Phase.LOBBY:
            logger.info(f"[{session_id}] Loaded mid-game in phase {session.phase.value}; resuming timer")
            runtime.actor.post(runtime.machine.resume)
        return runtime

    async def _resolve(self, session_or_room_code: str) -> SessionRuntime:
        """Accept either a session id or a room code."""
        if not session_or_room_code:
            raise ValidationError("A session id or room code is required")
        session = await self.repository.get(session_or_room_code)
        if session is None:
            session = await self.repository.get_by_room_code(session_or_room_code)
        if session is None:
            raise SessionNotFoundError(f"No session or room {session_or_room_code!r}")
        return await self._runtime(session.id)

    def _room_code(self) -> str:
        return "".join(
            self.rng.choice(ROOM_CODE_ALPHABET) for _ in range(self.config.room_code_length)
        )

    @staticmethod
    def _require_id(value: Optional[str], what: str) -> str:
        if not value or not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{what} is required")
        return value

    # ── Creation & joining ────────────────────────────────────────────────────

    async def create_session(
        self,
        creator_id: str,
        stake: Optional[Union[str, int]] = None,
        min_participants: Optional[int] = None,
    ) -> Dict[str, str]:
        """Create a lobby with the creator as its first participant."""
        self._require_id(creator_id, "creator_id")
        max_participants = self.config.default_max_participants
        if min_participants is None:
            min_participants = self.config.default_min_participants
        if not MIN_PARTICIPANTS_FOR_ROLES <= min_participants <= max_participants:
            raise ValidationError(
                f"min_participants must be between {MIN_PARTICIPANTS_FOR_ROLES} "
                f"and {max_participants}; got {min_participants}"
            )

        for _ in range(_MAX_ROOM_CODE_ATTEMPTS):
            session = Session(
                room_code=self._room_code(),
                creator_id=creator_id,
                participants=[creator_id],
                min_participants=min_participants,
                max_participants=max_participants,
                stake=str(stake) if stake is not None else self.config.default_stake,
            )
            try:
                await self.repository.create(session)
                break
            except RoomCodeTakenError:
                logger.debug(f"Room code {session.room_code} collided — regenerating")
        else:
            raise RuntimeError("Could not allocate a unique room code")

        session.log_event("created", actor=creator_id)
        self._spawn_runtime(session)
        self.dispatcher.state_changed(session.id)
        logger.info(f"Session {session.id} (Room: {session.room_code}) created by {creator_id}")
        return {"session_id": session.id, "room_code": session.room_code}

    async def join_session(self, session_or_room_code: str, participant_id: str) -> Dict[str, Any]:
        self._require_id(participant_id, "participant_id")
        runtime = await self._resolve(session_or_room_code)
        return await runtime.actor.call(runtime.machine.join, participant_id)

    async def start_session(self, session_id: str, requester_id: str) -> Dict[str, Any]:
        """Creator force-starts the lobby before the minimum is reached."""
        self._require_id(requester_id, "requester_id")
        runtime = await self._runtime(session_id)
        return await runtime.actor.call(runtime.machine.start, requester_id)

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get_public_state(self, session_id: str) -> Dict[str, Any]:
        runtime = await self._runtime(session_id)
        return await runtime.actor.call(runtime.machine.public_state)

    async def get_state_for_participant(self, session_id: str, participant_id: str) -> Dict[str, Any]:
        runtime = await self._runtime(session_id)
        return await runtime.actor.call(runtime.machine.participant_state, participant_id)

    async def get_session_by_room_code(self, room_code: str) -> Dict[str, Any]:
        session = await self.repository.get_by_room_code(room_code or "")
        if session is None:
            raise SessionNotFoundError(f"Room code {room_code!r} not found")
        return await self.get_public_state(session.id)

    async def get_history(self, session_id: str) -> Dict[str, Any]:
        runtime = await self._runtime(session_id)
        return await runtime.actor.call(runtime.machine.history)

    async def verify_commitment(self, session_id: str) -> Dict[str, Any]:
        runtime = await self._runtime(session_id)
        return await runtime.actor.call(runtime.machine.commitment_proof)

    async def list_active_sessions(self) -> List[Dict[str, Any]]:
        sessions = await self.repository.list()
        return [s.to_summary() for s in sessions if s.status == SessionStatus.ACTIVE]

    # ── Submissions ───────────────────────────────────────────────────────────

    async def signal_ready(self, session_id: str, participant_id: str) -> Dict[str, Any]:
        self._require_id(participant_id, "participant_id")
        runtime = await self._runtime(session_id)
        return await runtime.actor.call(runtime.machine.signal_ready, participant_id)

    async def submit_night_action(
        self,
        session_id: str,
        participant_id: str,
        action: Union[NightActionType, str],
        target: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._require_id(participant_id, "participant_id")
        try:
            action = NightActionType(action)
        except ValueError:
            raise ValidationError(f"Unknown night action {action!r}")
        runtime = await self._runtime(session_id)
        return await runtime.actor.call(
            runtime.machine.submit_night_action, participant_id, action, target
        )

    async def submit_task_answer(self, session_id: str, participant_id: str, answer: Any) -> Dict[str, Any]:
        self._require_id(participant_id, "participant_id")
        runtime = await self._runtime(session_id)
        return await runtime.actor.call(runtime.machine.submit_task_answer, participant_id, answer)

    async def submit_vote(self, session_id: str, participant_id: str, target: str) -> Dict[str, Any]:
        self._require_id(participant_id, "participant_id")
        runtime = await self._runtime(session_id)
        return await runtime.actor.call(runtime.machine.submit_vote, participant_id, target)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def reap_completed(self, min_age_seconds: float = 0) -> List[str]:
        """
        Drop ended sessions and stop their mailboxes. Sessions that ended less
        than `min_age_seconds` ago are kept. Returns the reaped ids.
        """
        now = datetime.now(timezone.utc)
        reaped: List[str] = []
        for session in await self.repository.list():
            if session.phase != Phase.ENDED:
                continue
            if session.ended_at and (now - session.ended_at).total_seconds() < min_age_seconds:
                continue
            self._closing.add(session.id)
            try:
                runtime = self._runtimes.pop(session.id, None)
                await self.repository.delete(session.id)
                if runtime is not None:
                    runtime.machine.shutdown()
                    await runtime.actor.stop()
            finally:
                self._closing.discard(session.id)
            reaped.append(session.id)
        if reaped:
            logger.info(f"Reaped {len(reaped)} completed sessions")
        return reaped

    async def shutdown(self) -> None:
        for runtime in list(self._runtimes.values()):
            runtime.machine.shutdown()
            await runtime.actor.stop()
        self._runtimes.clear()
        await self.dispatcher.drain()


_session_registry: Optional[SessionRegistry] = None


def get_session_registry() -> SessionRegistry:
    """Lazy singleton. Use as a FastAPI dependency: Depends(get_session_registry)"""
    global _session_registry
    if _session_registry is None:
        _session_registry = SessionRegistry(repository=get_session_repository())
    return _session_registry
