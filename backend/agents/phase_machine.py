"""
Phase State Machine — lobby → night → resolution → task → voting → (night | ended).

One instance per session. Every public method runs inside the session's
mailbox, so player submissions and timer callbacks are applied one at a time.

Transitions:
  lobby → night         participant count reaches the minimum (or creator force-starts);
                        roles + commitment, ready-gated timer
  night → resolution    timer expiry, or every active participant submitted an action
  resolution → task     timer expiry; pending actions cleared, new task
  task → voting         timer expiry, or every active participant answered
  voting → night|ended  timer expiry, or every active participant voted
  any → ended           the win check reports a winner after an elimination

Every resolver first checks that the session is still in the phase it expects
and is a no-op otherwise, so duplicate expiries and racing submissions can
never apply a phase twice. Early transitions cancel the pending timer before
the next one is armed.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from agents.game_master import GameMaster, game_master as default_game_master
from agents.phase_timer import PhaseTimer, PostFn
from agents.role_assigner import RoleAssigner, role_assigner as default_role_assigner
from agents.task_engine import TaskEngine, task_engine as default_task_engine
from config import PhaseDurations, settings
from models.errors import (
    AlreadyInSessionError, DuplicateSubmissionError, EliminatedError, NotFoundError,
    NotInSessionError, SessionFullError, SessionStartedError, StateConflictError,
    ValidationError, WrongPhaseError,
)
from models.game import (
    NightAction, NightActionType, Phase, ROLE_ACTIONS, Session, SessionStatus,
    WinResult,
)

logger = logging.getLogger(__name__)


class PhaseStateMachine:

    def __init__(
        self,
        session: Session,
        post: PostFn,
        notify: Callable[[str], None],
        settle: Callable[[str, List[str], List[str]], None],
        durations: Optional[PhaseDurations] = None,
        ready_grace: Optional[int] = None,
        ready_timeout: Optional[int] = None,
        tick_seconds: Optional[float] = None,
        roles: Optional[RoleAssigner] = None,
        tasks: Optional[TaskEngine] = None,
        rules: Optional[GameMaster] = None,
        timer: Optional[PhaseTimer] = None,
        memory_display: Optional[int] = None,
    ):
        self.session = session
        self.durations = durations or settings.phase_durations
        self.ready_grace = settings.ready_grace_seconds if ready_grace is None else ready_grace
        self.ready_timeout = settings.ready_timeout_seconds if ready_timeout is None else ready_timeout
        self.memory_display = settings.memory_display_seconds if memory_display is None else memory_display
        self.roles = roles or default_role_assigner
        self.tasks = tasks or default_task_engine
        self.rules = rules or default_game_master
        self._notify = notify
        self._settle = settle
        self.timer = timer or PhaseTimer(
            session,
            post,
            on_expired=self.on_timer_expired,
            on_tick=self._changed,
            tick_seconds=settings.tick_seconds if tick_seconds is None else tick_seconds,
        )

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _changed(self) -> None:
        self._notify(self.session.id)

    def _require_phase(self, phase: Phase) -> None:
        if self.session.phase != phase:
            raise WrongPhaseError(
                f"Session is in phase {self.session.phase.value}, not {phase.value}",
                session_id=self.session.id,
            )

    def _require_active(self, participant_id: str) -> None:
        if not self.session.is_participant(participant_id):
            raise NotInSessionError(
                f"{participant_id} is not in this session", session_id=self.session.id
            )
        if self.session.is_eliminated(participant_id):
            raise EliminatedError(
                f"{participant_id} has been eliminated", session_id=self.session.id
            )

    def _require_target(self, target: Optional[str]) -> str:
        if not target:
            raise ValidationError("A target is required", session_id=self.session.id)
        if not self.session.is_participant(target):
            raise NotFoundError(f"Target {target} is not in this session", session_id=self.session.id)
        return target

    def _all_active_in(self, submitted: Dict[str, Any]) -> bool:
        active = self.session.active_participants()
        return sum(1 for p in active if p in submitted) >= len(active)

    # ── Lobby ─────────────────────────────────────────────────────────────────

    def join(self, participant_id: str) -> Dict[str, Any]:
        session = self.session
        if session.is_participant(participant_id):
            raise AlreadyInSessionError(
                f"{participant_id} already joined", session_id=session.id
            )
        if session.phase != Phase.LOBBY:
            raise SessionStartedError("Session already started", session_id=session.id)
        if len(session.participants) >= session.max_participants:
            raise SessionFullError(
                f"Session is full ({session.max_participants} participants)", session_id=session.id
            )

        session.participants.append(participant_id)
        session.log_event("joined", actor=participant_id)
        logger.info(
            f"[{session.id}] {participant_id} joined "
            f"({len(session.participants)}/{session.min_participants} to start)"
        )
        self._changed()

        if len(session.participants) >= session.min_participants:
            self.start()
        return session.to_participant(participant_id)

    def start(self, requester_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Leave the lobby: assign roles, publish the commitment, enter night 1.
        Role assignment raises before anything is mutated, so a session with
        too few participants simply stays in the lobby.
        """
        session = self.session
        if session.phase != Phase.LOBBY:
            raise SessionStartedError("Session already started", session_id=session.id)
        if requester_id is not None and requester_id != session.creator_id:
            raise StateConflictError("Only the creator can start the session", session_id=session.id)

        self.roles.assign_roles(session)
        self.roles.generate_commitment(session)

        session.phase = Phase.NIGHT
        session.day = 1
        session.started_at = datetime.now(timezone.utc)
        session.pending_actions = {}
        session.votes = {}
        session.log_event("session_started", data={"commitment": session.commitment})
        self.timer.arm_ready_gated(self.durations.night, self.ready_grace, self.ready_timeout)
        logger.info(f"[{session.id}] Session started with {len(session.participants)} participants")
        self._changed()
        return session.to_public()

    def signal_ready(self, participant_id: str) -> Dict[str, Any]:
        self._require_active(participant_id)
        if not self.timer.waiting_for_ready:
            raise StateConflictError(
                "Ready signals are only accepted while the first night waits to start",
                session_id=self.session.id,
            )
        self.timer.signal_ready(participant_id)
        self._changed()
        return {"ready": list(self.session.ready), "timer_running": self.session.timer_running}

    # ── Night ─────────────────────────────────────────────────────────────────

    def submit_night_action(
        self, participant_id: str, action: NightActionType, target: Optional[str] = None
    ) -> Dict[str, Any]:
        session = self.session
        self._require_phase(Phase.NIGHT)
        self._require_active(participant_id)
        if participant_id in session.pending_actions:
            raise DuplicateSubmissionError(
                "Night action already submitted", session_id=session.id
            )

        if action == NightActionType.SKIP:
            target = None
        else:
            allowed = ROLE_ACTIONS.get(session.roles.get(participant_id))
            if action != allowed:
                raise ValidationError(
                    f"Action {action.value} is not available to this role", session_id=session.id
                )
            target = self._require_target(target)

        session.pending_actions[participant_id] = NightAction(action=action, target=target)
        logger.info(
            f"[{session.id}] Night action recorded "
            f"({len(session.pending_actions)}/{len(session.active_participants())})"
        )
        self._changed()

        early = self._all_active_in(session.pending_actions)
        if early:
            logger.info(f"[{session.id}] All active participants acted — resolving night early")
            self.resolve_night()
        return {"accepted": True, "resolved": early}

    def resolve_night(self) -> None:
        session = self.session
        if session.phase != Phase.NIGHT:
            logger.debug(f"[{session.id}] resolve_night skipped — phase is {session.phase.value}")
            return
        self.timer.cancel()

        outcome = self.rules.resolve_night(session)
        session.log_event("night_resolved", target=outcome.eliminated)
        if outcome.eliminated and self._check_win():
            return

        session.phase = Phase.RESOLUTION
        self.timer.arm(self.durations.resolution)
        logger.info(f"[{session.id}] Phase: night → resolution (day {session.day})")
        self._changed()

    # ── Resolution → task ─────────────────────────────────────────────────────

    def begin_task(self) -> None:
        session = self.session
        if session.phase != Phase.RESOLUTION:
            logger.debug(f"[{session.id}] begin_task skipped — phase is {session.phase.value}")
            return
        self.timer.cancel()

        session.pending_actions = {}
        session.task = self.tasks.generate_task()
        if session.task.shown_once:
            # Shown-once keys are withheld once this many ticks of the task have passed
            session.task.recall_from = max(0, self.durations.task - self.memory_display)
        session.phase = Phase.TASK
        self.timer.arm(self.durations.task)
        logger.info(f"[{session.id}] Phase: resolution → task ({session.task.kind.value})")
        self._changed()

    def submit_task_answer(self, participant_id: str, answer: Any) -> Dict[str, Any]:
        session = self.session
        self._require_phase(Phase.TASK)
        self._require_active(participant_id)
        if participant_id in session.task.submissions:
            raise DuplicateSubmissionError("Task answer already submitted", session_id=session.id)

        correct = self.tasks.validate_answer(session.task, answer)
        session.task.submissions[participant_id] = answer
        session.task.results[participant_id] = correct
        self._changed()

        if self._all_active_in(session.task.submissions):
            logger.info(f"[{session.id}] All active participants answered — moving to voting")
            self.begin_voting()
        return {"correct": correct}

    # ── Task → voting ─────────────────────────────────────────────────────────

    def begin_voting(self) -> None:
        session = self.session
        if session.phase != Phase.TASK:
            logger.debug(f"[{session.id}] begin_voting skipped — phase is {session.phase.value}")
            return
        self.timer.cancel()

        results = session.task.results if session.task else {}
        session.log_event(
            "task_completed",
            data={"submitted": len(results), "correct": sum(1 for ok in results.values() if ok)},
        )
        session.votes = {}
        session.phase = Phase.VOTING
        self.timer.arm(self.durations.voting)
        logger.info(f"[{session.id}] Phase: task → voting")
        self._changed()

    def submit_vote(self, participant_id: str, target: str) -> Dict[str, Any]:
        session = self.session
        self._require_phase(Phase.VOTING)
        self._require_active(participant_id)
        target = self._require_target(target)
        if session.is_eliminated(target):
            raise EliminatedError(f"Target {target} has already been eliminated", session_id=session.id)
        if participant_id in session.votes:
            raise DuplicateSubmissionError("Vote already submitted", session_id=session.id)

        session.votes[participant_id] = target
        self._changed()

        early = self._all_active_in(session.votes)
        if early:
            logger.info(f"[{session.id}] All active participants voted — tallying early")
            self.resolve_voting()
        return {"accepted": True, "resolved": early}

    def resolve_voting(self) -> None:
        session = self.session
        if session.phase != Phase.VOTING:
            logger.debug(f"[{session.id}] resolve_voting skipped — phase is {session.phase.value}")
            return
        self.timer.cancel()

        outcome = self.rules.tally_votes(session)
        session.log_event(
            "vote_result", target=outcome.eliminated,
            data={"tally": outcome.tally, "tied": outcome.tied},
        )
        if outcome.eliminated:
            self.rules.eliminate(session, outcome.eliminated, cause="vote")
            if self._check_win():
                return

        session.day += 1
        session.phase = Phase.NIGHT
        session.pending_actions = {}
        session.task = None
        self.timer.arm(self.durations.night)
        logger.info(f"[{session.id}] Phase: voting → night (day {session.day})")
        self._changed()

    # ── Timer ─────────────────────────────────────────────────────────────────

    def on_timer_expired(self, phase: Optional[Phase]) -> None:
        """Expiry callback. Only acts if the session is still in the armed phase."""
        if phase is None or phase != self.session.phase:
            logger.debug(f"[{self.session.id}] Stale expiry for {phase} ignored")
            return
        if phase == Phase.NIGHT:
            self.resolve_night()
        elif phase == Phase.RESOLUTION:
            self.begin_task()
        elif phase == Phase.TASK:
            self.begin_voting()
        elif phase == Phase.VOTING:
            self.resolve_voting()

    def resume(self) -> None:
        """
        Re-arm the countdown for a session loaded mid-game from storage.
        Uses the stored time left when there is any, else the full phase length.
        """
        duration = {
            Phase.NIGHT: self.durations.night,
            Phase.RESOLUTION: self.durations.resolution,
            Phase.TASK: self.durations.task,
            Phase.VOTING: self.durations.voting,
        }.get(self.session.phase)
        if duration is None or self.timer.armed:
            return
        self.timer.arm(self.session.time_left if self.session.time_left > 0 else duration)
        self._changed()

    # ── Ending ────────────────────────────────────────────────────────────────

    def _check_win(self) -> bool:
        result = self.rules.check_win(self.session)
        if result is None:
            return False
        self._end(result)
        return True

    def _end(self, result: WinResult) -> None:
        session = self.session
        self.timer.cancel()
        session.phase = Phase.ENDED
        session.status = SessionStatus.COMPLETED
        session.time_left = 0
        session.ended_at = datetime.now(timezone.utc)
        session.winners = list(result.winners)
        session.winning_faction = result.faction
        session.log_event(
            "session_ended",
            data={"faction": result.faction.value, "winners": session.winners},
        )
        logger.info(f"[{session.id}] Game over — {result.faction.value} faction wins: {session.winners}")
        self._changed()

        if not session.settled:
            session.settled = True
            losers = [p for p in session.participants if p not in session.winners]
            self._settle(session.id, session.winners, losers)

    # ── Read-side ─────────────────────────────────────────────────────────────

    def public_state(self) -> Dict[str, Any]:
        return self.session.to_public()

    def participant_state(self, participant_id: str) -> Dict[str, Any]:
        if not self.session.is_participant(participant_id):
            raise NotInSessionError(
                f"{participant_id} is not in this session", session_id=self.session.id
            )
        return self.session.to_participant(participant_id)

    def history(self) -> Dict[str, Any]:
        """Public events while running; the full log (hidden actions too) once ended."""
        ended = self.session.phase == Phase.ENDED
        events = [e for e in self.session.events if ended or e.visible]
        return {
            "session_id": self.session.id,
            "creator_id": self.session.creator_id,
            "participants": list(self.session.participants),
            "eliminated": list(self.session.eliminated),
            "winners": list(self.session.winners),
            "day": self.session.day,
            "phase": self.session.phase.value,
            "status": self.session.status.value,
            "started_at": self.session.started_at.isoformat() if self.session.started_at else None,
            "events": [e.to_dict() for e in events],
        }

    def commitment_proof(self) -> Dict[str, Any]:
        """Disclose roles + salt so the published commitment can be re-checked."""
        session = self.session
        if session.phase != Phase.ENDED:
            raise StateConflictError(
                "The role commitment is only disclosed after the session ends",
                session_id=session.id,
            )
        return {
            "commitment": session.commitment,
            "salt": session.salt,
            "roles": {p: r.value for p, r in session.roles.items()},
            "valid": self.roles.verify_commitment(session.roles, session.salt, session.commitment),
        }

    def shutdown(self) -> None:
        self.timer.cancel()
