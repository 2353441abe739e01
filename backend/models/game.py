from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Union
from enum import Enum
from datetime import datetime, timezone
import uuid


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


class Role(str, Enum):
    KILLER = "killer"
    PROTECTOR = "protector"
    INVESTIGATOR = "investigator"
    BYSTANDER = "bystander"


class Faction(str, Enum):
    KILLER = "killer"
    BYSTANDER = "bystander"  # everyone who is not the killer


class Phase(str, Enum):
    LOBBY = "lobby"
    NIGHT = "night"
    RESOLUTION = "resolution"
    TASK = "task"
    VOTING = "voting"
    ENDED = "ended"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class NightActionType(str, Enum):
    KILL = "kill"
    PROTECT = "protect"
    INVESTIGATE = "investigate"
    SKIP = "skip"  # explicit abstention; any role may submit it


class TaskKind(str, Enum):
    SEQUENCE = "sequence"
    MEMORY = "memory"
    HASH_FRAGMENT = "hash_fragment"


# Special roles in shuffle-slot order: slot 0 is the killer, 1 the protector, 2 the investigator.
SPECIAL_ROLES: List[Role] = [Role.KILLER, Role.PROTECTOR, Role.INVESTIGATOR]

# The one targeted action each role may take at night (besides SKIP).
ROLE_ACTIONS: Dict[Role, Optional[NightActionType]] = {
    Role.KILLER: NightActionType.KILL,
    Role.PROTECTOR: NightActionType.PROTECT,
    Role.INVESTIGATOR: NightActionType.INVESTIGATE,
    Role.BYSTANDER: None,
}

MIN_PARTICIPANTS_FOR_ROLES = len(SPECIAL_ROLES)


class NightAction(BaseModel):
    action: NightActionType
    target: Optional[str] = None
    submitted_at: datetime = Field(default_factory=_utcnow)


class Task(BaseModel):
    kind: TaskKind
    answer: Any                          # canonical answer, never sent to clients
    presentation: Dict[str, Any] = {}    # what clients render
    submissions: Dict[str, Any] = {}     # participant_id → submitted answer
    results: Dict[str, bool] = {}        # participant_id → correct?
    shown_once: List[str] = []           # presentation keys only visible during the display window
    recall_from: Optional[int] = None    # time_left at or below which shown_once keys are withheld

    def to_public(self, time_left: Optional[int] = None) -> Dict[str, Any]:
        """
        Safe representation. Omits the canonical answer and others' answers,
        and the shown-once keys once the display window has passed.
        """
        presentation = dict(self.presentation)
        if self.recall_from is not None and time_left is not None and time_left <= self.recall_from:
            for key in self.shown_once:
                presentation.pop(key, None)
        return {
            "kind": self.kind.value,
            "presentation": presentation,
            "submitted": sorted(self.submissions),
        }


class Investigation(BaseModel):
    day: int
    target: str
    role: Role


class SessionEvent(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    day: int
    phase: Phase
    actor: Optional[str] = None
    target: Optional[str] = None
    data: Dict[str, Any] = {}
    visible: bool = True  # False = revealed only after the session ends
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "day": self.day,
            "phase": self.phase.value,
            "actor": self.actor,
            "target": self.target,
            "data": self.data,
            "visible": self.visible,
            "timestamp": self.timestamp.isoformat(),
        }


# ── Resolver results ──────────────────────────────────────────────────────────

class NightOutcome(BaseModel):
    kill_target: Optional[str] = None
    protect_target: Optional[str] = None
    eliminated: Optional[str] = None
    investigator: Optional[str] = None
    investigation: Optional[Investigation] = None


class VoteOutcome(BaseModel):
    tally: Dict[str, int] = {}
    eliminated: Optional[str] = None
    tied: List[str] = []


class WinResult(BaseModel):
    faction: Faction
    winners: List[str]


# ── Session ───────────────────────────────────────────────────────────────────

class Session(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    room_code: str
    creator_id: str
    participants: List[str] = []
    min_participants: int = 4
    max_participants: int = 10
    phase: Phase = Phase.LOBBY
    day: int = 1
    time_left: int = 0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    stake: str = "0"
    status: SessionStatus = SessionStatus.ACTIVE

    # Hidden state: never leaves the server while the session is active
    roles: Dict[str, Role] = {}
    salt: Optional[str] = None
    pending_actions: Dict[str, NightAction] = {}

    commitment: Optional[str] = None
    task: Optional[Task] = None
    votes: Dict[str, str] = {}
    eliminated: List[str] = []
    winners: List[str] = []
    winning_faction: Optional[Faction] = None

    # Ready gate for the first night
    ready: List[str] = []
    timer_running: bool = False

    investigations: Dict[str, List[Investigation]] = {}
    events: List[SessionEvent] = []
    settled: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    def is_participant(self, participant_id: str) -> bool:
        return participant_id in self.participants

    def is_eliminated(self, participant_id: str) -> bool:
        return participant_id in self.eliminated

    def active_participants(self) -> List[str]:
        """Participants that have not been eliminated, in join order."""
        return [p for p in self.participants if p not in self.eliminated]

    def log_event(self, event_type: str, **kwargs: Any) -> SessionEvent:
        event = SessionEvent(type=event_type, day=self.day, phase=self.phase, **kwargs)
        self.events.append(event)
        return event

    def to_summary(self) -> Dict[str, Any]:
        """Lobby-browser row."""
        return {
            "session_id": self.id,
            "room_code": self.room_code,
            "creator_id": self.creator_id,
            "participant_count": len(self.participants),
            "max_participants": self.max_participants,
            "stake": self.stake,
            "phase": self.phase.value,
            "day": self.day,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }

    def to_public(self) -> Dict[str, Any]:
        """
        Safe representation. Roles, salt and pending night actions are redacted
        while the session is running. Once it has ended, roles and salt are
        disclosed so anyone can check them against the commitment.
        """
        ended = self.phase == Phase.ENDED
        return {
            "session_id": self.id,
            "room_code": self.room_code,
            "creator_id": self.creator_id,
            "participants": list(self.participants),
            "min_participants": self.min_participants,
            "max_participants": self.max_participants,
            "phase": self.phase.value,
            "day": self.day,
            "time_left": self.time_left,
            "timer_running": self.timer_running,
            "ready": list(self.ready),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "stake": self.stake,
            "status": self.status.value,
            "commitment": self.commitment,
            "task": self.task.to_public(self.time_left) if self.task else None,
            "submitted_action_count": len(self.pending_actions),
            "votes": dict(self.votes),
            "eliminated": list(self.eliminated),
            "winners": list(self.winners),
            "winning_faction": self.winning_faction.value if self.winning_faction else None,
            "roles": {p: r.value for p, r in self.roles.items()} if ended else None,
            "salt": self.salt if ended else None,
        }

    def to_participant(self, participant_id: str) -> Dict[str, Any]:
        """Public snapshot plus what only this participant may see."""
        state = self.to_public()
        role = self.roles.get(participant_id)
        if state["roles"] is None:
            state["roles"] = {participant_id: role.value} if role else {}
        state["role"] = role.value if role else None
        own_action = self.pending_actions.get(participant_id)
        state["night_action"] = (
            {"action": own_action.action.value, "target": own_action.target}
            if own_action else None
        )
        state["task_answer"] = (
            self.task.submissions.get(participant_id) if self.task else None
        )
        state["investigations"] = [
            {"day": i.day, "target": i.target, "role": i.role.value}
            for i in self.investigations.get(participant_id, [])
        ]
        return state


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateSessionRequest(BaseModel):
    creator_id: str
    stake: Optional[Union[str, int]] = None
    min_participants: Optional[int] = None


class CreateSessionResponse(BaseModel):
    session_id: str
    room_code: str


class JoinSessionRequest(BaseModel):
    session: str  # session id or room code
    participant_id: str


class ParticipantRequest(BaseModel):
    participant_id: str


class StartSessionRequest(BaseModel):
    requester_id: str


class NightActionRequest(BaseModel):
    participant_id: str
    action: NightActionType
    target: Optional[str] = None


class TaskAnswerRequest(BaseModel):
    participant_id: str
    answer: Any = None


class VoteRequest(BaseModel):
    participant_id: str
    target: str
