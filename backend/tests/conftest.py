import asyncio
import hashlib
import random
from typing import Dict, List, Optional

import pytest

from agents.phase_machine import PhaseStateMachine
from agents.role_assigner import RoleAssigner
from agents.task_engine import TaskEngine
from config import PhaseDurations, Settings
from models.game import Role, Session


ROLES_4: Dict[str, Role] = {
    "P1": Role.KILLER,
    "P2": Role.PROTECTOR,
    "P3": Role.INVESTIGATOR,
    "P4": Role.BYSTANDER,
}


class FixedRoleAssigner(RoleAssigner):
    """Hands out a predetermined role map; commitment is still real."""

    def __init__(self, roles: Dict[str, Role]):
        super().__init__(random.Random(0))
        self.fixed = dict(roles)

    def assign_roles(self, session: Session) -> Dict[str, Role]:
        session.roles = dict(self.fixed)
        return session.roles


class FakeTimer:
    """Records arms/cancels and sets time_left; tests fire expiries by hand."""

    def __init__(self, session: Session):
        self.session = session
        self.generation = 0
        self.armed = False
        self.arms: List[tuple] = []
        self.cancels = 0
        self.waiting_for_ready = False
        self.ready: List[str] = []

    def arm(self, duration: int) -> int:
        self.generation += 1
        self.waiting_for_ready = False
        self.armed = True
        self.session.time_left = duration
        self.arms.append(("immediate", duration))
        return self.generation

    def arm_ready_gated(self, duration: int, grace: int, ready_timeout: int) -> int:
        self.generation += 1
        self.waiting_for_ready = True
        self.armed = True
        self.session.time_left = duration
        self.arms.append(("ready", duration))
        return self.generation

    def cancel(self) -> None:
        self.generation += 1
        self.cancels += 1
        self.waiting_for_ready = False
        self.armed = False

    def signal_ready(self, participant_id: str) -> None:
        self.ready.append(participant_id)


class Harness:
    """A session + phase machine wired to a fake timer and recording collaborators."""

    def __init__(self, roles: Optional[Dict[str, Role]] = None, max_participants: int = 10):
        self.roles = dict(roles or ROLES_4)
        participants = list(self.roles)
        self.notified: List[str] = []
        self.settlements: List[tuple] = []
        self.session = Session(
            room_code="ABC123",
            creator_id=participants[0],
            participants=[participants[0]],
            min_participants=len(participants),
            max_participants=max_participants,
        )
        self.timer = FakeTimer(self.session)
        self.machine = PhaseStateMachine(
            self.session,
            post=lambda *args: None,
            notify=self.notified.append,
            settle=lambda sid, winners, losers: self.settlements.append((sid, winners, losers)),
            durations=PhaseDurations(night=15, resolution=5, task=30, voting=10),
            ready_grace=5,
            ready_timeout=30,
            roles=FixedRoleAssigner(self.roles),
            tasks=TaskEngine(random.Random(7)),
            timer=self.timer,
        )

    def fill(self) -> None:
        """Join everyone else; the last join starts the session."""
        for participant in list(self.roles)[1:]:
            self.machine.join(participant)


@pytest.fixture
def harness():
    return Harness


def solve(task_view: dict):
    """Answer a task the way a client would, from its public presentation."""
    kind = task_view["kind"]
    presentation = task_view["presentation"]
    if kind == "sequence":
        return sorted(presentation["shuffled"])
    if kind == "memory":
        return list(presentation["items"])
    digest = hashlib.sha256(presentation["seed"].encode("utf-8")).hexdigest()
    return digest[: presentation["fragment_length"]]


@pytest.fixture
def solver():
    return solve


@pytest.fixture
def fast_settings():
    """Short ticks; only the resolution phase expires on its own."""
    return Settings(
        tick_seconds=0.002,
        night_seconds=100000,
        resolution_seconds=1,
        task_seconds=100000,
        voting_seconds=100000,
        ready_grace_seconds=100000,
        ready_timeout_seconds=100000,
        memory_display_seconds=100000,
        default_min_participants=4,
    )


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.002) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def waiter():
    return wait_for
