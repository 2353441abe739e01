import asyncio
import random
from typing import Dict, List

import pytest

from models.errors import (
    AlreadyInSessionError, InsufficientParticipantsError, NotInSessionError, SessionFullError,
    SessionNotFoundError, SessionStartedError, StateConflictError, ValidationError,
    WrongPhaseError,
)
from models.game import Phase, Role, Session, Task, TaskKind
from services.session_registry import ROOM_CODE_ALPHABET, SessionRegistry
from services.session_store import InMemorySessionRepository, RoomCodeTakenError

from conftest import solve, wait_for

PLAYERS = ["alice", "bob", "carol", "dave"]


class RecordingBroadcast:
    def __init__(self):
        self.calls: List[str] = []

    async def emit_state_changed(self, session_id: str) -> None:
        self.calls.append(session_id)


class RecordingSettlement:
    def __init__(self, fail: bool = False):
        self.calls: List[tuple] = []
        self.fail = fail

    async def distribute_rewards(self, session_id, winners, losers) -> None:
        self.calls.append((session_id, sorted(winners), sorted(losers)))
        if self.fail:
            raise ConnectionError("settlement service unavailable")


def _registry(settings, **kwargs) -> SessionRegistry:
    kwargs.setdefault("broadcast", RecordingBroadcast())
    kwargs.setdefault("settlement", RecordingSettlement())
    return SessionRegistry(config=settings, rng=random.Random(1234), **kwargs)


async def _started(registry: SessionRegistry):
    created = await registry.create_session("alice", stake="5", min_participants=4)
    for player in PLAYERS[1:]:
        await registry.join_session(created["room_code"], player)
    return created["session_id"]


async def _roles(registry: SessionRegistry, session_id: str) -> Dict[str, str]:
    roles = {}
    for player in PLAYERS:
        view = await registry.get_state_for_participant(session_id, player)
        roles[view["role"]] = player
    return roles


async def _play_to_end(registry: SessionRegistry, session_id: str) -> Dict[str, str]:
    """Bystander win: the bystander dies at night, the killer is voted out."""
    by_role = await _roles(registry, session_id)
    killer, protector = by_role["killer"], by_role["protector"]
    investigator, bystander = by_role["investigator"], by_role["bystander"]

    await registry.submit_night_action(session_id, killer, "kill", bystander)
    await registry.submit_night_action(session_id, protector, "protect", investigator)
    await registry.submit_night_action(session_id, investigator, "investigate", killer)
    await registry.submit_night_action(session_id, bystander, "skip")

    async def phase():
        return (await registry.get_public_state(session_id))["phase"]

    session = registry._runtimes[session_id].session
    await wait_for(lambda: session.phase == Phase.TASK)
    state = await registry.get_public_state(session_id)
    answer = solve(state["task"])
    for player in (killer, protector, investigator):
        result = await registry.submit_task_answer(session_id, player, answer)
        assert result["correct"] is True
    assert await phase() == "voting"

    await registry.submit_vote(session_id, protector, killer)
    await registry.submit_vote(session_id, investigator, killer)
    await registry.submit_vote(session_id, killer, protector)
    assert await phase() == "ended"
    return by_role


# ── Creation & joining ────────────────────────────────────────────────────────

def test_create_session_registers_creator(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        created = await registry.create_session("alice", stake=25)
        state = await registry.get_public_state(created["session_id"])
        await registry.shutdown()
        return created, state

    created, state = asyncio.run(scenario())
    assert len(created["room_code"]) == 6
    assert all(c in ROOM_CODE_ALPHABET for c in created["room_code"])
    assert state["participants"] == ["alice"]
    assert state["phase"] == "lobby"
    assert state["stake"] == "25"
    assert state["creator_id"] == "alice"


@pytest.mark.parametrize("minimum", [2, 11, 0])
def test_create_rejects_out_of_range_minimum(fast_settings, minimum):
    async def scenario():
        registry = _registry(fast_settings)
        try:
            with pytest.raises(ValidationError):
                await registry.create_session("alice", min_participants=minimum)
            assert await registry.list_active_sessions() == []
        finally:
            await registry.shutdown()

    asyncio.run(scenario())


def test_create_requires_creator(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        with pytest.raises(ValidationError):
            await registry.create_session("")

    asyncio.run(scenario())


def test_room_code_collision_is_retried(fast_settings):
    class CollidingOnce(InMemorySessionRepository):
        def __init__(self):
            super().__init__()
            self.attempts = 0

        async def create(self, session):
            self.attempts += 1
            if self.attempts == 1:
                raise RoomCodeTakenError(f"Room code {session.room_code} is in use")
            return await super().create(session)

    async def scenario():
        repository = CollidingOnce()
        registry = _registry(fast_settings, repository=repository)
        created = await registry.create_session("alice")
        found = await registry.get_session_by_room_code(created["room_code"].lower())
        await registry.shutdown()
        return repository.attempts, created, found

    attempts, created, found = asyncio.run(scenario())
    assert attempts == 2
    assert found["session_id"] == created["session_id"]


def test_join_by_room_code_auto_starts(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        session_id = await _started(registry)
        state = await registry.get_public_state(session_id)
        listed = await registry.list_active_sessions()
        await registry.shutdown()
        return session_id, state, listed

    session_id, state, listed = asyncio.run(scenario())
    assert state["phase"] == "night"
    assert state["participants"] == PLAYERS
    assert state["commitment"]
    assert state["roles"] is None
    assert [row["session_id"] for row in listed] == [session_id]


def test_join_errors(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        created = await registry.create_session("alice", min_participants=4)
        with pytest.raises(AlreadyInSessionError):
            await registry.join_session(created["session_id"], "alice")
        with pytest.raises(SessionNotFoundError):
            await registry.join_session("NOPE00", "bob")
        with pytest.raises(ValidationError):
            await registry.join_session(created["session_id"], "")

        session_id = await _started(registry)
        with pytest.raises(SessionStartedError):
            await registry.join_session(session_id, "erin")
        await registry.shutdown()

    asyncio.run(scenario())


def test_full_session_rejects_join(fast_settings):
    settings = fast_settings.model_copy(update={"default_max_participants": 4})

    async def scenario():
        registry = _registry(settings)
        created = await registry.create_session("alice", min_participants=4)
        registry._runtimes[created["session_id"]].session.min_participants = 99
        for player in PLAYERS[1:]:
            await registry.join_session(created["session_id"], player)
        with pytest.raises(SessionFullError):
            await registry.join_session(created["session_id"], "erin")
        await registry.shutdown()

    asyncio.run(scenario())


def test_creator_force_start(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        created = await registry.create_session("alice", min_participants=6)
        sid = created["session_id"]
        await registry.join_session(sid, "bob")
        with pytest.raises(InsufficientParticipantsError):
            await registry.start_session(sid, "alice")
        await registry.join_session(sid, "carol")
        with pytest.raises(StateConflictError):
            await registry.start_session(sid, "bob")
        state = await registry.start_session(sid, "alice")
        await registry.shutdown()
        return state

    state = asyncio.run(scenario())
    assert state["phase"] == "night"
    assert len(state["participants"]) == 3


def test_unknown_session_is_not_found(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        with pytest.raises(SessionNotFoundError):
            await registry.get_public_state("missing")
        with pytest.raises(SessionNotFoundError):
            await registry.get_session_by_room_code("ZZZZZZ")
        with pytest.raises(SessionNotFoundError):
            await registry.submit_vote("missing", "alice", "bob")

    asyncio.run(scenario())


# ── Playing a session ─────────────────────────────────────────────────────────

def test_ready_gate_starts_the_first_night(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        session_id = await _started(registry)
        for player in PLAYERS[:-1]:
            result = await registry.signal_ready(session_id, player)
            assert result["timer_running"] is False
        result = await registry.signal_ready(session_id, PLAYERS[-1])
        assert result["timer_running"] is True
        with pytest.raises(StateConflictError):
            await registry.signal_ready(session_id, "alice")
        await registry.shutdown()

    asyncio.run(scenario())


def test_unknown_night_action_is_a_validation_error(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        session_id = await _started(registry)
        with pytest.raises(ValidationError):
            await registry.submit_night_action(session_id, "alice", "poison", "bob")
        with pytest.raises(WrongPhaseError):
            await registry.submit_vote(session_id, "alice", "bob")
        await registry.shutdown()

    asyncio.run(scenario())


def test_full_game_settles_once_and_reveals(fast_settings):
    broadcast = RecordingBroadcast()
    settlement = RecordingSettlement()

    async def scenario():
        registry = _registry(fast_settings, broadcast=broadcast, settlement=settlement)
        session_id = await _started(registry)
        by_role = await _play_to_end(registry, session_id)
        await registry.dispatcher.drain()

        public = await registry.get_public_state(session_id)
        proof = await registry.verify_commitment(session_id)
        history = await registry.get_history(session_id)
        with pytest.raises(WrongPhaseError):
            await registry.submit_task_answer(session_id, by_role["bystander"], [])
        await registry.shutdown()
        return session_id, by_role, public, proof, history

    session_id, by_role, public, proof, history = asyncio.run(scenario())

    expected_winners = sorted([by_role["protector"], by_role["investigator"]])
    expected_losers = sorted([by_role["killer"], by_role["bystander"]])
    assert settlement.calls == [(session_id, expected_winners, expected_losers)]
    assert broadcast.calls and set(broadcast.calls) == {session_id}

    assert public["winning_faction"] == "bystander"
    assert sorted(public["winners"]) == expected_winners
    assert public["roles"][by_role["killer"]] == "killer"
    assert proof["valid"] is True
    assert proof["salt"] == public["salt"]
    assert any(not e["visible"] for e in history["events"])


def test_settlement_failure_does_not_revert_result(fast_settings):
    settlement = RecordingSettlement(fail=True)

    async def scenario():
        registry = _registry(fast_settings, settlement=settlement)
        session_id = await _started(registry)
        await _play_to_end(registry, session_id)
        await registry.dispatcher.drain()
        state = await registry.get_public_state(session_id)
        await registry.shutdown()
        return state

    state = asyncio.run(scenario())
    assert len(settlement.calls) == 1
    assert state["phase"] == "ended"
    assert state["status"] == "completed"


def test_racing_submissions_and_expiry_resolve_night_once(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        session_id = await _started(registry)
        by_role = await _roles(registry, session_id)
        runtime = registry._runtimes[session_id]

        results = await asyncio.gather(
            registry.submit_night_action(session_id, by_role["killer"], "kill", by_role["bystander"]),
            runtime.actor.call(runtime.machine.on_timer_expired, Phase.NIGHT),
            registry.submit_night_action(session_id, by_role["protector"], "skip"),
            runtime.actor.call(runtime.machine.on_timer_expired, Phase.NIGHT),
            return_exceptions=True,
        )
        session = runtime.session
        await registry.shutdown()
        return results, session

    results, session = asyncio.run(scenario())
    assert session.eliminated == [next(p for p, r in session.roles.items() if r.value == "bystander")]
    assert session.phase in (Phase.RESOLUTION, Phase.TASK)
    assert isinstance(results[2], WrongPhaseError)
    assert sum(1 for e in session.events if e.type == "night_resolved") == 1


def test_state_for_non_participant_is_rejected(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        session_id = await _started(registry)
        with pytest.raises(NotInSessionError):
            await registry.get_state_for_participant(session_id, "mallory")
        await registry.shutdown()

    asyncio.run(scenario())


# ── Lifecycle ─────────────────────────────────────────────────────────────────

def test_reap_completed_drops_only_ended_sessions(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        finished = await _started(registry)
        await _play_to_end(registry, finished)
        waiting = (await registry.create_session("zed"))["session_id"]

        reaped = await registry.reap_completed()
        listed = [row["session_id"] for row in await registry.list_active_sessions()]
        with pytest.raises(SessionNotFoundError):
            await registry.get_public_state(finished)
        await registry.shutdown()
        return finished, waiting, reaped, listed

    finished, waiting, reaped, listed = asyncio.run(scenario())
    assert reaped == [finished]
    assert listed == [waiting]


def test_reap_keeps_recently_ended_sessions(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        finished = await _started(registry)
        await _play_to_end(registry, finished)

        kept = await registry.reap_completed(min_age_seconds=3600)
        still_there = await registry.get_history(finished)
        reaped = await registry.reap_completed()
        await registry.shutdown()
        return finished, kept, still_there, reaped

    finished, kept, still_there, reaped = asyncio.run(scenario())
    assert kept == []
    assert still_there["phase"] == "ended"
    assert reaped == [finished]


class YieldingRepository(InMemorySessionRepository):
    """Store whose reads suspend, like a networked backend would."""

    async def get(self, session_id):
        await asyncio.sleep(0)
        return await super().get(session_id)

    async def list(self):
        await asyncio.sleep(0)
        return await super().list()


def test_reads_racing_a_reap_leave_no_runtime_behind(fast_settings):
    async def scenario():
        repository = YieldingRepository()
        registry = _registry(fast_settings, repository=repository)
        finished = await _started(registry)
        await _play_to_end(registry, finished)

        results = await asyncio.gather(
            registry.reap_completed(),
            registry.get_public_state(finished),
            registry.get_history(finished),
            return_exceptions=True,
        )
        await asyncio.sleep(0.01)
        stored = await repository.get(finished)
        leftover = dict(registry._runtimes)
        with pytest.raises(SessionNotFoundError):
            await registry.get_public_state(finished)
        await registry.shutdown()
        return finished, results, stored, leftover

    finished, results, stored, leftover = asyncio.run(scenario())
    reaped, *reads = results
    assert reaped == [finished]
    for read in reads:
        assert isinstance(read, (dict, SessionNotFoundError))
    assert stored is None
    assert leftover == {}


def test_lookup_during_a_reap_is_not_found(fast_settings):
    async def scenario():
        registry = _registry(fast_settings)
        finished = await _started(registry)
        await _play_to_end(registry, finished)

        reaping = asyncio.create_task(registry.reap_completed())
        await asyncio.sleep(0)
        assert finished in registry._closing
        with pytest.raises(SessionNotFoundError):
            await registry.get_public_state(finished)
        reaped = await reaping
        closing = set(registry._closing)
        await registry.shutdown()
        return finished, reaped, closing, dict(registry._runtimes)

    finished, reaped, closing, runtimes = asyncio.run(scenario())
    assert reaped == [finished]
    assert closing == set()
    assert runtimes == {}


def _stored_session(phase: Phase, time_left: int = 0) -> Session:
    return Session(
        room_code="RESUME",
        creator_id="alice",
        participants=list(PLAYERS),
        phase=phase,
        time_left=time_left,
        roles={
            "alice": Role.KILLER, "bob": Role.PROTECTOR,
            "carol": Role.INVESTIGATOR, "dave": Role.BYSTANDER,
        },
        task=Task(kind=TaskKind.SEQUENCE, answer=[1, 2, 3, 4], presentation={"shuffled": [4, 3, 2, 1]}),
    )


def test_session_loaded_mid_game_resumes_its_timer(fast_settings):
    async def scenario():
        repository = InMemorySessionRepository()
        session = _stored_session(Phase.TASK, time_left=1)
        await repository.create(session)
        registry = _registry(fast_settings, repository=repository)

        state = await registry.get_public_state(session.id)
        runtime = registry._runtimes[session.id]
        await wait_for(lambda: runtime.session.phase == Phase.VOTING)
        armed = runtime.machine.timer.armed
        await registry.shutdown()
        return state, armed

    state, armed = asyncio.run(scenario())
    assert state["phase"] == "task"
    assert armed


def test_stored_ended_session_is_not_reopened(fast_settings):
    async def scenario():
        repository = InMemorySessionRepository()
        session = _stored_session(Phase.ENDED)
        await repository.create(session)
        registry = _registry(fast_settings, repository=repository)

        with pytest.raises(SessionNotFoundError):
            await registry.get_public_state(session.id)
        runtimes = dict(registry._runtimes)
        reaped = await registry.reap_completed()
        await registry.shutdown()
        return session.id, runtimes, reaped

    session_id, runtimes, reaped = asyncio.run(scenario())
    assert runtimes == {}
    assert reaped == [session_id]
