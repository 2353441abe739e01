"""
External collaborators consumed by the core.

Broadcast  — told after every externally visible mutation (push a fresh snapshot)
Settlement — told exactly once when a session ends (pay out stakes)

Both are called fire-and-forget through CollaboratorDispatcher: the session
mailbox never awaits them, and a failure is logged as a CollaboratorError
without touching session state. A finished game's result stands regardless
of whether settlement succeeded; retrying is the settlement service's job.
"""
import asyncio
import logging
from typing import List, Optional, Protocol, Set

from models.errors import CollaboratorError

logger = logging.getLogger(__name__)


class Broadcast(Protocol):
    async def emit_state_changed(self, session_id: str) -> None: ...


class Settlement(Protocol):
    async def distribute_rewards(
        self, session_id: str, winners: List[str], losers: List[str]
    ) -> None: ...


class LoggingBroadcast:
    """Default broadcast: log only. Wire a WebSocket hub in its place."""

    async def emit_state_changed(self, session_id: str) -> None:
        logger.debug(f"[{session_id}] state_changed")


class LoggingSettlement:
    """Default settlement: log the payout request only."""

    async def distribute_rewards(
        self, session_id: str, winners: List[str], losers: List[str]
    ) -> None:
        logger.info(f"[{session_id}] Settlement requested — winners={winners} losers={losers}")


class CollaboratorDispatcher:

    def __init__(self, broadcast: Optional[Broadcast] = None, settlement: Optional[Settlement] = None):
        self.broadcast = broadcast or LoggingBroadcast()
        self.settlement = settlement or LoggingSettlement()
        # Strong refs so background tasks are not garbage-collected mid-flight
        self._tasks: Set[asyncio.Task] = set()

    def state_changed(self, session_id: str) -> None:
        self._spawn(self._emit(session_id), f"{session_id}:broadcast")

    def settle(self, session_id: str, winners: List[str], losers: List[str]) -> None:
        self._spawn(self._settle(session_id, list(winners), list(losers)), f"{session_id}:settle")

    async def drain(self) -> None:
        """Wait for every in-flight collaborator call (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _emit(self, session_id: str) -> None:
        try:
            await self.broadcast.emit_state_changed(session_id)
        except Exception as exc:
            error = CollaboratorError(f"broadcast failed: {exc}", session_id=session_id)
            logger.warning(f"[{session_id}] {error.message}")

    async def _settle(self, session_id: str, winners: List[str], losers: List[str]) -> None:
        try:
            await self.settlement.distribute_rewards(session_id, winners, losers)
            logger.info(f"[{session_id}] Settlement dispatched for {len(winners)} winners")
        except Exception as exc:
            error = CollaboratorError(f"settlement failed: {exc}", session_id=session_id)
            logger.error(f"[{session_id}] {error.message} — game result stands", exc_info=True)
