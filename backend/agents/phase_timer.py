"""
Phase Timer — per-session countdown driven through the session mailbox.

Two arming modes:
  immediate    — countdown starts as soon as the phase is armed
  ready-gated  — first night only: the countdown waits until every active
                 participant signalled ready, or a grace period after the
                 first signal runs out, or nobody signalled within the ready
                 timeout

Every arm bumps `generation`. Background tasks only ever *post* messages
tagged with the generation they were armed under; the handlers run inside
the mailbox and drop anything whose generation is no longer current. A
cancelled timer's in-flight tick is therefore always a no-op, and each arm
fires at most one expiry.
"""
import asyncio
import logging
from typing import Callable, Optional

from models.game import Phase, Session

logger = logging.getLogger(__name__)

PostFn = Callable[..., None]


class PhaseTimer:

    def __init__(
        self,
        session: Session,
        post: PostFn,
        on_expired: Callable[[Phase], None],
        on_tick: Optional[Callable[[], None]] = None,
        tick_seconds: float = 1.0,
    ):
        self.session = session
        self.generation = 0
        self._post = post
        self._on_expired = on_expired
        self._on_tick = on_tick
        self._tick_seconds = tick_seconds
        self._phase: Optional[Phase] = None
        self._countdown: Optional[asyncio.Task] = None
        self._grace: Optional[asyncio.Task] = None
        self._ready_timeout: Optional[asyncio.Task] = None
        self._gated = False
        self._grace_ticks = 0

    @property
    def armed(self) -> bool:
        return self._phase is not None

    @property
    def waiting_for_ready(self) -> bool:
        return self._gated

    # ── Arming ────────────────────────────────────────────────────────────────

    def arm(self, duration: int) -> int:
        """Start counting down `duration` ticks for the session's current phase."""
        gen = self._rearm(duration)
        self._start_countdown(gen)
        return gen

    def arm_ready_gated(self, duration: int, grace: int, ready_timeout: int) -> int:
        """Arm for `duration` ticks but hold the countdown until the ready gate opens."""
        gen = self._rearm(duration)
        self._gated = True
        self._grace_ticks = grace
        self.session.ready = []
        self._ready_timeout = self._schedule(
            ready_timeout, self._gate_timeout, gen, "ready timeout"
        )
        logger.info(
            f"[{self.session.id}] Timer armed (ready-gated): {duration} ticks, "
            f"waiting for {len(self.session.active_participants())} participants"
        )
        return gen

    def cancel(self) -> None:
        """Invalidate the current arm. Safe to call when nothing is armed."""
        if self.armed:
            logger.debug(f"[{self.session.id}] Timer cancelled (gen {self.generation}, {self._phase})")
        self._disarm()

    # ── Ready gate ────────────────────────────────────────────────────────────

    def signal_ready(self, participant_id: str) -> None:
        if not self._gated:
            return
        if participant_id not in self.session.ready:
            self.session.ready.append(participant_id)

        active = self.session.active_participants()
        ready = sum(1 for p in active if p in self.session.ready)
        logger.info(f"[{self.session.id}] {participant_id} ready ({ready}/{len(active)})")

        if ready >= len(active):
            self._open_gate(self.generation, "all participants ready")
        elif self._grace is None:
            self._grace = self._schedule(
                self._grace_ticks, self._gate_timeout, self.generation, "grace period expired"
            )

    def _gate_timeout(self, gen: int, reason: str) -> None:
        if gen != self.generation or not self._gated:
            return
        self._open_gate(gen, reason)

    def _open_gate(self, gen: int, reason: str) -> None:
        self._gated = False
        self._cancel_task(self._grace)
        self._cancel_task(self._ready_timeout)
        self._grace = self._ready_timeout = None
        logger.info(
            f"[{self.session.id}] Starting countdown — {reason} "
            f"({len(self.session.ready)}/{len(self.session.active_participants())} ready)"
        )
        self._start_countdown(gen)
        if self._on_tick:
            self._on_tick()

    # ── Countdown ─────────────────────────────────────────────────────────────

    def _rearm(self, duration: int) -> int:
        self._disarm()
        self._phase = self.session.phase
        self.session.time_left = max(0, duration)
        return self.generation

    def _disarm(self) -> None:
        self.generation += 1
        for task in (self._countdown, self._grace, self._ready_timeout):
            self._cancel_task(task)
        self._countdown = self._grace = self._ready_timeout = None
        self._phase = None
        self._gated = False
        self.session.timer_running = False

    def _start_countdown(self, gen: int) -> None:
        self.session.timer_running = True
        self._countdown = asyncio.get_running_loop().create_task(
            self._run(gen), name=f"{self.session.id}:timer:{gen}"
        )

    async def _run(self, gen: int) -> None:
        try:
            while gen == self.generation:
                await asyncio.sleep(self._tick_seconds)
                if gen != self.generation:
                    return
                self._post(self._tick, gen)
        except asyncio.CancelledError:
            return

    def _tick(self, gen: int) -> None:
        if gen != self.generation:
            return  # stale tick from a cancelled or superseded arm
        if self.session.time_left > 0:
            self.session.time_left -= 1
        if self.session.time_left > 0:
            if self._on_tick:
                self._on_tick()
            return

        phase = self._phase
        logger.info(f"[{self.session.id}] Timer expired in phase {phase.value if phase else None}")
        self._disarm()
        self._on_expired(phase)

    # ── Background helpers ────────────────────────────────────────────────────

    def _schedule(self, ticks: int, handler: Callable, gen: int, reason: str) -> asyncio.Task:
        async def runner() -> None:
            try:
                await asyncio.sleep(max(0, ticks) * self._tick_seconds)
            except asyncio.CancelledError:
                return
            self._post(handler, gen, reason)

        return asyncio.get_running_loop().create_task(
            runner(), name=f"{self.session.id}:gate:{gen}"
        )

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done():
            task.cancel()
