"""
Per-session mailbox.

Every trigger that can mutate a session (joins, submissions, ready signals,
timer ticks, grace and expiry callbacks) is queued here and executed one at a
time by a single worker task. Handlers are plain synchronous callables, so a
handler can never be interleaved with another one for the same session.
Sessions each get their own actor and share no mutable state.
"""
import asyncio
import logging
from typing import Any, Callable, Optional, Tuple

from models.errors import SessionNotFoundError

logger = logging.getLogger(__name__)

_Message = Tuple[Callable[..., Any], Tuple[Any, ...], Optional[asyncio.Future]]


class SessionActor:

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._queue: "asyncio.Queue[_Message]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"session:{self.session_id}"
            )

    async def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Queue `fn(*args)` and wait for its result (or exception)."""
        if self._closed:
            raise SessionNotFoundError(f"Session {self.session_id} is closed", session_id=self.session_id)
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((fn, args, future))
        return await future

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        """Queue `fn(*args)` without waiting. Dropped once the actor is closed."""
        if self._closed:
            logger.debug(f"[{self.session_id}] Dropping message for closed session")
            return
        self._queue.put_nowait((fn, args, None))

    async def _run(self) -> None:
        while True:
            fn, args, future = await self._queue.get()
            try:
                result = fn(*args)
            except Exception as exc:
                if future is not None:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    logger.exception(f"[{self.session_id}] Posted message {getattr(fn, '__name__', fn)} failed")
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        """Stop the worker and fail anything still waiting in the queue."""
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        while not self._queue.empty():
            _, _, future = self._queue.get_nowait()
            if future is not None and not future.done():
                future.set_exception(
                    SessionNotFoundError(f"Session {self.session_id} is closed", session_id=self.session_id)
                )
