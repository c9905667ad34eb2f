from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from loguru import logger

Cleanup = Callable[[], Awaitable[None]]


class CancellationToken:
    """Cooperative cancellation flag with a cleanup that runs at most once."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callback: Cleanup | None = None
        self._completed = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, callback: Cleanup | None = None) -> None:
        self._cancelled = True
        if callback is not None:
            self._callback = callback

    async def complete_cancel(self) -> None:
        """Called by the cancelled turn once it has stopped."""
        # Check-and-set with no await in between, so only the first caller proceeds.
        if self._completed:
            return
        self._completed = True
        if self._callback is not None:
            await self._callback()


@dataclass
class TurnHandle:
    session_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    finished: bool = False
    task: asyncio.Task | None = None


class CancellationCoordinator:
    """In-flight turns per session; the only writer of their handles."""

    def __init__(self) -> None:
        self._handles: dict[str, list[TurnHandle]] = {}

    def start(self, session_id: str) -> TurnHandle:
        handle = TurnHandle(session_id=session_id)
        self._handles.setdefault(session_id, []).append(handle)
        return handle

    def finish(self, handle: TurnHandle) -> None:
        handle.finished = True

    def cancel_all(self, session_id: str, cleanup: Cleanup | None = None) -> int:
        """Flag every unfinished turn of the session and drop finished handles.

        The cleanup is attached to each flagged turn; the turn runs it when it stops.
        """
        handles = self._handles.get(session_id, [])
        cancelled = 0
        for handle in handles:
            if handle.finished:
                continue
            handle.token.cancel(cleanup)
            cancelled += 1
            logger.info(f"Cancelled an ongoing turn for session {session_id}")
        self._handles[session_id] = [h for h in handles if not h.finished]
        return cancelled

    def handles(self, session_id: str) -> list[TurnHandle]:
        return list(self._handles.get(session_id, []))

    def is_busy(self, session_id: str) -> bool:
        return any(not h.finished for h in self._handles.get(session_id, []))

    async def wait_idle(self, session_id: str) -> None:
        tasks = [h.task for h in self._handles.get(session_id, []) if h.task is not None and not h.finished]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
