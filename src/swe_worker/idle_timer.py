from __future__ import annotations

import asyncio
import secrets
from collections.abc import Awaitable, Callable

from loguru import logger

DEFAULT_IDLE_TIMEOUT_SECONDS = 30 * 60


class IdleShutdownTimer:
    """Debounced timer that puts the worker to sleep after a period of inactivity.

    Every ``arm`` restarts the countdown. While a turn runs the timer is paused;
    ``pause`` hands out a resume token and only the holder of the most recent
    token can re-arm it, so an older turn finishing cannot re-arm a timer that
    a newer turn still holds paused.
    """

    def __init__(
        self,
        on_idle: Callable[[str], Awaitable[None]],
        *,
        timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
    ):
        self._on_idle = on_idle
        self._timeout_seconds = timeout_seconds
        self._handle: asyncio.TimerHandle | None = None
        self._paused = False
        self._resume_token = ""
        self._firing: asyncio.Task | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def paused(self) -> bool:
        return self._paused

    def arm(self, session_id: str) -> None:
        if self._paused:
            return
        self._clear()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._timeout_seconds, self._fire, session_id)

    def pause(self) -> str:
        self._resume_token = secrets.token_hex(8)
        self._paused = True
        self._clear()
        return self._resume_token

    def resume(self, session_id: str, token: str) -> bool:
        if token != self._resume_token:
            logger.debug("Stale idle-timer resume token ignored")
            return False
        self._paused = False
        self.arm(session_id)
        return True

    def cancel(self) -> None:
        self._clear()

    def _clear(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, session_id: str) -> None:
        self._handle = None
        logger.info(f"No activity for {self._timeout_seconds:.0f}s, going to sleep (session {session_id})")
        self._firing = asyncio.ensure_future(self._run_on_idle(session_id))

    async def _run_on_idle(self, session_id: str) -> None:
        try:
            await self._on_idle(session_id)
        except Exception as ex:
            logger.error(f"Idle shutdown failed: {ex}")
