from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Annotated, Any, Literal, Union

from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from swe_worker.cancellation import CancellationCoordinator, CancellationToken, TurnHandle
from swe_worker.idle_timer import DEFAULT_IDLE_TIMEOUT_SECONDS, IdleShutdownTimer
from swe_worker.memory.history import HistoryStore
from swe_worker.memory.sessions import SessionStore
from swe_worker.models import Session
from swe_worker.notifications import Notifier
from swe_worker.status import update_agent_status, update_instance_status
from swe_worker.turn_engine import TurnEngine

_RESUMABLE_KINDS = ("userMessage", "toolResult")


class MessageReceivedEvent(BaseModel):
    type: Literal["onMessageReceived"]


class ForceStopEvent(BaseModel):
    type: Literal["forceStop"]


class SessionUpdatedEvent(BaseModel):
    type: Literal["sessionUpdated"]


WorkerEvent = Annotated[
    Union[MessageReceivedEvent, ForceStopEvent, SessionUpdatedEvent],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[WorkerEvent] = TypeAdapter(WorkerEvent)


def parse_worker_event(raw: str | bytes | dict[str, Any]) -> WorkerEvent:
    if isinstance(raw, (str, bytes)):
        return _EVENT_ADAPTER.validate_json(raw)
    return _EVENT_ADAPTER.validate_python(raw)


class Worker:
    """One session's worker process: reacts to inbound events and runs turns.

    A new message always cancels the turns still running for the session before
    the next one starts, and the idle timer stays paused while any turn runs.
    """

    def __init__(
        self,
        session_id: str,
        *,
        engine: TurnEngine,
        sessions: SessionStore,
        history: HistoryStore,
        notifier: Notifier,
        suspend: Callable[[], Awaitable[None]],
        coordinator: CancellationCoordinator | None = None,
        idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
    ):
        self._session_id = session_id
        self._engine = engine
        self._sessions = sessions
        self._history = history
        self._notifier = notifier
        self._suspend = suspend
        self._coordinator = coordinator or CancellationCoordinator()
        self._idle_timer = IdleShutdownTimer(self._go_to_sleep, timeout_seconds=idle_timeout_seconds)
        self.session: Session | None = None

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def coordinator(self) -> CancellationCoordinator:
        return self._coordinator

    @property
    def idle_timer(self) -> IdleShutdownTimer:
        return self._idle_timer

    async def start(self) -> TurnHandle:
        self._idle_timer.arm(self._session_id)
        self.session = await self._sessions.get(self._session_id)
        await update_instance_status(self._sessions, self._notifier, self._session_id, "running")
        await self._notifier.send_system_message(self._session_id, "the instance has successfully launched!")
        return self.start_resume()

    async def handle_event(self, raw: str | bytes | dict[str, Any]) -> TurnHandle | None:
        """Dispatch one inbound event. Invalid events are logged and ignored."""
        try:
            event = parse_worker_event(raw)
        except ValidationError as ex:
            logger.warning(f"Ignoring invalid worker event: {ex}")
            return None

        logger.info(f"Received worker event: {event.type}")
        if isinstance(event, MessageReceivedEvent):
            self._coordinator.cancel_all(self._session_id)
            return self.start_on_message_received()
        if isinstance(event, ForceStopEvent):
            self._coordinator.cancel_all(self._session_id, self._on_stopped)
            return None
        if isinstance(event, SessionUpdatedEvent):
            self.session = await self._sessions.get(self._session_id)
            return None
        raise AssertionError(f"unhandled worker event: {event!r}")

    def start_on_message_received(self) -> TurnHandle:
        return self._start_turn(self.on_message_received)

    def start_resume(self) -> TurnHandle:
        return self._start_turn(self.resume)

    async def on_message_received(self, token: CancellationToken) -> None:
        await update_agent_status(self._sessions, self._notifier, self._session_id, "working")
        try:
            await self._engine.run(self._session_id, token)
        finally:
            if token.is_cancelled:
                await token.complete_cancel()
            else:
                await update_agent_status(self._sessions, self._notifier, self._session_id, "pending")

    async def resume(self, token: CancellationToken) -> None:
        """Pick up a turn interrupted by a restart, if the history ends mid-turn."""
        items = await self._history.read_all_ordered(self._session_id)
        if not items or items[-1].kind not in _RESUMABLE_KINDS:
            logger.info(f"Nothing to resume for session {self._session_id}")
            return
        logger.info(f"Resuming session {self._session_id} from a {items[-1].kind} item")
        await self.on_message_received(token)

    async def wait_idle(self) -> None:
        await self._coordinator.wait_idle(self._session_id)

    def close(self) -> None:
        self._idle_timer.cancel()

    def _start_turn(self, runner: Callable[[CancellationToken], Awaitable[None]]) -> TurnHandle:
        handle = self._coordinator.start(self._session_id)
        resume_token = self._idle_timer.pause()

        async def _run() -> None:
            try:
                await runner(handle.token)
            except Exception as ex:
                logger.error(f"Turn for session {self._session_id} failed: {ex!r}")
                await self._notifier.send_system_message(self._session_id, f"An error occurred: {ex}")
            finally:
                self._coordinator.finish(handle)
                self._idle_timer.resume(self._session_id, resume_token)

        handle.task = asyncio.create_task(_run())
        return handle

    async def _on_stopped(self) -> None:
        await update_agent_status(self._sessions, self._notifier, self._session_id, "pending")
        await self._notifier.send_system_message(self._session_id, "Agent work was stopped.")

    async def _go_to_sleep(self, session_id: str) -> None:
        await self._notifier.send_system_message(session_id, "Going to sleep mode. You can wake me up at any time.")
        await update_instance_status(self._sessions, self._notifier, session_id, "stopped")
        await self._suspend()
