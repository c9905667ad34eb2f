from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from swe_worker.app_config import AppConfig, RuntimeEnv
from swe_worker.logging_config import bind_session, setup_logging
from swe_worker.mcp.mcp_manager import McpManager
from swe_worker.memory import (
    AsyncEventSink,
    FileBlobStore,
    MemoryStore,
    MetadataStore,
    SequenceKeys,
    SqliteHistoryStore,
    SqliteSessionStore,
)
from swe_worker.notifications import ConsolePublisher, HttpEventPublisher, Notifier
from swe_worker.provider import create_provider
from swe_worker.retry import RetryPolicy
from swe_worker.tool_registry import get_all
from swe_worker.turn_engine import EngineSettings, TurnEngine
from swe_worker.worker import Worker


@dataclass
class AppRuntime:
    session_id: str
    worker: Worker
    engine: TurnEngine
    history: SqliteHistoryStore
    sessions: SqliteSessionStore
    keys: SequenceKeys
    memory_store: MemoryStore
    event_sink: AsyncEventSink
    http_publisher: HttpEventPublisher | None
    mcp_manager: McpManager | None
    builtin_tools: list
    log_descriptions: list[str]
    stopped: asyncio.Event

    async def close(self) -> None:
        self.worker.close()
        if self.mcp_manager is not None:
            await self.mcp_manager.close()
        if self.http_publisher is not None:
            await self.http_publisher.close()
        await self.event_sink.close()
        self.memory_store.close()


def _resolve_path(path: str) -> str:
    resolved = Path(path)
    if not resolved.is_absolute():
        resolved = Path.cwd() / resolved
    return str(resolved)


def engine_settings(app: AppConfig) -> EngineSettings:
    return EngineSettings(
        working_directory=app.working_directory,
        model=app.model,
        title_model=app.title_model,
        base_output_tokens=app.base_output_tokens,
        temperature=app.temperature,
        compaction_budget_tokens=app.compaction_budget_tokens,
        mid_turn_threshold_tokens=app.mid_turn_threshold_tokens,
        head_ratio=app.head_ratio,
        history_lag_attempts=app.history_lag_attempts,
        ultrathink_keyword=app.ultrathink_keyword,
        progress_reminder_seconds=app.progress_reminder_seconds,
        max_tool_result_chars=app.max_tool_result_chars,
        common_prompt=app.common_prompt,
    )


async def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    suspend: Callable[[], Awaitable[None]] | None = None,
) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    session_id = app.session_id or str(uuid.uuid4())
    bind_session(session_id)

    Path(app.working_directory).mkdir(parents=True, exist_ok=True)
    memory_store = MemoryStore(_resolve_path(app.memory_db_path))
    blobs = FileBlobStore(_resolve_path(app.blob_directory))
    sessions = SqliteSessionStore(memory_store)
    history = SqliteHistoryStore(memory_store, blobs)
    metadata = MetadataStore(memory_store)
    keys = SequenceKeys()
    await sessions.load_or_create(session_id, default_model=app.agent_profile.default_model)

    event_sink = AsyncEventSink(memory_store)
    await event_sink.start()
    notifier = Notifier([event_sink])
    http_publisher: HttpEventPublisher | None = None
    if app.notification_endpoint and env.notification_token:
        http_publisher = HttpEventPublisher(app.notification_endpoint, env.notification_token, hub=app.notification_hub)
        notifier.add(http_publisher)
    elif app.notification_endpoint:
        logger.warning("NotificationEndpoint is set but NOTIFICATION_TOKEN is missing; HTTP notifications disabled")
    if app.console_notifications:
        notifier.add(ConsolePublisher())

    mcp_manager = McpManager(app.agent_profile.mcp_servers) if app.agent_profile.mcp_servers else None
    tools = get_all(env.github_token)

    engine = TurnEngine(
        provider=create_provider(app.provider_name, env.provider_api_key),
        history=history,
        sessions=sessions,
        metadata=metadata,
        blobs=blobs,
        notifier=notifier,
        retry_policy=RetryPolicy(
            max_attempts=app.max_throttle_attempts,
            max_overflow_retries=app.max_overflow_retries,
        ),
        keys=keys,
        settings=engine_settings(app),
        profile=app.agent_profile,
        tools=tools,
        mcp=mcp_manager,
    )

    stopped = asyncio.Event()

    async def _suspend() -> None:
        logger.info("Suspending worker")
        stopped.set()

    worker = Worker(
        session_id,
        engine=engine,
        sessions=sessions,
        history=history,
        notifier=notifier,
        suspend=suspend or _suspend,
        idle_timeout_seconds=app.idle_timeout_seconds,
    )

    return AppRuntime(
        session_id=session_id,
        worker=worker,
        engine=engine,
        history=history,
        sessions=sessions,
        keys=keys,
        memory_store=memory_store,
        event_sink=event_sink,
        http_publisher=http_publisher,
        mcp_manager=mcp_manager,
        builtin_tools=tools,
        log_descriptions=log_descriptions,
        stopped=stopped,
    )
