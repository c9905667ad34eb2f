from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from swe_worker.agent_profile import AgentProfile
from swe_worker.cancellation import CancellationToken
from swe_worker.compaction import CompactionWindow, compact, no_op, total_tokens
from swe_worker.content import (
    ContentBlock,
    ReasoningBlock,
    ResultContent,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    strip_thinking,
    text_of,
)
from swe_worker.mcp.mcp_manager import McpManager
from swe_worker.memory.blobs import BlobStore
from swe_worker.memory.history import HistoryStore, SequenceKeys, render_messages
from swe_worker.memory.metadata import MetadataStore
from swe_worker.memory.sessions import SessionStore
from swe_worker.model_catalog import ModelConfig, get_model_config
from swe_worker.models import ConversationItem, Message, ModelRequest, ModelResponse, Session, Usage
from swe_worker.notifications import Notifier
from swe_worker.prompts import build_system_prompt, find_repository_knowledge, render_tool_result
from swe_worker.provider import LLMProvider
from swe_worker.retry import RetryPolicy, TurnRetryState, plan_output
from swe_worker.title import Transcript, generate_session_title
from swe_worker.tool import Tool, ToolContext
from swe_worker.tool_registry import ToolRegistry, select_tools
from swe_worker.tools.github.clone_repository_tool import REPO_METADATA_KEY
from swe_worker.tools.text_utilities import truncate

_PROGRESS_TOOL = "report_progress"
_CLONE_TOOL = "clone_repository"


@dataclass(frozen=True)
class EngineSettings:
    working_directory: str
    model: str = "sonnet4.5"
    title_model: str = "haiku4.5"
    base_output_tokens: int = 8192
    temperature: float = 1.0
    compaction_budget_tokens: int = 80_000
    mid_turn_threshold_tokens: int = 190_000
    head_ratio: float = 0.6
    history_lag_attempts: int = 5
    ultrathink_keyword: str = "ultrathink"
    progress_reminder_seconds: float = 300.0
    max_tool_result_chars: int = 40_000
    common_prompt: str | None = None


@dataclass
class _TurnState:
    session_id: str
    model: ModelConfig
    system_prompt: str
    registry: ToolRegistry
    transcript: Transcript
    base_items: list[ConversationItem]
    first_cache_point: int
    appended: list[ConversationItem] = field(default_factory=list)
    retry: TurnRetryState = field(default_factory=TurnRetryState)
    last_reported: float | None = None


def _looks_lagged(items: list[ConversationItem]) -> bool:
    return bool(items) and items[-1].kind != "userMessage"


def _last_result(retry_state) -> list[ConversationItem]:
    return retry_state.outcome.result()


def latest_user_text(messages: list[Message]) -> str:
    for message in reversed(messages):
        if message.role != "user":
            continue
        texts = [block.text for block in message.content if isinstance(block, TextBlock)]
        if texts:
            return " ".join(texts)
    return ""


def reasoning_allowed(model: ModelConfig, messages: list[Message]) -> bool:
    """Reasoning needs model support, and cannot follow a tool call that was made without it."""
    if not model.reasoning_support:
        return False
    if len(messages) < 2:
        return True
    previous = messages[-2].content
    if previous and isinstance(previous[-1], ToolUseBlock) and not isinstance(previous[0], ReasoningBlock):
        return False
    return True


def resolve_model_key(
    items: list[ConversationItem],
    session: Session,
    profile: AgentProfile,
    default_model: str,
) -> str:
    for item in reversed(items):
        if item.model_override:
            return item.model_override
    return session.default_model or profile.default_model or default_model


class TurnEngine:
    """Runs one turn for a session: model calls and tool dispatches until a final answer."""

    def __init__(
        self,
        *,
        provider: LLMProvider,
        history: HistoryStore,
        sessions: SessionStore,
        metadata: MetadataStore,
        blobs: BlobStore,
        notifier: Notifier,
        retry_policy: RetryPolicy,
        keys: SequenceKeys,
        settings: EngineSettings,
        profile: AgentProfile,
        tools: list[Tool],
        mcp: McpManager | None = None,
        history_lag_wait: wait_base | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._history = history
        self._sessions = sessions
        self._metadata = metadata
        self._blobs = blobs
        self._notifier = notifier
        self._retry_policy = retry_policy
        self._keys = keys
        self._settings = settings
        self._profile = profile
        self._tools = tools
        self._mcp = mcp
        self._history_lag_wait = history_lag_wait or wait_exponential(multiplier=0.1, min=0.1, max=1)
        self._clock = clock

    async def run(self, session_id: str, token: CancellationToken) -> None:
        logger.info(f"Starting turn for session {session_id}")
        session = await self._sessions.get(session_id)
        items = await self._fetch_history(session_id)
        if not items:
            logger.info(f"Session {session_id} has no history, nothing to do")
            return

        model = get_model_config(resolve_model_key(items, session, self._profile, self._settings.model))
        state = await self._start_turn(session_id, model, items)
        logger.info(
            f"Turn context: model={model.key}, items={len(state.base_items)}/{len(items)}, "
            f"tools={len(state.registry.names)}"
        )

        finished = False
        while True:
            if token.is_cancelled:
                logger.info(f"Turn for session {session_id} was cancelled")
                break

            window = self._assemble_window(state)
            messages = render_messages(window.items, self._blobs)
            second_cache_point = len(window.items) - 1
            cache_points = tuple(sorted({state.first_cache_point, second_cache_point}))
            state.first_cache_point = second_cache_point

            reasoning = reasoning_allowed(model, messages)
            ultrathink = self._settings.ultrathink_keyword.lower() in latest_user_text(messages).lower()
            thinking_budget: int | None = None

            async def call(overflow_count: int) -> ModelResponse:
                nonlocal thinking_budget
                plan = plan_output(
                    model,
                    self._settings.base_output_tokens,
                    overflow_count,
                    reasoning=reasoning,
                    ultrathink=ultrathink,
                )
                thinking_budget = plan.thinking_budget if ultrathink else None
                request = ModelRequest(
                    model=model.model_id,
                    system=state.system_prompt,
                    messages=messages,
                    tools=state.registry.specs(),
                    max_output_tokens=plan.max_tokens,
                    temperature=self._settings.temperature,
                    thinking_budget=plan.thinking_budget,
                    cache_points=cache_points if model.cache_support else (),
                )
                return await self._provider.converse(request)

            logger.info(f"Calling model: messages={len(messages)}, window_tokens={window.total_tokens:,}")
            response = await self._retry_policy.invoke(call, state.retry, is_cancelled=lambda: token.is_cancelled)
            if response is None:
                break

            await self._record_input_tokens(session_id, window, response.usage)
            await self._sessions.add_usage(session_id, model, response.usage)
            logger.info(f"Model response: stop_reason={response.stop_reason}, output_tokens={response.usage.output_tokens}")

            if response.stop_reason == "tool_use":
                pair = await self._dispatch_tools(state, response, thinking_budget)
                state.appended.extend(pair)
                continue

            await self._finish(state, response, thinking_budget)
            finished = True
            break

        if finished:
            await self._maybe_generate_title(session_id, state.transcript)
        logger.info(f"Turn for session {session_id} completed")

    async def _fetch_history(self, session_id: str) -> list[ConversationItem]:
        retrying = AsyncRetrying(
            retry=retry_if_result(_looks_lagged),
            wait=self._history_lag_wait,
            stop=stop_after_attempt(max(1, self._settings.history_lag_attempts)),
            retry_error_callback=_last_result,
        )
        return await retrying(self._history.read_all_ordered, session_id)

    async def _start_turn(self, session_id: str, model: ModelConfig, items: list[ConversationItem]) -> _TurnState:
        system_prompt = await self._system_prompt(session_id)
        tools = select_tools(self._tools, self._profile.tools)
        if self._mcp is not None:
            await self._mcp.connect_all()
        registry = ToolRegistry(tools, self._mcp)

        initial = compact(items, self._settings.compaction_budget_tokens, self._settings.head_ratio)
        base_items = list(initial.items)
        # The provider cache usually ends at the latest user message before the last
        # assistant output, i.e. three items from the end.
        first_cache_point = len(base_items) - 3 if len(base_items) > 2 else len(base_items) - 1
        messages = render_messages(base_items, self._blobs)
        return _TurnState(
            session_id=session_id,
            model=model,
            system_prompt=system_prompt,
            registry=registry,
            transcript=Transcript(latest_user_text(messages)),
            base_items=base_items,
            first_cache_point=first_cache_point,
        )

    async def _system_prompt(self, session_id: str) -> str:
        knowledge = None
        try:
            repo = await self._metadata.get(session_id, REPO_METADATA_KEY)
            if repo and repo.get("repo_directory"):
                knowledge = find_repository_knowledge(repo["repo_directory"])
        except Exception as ex:
            logger.error(f"Error retrieving repository metadata or knowledge file: {ex}")
        return build_system_prompt(self._profile.system_prompt, self._settings.common_prompt, knowledge)

    def _assemble_window(self, state: _TurnState) -> CompactionWindow:
        items = state.base_items + state.appended
        running = total_tokens(items)
        if running <= self._settings.mid_turn_threshold_tokens:
            return no_op(items)

        logger.info(
            f"Applying middle-out during turn. Total tokens: {running:,}, "
            f"threshold: {self._settings.mid_turn_threshold_tokens:,}"
        )
        window = compact(items, self._settings.compaction_budget_tokens, self._settings.head_ratio)
        # The cached prefix is gone after trimming.
        state.first_cache_point = len(window.items) - 1
        return window

    async def _record_input_tokens(self, session_id: str, window: CompactionWindow, usage: Usage) -> None:
        if not window.items or window.items[-1].role != "user":
            return
        last = window.items[-1]
        delta = usage.context_tokens - window.total_tokens
        if delta < 0:
            logger.warning(
                f"Negative token delta {delta} for item {last.key} (reported {usage.context_tokens}, "
                f"window {window.total_tokens}); recording 0"
            )
            delta = 0
        await self._history.update_token_count(session_id, last.key, delta)
        last.token_count = delta

    async def _dispatch_tools(
        self,
        state: _TurnState,
        response: ModelResponse,
        thinking_budget: int | None,
    ) -> list[ConversationItem]:
        session_id = state.session_id
        tool_uses = [block for block in response.content if isinstance(block, ToolUseBlock)]
        reasoning_text = next((b.text for b in response.content if isinstance(b, ReasoningBlock)), None)

        results: list[ContentBlock] = []
        for use in tool_uses:
            await self._notifier.send_webapp_event(
                session_id,
                {
                    "type": "toolUse",
                    "toolName": use.name,
                    "toolUseId": use.id,
                    "input": json.dumps(use.input),
                    "thinkingBudget": thinking_budget,
                    "reasoningText": reasoning_text,
                },
            )
            result = await self._run_tool(state, use)
            results.append(result)
            output = text_of(list(result.content))
            await self._notifier.send_webapp_event(
                session_id,
                {"type": "toolResult", "toolName": use.name, "toolUseId": use.id, "output": output},
            )

        use_key, result_key = self._keys.next(2)
        tool_use_item = ConversationItem(
            session_id=session_id,
            key=use_key,
            role="assistant",
            kind="toolUse",
            content=list(response.content),
            token_count=response.usage.output_tokens,
            thinking_budget=thinking_budget,
        )
        tool_result_item = ConversationItem(
            session_id=session_id,
            key=result_key,
            role="user",
            kind="toolResult",
            content=results,
        )
        await self._history.append_pair(tool_use_item, tool_result_item)
        return [tool_use_item, tool_result_item]

    async def _run_tool(self, state: _TurnState, use: ToolUseBlock) -> ToolResultBlock:
        context = ToolContext(
            session_id=state.session_id,
            tool_use_id=use.id,
            working_directory=self._settings.working_directory,
            notifier=self._notifier,
            blobs=self._blobs,
            metadata=self._metadata,
        )
        try:
            output = await state.registry.dispatch(use.name, use.input, context)
        except Exception as ex:
            logger.warning(f"Tool {use.name} failed: {ex}")
            return ToolResultBlock(
                tool_use_id=use.id,
                content=[self._render_text(state, f"Error occurred when using tool {use.name}: {ex}")],
                is_error=True,
            )

        if use.name == _PROGRESS_TOOL:
            state.last_reported = self._clock()
            progress = use.input.get("progress")
            if isinstance(progress, str):
                state.transcript.add_assistant(progress)
        if use.name == _CLONE_TOOL:
            # The repository is known now, so its knowledge files can join the prompt.
            state.system_prompt = await self._system_prompt(state.session_id)

        content: list[ResultContent]
        if isinstance(output, str):
            content = [self._render_text(state, output)]
        else:
            content = list(output)
        return ToolResultBlock(tool_use_id=use.id, content=content)

    def _render_text(self, state: _TurnState, text: str) -> TextBlock:
        elapsed = None if state.last_reported is None else self._clock() - state.last_reported
        force_report = elapsed is None or elapsed > self._settings.progress_reminder_seconds
        text = truncate(text, self._settings.max_tool_result_chars)
        return TextBlock(text=render_tool_result(text, force_report=force_report))

    async def _finish(self, state: _TurnState, response: ModelResponse, thinking_budget: int | None) -> None:
        session_id = state.session_id
        visible = [block for block in response.content if not isinstance(block, ReasoningBlock)]
        if not visible:
            logger.info("Final message is empty, ignoring")
            await self._notifier.send_system_message(session_id, "")
            return

        item = ConversationItem(
            session_id=session_id,
            key=self._keys.next(1)[0],
            role="assistant",
            kind="assistant",
            content=list(response.content),
            token_count=response.usage.output_tokens,
            thinking_budget=thinking_budget,
        )
        await self._history.append(item)

        texts = [block.text for block in visible if isinstance(block, TextBlock)]
        reply = strip_thinking(texts[-1] if texts else "")
        await self._notifier.send_system_message(session_id, reply)
        state.transcript.add_assistant(reply)

    async def _maybe_generate_title(self, session_id: str, transcript: Transcript) -> None:
        try:
            session = await self._sessions.get(session_id)
            if session.title:
                return
            title_model = get_model_config(self._settings.title_model)
            title = await generate_session_title(self._provider, title_model.model_id, str(transcript))
            if not title:
                return
            await self._sessions.update_title(session_id, title)
            logger.info(f"Generated title for session {session_id}: {title}")
            await self._notifier.send_webapp_event(session_id, {"type": "sessionTitleUpdate", "newTitle": title})
        except Exception as ex:
            logger.error(f"Error generating session title for {session_id}: {ex}")
