import asyncio
import shutil
import unittest
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import BaseModel
from tenacity import wait_none

from swe_worker.agent_profile import AgentProfile
from swe_worker.cancellation import CancellationToken
from swe_worker.content import ReasoningBlock, TextBlock, ToolResultBlock, ToolUseBlock
from swe_worker.memory import InMemoryBlobStore, MemoryStore, MetadataStore, SequenceKeys, SqliteHistoryStore
from swe_worker.memory import SqliteSessionStore
from swe_worker.model_catalog import get_model_config
from swe_worker.models import ConversationItem, Message, ModelRequest, ModelResponse, Session, Usage
from swe_worker.notifications import Notifier
from swe_worker.retry import RetryPolicy
from swe_worker.tool import ToolContext, schema_of
from swe_worker.tools.report_progress_tool import ReportProgressTool
from swe_worker.turn_engine import EngineSettings, TurnEngine, latest_user_text, reasoning_allowed, resolve_model_key

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class _EchoInput(BaseModel):
    text: str


class _EchoTool:
    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echo the text back."

    @property
    def input_model(self) -> type[BaseModel]:
        return _EchoInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(_EchoInput)

    async def execute(self, tool_input: _EchoInput, context: ToolContext) -> str:
        return f"echo: {tool_input.text}"


class _FakeProvider:
    def __init__(self, responses: list[ModelResponse], title: str = "Echo test"):
        self._responses = list(responses)
        self._title = title
        self.requests: list[ModelRequest] = []
        self.title_calls = 0

    async def converse(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def complete_text(self, model, prompt, *, max_tokens, temperature, prefill=""):
        self.title_calls += 1
        return self._title


class _RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[dict] = []

    async def publish(self, topic: str, event: dict) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e.get("type") == event_type]


class _LaggyHistory:
    """Hides the newest item for the first ``lag`` reads."""

    def __init__(self, inner: SqliteHistoryStore, lag: int):
        self._inner = inner
        self._lag = lag
        self.reads = 0

    async def read_all_ordered(self, session_id: str) -> list[ConversationItem]:
        self.reads += 1
        items = await self._inner.read_all_ordered(session_id)
        return items[:-1] if self.reads <= self._lag else items

    def __getattr__(self, name: str):
        return getattr(self._inner, name)


def _text_response(text: str, *, input_tokens: int = 50, output_tokens: int = 7) -> ModelResponse:
    return ModelResponse(
        content=[TextBlock(text=text)],
        stop_reason="end_turn",
        usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def _tool_response(name: str, tool_input: dict, *, input_tokens: int = 50, output_tokens: int = 5) -> ModelResponse:
    return ModelResponse(
        content=[TextBlock(text="working"), ToolUseBlock(id="tu1", name=name, input=tool_input)],
        stop_reason="tool_use",
        usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


class TurnEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"turnengine-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._store = MemoryStore(":memory:")
        self._blobs = InMemoryBlobStore()
        self._sessions = SqliteSessionStore(self._store)
        self._history = SqliteHistoryStore(self._store, self._blobs)
        self._metadata = MetadataStore(self._store)
        self._publisher = _RecordingPublisher()
        self._clock = [1_000.0]
        self._keys = SequenceKeys(clock=lambda: self._clock[0])
        asyncio.run(self._sessions.create("s1"))

    def tearDown(self) -> None:
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _engine(self, provider: _FakeProvider, *, history=None, **settings) -> TurnEngine:
        return TurnEngine(
            provider=provider,
            history=history or self._history,
            sessions=self._sessions,
            metadata=self._metadata,
            blobs=self._blobs,
            notifier=Notifier([self._publisher]),
            retry_policy=RetryPolicy(wait=wait_none()),
            keys=self._keys,
            settings=EngineSettings(working_directory=str(self._tmp_dir), **settings),
            profile=AgentProfile(name="test", system_prompt="sys", tools=("echo",)),
            tools=[_EchoTool(), ReportProgressTool()],
            history_lag_wait=wait_none(),
            clock=lambda: self._clock[0],
        )

    def _add_user(self, text: str, **kwargs) -> ConversationItem:
        item = ConversationItem(
            session_id="s1",
            key=self._keys.next(1)[0],
            role="user",
            kind="userMessage",
            content=[TextBlock(text=text)],
            **kwargs,
        )
        asyncio.run(self._history.append(item))
        return item

    def _items(self) -> list[ConversationItem]:
        return asyncio.run(self._history.read_all_ordered("s1"))

    def _run(self, engine: TurnEngine, token: CancellationToken | None = None) -> None:
        asyncio.run(engine.run("s1", token or CancellationToken()))

    def test_final_message_is_persisted_and_sent(self) -> None:
        self._add_user("hi there")
        provider = _FakeProvider([_text_response("<thinking>plan</thinking>Hello!")])

        self._run(self._engine(provider))

        items = self._items()
        self.assertEqual(["userMessage", "assistant"], [i.kind for i in items])
        self.assertEqual(7, items[1].token_count)
        self.assertEqual(50, items[0].token_count)
        messages = [e["message"] for e in self._publisher.of_type("message")]
        self.assertEqual(["Hello!"], messages)

        request = provider.requests[0]
        self.assertEqual(get_model_config("sonnet4.5").model_id, request.model)
        self.assertEqual("sys", request.system)
        self.assertEqual(["echo", "report_progress"], [t["name"] for t in request.tools])
        self.assertEqual((0,), request.cache_points)
        self.assertEqual(2000, request.thinking_budget)

    def test_title_generated_once(self) -> None:
        self._add_user("hi there")
        provider = _FakeProvider([_text_response("Hello!")], title="Greeting")

        self._run(self._engine(provider))

        session = asyncio.run(self._sessions.get("s1"))
        self.assertEqual("Greeting", session.title)
        self.assertEqual(["Greeting"], [e["newTitle"] for e in self._publisher.of_type("sessionTitleUpdate")])

        self._add_user("again")
        second = _FakeProvider([_text_response("Hi again")])
        self._run(self._engine(second))
        self.assertEqual(0, second.title_calls)

    def test_tool_round_trip(self) -> None:
        self._add_user("echo something")
        provider = _FakeProvider([
            _tool_response("echo", {"text": "hi"}),
            _text_response("Done", input_tokens=80),
        ])

        self._run(self._engine(provider))

        items = self._items()
        self.assertEqual(["userMessage", "toolUse", "toolResult", "assistant"], [i.kind for i in items])
        self.assertEqual(int(items[1].key) + 1, int(items[2].key))
        self.assertEqual(5, items[1].token_count)
        self.assertEqual(25, items[2].token_count)

        result = items[2].content[0]
        self.assertIsInstance(result, ToolResultBlock)
        self.assertFalse(result.is_error)
        self.assertTrue(result.content[0].text.startswith("<result>\necho: hi\n</result>"))
        self.assertIn("report_progress", result.content[0].text)

        self.assertEqual(1, len(self._publisher.of_type("toolUse")))
        self.assertEqual("echo: hi", self._publisher.of_type("toolResult")[0]["output"].split("\n")[1])

        second = provider.requests[1]
        self.assertEqual(3, len(second.messages))
        self.assertEqual((0, 2), second.cache_points)
        self.assertIsNone(second.thinking_budget)

    def test_tool_errors_are_reported_to_the_model(self) -> None:
        self._add_user("use a tool")
        provider = _FakeProvider([
            _tool_response("nope", {}),
            _tool_response("echo", {"wrong": 1}),
            _text_response("gave up"),
        ])

        self._run(self._engine(provider))

        results = [i.content[0] for i in self._items() if i.kind == "toolResult"]
        self.assertTrue(all(r.is_error for r in results))
        self.assertIn("Error occurred when using tool nope: tool nope is not found", results[0].content[0].text)
        self.assertIn("Error occurred when using tool echo: invalid input for echo", results[1].content[0].text)

    def test_progress_report_silences_reminder(self) -> None:
        self._add_user("work")
        provider = _FakeProvider([
            _tool_response("report_progress", {"progress": "Halfway there"}),
            _tool_response("echo", {"text": "x"}),
            _text_response("Done"),
        ])

        self._run(self._engine(provider))

        results = [i.content[0].content[0].text for i in self._items() if i.kind == "toolResult"]
        self.assertNotIn("report_progress tool", results[1])
        self.assertIn("Halfway there", [e["message"] for e in self._publisher.of_type("message")])

    def test_cancelled_turn_does_nothing(self) -> None:
        self._add_user("hi")
        provider = _FakeProvider([_text_response("never")])
        token = CancellationToken()
        token.cancel()

        self._run(self._engine(provider), token)

        self.assertEqual([], provider.requests)
        self.assertEqual(0, provider.title_calls)
        self.assertEqual(["userMessage"], [i.kind for i in self._items()])

    def test_empty_final_message_is_benign(self) -> None:
        self._add_user("hi")
        empty = ModelResponse(content=[ReasoningBlock(text="hmm")], stop_reason="end_turn", usage=Usage(input_tokens=5))

        self._run(self._engine(_FakeProvider([empty])))

        self.assertEqual(["userMessage"], [i.kind for i in self._items()])
        self.assertEqual([""], [e["message"] for e in self._publisher.of_type("message")])

    def test_waits_for_lagging_history(self) -> None:
        self._add_user("first")
        self._clock[0] += 1
        asyncio.run(self._history.append(ConversationItem(
            session_id="s1", key=self._keys.next(1)[0], role="assistant", kind="assistant",
            content=[TextBlock(text="answer")],
        )))
        self._clock[0] += 1
        self._add_user("second")
        laggy = _LaggyHistory(self._history, lag=2)
        provider = _FakeProvider([_text_response("ok")])

        self._run(self._engine(provider, history=laggy))

        self.assertEqual(3, laggy.reads)
        self.assertEqual(3, len(provider.requests[0].messages))

    def test_model_override_wins(self) -> None:
        self._add_user("hi", model_override="haiku3.5")
        provider = _FakeProvider([_text_response("ok")])

        self._run(self._engine(provider))

        request = provider.requests[0]
        self.assertEqual(get_model_config("haiku3.5").model_id, request.model)
        self.assertIsNone(request.thinking_budget)

    def test_ultrathink_widens_reasoning_and_is_recorded(self) -> None:
        self._add_user("Please ULTRATHINK about this")
        provider = _FakeProvider([_tool_response("echo", {"text": "x"}), _text_response("ok")])

        self._run(self._engine(provider))

        self.assertEqual(31_999, provider.requests[0].thinking_budget)
        tool_use = [i for i in self._items() if i.kind == "toolUse"][0]
        self.assertEqual(31_999, tool_use.thinking_budget)
        self.assertEqual(31_999, self._publisher.of_type("toolUse")[0]["thinkingBudget"])

    def test_repository_knowledge_joins_system_prompt(self) -> None:
        repo = self._tmp_dir / "app"
        repo.mkdir()
        (repo / "AGENTS.md").write_text("Run make test.")
        asyncio.run(self._metadata.put("s1", "repo", {"repo_directory": str(repo)}))
        self._add_user("hi")
        provider = _FakeProvider([_text_response("ok")])

        self._run(self._engine(provider, common_prompt="Be kind."))

        system = provider.requests[0].system
        self.assertTrue(system.startswith("sys\n\n## Common Prompt\nBe kind."))
        self.assertIn("## Repository Knowledge\nRun make test.", system)

    def test_negative_token_delta_is_clamped(self) -> None:
        self._add_user("hi", token_count=500)
        provider = _FakeProvider([_text_response("ok", input_tokens=100)])

        self._run(self._engine(provider))

        self.assertEqual(0, self._items()[0].token_count)

    def test_mid_turn_trimming_keeps_pairs(self) -> None:
        self._add_user("start")
        provider = _FakeProvider([
            _tool_response("echo", {"text": "a"}, input_tokens=100, output_tokens=100),
            _tool_response("echo", {"text": "b"}, input_tokens=200, output_tokens=100),
            _text_response("done", input_tokens=100),
        ])

        self._run(self._engine(provider, mid_turn_threshold_tokens=250, compaction_budget_tokens=300))

        third = provider.requests[2]
        self.assertEqual(["user", "assistant", "user"], [m.role for m in third.messages])
        self.assertIsInstance(third.messages[1].content[-1], ToolUseBlock)
        self.assertEqual(2, third.cache_points[-1])

    def test_usage_is_accumulated_into_session_cost(self) -> None:
        self._add_user("hi")
        self._run(self._engine(_FakeProvider([_text_response("ok", input_tokens=1000, output_tokens=100)])))

        session = asyncio.run(self._sessions.get("s1"))
        expected = get_model_config("sonnet4.5").cost(Usage(input_tokens=1000, output_tokens=100))
        self.assertAlmostEqual(expected, session.session_cost)

    def test_fatal_provider_error_aborts_turn(self) -> None:
        self._add_user("hi")
        with self.assertRaises(ValueError):
            self._run(self._engine(_FakeProvider([ValueError("bad request")])))
        self.assertEqual(["userMessage"], [i.kind for i in self._items()])


class TurnEngineHelperTests(unittest.TestCase):
    def test_latest_user_text_skips_tool_results(self) -> None:
        messages = [
            Message(role="user", content=[TextBlock(text="do it")]),
            Message(role="assistant", content=[ToolUseBlock(id="t", name="x", input={})]),
            Message(role="user", content=[ToolResultBlock(tool_use_id="t", content=[TextBlock(text="r")])]),
        ]
        self.assertEqual("do it", latest_user_text(messages))

    def test_reasoning_not_allowed_after_plain_tool_use(self) -> None:
        model = get_model_config("sonnet4.5")
        plain = [
            Message(role="assistant", content=[TextBlock(text="a"), ToolUseBlock(id="t", name="x", input={})]),
            Message(role="user", content=[ToolResultBlock(tool_use_id="t")]),
        ]
        with_trace = [
            Message(role="assistant", content=[ReasoningBlock(text="r", signature="s"), ToolUseBlock(id="t", name="x", input={})]),
            Message(role="user", content=[ToolResultBlock(tool_use_id="t")]),
        ]
        self.assertFalse(reasoning_allowed(model, plain))
        self.assertTrue(reasoning_allowed(model, with_trace))
        self.assertFalse(reasoning_allowed(get_model_config("gpt-4.1"), with_trace))

    def test_resolve_model_key_order(self) -> None:
        item = ConversationItem(session_id="s", key="1", role="user", kind="userMessage", content=[])
        session = Session(id="s", created_at="", updated_at="")
        profile = AgentProfile(name="p", default_model="opus4.1")

        self.assertEqual("opus4.1", resolve_model_key([item], session, profile, "sonnet4.5"))
        session.default_model = "sonnet4"
        self.assertEqual("sonnet4", resolve_model_key([item], session, profile, "sonnet4.5"))
        item.model_override = "haiku4.5"
        self.assertEqual("haiku4.5", resolve_model_key([item], session, profile, "sonnet4.5"))
        self.assertEqual("sonnet4.5", resolve_model_key([], Session(id="s", created_at="", updated_at=""), AgentProfile(name="p"), "sonnet4.5"))


if __name__ == "__main__":
    unittest.main()
