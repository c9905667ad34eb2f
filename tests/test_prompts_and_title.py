import asyncio
import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from swe_worker.content import ImageBlock, ReasoningBlock, TextBlock, ToolResultBlock, ToolUseBlock
from swe_worker.content import blocks_from_json, blocks_to_json, strip_thinking, text_of
from swe_worker.prompts import build_system_prompt, find_repository_knowledge, render_tool_result
from swe_worker.title import Transcript, generate_session_title

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class _FakeTitleProvider:
    def __init__(self, output: str = " Fix login bug \n", error: Exception | None = None):
        self._output = output
        self._error = error
        self.calls: list[dict] = []

    async def complete_text(self, model, prompt, *, max_tokens, temperature, prefill=""):
        self.calls.append({"model": model, "prompt": prompt, "max_tokens": max_tokens, "prefill": prefill})
        if self._error is not None:
            raise self._error
        return self._output


class PromptTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"prompts-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def test_knowledge_file_priority(self) -> None:
        (self._tmp_dir / ".cursorrules").write_text("cursor rules")
        (self._tmp_dir / "CLAUDE.md").write_text("claude rules")
        self.assertEqual("claude rules", find_repository_knowledge(str(self._tmp_dir)))

    def test_no_knowledge_file(self) -> None:
        self.assertIsNone(find_repository_knowledge(str(self._tmp_dir)))

    def test_build_system_prompt_sections(self) -> None:
        prompt = build_system_prompt("base", "common", "knowledge")
        self.assertEqual("base\n\n## Common Prompt\ncommon\n## Repository Knowledge\nknowledge", prompt)
        self.assertEqual("base", build_system_prompt("base"))

    def test_tool_result_reminder(self) -> None:
        self.assertIn("report_progress", render_tool_result("out", force_report=True))
        self.assertEqual("<result>\nout\n</result>\n<command>\n\n</command>", render_tool_result("out", force_report=False))


class TitleTests(unittest.TestCase):
    def test_transcript_lines(self) -> None:
        transcript = Transcript("fix the login")
        transcript.add_assistant("on it")
        self.assertEqual("User: fix the login\nAssistant: on it\n", str(transcript))

    def test_title_is_trimmed(self) -> None:
        provider = _FakeTitleProvider()
        title = asyncio.run(generate_session_title(provider, "haiku", "User: hi\n"))

        self.assertEqual("Fix login bug", title)
        self.assertEqual("Title:", provider.calls[0]["prefill"])
        self.assertEqual(50, provider.calls[0]["max_tokens"])
        self.assertIn("User: hi", provider.calls[0]["prompt"])

    def test_title_failure_returns_empty(self) -> None:
        provider = _FakeTitleProvider(error=RuntimeError("down"))
        self.assertEqual("", asyncio.run(generate_session_title(provider, "haiku", "User: hi\n")))


class ContentTests(unittest.TestCase):
    def test_json_shape_is_stable(self) -> None:
        blocks = [
            TextBlock(text="hi"),
            ImageBlock(media_type="image/png", ref="s1/abc.png"),
            ToolUseBlock(id="t1", name="file_edit", input={"a": 1}),
            ToolResultBlock(tool_use_id="t1", content=[TextBlock(text="ok")], is_error=True),
            ReasoningBlock(text="plan", signature="sig"),
        ]
        raw = blocks_to_json(blocks)

        self.assertEqual({"type": "image", "media_type": "image/png", "ref": "s1/abc.png"}, raw[1])
        self.assertEqual(blocks, blocks_from_json(raw))

    def test_unknown_block_type(self) -> None:
        with self.assertRaises(ValueError):
            blocks_from_json([{"type": "video"}])

    def test_text_of_skips_reasoning_and_tool_use(self) -> None:
        blocks = [
            ReasoningBlock(text="secret"),
            TextBlock(text="a"),
            ToolUseBlock(id="t1", name="x", input={}),
            ToolResultBlock(tool_use_id="t1", content=[TextBlock(text="b")]),
        ]
        self.assertEqual("a\nb", text_of(blocks))

    def test_strip_thinking(self) -> None:
        self.assertEqual("Done.", strip_thinking("<thinking>\nplan\n</thinking>Done."))


if __name__ == "__main__":
    unittest.main()
