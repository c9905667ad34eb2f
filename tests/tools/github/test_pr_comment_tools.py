import asyncio
import json
import unittest

import httpx

from swe_worker.tools.github.pr_comment_tools import (
    AddIssueCommentInput,
    AddIssueCommentTool,
    GetPullRequestCommentsInput,
    GetPullRequestCommentsTool,
    ReplyPullRequestCommentInput,
    ReplyPullRequestCommentTool,
    format_comment_threads,
)
from tests.tools.base import ToolTestCase

_COMMENTS = [
    {
        "id": 2,
        "in_reply_to_id": 1,
        "user": {"login": "author"},
        "created_at": "2025-01-02T00:00:00Z",
        "body": "Done.",
    },
    {
        "id": 1,
        "path": "app/login.py",
        "line": 42,
        "diff_hunk": "@@ -40,3 +40,3 @@",
        "user": {"login": "reviewer"},
        "created_at": "2025-01-01T00:00:00Z",
        "body": "Please rename\nthis variable.",
    },
    {
        "id": 3,
        "path": "README.md",
        "original_line": 3,
        "diff_hunk": "@@ -1 +1 @@",
        "user": None,
        "created_at": "2025-01-03T00:00:00Z",
        "body": "Typo",
    },
]


class _GitHubStub:
    def __init__(self, responses: dict[tuple[str, str], httpx.Response]):
        self._responses = responses
        self.requests: list[httpx.Request] = []

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url="https://api.github.com", transport=httpx.MockTransport(self._handle))

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responses.get((request.method, request.url.path), httpx.Response(404, text="not found"))


class FormatCommentThreadsTests(unittest.TestCase):
    def test_threads_are_ordered_with_replies_nested(self) -> None:
        text = format_comment_threads(_COMMENTS)
        first, second = text.split("\n---\n")

        self.assertTrue(first.startswith("File: app/login.py:42\n@@ -40,3 +40,3 @@\n"))
        self.assertIn("@reviewer 2025-01-01T00:00:00Z (commentId: 1)", first)
        self.assertIn("   Please rename\n   this variable.", first)
        self.assertIn("  @author 2025-01-02T00:00:00Z (commentId: 2)", first)
        self.assertTrue(second.startswith("File: README.md:3"))
        self.assertIn("@Unknown", second)


class PullRequestCommentToolTests(ToolTestCase):
    def test_get_comments(self) -> None:
        stub = _GitHubStub({("GET", "/repos/octo/app/pulls/7/comments"): httpx.Response(200, json=_COMMENTS)})
        tool = GetPullRequestCommentsTool("token", client=stub.client())

        result = asyncio.run(tool.execute(
            GetPullRequestCommentsInput(owner="octo", repo="app", pull_request_number=7), self._context
        ))

        self.assertIn("(commentId: 3)", result)
        self.assertEqual("100", stub.requests[0].url.params["per_page"])

    def test_get_comments_when_none(self) -> None:
        stub = _GitHubStub({("GET", "/repos/octo/app/pulls/7/comments"): httpx.Response(200, json=[])})
        tool = GetPullRequestCommentsTool("token", client=stub.client())

        result = asyncio.run(tool.execute(
            GetPullRequestCommentsInput(owner="octo", repo="app", pull_request_number=7), self._context
        ))

        self.assertEqual("No review comments found for this PR.", result)

    def test_reply_is_tagged_with_session(self) -> None:
        path = "/repos/octo/app/pulls/7/comments/1/replies"
        stub = _GitHubStub({("POST", path): httpx.Response(201, json={"id": 9})})
        tool = ReplyPullRequestCommentTool("token", client=stub.client())

        result = asyncio.run(tool.execute(
            ReplyPullRequestCommentInput(owner="octo", repo="app", pull_request_number=7, comment_id=1, body="Fixed"),
            self._context,
        ))

        self.assertEqual("Successfully replied to comment 1", result)
        body = json.loads(stub.requests[0].content)["body"]
        self.assertTrue(body.startswith("Fixed\n\n"))
        self.assertIn("<!-- WORKER_ID:s1 -->", body)

    def test_issue_comment(self) -> None:
        stub = _GitHubStub({("POST", "/repos/octo/app/issues/12/comments"): httpx.Response(201, json={"id": 5})})
        tool = AddIssueCommentTool("token", client=stub.client())

        result = asyncio.run(tool.execute(
            AddIssueCommentInput(owner="octo", repo="app", issue_number=12, body="On it"), self._context
        ))

        self.assertEqual("Successfully added comment to issue #12", result)

    def test_api_error_raises(self) -> None:
        tool = AddIssueCommentTool("token", client=_GitHubStub({}).client())

        with self.assertRaises(RuntimeError) as ctx:
            asyncio.run(tool.execute(
                AddIssueCommentInput(owner="octo", repo="app", issue_number=12, body="x"), self._context
            ))
        self.assertIn("HTTP 404", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
