from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from swe_worker.tool import ToolContext, schema_of
from swe_worker.tools.github.github_client import append_session_marker, check_response, create_github_client


class GetPullRequestCommentsInput(BaseModel):
    owner: str = Field(description="GitHub repository owner.")
    repo: str = Field(description="GitHub repository name.")
    pull_request_number: int = Field(description="The number of the pull request on GitHub.")


class ReplyPullRequestCommentInput(BaseModel):
    owner: str = Field(description="GitHub repository owner.")
    repo: str = Field(description="GitHub repository name.")
    pull_request_number: int = Field(description="The number of the pull request on GitHub.")
    comment_id: int = Field(description="ID of the review comment to reply to.")
    body: str = Field(description="The text of the reply.")


class AddIssueCommentInput(BaseModel):
    owner: str = Field(description="GitHub repository owner.")
    repo: str = Field(description="GitHub repository name.")
    issue_number: int = Field(description="The number of the issue (or pull request) on GitHub.")
    body: str = Field(description="The text of the comment.")


def format_comment_threads(comments: list[dict[str, Any]]) -> str:
    """Review comments as threads: each root comment with its code context, then its replies in order."""
    by_id = {comment["id"]: {**comment, "replies": []} for comment in comments}
    roots = []
    for comment in by_id.values():
        parent = by_id.get(comment.get("in_reply_to_id"))
        if parent is None:
            roots.append(comment)
        else:
            parent["replies"].append(comment)

    def render(comment: dict[str, Any], depth: int) -> list[str]:
        indent = "  " * depth
        lines: list[str] = []
        if depth == 0:
            line = comment.get("line") or comment.get("original_line")
            if line:
                lines.append(f"File: {comment.get('path')}:{line}")
            lines.append(comment.get("diff_hunk") or "")
            lines.append("")
        login = (comment.get("user") or {}).get("login") or "Unknown"
        lines.append(f"{indent}@{login} {comment.get('created_at')} (commentId: {comment['id']})")
        lines.extend(f"{indent}   {text}" for text in (comment.get("body") or "").split("\n"))
        lines.append("")
        for reply in sorted(comment["replies"], key=lambda c: c.get("created_at") or ""):
            lines.extend(render(reply, depth + 1))
        return lines

    roots.sort(key=lambda c: c.get("created_at") or "")
    return "\n---\n".join("\n".join(render(root, 0)) for root in roots)


class _GitHubTool:
    def __init__(self, token: str, client: httpx.AsyncClient | None = None):
        self._token = token
        self._client = client

    def _github(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_github_client(self._token)
        return self._client


class GetPullRequestCommentsTool(_GitHubTool):
    @property
    def name(self) -> str:
        return "get_pr_comments"

    @property
    def description(self) -> str:
        return "Get the review comments of a GitHub pull request, grouped into threads."

    @property
    def input_model(self) -> type[BaseModel]:
        return GetPullRequestCommentsInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(GetPullRequestCommentsInput)

    async def execute(self, tool_input: GetPullRequestCommentsInput, context: ToolContext) -> str:
        repo = f"{tool_input.owner}/{tool_input.repo}"
        resp = await self._github().get(
            f"/repos/{repo}/pulls/{tool_input.pull_request_number}/comments",
            params={"per_page": 100},
        )
        comments = check_response(resp).json()
        logger.info(f"Fetched {len(comments)} review comment(s) of {repo}#{tool_input.pull_request_number}")
        if not comments:
            return "No review comments found for this PR."
        return format_comment_threads(comments)


class ReplyPullRequestCommentTool(_GitHubTool):
    @property
    def name(self) -> str:
        return "reply_pr_comment"

    @property
    def description(self) -> str:
        return "Reply to a specific review comment in a GitHub pull request."

    @property
    def input_model(self) -> type[BaseModel]:
        return ReplyPullRequestCommentInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(ReplyPullRequestCommentInput)

    async def execute(self, tool_input: ReplyPullRequestCommentInput, context: ToolContext) -> str:
        repo = f"{tool_input.owner}/{tool_input.repo}"
        resp = await self._github().post(
            f"/repos/{repo}/pulls/{tool_input.pull_request_number}/comments/{tool_input.comment_id}/replies",
            json={"body": append_session_marker(tool_input.body, context.session_id)},
        )
        check_response(resp)
        return f"Successfully replied to comment {tool_input.comment_id}"


class AddIssueCommentTool(_GitHubTool):
    @property
    def name(self) -> str:
        return "add_issue_comment"

    @property
    def description(self) -> str:
        return "Add a comment to a specific GitHub issue or pull request conversation."

    @property
    def input_model(self) -> type[BaseModel]:
        return AddIssueCommentInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(AddIssueCommentInput)

    async def execute(self, tool_input: AddIssueCommentInput, context: ToolContext) -> str:
        repo = f"{tool_input.owner}/{tool_input.repo}"
        resp = await self._github().post(
            f"/repos/{repo}/issues/{tool_input.issue_number}/comments",
            json={"body": append_session_marker(tool_input.body, context.session_id)},
        )
        check_response(resp)
        return f"Successfully added comment to issue #{tool_input.issue_number}"
