from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from swe_worker.tool import ToolContext, schema_of
from swe_worker.tools.command_execution_tool import execute_command
from swe_worker.tools.github.github_client import (
    append_session_marker,
    create_github_client,
    git_auth_env,
    repo_from_remote,
)

PR_METADATA_KEY = "pull-request"

_CLOSE_KEYWORDS = ("close", "closes", "closed", "fix", "fixes", "fixed", "resolve", "resolves", "resolved")


class CreatePullRequestInput(BaseModel):
    title: str = Field(description="Title of the pull request.")
    description: str = Field(description="Description of the pull request, formatted with markdown.")
    git_directory_path: str = Field(description="The absolute path to the local git repository.")
    issue_id: int | None = Field(default=None, description="Optional issue number to link with the PR.")
    base_branch: str | None = Field(
        default=None,
        description="The base branch for the PR. The repository's default branch is used when omitted.",
    )
    force: bool = Field(default=False, description="Create the PR even if one was already created in this session.")


def add_issue_reference(description: str, issue_id: int) -> str:
    lowered = description.lower()
    if any(f"{keyword} #{issue_id}" in lowered for keyword in _CLOSE_KEYWORDS):
        return description
    return f"{description}\n\nCloses #{issue_id}"


class CreatePullRequestTool:
    def __init__(self, token: str, client: httpx.AsyncClient | None = None):
        self._token = token
        self._client = client

    @property
    def name(self) -> str:
        return "create_pr"

    @property
    def description(self) -> str:
        return (
            "Create a pull request for the current branch. The branch is pushed to origin first, so "
            "commit your changes before calling this tool. Only one PR is created per session unless "
            "`force` is set. When the PR resolves an issue, pass its `issue_id`."
        )

    @property
    def input_model(self) -> type[BaseModel]:
        return CreatePullRequestInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(CreatePullRequestInput)

    async def _git(self, command: str, cwd: str) -> str:
        result = await execute_command(command, cwd, timeout=120.0, env=git_auth_env(self._token))
        if result.error is not None:
            raise RuntimeError(f"Command failed: {command}\n{result.error}\n{result.stderr}")
        return result.stdout.strip()

    async def execute(self, tool_input: CreatePullRequestInput, context: ToolContext) -> str:
        if not tool_input.force:
            existing = await context.metadata.get(context.session_id, PR_METADATA_KEY)
            if existing:
                raise RuntimeError(
                    f"A pull request has already been created in this session: {existing['url']}\n\n"
                    f"- If this is not intended, push commits to the existing branch \"{existing['branch_name']}\"\n"
                    "- If this is intended, call this tool again with force set"
                )

        cwd = tool_input.git_directory_path
        branch = await self._git("git rev-parse --abbrev-ref HEAD", cwd)
        repo = repo_from_remote(await self._git("git remote get-url origin", cwd))
        await self._git(f"git push -u origin {branch}", cwd)

        body = tool_input.description
        if tool_input.issue_id:
            body = add_issue_reference(body, tool_input.issue_id)
        body = append_session_marker(body, context.session_id)

        client = self._client or create_github_client(self._token)
        self._client = client
        if tool_input.base_branch:
            base = tool_input.base_branch
        else:
            resp = await client.get(f"/repos/{repo}")
            resp.raise_for_status()
            base = resp.json().get("default_branch", "main")

        resp = await client.post(
            f"/repos/{repo}/pulls",
            json={"title": tool_input.title, "head": branch, "base": base, "body": body},
        )
        if resp.status_code not in (200, 201):
            raise RuntimeError(f"GitHub API error: HTTP {resp.status_code} -- {resp.text}")

        url = resp.json()["html_url"]
        await context.metadata.put(context.session_id, PR_METADATA_KEY, {"url": url, "branch_name": branch})
        logger.info(f"Created pull request {url} from {branch} -> {base}")
        return (
            f"Pull request created successfully: {url}\n"
            "Suggestion: report the PR URL to the user, then watch its CI and fix the code until every check passes."
        )
