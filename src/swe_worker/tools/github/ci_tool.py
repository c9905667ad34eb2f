import asyncio
import re
from typing import Any, Literal

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from swe_worker.tool import ToolContext, schema_of
from swe_worker.tools.github.github_client import check_response, create_github_client
from swe_worker.tools.text_utilities import truncate

CiState = Literal["in_progress", "success", "failure"]

_FAILED_CONCLUSIONS = ("failure", "timed_out", "startup_failure")
_LOG_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}T[\d:.]+Z ", re.MULTILINE)
_MAX_LOG_CHARS = 20_000


class CiInput(BaseModel):
    owner: str = Field(description="GitHub repository owner.")
    repo: str = Field(description="GitHub repository name.")
    pull_request: str = Field(description="The number of the pull request on GitHub, or the branch name.")


def summarize_check_runs(check_runs: list[dict[str, Any]]) -> tuple[CiState, list[dict[str, Any]]]:
    """Overall state of a commit's check runs, plus the failed runs."""
    if not check_runs:
        raise RuntimeError("No checks found for this PR")
    # Logs of a run are only available once every run has completed.
    if any(run.get("status") != "completed" for run in check_runs):
        return "in_progress", []
    failed = [run for run in check_runs if run.get("conclusion") in _FAILED_CONCLUSIONS]
    if failed:
        return "failure", failed
    return "success", []


def clean_log(text: str) -> str:
    return _LOG_TIMESTAMP.sub("", text)


class CiTool:
    def __init__(
        self,
        token: str,
        client: httpx.AsyncClient | None = None,
        *,
        poll_seconds: float = 5.0,
        max_wait_seconds: float = 3600.0,
    ):
        self._token = token
        self._client = client
        self._poll_seconds = poll_seconds
        self._max_wait_seconds = max_wait_seconds

    @property
    def name(self) -> str:
        return "ci"

    @property
    def description(self) -> str:
        return (
            "Wait for the GitHub Actions workflows of a pull request to complete and get their status, "
            "with the logs of failed jobs.\n"
            "IMPORTANT: Always use this tool after pushing a commit to a pull request unless the user asked otherwise."
        )

    @property
    def input_model(self) -> type[BaseModel]:
        return CiInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(CiInput)

    def _github(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_github_client(self._token)
        return self._client

    async def _head_ref(self, repo: str, pull_request: str) -> str:
        if not pull_request.isdigit():
            return pull_request
        resp = check_response(await self._github().get(f"/repos/{repo}/pulls/{pull_request}"))
        return resp.json()["head"]["sha"]

    async def _check_runs(self, repo: str, ref: str) -> list[dict[str, Any]]:
        resp = await self._github().get(f"/repos/{repo}/commits/{ref}/check-runs", params={"per_page": 100})
        return check_response(resp).json().get("check_runs", [])

    async def _job_log(self, repo: str, run: dict[str, Any]) -> str:
        resp = await self._github().get(f"/repos/{repo}/actions/jobs/{run['id']}/logs", follow_redirects=True)
        if resp.status_code >= 400:
            return f"(logs unavailable: HTTP {resp.status_code})"
        return truncate(clean_log(resp.text), _MAX_LOG_CHARS)

    async def execute(self, tool_input: CiInput, context: ToolContext) -> str:
        repo = f"{tool_input.owner}/{tool_input.repo}"
        # Right after a push the workflows may not be queued yet, which would read as an empty success.
        await asyncio.sleep(self._poll_seconds)
        ref = await self._head_ref(repo, tool_input.pull_request)

        waited = 0.0
        while True:
            state, failed = summarize_check_runs(await self._check_runs(repo, ref))
            if state == "success":
                return "CI succeeded without errors!"
            if state == "failure":
                break
            if waited >= self._max_wait_seconds:
                return f"CI is still running after {waited:.0f} seconds. Check again later."
            await asyncio.sleep(self._poll_seconds)
            waited += self._poll_seconds

        run = failed[0]
        logger.info(f"CI failed for {repo}@{ref}: {[r.get('name') for r in failed]}")
        detail = "\n".join(
            f"- {r.get('name')}: {r.get('conclusion')} ({r.get('html_url')})" for r in failed
        )
        log = await self._job_log(repo, run)
        return (
            f"CI failed with errors! <detail>\n{detail}\n</detail>\n\n"
            f"Here's the log of the failed job {run.get('name')}:<log>\n{log}\n</log>"
        )
