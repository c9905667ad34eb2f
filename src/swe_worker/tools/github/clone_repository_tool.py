import shlex
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from swe_worker.tool import ToolContext, schema_of
from swe_worker.tools.command_execution_tool import execute_command
from swe_worker.tools.github.github_client import git_auth_env, repo_from_remote

REPO_METADATA_KEY = "repo"


class CloneRepositoryInput(BaseModel):
    repository: str = Field(description="GitHub repository as `owner/repo` or a clone URL.")
    directory: str | None = Field(
        default=None,
        description="Directory to clone into, relative to the workspace. Defaults to the repository name.",
    )
    branch: str | None = Field(default=None, description="Branch to check out after cloning.")


def _clone_url(repository: str) -> str:
    if "://" in repository or repository.startswith("git@"):
        return repository
    return f"https://github.com/{repository}.git"


class CloneRepositoryTool:
    def __init__(self, github_token: str | None = None):
        self._github_token = github_token

    @property
    def name(self) -> str:
        return "clone_repository"

    @property
    def description(self) -> str:
        return (
            "Clone a GitHub repository into the workspace and make it the session's repository. "
            "Knowledge files in the repository (AGENTS.md, CLAUDE.md, ...) are loaded afterwards."
        )

    @property
    def input_model(self) -> type[BaseModel]:
        return CloneRepositoryInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(CloneRepositoryInput)

    async def execute(self, tool_input: CloneRepositoryInput, context: ToolContext) -> str:
        url = _clone_url(tool_input.repository)
        try:
            repo_name = repo_from_remote(url)
        except ValueError:
            repo_name = Path(url.rstrip("/")).stem

        workspace = Path(context.working_directory)
        workspace.mkdir(parents=True, exist_ok=True)
        target = workspace / (tool_input.directory or repo_name.split("/")[-1])
        if target.exists() and any(target.iterdir()):
            raise FileExistsError(f"Directory {target} already exists and is not empty.")

        args = ["git", "clone"]
        if tool_input.branch:
            args += ["--branch", tool_input.branch]
        result = await execute_command(
            shlex.join([*args, url, str(target)]),
            str(workspace),
            timeout=600.0,
            env=git_auth_env(self._github_token),
        )
        if result.error is not None:
            raise RuntimeError(f"git clone failed: {result.error}\n{result.stderr}")

        await context.metadata.put(
            context.session_id,
            REPO_METADATA_KEY,
            {"repo_name": repo_name, "repo_directory": str(target)},
        )
        logger.info(f"Cloned {repo_name} into {target}")
        return f"Cloned {repo_name} into {target}. Work inside this directory from now on."
