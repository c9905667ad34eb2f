import asyncio
import json
import os
import signal
import subprocess
from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, model_validator

from swe_worker.tool import ToolContext, schema_of
from swe_worker.tools.github.github_client import git_auth_env
from swe_worker.tools.text_utilities import truncate

_LONG_RUNNING_GRACE_SECONDS = 10.0
_KILL_GRACE_SECONDS = 5.0
_MAX_STDOUT_CHARS = 40_000

# Drain tasks of processes left running in the background.
_background: set[asyncio.Future] = set()


class CommandExecutionInput(BaseModel):
    command: str = Field(description="The command to execute.")
    cwd: str | None = Field(default=None, description="The working directory to execute the command in.")
    long_running_process: bool = Field(
        default=False,
        description=(
            "If true, do not wait for the process to exit; leave it running and return control "
            "after 10 seconds."
        ),
    )
    timeout_ms: int | None = Field(
        default=None,
        description="Timeout in milliseconds for the command. Default is 60000ms (60 seconds).",
    )

    @model_validator(mode="after")
    def _not_both(self) -> "CommandExecutionInput":
        if self.timeout_ms is not None and self.long_running_process:
            raise ValueError(
                "Cannot use both 'timeout_ms' and 'long_running_process' together. Use 'timeout_ms' for "
                "one-time tasks that need longer, and 'long_running_process' for daemon processes."
            )
        return self


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    exit_code: int | None = None
    is_long_running: bool = False

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v not in (None, False)}, indent=1)


async def _drain(stream: asyncio.StreamReader | None, buffer: bytearray) -> None:
    if stream is None:
        return
    while chunk := await stream.read(4096):
        buffer.extend(chunk)


def _result(stdout: bytearray, stderr: bytearray, **kwargs: Any) -> CommandResult:
    return CommandResult(
        stdout=truncate(stdout.decode(errors="replace"), _MAX_STDOUT_CHARS),
        stderr=truncate(stderr.decode(errors="replace")),
        **kwargs,
    )


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    # The shell runs in its own session, so its pid is also the group id.
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def execute_command(
    command: str,
    cwd: str,
    *,
    timeout: float = 60.0,
    long_running: bool = False,
    env: dict[str, str] | None = None,
) -> CommandResult:
    logger.info(f"Executing command: {command} in {cwd}")
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdin=subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env={**os.environ, **(env or {})},
            start_new_session=True,
        )
    except OSError as ex:
        return CommandResult(error=f"Failed to interact with the process: {ex}")

    stdout = bytearray()
    stderr = bytearray()
    drains = asyncio.gather(_drain(proc.stdout, stdout), _drain(proc.stderr, stderr))
    wait_seconds = _LONG_RUNNING_GRACE_SECONDS if long_running else timeout

    try:
        await asyncio.wait_for(asyncio.shield(drains), timeout=wait_seconds)
        code = await proc.wait()
    except asyncio.TimeoutError:
        if long_running:
            logger.info(f"Returning control after {wait_seconds:.0f}s for long-running process: {command}")
            _background.add(drains)
            drains.add_done_callback(_background.discard)
            return _result(stdout, stderr, is_long_running=True)
        _kill_process_group(proc)
        try:
            await asyncio.wait_for(drains, timeout=_KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"Output of timed out command still open after kill: {command}")
        await proc.wait()
        return _result(stdout, stderr, error=f"Command execution timed out after {timeout:.0f} seconds")

    if code != 0:
        return _result(stdout, stderr, error=f"Command failed with exit code {code}", exit_code=code)
    return _result(stdout, stderr)


class CommandExecutionTool:
    def __init__(self, github_token: str | None = None):
        self._github_token = github_token

    @property
    def name(self) -> str:
        return "command_execution"

    @property
    def description(self) -> str:
        return (
            "Execute any shell command. Set `cwd` to run it in a specific directory.\n\n"
            "For a daemon or long-running process like `npm run dev`, set `long_running_process: true`; "
            "the process keeps running in the background and control returns after 10 seconds.\n\n"
            "For one-time tasks expected to take longer than 60 seconds, raise `timeout_ms`.\n\n"
            "Quote special characters (backticks, dollar signs) so the shell does not interpret them. "
            "`gh` is authorized when a GitHub token is configured."
        )

    @property
    def input_model(self) -> type[BaseModel]:
        return CommandExecutionInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(CommandExecutionInput)

    async def execute(self, tool_input: CommandExecutionInput, context: ToolContext) -> str:
        env = git_auth_env(self._github_token)
        result = await execute_command(
            tool_input.command,
            tool_input.cwd or context.working_directory,
            timeout=(tool_input.timeout_ms or 60_000) / 1000,
            long_running=tool_input.long_running_process,
            env=env,
        )
        return result.to_json()
