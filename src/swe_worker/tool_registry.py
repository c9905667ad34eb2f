from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger
from pydantic import ValidationError

from swe_worker.errors import ToolInputError, ToolNotFoundError
from swe_worker.mcp.mcp_manager import McpManager
from swe_worker.tool import Tool, ToolContext, ToolOutput
from swe_worker.tools.command_execution_tool import CommandExecutionTool
from swe_worker.tools.file_edit_tool import FileEditTool
from swe_worker.tools.github.clone_repository_tool import CloneRepositoryTool
from swe_worker.tools.image_tools import ReadImageTool, SendImageTool
from swe_worker.tools.report_progress_tool import ReportProgressTool
from swe_worker.tools.todo_tools import TodoInitTool, TodoUpdateTool

# Enabled for every agent profile.
REQUIRED_TOOL_NAMES = ("report_progress", "todo_init", "todo_update", "send_image")


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[dict], bool]
    build: Callable[[dict], list[Tool]]


def _always(_: dict) -> bool:
    return True


def _base_tools(ctx: dict) -> list[Tool]:
    github_token = ctx.get("github_token")
    return [
        CommandExecutionTool(github_token),
        FileEditTool(),
        ReportProgressTool(),
        SendImageTool(),
        ReadImageTool(),
        TodoInitTool(),
        TodoUpdateTool(),
        CloneRepositoryTool(github_token),
    ]


def _github_enabled(ctx: dict) -> bool:
    return bool(ctx.get("github_token"))


def _github_tools(ctx: dict) -> list[Tool]:
    from swe_worker.tools.github.ci_tool import CiTool
    from swe_worker.tools.github.create_pr_tool import CreatePullRequestTool
    from swe_worker.tools.github.pr_comment_tools import (
        AddIssueCommentTool,
        GetPullRequestCommentsTool,
        ReplyPullRequestCommentTool,
    )

    token = ctx["github_token"]
    return [
        CiTool(token),
        CreatePullRequestTool(token),
        GetPullRequestCommentsTool(token),
        ReplyPullRequestCommentTool(token),
        AddIssueCommentTool(token),
    ]


_GROUPS = [
    ToolGroup(enabled=_always, build=_base_tools),
    ToolGroup(enabled=_github_enabled, build=_github_tools),
]


def get_all(github_token: str | None = None) -> list[Tool]:
    ctx = {"github_token": github_token}

    tools: list[Tool] = []
    for group in _GROUPS:
        if group.enabled(ctx):
            tools.extend(group.build(ctx))
    return tools


def select_tools(tools: list[Tool], enabled_names: tuple[str, ...] | list[str]) -> list[Tool]:
    """Tools enabled by a profile, plus the ones every profile gets."""
    allowed = set(enabled_names) | set(REQUIRED_TOOL_NAMES)
    return [tool for tool in tools if tool.name in allowed]


class ToolRegistry:
    """Local tools plus the remote tools of one session's MCP servers."""

    def __init__(self, tools: list[Tool], mcp: McpManager | None = None):
        self._tools = {tool.name: tool for tool in tools}
        self._mcp = mcp

    @property
    def names(self) -> list[str]:
        remote = [tool.name for tool in self._mcp.tools] if self._mcp is not None else []
        return list(self._tools) + remote

    def specs(self) -> list[dict[str, Any]]:
        specs = [
            {"name": tool.name, "description": tool.description, "input_schema": tool.input_schema}
            for tool in self._tools.values()
        ]
        if self._mcp is not None:
            specs.extend(tool.spec() for tool in self._mcp.tools)
        return specs

    async def dispatch(self, name: str, tool_input: dict[str, Any], context: ToolContext) -> ToolOutput:
        """Run a tool: MCP servers are asked first, then the local tools.

        Raises ``ToolNotFoundError`` / ``ToolInputError``; handler errors propagate unchanged.
        """
        if self._mcp is not None:
            found, output = await self._mcp.try_call(name, tool_input)
            if found:
                return output if output is not None else ""

        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        try:
            parsed = tool.input_model.model_validate(tool_input)
        except ValidationError as ex:
            raise ToolInputError(name, str(ex)) from ex

        logger.info(f"Using tool: {name}")
        return await tool.execute(parsed, context)
