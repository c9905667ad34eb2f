import asyncio
import os
from typing import Any

from loguru import logger
from mcp import ClientSession, StdioServerParameters, stdio_client
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamable_http_client
from mcp.types import Tool

from swe_worker.mcp.mcp_tool_proxy import McpToolProxy
from swe_worker.tool import ToolOutput

_SHUTDOWN_TIMEOUT = 5.0


def tool_proxies(server_name: str, tools: list[Tool], session: Any) -> list[McpToolProxy]:
    return [
        McpToolProxy(
            server_name=server_name,
            tool_name=tool.name,
            tool_description=tool.description,
            tool_input_schema=tool.input_schema,
            session=session,
        )
        for tool in tools
    ]


class _ServerConnection:
    """Holds a running server's session and shutdown control."""

    def __init__(self, name: str):
        self.name = name
        self.session: ClientSession | None = None
        self.tools: list[McpToolProxy] = []
        self._ready = asyncio.Event()
        self._shutdown = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._error: Exception | None = None

    async def wait_ready(self) -> None:
        await self._ready.wait()
        if self._error:
            raise self._error

    async def _serve(self, read_stream: Any, write_stream: Any) -> None:
        async with ClientSession(read_stream, write_stream) as session:
            await session.initialize()
            self.session = session
            tools_result = await session.list_tools()
            self.tools = tool_proxies(self.name, tools_result.tools, session)
            self._ready.set()
            await self._shutdown.wait()

    async def _run_stdio(self, config: dict[str, Any]) -> None:
        # Server env entries override the parent environment.
        merged_env = dict(os.environ)
        merged_env.update(config.get("env") or {})
        async with stdio_client(StdioServerParameters(
            command=config["command"],
            args=config.get("args", []),
            env=merged_env,
        )) as (read_stream, write_stream):
            await self._serve(read_stream, write_stream)

    async def _run_http(self, config: dict[str, Any]) -> None:
        async with streamable_http_client(config["url"]) as (read_stream, write_stream, _):
            await self._serve(read_stream, write_stream)

    async def _run_sse(self, config: dict[str, Any]) -> None:
        async with sse_client(config["url"]) as (read_stream, write_stream):
            await self._serve(read_stream, write_stream)

    async def start(self, config: dict[str, Any]) -> None:
        async def _run():
            try:
                if "command" in config:
                    await self._run_stdio(config)
                elif "url" in config:
                    try:
                        await self._run_http(config)
                    except Exception as ex:
                        if self._ready.is_set():
                            raise
                        logger.info(f"MCP server '{self.name}': streamable HTTP failed ({ex}), falling back to SSE")
                        await self._run_sse(config)
                else:
                    raise ValueError("MCP server config needs either 'command' or 'url'")
            except Exception as ex:
                self._error = ex
                self._ready.set()

        self._task = asyncio.create_task(_run())

    async def stop(self) -> None:
        if self._task is None or self._task.done():
            return
        # stdio_client's anyio task group may not react to asyncio cancellation alone.
        self._shutdown.set()
        self._task.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=_SHUTDOWN_TIMEOUT)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass


class McpManager:
    """Connections to the MCP servers of one session's agent profile."""

    def __init__(self, server_configs: dict[str, dict[str, Any]]):
        self._server_configs = server_configs
        self._connections: list[_ServerConnection] = []
        self._tools: dict[str, McpToolProxy] = {}
        self._connected = False

    @property
    def tools(self) -> list[McpToolProxy]:
        return list(self._tools.values())

    async def connect_all(self) -> list[McpToolProxy]:
        """Connect to every enabled server once; failing servers are logged and skipped."""
        if self._connected:
            return self.tools
        self._connected = True

        for server_name, config in self._server_configs.items():
            if config.get("enabled", True) is False:
                logger.debug(f"MCP server '{server_name}' is disabled")
                continue
            conn = _ServerConnection(server_name)
            self._connections.append(conn)

            try:
                await conn.start(config)
                await conn.wait_ready()
                for tool in conn.tools:
                    self._tools[tool.name] = tool
                logger.info(f"MCP server '{server_name}': {len(conn.tools)} tool(s) discovered")
            except Exception as ex:
                logger.error(f"MCP server '{server_name}' failed to start: {ex}. Ignoring the server...")

        return self.tools

    async def try_call(self, name: str, tool_input: dict[str, Any]) -> tuple[bool, ToolOutput | None]:
        tool = self._tools.get(name)
        if tool is None:
            return False, None
        logger.info(f"Using MCP tool: {name}")
        return True, await tool.call(tool_input)

    async def close(self) -> None:
        """Shut down all MCP servers."""
        for conn in self._connections:
            logger.debug(f"Shutting down MCP server '{conn.name}'...")
            try:
                await conn.stop()
                logger.debug(f"MCP server '{conn.name}' shut down")
            except Exception as ex:
                logger.warning(f"MCP server '{conn.name}' shutdown error: {ex}")
        self._connections.clear()
        self._tools.clear()
        self._connected = False
