import base64
import json
from typing import Any

from loguru import logger
from mcp import ClientSession
from mcp.types import ImageContent, TextContent

from swe_worker.content import ImageBlock, ResultContent, TextBlock
from swe_worker.tool import ToolOutput


class McpToolProxy:
    """A tool discovered on an MCP server, invoked through the server's session."""

    def __init__(
        self,
        server_name: str,
        tool_name: str,
        tool_description: str | None,
        tool_input_schema: dict[str, Any],
        session: ClientSession,
    ):
        self._server_name = server_name
        self._tool_name = tool_name
        self._description = tool_description or ""
        self._input_schema = tool_input_schema
        self._session = session

    @property
    def name(self) -> str:
        return f"{self._server_name}__{self._tool_name}"

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._input_schema

    def spec(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}

    async def call(self, tool_input: dict[str, Any]) -> ToolOutput:
        logger.debug("MCP tool call: {name} | input: {input}", name=self.name, input=json.dumps(tool_input, default=str))
        result = await self._session.call_tool(self._tool_name, arguments=tool_input)
        logger.debug(
            "MCP raw response: {name} | is_error={err} | blocks={count} | types={types}",
            name=self.name,
            err=result.is_error,
            count=len(result.content),
            types=[type(b).__name__ for b in result.content],
        )
        if result.is_error:
            text_parts = [block.text for block in result.content if isinstance(block, TextContent)]
            output = "\n".join(text_parts) if text_parts else "(no output)"
            logger.warning("MCP tool error: {name} | result: {output}", name=self.name, output=output[:500])
            raise RuntimeError(output)
        return to_tool_output(result.content, raw=result)


def to_tool_output(content: list[Any], *, raw: Any) -> ToolOutput:
    """Text and image blocks become structured content; anything else is returned as JSON text."""
    blocks: list[ResultContent] = []
    for block in content:
        if isinstance(block, TextContent):
            blocks.append(TextBlock(text=block.text))
        elif isinstance(block, ImageContent):
            blocks.append(ImageBlock(media_type=block.mime_type, data=base64.b64decode(block.data)))
        else:
            return raw.model_dump_json()
    return blocks
