from __future__ import annotations

import base64
import json
from typing import Any

import openai
from loguru import logger

from swe_worker.content import (
    ContentBlock,
    ImageBlock,
    ReasoningBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from swe_worker.errors import ThrottlingError
from swe_worker.models import Message, ModelRequest, ModelResponse, Usage

# Map OpenAI finish reasons to the provider-neutral stop reasons.
_STOP_REASON_MAP = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "length": "max_tokens",
    "content_filter": "end_turn",
}


def _image_part(block: ImageBlock) -> dict:
    if block.data is None:
        return {"type": "text", "text": f"[image unavailable: {block.ref}]"}
    encoded = base64.b64encode(block.data).decode("ascii")
    return {"type": "image_url", "image_url": {"url": f"data:{block.media_type};base64,{encoded}"}}


def to_openai_messages(system_prompt: str, messages: list[Message]) -> list[dict]:
    """Convert provider-neutral messages to OpenAI chat format."""
    out: list[dict] = []

    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        if msg.role == "assistant":
            text_parts: list[str] = []
            tool_calls: list[dict] = []
            for block in msg.content:
                if isinstance(block, TextBlock):
                    text_parts.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    tool_calls.append({
                        "id": block.id,
                        "type": "function",
                        "function": {"name": block.name, "arguments": json.dumps(block.input)},
                    })
            oai_msg: dict = {"role": "assistant", "content": "\n".join(text_parts) if text_parts else None}
            if tool_calls:
                oai_msg["tool_calls"] = tool_calls
            out.append(oai_msg)
            continue

        # Content is a list of blocks, possibly with tool_result blocks
        user_parts: list[dict] = []
        for block in msg.content:
            if isinstance(block, TextBlock):
                user_parts.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                user_parts.append(_image_part(block))
            elif isinstance(block, ToolResultBlock):
                texts = [sub.text for sub in block.content if isinstance(sub, TextBlock)]
                out.append({
                    "role": "tool",
                    "tool_call_id": block.tool_use_id,
                    "content": "\n".join(texts),
                })
                # Tool messages cannot carry images, so they follow as user content.
                user_parts.extend(_image_part(sub) for sub in block.content if isinstance(sub, ImageBlock))
            elif isinstance(block, (ToolUseBlock, ReasoningBlock)):
                continue

        if user_parts:
            out.append({"role": "user", "content": user_parts})

    return out


def to_openai_tools(tools: list[dict]) -> list[dict]:
    """Convert Anthropic-style tool dicts to OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tools
    ]


def _from_openai_choice(message: Any) -> list[ContentBlock]:
    blocks: list[ContentBlock] = []
    if message.content:
        blocks.append(TextBlock(text=message.content))
    for call in message.tool_calls or []:
        raw_args = call.function.arguments or ""
        try:
            parsed_input = json.loads(raw_args) if raw_args else {}
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse tool call arguments: {raw_args[:200]}")
            parsed_input = {}
        blocks.append(ToolUseBlock(id=call.id, name=call.function.name, input=parsed_input))
    return blocks


class OpenAIProvider:
    def __init__(self, api_key: str):
        self._client = openai.AsyncOpenAI(api_key=api_key)

    async def converse(self, request: ModelRequest) -> ModelResponse:
        oai_messages = to_openai_messages(request.system, request.messages)
        kwargs: dict[str, Any] = dict(
            model=request.model,
            max_tokens=request.max_output_tokens,
            temperature=request.temperature,
            messages=oai_messages,
        )
        oai_tools = to_openai_tools(request.tools)
        if oai_tools:
            kwargs["tools"] = oai_tools

        logger.debug(
            f"API request: model={request.model}, max_tokens={request.max_output_tokens}, "
            f"messages={len(oai_messages)}, tools={len(oai_tools)}"
        )
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except (openai.RateLimitError, openai.APIConnectionError) as ex:
            raise ThrottlingError(f"{type(ex).__name__}: {ex}") from ex

        choice = response.choices[0]
        stop_reason = _STOP_REASON_MAP.get(choice.finish_reason or "stop", "end_turn")
        usage = Usage()
        if response.usage is not None:
            details = getattr(response.usage, "prompt_tokens_details", None)
            cached = getattr(details, "cached_tokens", 0) or 0
            usage = Usage(
                input_tokens=response.usage.prompt_tokens - cached,
                output_tokens=response.usage.completion_tokens,
                cache_read_input_tokens=cached,
            )
        logger.debug(f"API response: stop_reason={stop_reason}, output_tokens={usage.output_tokens}")
        return ModelResponse(content=_from_openai_choice(choice.message), stop_reason=stop_reason, usage=usage)

    async def complete_text(
        self,
        model: str,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        prefill: str = "",
    ) -> str:
        messages: list[dict] = [{"role": "user", "content": prompt}]
        if prefill:
            messages.append({"role": "assistant", "content": prefill})
        try:
            response = await self._client.chat.completions.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=messages,
            )
        except (openai.RateLimitError, openai.APIConnectionError) as ex:
            raise ThrottlingError(f"{type(ex).__name__}: {ex}") from ex
        return response.choices[0].message.content or ""
