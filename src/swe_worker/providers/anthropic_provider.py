from __future__ import annotations

import base64
from typing import Any, assert_never

import anthropic
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

_CACHE_CONTROL = {"type": "ephemeral"}
_OVERLOADED_STATUS = 529


def _image_to_anthropic(block: ImageBlock) -> dict:
    if block.data is None:
        return {"type": "text", "text": f"[image unavailable: {block.ref}]"}
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": block.media_type,
            "data": base64.b64encode(block.data).decode("ascii"),
        },
    }


def _block_to_anthropic(block: ContentBlock, *, reasoning: bool) -> dict | None:
    if isinstance(block, TextBlock):
        if not block.text:
            return None
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        return _image_to_anthropic(block)
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        content = []
        for sub in block.content:
            if isinstance(sub, TextBlock):
                content.append({"type": "text", "text": sub.text})
            else:
                content.append(_image_to_anthropic(sub))
        out: dict[str, Any] = {"type": "tool_result", "tool_use_id": block.tool_use_id, "content": content}
        if block.is_error:
            out["is_error"] = True
        return out
    if isinstance(block, ReasoningBlock):
        # Reasoning traces are only replayable with their signature and when
        # reasoning is enabled for this call.
        if not reasoning or block.signature is None:
            return None
        return {"type": "thinking", "thinking": block.text, "signature": block.signature}
    assert_never(block)


def to_anthropic_messages(
    messages: list[Message],
    cache_points: tuple[int, ...] = (),
    *,
    reasoning: bool = False,
) -> list[dict]:
    out: list[dict] = []
    for index, message in enumerate(messages):
        content = [
            converted
            for converted in (_block_to_anthropic(b, reasoning=reasoning) for b in message.content)
            if converted is not None
        ]
        if index in cache_points and content:
            content[-1] = {**content[-1], "cache_control": _CACHE_CONTROL}
        out.append({"role": message.role, "content": content})
    return out


def _from_anthropic_content(content: list[Any]) -> list[ContentBlock]:
    blocks: list[ContentBlock] = []
    for block in content:
        if block.type == "text":
            blocks.append(TextBlock(text=block.text))
        elif block.type == "tool_use":
            blocks.append(ToolUseBlock(id=block.id, name=block.name, input=dict(block.input or {})))
        elif block.type == "thinking":
            blocks.append(ReasoningBlock(text=block.thinking, signature=getattr(block, "signature", None)))
        else:
            logger.debug(f"Ignoring unsupported response block: {block.type}")
    return blocks


def _usage(raw: Any) -> Usage:
    if raw is None:
        return Usage()
    return Usage(
        input_tokens=getattr(raw, "input_tokens", 0) or 0,
        output_tokens=getattr(raw, "output_tokens", 0) or 0,
        cache_read_input_tokens=getattr(raw, "cache_read_input_tokens", 0) or 0,
        cache_write_input_tokens=getattr(raw, "cache_creation_input_tokens", 0) or 0,
    )


def _is_transient(ex: Exception) -> bool:
    if isinstance(ex, (anthropic.RateLimitError, anthropic.APIConnectionError)):
        return True
    return isinstance(ex, anthropic.APIStatusError) and ex.status_code == _OVERLOADED_STATUS


class AnthropicProvider:
    def __init__(self, api_key: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    def build_kwargs(self, request: ModelRequest) -> dict[str, Any]:
        reasoning = request.thinking_budget is not None
        caching = bool(request.cache_points)

        system: Any = request.system
        if caching and request.system:
            system = [{"type": "text", "text": request.system, "cache_control": _CACHE_CONTROL}]

        tools = [dict(t) for t in request.tools]
        if caching and tools:
            tools[-1]["cache_control"] = _CACHE_CONTROL

        kwargs: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_output_tokens,
            "system": system,
            "messages": to_anthropic_messages(request.messages, request.cache_points, reasoning=reasoning),
        }
        if tools:
            kwargs["tools"] = tools
        if reasoning:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": request.thinking_budget}
        else:
            kwargs["temperature"] = request.temperature
        return kwargs

    async def converse(self, request: ModelRequest) -> ModelResponse:
        kwargs = self.build_kwargs(request)
        logger.debug(
            f"API request: model={request.model}, max_tokens={request.max_output_tokens}, "
            f"messages={len(request.messages)}, tools={len(request.tools)}, "
            f"thinking_budget={request.thinking_budget}"
        )
        try:
            async with self._client.messages.stream(**kwargs) as stream:
                response = await stream.get_final_message()
        except Exception as ex:
            if _is_transient(ex):
                raise ThrottlingError(f"{type(ex).__name__}: {ex}") from ex
            raise

        usage = _usage(response.usage)
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}, "
            f"cache_read={usage.cache_read_input_tokens}, cache_write={usage.cache_write_input_tokens}"
        )
        return ModelResponse(
            content=_from_anthropic_content(response.content),
            stop_reason=response.stop_reason or "end_turn",
            usage=usage,
        )

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
        logger.debug(f"Auxiliary API request: model={model}, prompt_chars={len(prompt):,}")
        try:
            response = await self._client.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=messages,
            )
        except Exception as ex:
            if _is_transient(ex):
                raise ThrottlingError(f"{type(ex).__name__}: {ex}") from ex
            raise
        texts = [block.text for block in response.content if getattr(block, "type", "text") == "text"]
        return "".join(texts)
