from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field
from typing import Any, Union, assert_never


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ImageBlock:
    """An image either held in memory (``data``) or parked in the blob store (``ref``)."""

    media_type: str
    data: bytes | None = None
    ref: str | None = None

    @property
    def format(self) -> str:
        return self.media_type.split("/")[-1]


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any]


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: list[ResultContent] = field(default_factory=list)
    is_error: bool = False


@dataclass(frozen=True)
class ReasoningBlock:
    text: str
    signature: str | None = None


ResultContent = Union[TextBlock, ImageBlock]
ContentBlock = Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock, ReasoningBlock]

_THINKING_TAG = re.compile(r"<thinking>[\s\S]*?</thinking>")


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        out: dict[str, Any] = {"type": "image", "media_type": block.media_type}
        if block.ref is not None:
            out["ref"] = block.ref
        if block.data is not None:
            out["data"] = base64.b64encode(block.data).decode("ascii")
        return out
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        out = {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": [block_to_dict(c) for c in block.content],
        }
        if block.is_error:
            out["is_error"] = True
        return out
    if isinstance(block, ReasoningBlock):
        out = {"type": "reasoning", "text": block.text}
        if block.signature is not None:
            out["signature"] = block.signature
        return out
    assert_never(block)


def block_from_dict(raw: dict[str, Any]) -> ContentBlock:
    block_type = raw.get("type")
    if block_type == "text":
        return TextBlock(text=raw.get("text", ""))
    if block_type == "image":
        data = raw.get("data")
        return ImageBlock(
            media_type=raw.get("media_type", "image/png"),
            data=base64.b64decode(data) if data is not None else None,
            ref=raw.get("ref"),
        )
    if block_type == "tool_use":
        return ToolUseBlock(id=raw["id"], name=raw["name"], input=dict(raw.get("input") or {}))
    if block_type == "tool_result":
        content: list[ResultContent] = []
        for sub in raw.get("content") or []:
            parsed = block_from_dict(sub)
            if not isinstance(parsed, (TextBlock, ImageBlock)):
                raise ValueError(f"Unsupported tool result content: {sub.get('type')!r}")
            content.append(parsed)
        return ToolResultBlock(
            tool_use_id=raw["tool_use_id"],
            content=content,
            is_error=bool(raw.get("is_error", False)),
        )
    if block_type == "reasoning":
        return ReasoningBlock(text=raw.get("text", ""), signature=raw.get("signature"))
    raise ValueError(f"Unknown content block type: {block_type!r}")


def blocks_to_json(blocks: list[ContentBlock]) -> list[dict[str, Any]]:
    return [block_to_dict(b) for b in blocks]


def blocks_from_json(raw: list[dict[str, Any]]) -> list[ContentBlock]:
    return [block_from_dict(b) for b in raw]


def text_of(blocks: list[ContentBlock]) -> str:
    """Concatenated human-readable text of the blocks (reasoning excluded)."""
    parts: list[str] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            parts.append(block.text)
        elif isinstance(block, ToolResultBlock):
            parts.append(text_of(list(block.content)))
        elif isinstance(block, (ImageBlock, ToolUseBlock, ReasoningBlock)):
            continue
        else:
            assert_never(block)
    return "\n".join(p for p in parts if p)


def strip_thinking(text: str) -> str:
    return _THINKING_TAG.sub("", text)
