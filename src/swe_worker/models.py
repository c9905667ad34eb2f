from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from swe_worker.content import ContentBlock

Role = Literal["user", "assistant"]
ItemKind = Literal["userMessage", "toolUse", "toolResult", "assistant"]
AgentStatus = Literal["pending", "working", "completed"]
InstanceStatus = Literal["starting", "running", "stopped", "terminated"]


@dataclass
class ConversationItem:
    session_id: str
    key: str
    role: Role
    kind: ItemKind
    content: list[ContentBlock]
    token_count: int = 0
    model_override: str | None = None
    thinking_budget: int | None = None


@dataclass(frozen=True)
class Message:
    role: Role
    content: list[ContentBlock]


@dataclass
class Session:
    id: str
    created_at: str
    updated_at: str
    agent_status: AgentStatus = "pending"
    instance_status: InstanceStatus = "starting"
    title: str | None = None
    default_model: str | None = None
    session_cost: float = 0.0


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_write_input_tokens: int = 0

    @property
    def context_tokens(self) -> int:
        return self.input_tokens + self.cache_read_input_tokens + self.cache_write_input_tokens


@dataclass(frozen=True)
class ModelRequest:
    model: str
    system: str
    messages: list[Message]
    tools: list[dict] = field(default_factory=list)
    max_output_tokens: int = 8192
    temperature: float = 1.0
    thinking_budget: int | None = None
    cache_points: tuple[int, ...] = ()


@dataclass(frozen=True)
class ModelResponse:
    content: list[ContentBlock]
    stop_reason: str
    usage: Usage = field(default_factory=Usage)
