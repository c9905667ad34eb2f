from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Union, runtime_checkable

from pydantic import BaseModel

from swe_worker.content import ResultContent
from swe_worker.memory.blobs import BlobStore
from swe_worker.memory.metadata import MetadataStore
from swe_worker.notifications import Notifier

ToolOutput = Union[str, list[ResultContent]]


@dataclass(frozen=True)
class ToolContext:
    session_id: str
    tool_use_id: str
    working_directory: str
    notifier: Notifier
    blobs: BlobStore
    metadata: MetadataStore


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_model(self) -> type[BaseModel]: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    async def execute(self, tool_input: Any, context: ToolContext) -> ToolOutput: ...


def schema_of(model: type[BaseModel]) -> dict[str, Any]:
    """JSON schema of a pydantic input model, without the pydantic-only title."""
    schema = model.model_json_schema()
    schema.pop("title", None)
    return schema
