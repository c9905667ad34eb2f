import time
from typing import Any, Literal

from pydantic import BaseModel, Field

from swe_worker.memory.metadata import MetadataStore
from swe_worker.tool import ToolContext, schema_of

TODO_METADATA_KEY = "todo-list"

TodoStatus = Literal["pending", "in_progress", "completed", "cancelled"]


class TodoItem(BaseModel):
    id: str
    description: str
    status: TodoStatus = "pending"
    created_at: int
    updated_at: int


class TodoList(BaseModel):
    items: list[TodoItem]
    last_updated: int


def _now_ms() -> int:
    return int(time.time() * 1000)


async def get_todo_list(metadata: MetadataStore, session_id: str) -> TodoList | None:
    raw = await metadata.get(session_id, TODO_METADATA_KEY)
    if not raw or not raw.get("items"):
        return None
    return TodoList.model_validate(raw)


async def save_todo_list(metadata: MetadataStore, session_id: str, todo_list: TodoList) -> None:
    await metadata.put(session_id, TODO_METADATA_KEY, todo_list.model_dump())


def format_todo_list(todo_list: TodoList | None) -> str:
    if todo_list is None or not todo_list.items:
        return ""
    lines = ["## Todo List"]
    lines.extend(f"- id:{item.id} ({item.status}) {item.description}" for item in todo_list.items)
    return "\n".join(lines) + "\n"


class TodoInitInput(BaseModel):
    items: list[str] = Field(
        min_length=1,
        description="Task descriptions to initialize the list with. All tasks start as pending.",
    )


class TodoInitTool:
    @property
    def name(self) -> str:
        return "todo_init"

    @property
    def description(self) -> str:
        return (
            "Create a fresh todo list or replace the current one.\n\n"
            "Use it for work that needs three or more steps, when the user lists several tasks, or "
            "when the user asks for task tracking. Skip it for single, simple tasks.\n\n"
            "Statuses: pending, in_progress (only ONE at a time), completed, cancelled. Mark tasks "
            "completed as soon as they are done."
        )

    @property
    def input_model(self) -> type[BaseModel]:
        return TodoInitInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(TodoInitInput)

    async def execute(self, tool_input: TodoInitInput, context: ToolContext) -> str:
        now = _now_ms()
        todo_list = TodoList(
            items=[
                TodoItem(id=f"task-{index + 1}", description=description, created_at=now, updated_at=now)
                for index, description in enumerate(tool_input.items)
            ],
            last_updated=now,
        )
        await save_todo_list(context.metadata, context.session_id, todo_list)
        return format_todo_list(todo_list)


class TodoItemUpdate(BaseModel):
    id: str = Field(description="The ID of the task to update.")
    status: TodoStatus = Field(description="The new status for the task.")
    description: str | None = Field(default=None, description="Optional new description for the task.")


class TodoUpdateInput(BaseModel):
    updates: list[TodoItemUpdate] = Field(min_length=1, description="Task updates to apply in one batch.")


class TodoUpdateTool:
    @property
    def name(self) -> str:
        return "todo_update"

    @property
    def description(self) -> str:
        return (
            "Update tasks in the todo list created by todo_init: change their status or description. "
            'Several tasks can be updated at once, e.g. {"updates": [{"id": "task-1", "status": '
            '"completed"}, {"id": "task-2", "status": "in_progress"}]}.'
        )

    @property
    def input_model(self) -> type[BaseModel]:
        return TodoUpdateInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(TodoUpdateInput)

    async def execute(self, tool_input: TodoUpdateInput, context: ToolContext) -> str:
        todo_list = await get_todo_list(context.metadata, context.session_id)
        if todo_list is None:
            return "Update failed: No todo list exists. Please create one first."

        now = _now_ms()
        items = {item.id: item for item in todo_list.items}
        for update in tool_input.updates:
            item = items.get(update.id)
            if item is None:
                return self._failure(f"Task id {update.id} was not found.", todo_list)
            items[update.id] = item.model_copy(
                update={
                    "status": update.status,
                    "description": update.description or item.description,
                    "updated_at": now,
                }
            )

        updated = TodoList(items=[items[item.id] for item in todo_list.items], last_updated=now)
        if sum(1 for item in updated.items if item.status == "in_progress") > 1:
            return self._failure("Only one task can be in progress at a time.", todo_list)

        await save_todo_list(context.metadata, context.session_id, updated)
        if len(tool_input.updates) == 1:
            first = tool_input.updates[0]
            message = f"Task {first.id} updated to status: {first.status}"
        else:
            message = f"{len(tool_input.updates)} tasks updated successfully"
        return f"{message}\n\n{format_todo_list(updated)}"

    @staticmethod
    def _failure(error: str, current: TodoList) -> str:
        return f"Update failed: {error}\n\nCurrent todo list:\n{format_todo_list(current)}".strip()
