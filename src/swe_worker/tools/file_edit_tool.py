from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from swe_worker.tool import ToolContext, schema_of


class FileEditInput(BaseModel):
    file_path: str = Field(description="Absolute path of the file to edit or create.")
    old_string: str = Field(
        description="Exact text to replace. Leave empty to create a new file with `new_string` as its content.",
    )
    new_string: str = Field(description="Text that replaces `old_string`.")


class FileEditTool:
    @property
    def name(self) -> str:
        return "file_edit"

    @property
    def description(self) -> str:
        return (
            "Create a file or replace text in an existing file.\n"
            "- With an empty `old_string`, a new file is created (it must not exist yet).\n"
            "- Otherwise `old_string` must match exactly one location in the file, including whitespace "
            "and indentation; include enough surrounding lines to make it unique."
        )

    @property
    def input_model(self) -> type[BaseModel]:
        return FileEditInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(FileEditInput)

    async def execute(self, tool_input: FileEditInput, context: ToolContext) -> str:
        path = Path(tool_input.file_path)
        if not path.is_absolute():
            path = Path(context.working_directory) / path

        if tool_input.old_string == "":
            if path.exists():
                return "The file already exists. Please provide a non-empty old_string to edit it."
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(tool_input.new_string, encoding="utf-8")
            return "successfully created the file."

        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}. Use an empty old_string to create it.")

        content = path.read_text(encoding="utf-8")
        matches = content.count(tool_input.old_string)
        if matches == 0:
            raise ValueError("old_string was not found in the file. Read the file again and retry with the exact text.")
        if matches > 1:
            raise ValueError(f"old_string matched {matches} locations. Include more context to make it unique.")

        path.write_text(content.replace(tool_input.old_string, tool_input.new_string, 1), encoding="utf-8")
        return "successfully edited the file."
