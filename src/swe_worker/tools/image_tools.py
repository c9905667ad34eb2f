from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from swe_worker.content import ImageBlock, ResultContent, TextBlock
from swe_worker.memory.blobs import image_key
from swe_worker.tool import ToolContext, schema_of

_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def media_type_of(path: str) -> str:
    return _MEDIA_TYPES.get(Path(path).suffix.lower(), "image/jpeg")


def _resolve(path: str, context: ToolContext) -> Path:
    resolved = Path(path)
    if not resolved.is_absolute():
        resolved = Path(context.working_directory) / resolved
    return resolved


class SendImageInput(BaseModel):
    image_path: str = Field(description="The local file system path to the image.")
    message: str = Field(description="Message to send along with the image.")


class SendImageTool:
    @property
    def name(self) -> str:
        return "send_image"

    @property
    def description(self) -> str:
        return "Send an image from a local file path to the user, together with a message."

    @property
    def input_model(self) -> type[BaseModel]:
        return SendImageInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(SendImageInput)

    async def execute(self, tool_input: SendImageInput, context: ToolContext) -> str:
        path = _resolve(tool_input.image_path, context)
        data = path.read_bytes()
        media_type = media_type_of(str(path))
        key = image_key(context.session_id, data, media_type.split("/")[-1])
        context.blobs.put(key, data)
        await context.notifier.send_webapp_event(
            context.session_id,
            {"type": "message", "role": "assistant", "message": tool_input.message, "imageKeys": [key]},
        )
        return "successfully sent an image with message."


class ReadImageInput(BaseModel):
    image_path: str = Field(description="The local file system path to the image.")


class ReadImageTool:
    @property
    def name(self) -> str:
        return "read_image"

    @property
    def description(self) -> str:
        return "Read an image file (png, jpeg, webp, gif) so that you can see its content."

    @property
    def input_model(self) -> type[BaseModel]:
        return ReadImageInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(ReadImageInput)

    async def execute(self, tool_input: ReadImageInput, context: ToolContext) -> list[ResultContent]:
        path = _resolve(tool_input.image_path, context)
        return [
            ImageBlock(media_type=media_type_of(str(path)), data=path.read_bytes()),
            TextBlock(text=f"the image is stored locally on {path}"),
        ]
