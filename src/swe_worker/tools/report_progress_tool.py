from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from swe_worker.tool import ToolContext, schema_of


class ReportProgressInput(BaseModel):
    progress: str = Field(description="A brief summary of your current progress or status update.")


class ReportProgressTool:
    @property
    def name(self) -> str:
        return "report_progress"

    @property
    def description(self) -> str:
        return (
            "Report your current progress or status to the user. Use it when a long time has passed "
            "since your last message, or before continuing with a complex task. It performs no action "
            "besides keeping the user informed."
        )

    @property
    def input_model(self) -> type[BaseModel]:
        return ReportProgressInput

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_of(ReportProgressInput)

    async def execute(self, tool_input: ReportProgressInput, context: ToolContext) -> str:
        logger.info(f"Progress report: {tool_input.progress}")
        await context.notifier.send_system_message(context.session_id, tool_input.progress)
        return "Progress report received. Continue with your work."
