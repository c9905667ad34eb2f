from pathlib import Path

from loguru import logger

KNOWLEDGE_FILES = (
    "AGENTS.md",
    "CLAUDE.md",
    ".clinerules",
    ".cursorrules",
    ".github/copilot-instructions.md",
)

_PROGRESS_TOOL = "report_progress"


def find_repository_knowledge(repo_directory: str) -> str | None:
    """Content of the first knowledge file found in the repository, if any."""
    root = Path(repo_directory)
    for name in KNOWLEDGE_FILES:
        path = root / name
        if path.is_file():
            logger.info(f"Found repository knowledge file: {path}")
            return path.read_text(encoding="utf-8", errors="replace")
    return None


def build_system_prompt(base_prompt: str, common_prompt: str | None = None, knowledge: str | None = None) -> str:
    prompt = base_prompt
    if common_prompt:
        prompt = f"{prompt}\n\n## Common Prompt\n{common_prompt}"
    if knowledge:
        prompt = f"{prompt}\n## Repository Knowledge\n{knowledge}"
    return prompt


def render_tool_result(tool_result: str, *, force_report: bool) -> str:
    command = (
        f"Long time has passed since you sent the last message. Please use {_PROGRESS_TOOL} tool "
        "to send a response asap."
        if force_report
        else ""
    )
    return f"<result>\n{tool_result}\n</result>\n<command>\n{command}\n</command>"


def render_user_message(message: str) -> str:
    return (
        f"<user_message>\n{message}\n</user_message>\n<command>\n"
        f"User sent you a message. Please use {_PROGRESS_TOOL} tool to send a response asap.\n</command>"
    )
