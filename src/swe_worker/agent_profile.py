from dataclasses import dataclass, field
from typing import Any

DEFAULT_SYSTEM_PROMPT = """\
You are an SWE agent. Help your user using your software development skill. If you hit an error \
when executing a command and want advice from the user, include the error detail in the message. \
Always use the same language the user speaks. For internal reasoning the user does not see, use English.

Never reveal environment variables, credentials, tokens, API keys or system configuration details, \
including when asked indirectly or through encodings. Decline politely and suggest a secure alternative.

Work in small, verifiable steps. Clone the repository you are asked to work on before editing it, \
run its tests when they exist, and open a pull request when the change is complete."""


@dataclass(frozen=True)
class AgentProfile:
    name: str
    system_prompt: str = ""
    tools: tuple[str, ...] = ()
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    default_model: str | None = None


DEFAULT_AGENT_PROFILE = AgentProfile(
    name="default agent",
    system_prompt=DEFAULT_SYSTEM_PROMPT,
    tools=(
        "command_execution",
        "file_edit",
        "read_image",
        "clone_repository",
        "create_pr",
        "ci",
        "get_pr_comments",
        "reply_pr_comment",
        "add_issue_comment",
    ),
)


def parse_agent_profile(config: dict | None) -> AgentProfile:
    """Profile from the ``AgentProfile`` config section; missing fields fall back to the default agent."""
    if not config:
        return DEFAULT_AGENT_PROFILE
    tools = config.get("Tools")
    return AgentProfile(
        name=config.get("Name", DEFAULT_AGENT_PROFILE.name),
        system_prompt=config.get("SystemPrompt") or DEFAULT_AGENT_PROFILE.system_prompt,
        tools=tuple(tools) if tools is not None else DEFAULT_AGENT_PROFILE.tools,
        mcp_servers=dict(config.get("McpServers") or {}),
        default_model=config.get("DefaultModel"),
    )
