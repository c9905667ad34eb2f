from loguru import logger

from swe_worker.provider import LLMProvider

_TITLE_PROMPT = """\
Based on the following chat history, create a concise title for the conversation that is 15 characters or less.
The title should be brief but descriptive of the message content or intent.
Only return the title itself without any explanation or additional text.
Use the same language that was used in the conversation.

Messages: {transcript}"""


class Transcript:
    """Human-readable record of a turn, used to title the session."""

    def __init__(self, latest_user_text: str = ""):
        self._lines = [f"User: {latest_user_text}"]

    def add_assistant(self, text: str) -> None:
        self._lines.append(f"Assistant: {text}")

    def __str__(self) -> str:
        return "\n".join(self._lines) + "\n"


async def generate_session_title(provider: LLMProvider, model_id: str, transcript: str) -> str:
    """Best-effort title; returns an empty string on any failure."""
    try:
        output = await provider.complete_text(
            model_id,
            _TITLE_PROMPT.format(transcript=transcript),
            max_tokens=50,
            temperature=0.8,
            prefill="Title:",
        )
        return output.strip()
    except Exception as ex:
        logger.error(f"Error generating session title: {ex}")
        return ""
