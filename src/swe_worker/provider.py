from typing import Protocol, runtime_checkable

from swe_worker.models import ModelRequest, ModelResponse


@runtime_checkable
class LLMProvider(Protocol):
    async def converse(self, request: ModelRequest) -> ModelResponse:
        """Run one model call.

        Transient provider conditions (throttling, connection drops) must be
        raised as ``ThrottlingError``; everything else propagates unchanged.
        """
        ...

    async def complete_text(
        self,
        model: str,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        prefill: str = "",
    ) -> str:
        """Single non-tool completion (used for auxiliary calls such as titles)."""
        ...


def create_provider(provider_name: str, api_key: str) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from swe_worker.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == "openai":
        from swe_worker.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
