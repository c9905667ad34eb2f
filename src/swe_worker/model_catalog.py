from __future__ import annotations

from dataclasses import dataclass

from swe_worker.models import Usage


@dataclass(frozen=True)
class Pricing:
    """USD per 1k tokens."""

    input: float
    output: float
    cache_read: float
    cache_write: float


@dataclass(frozen=True)
class ModelConfig:
    key: str
    name: str
    model_id: str
    max_output_tokens: int
    max_input_tokens: int
    reasoning_support: bool
    cache_support: bool
    pricing: Pricing

    def cost(self, usage: Usage) -> float:
        return (
            usage.input_tokens * self.pricing.input
            + usage.output_tokens * self.pricing.output
            + usage.cache_read_input_tokens * self.pricing.cache_read
            + usage.cache_write_input_tokens * self.pricing.cache_write
        ) / 1000


MODEL_CONFIGS: dict[str, ModelConfig] = {
    "sonnet4.5": ModelConfig(
        key="sonnet4.5",
        name="Claude 4.5 Sonnet",
        model_id="claude-sonnet-4-5-20250929",
        max_output_tokens=64_000,
        max_input_tokens=200_000,
        reasoning_support=True,
        cache_support=True,
        pricing=Pricing(input=0.003, output=0.015, cache_read=0.0003, cache_write=0.00375),
    ),
    "haiku4.5": ModelConfig(
        key="haiku4.5",
        name="Claude 4.5 Haiku",
        model_id="claude-haiku-4-5-20251001",
        max_output_tokens=64_000,
        max_input_tokens=200_000,
        reasoning_support=True,
        cache_support=True,
        pricing=Pricing(input=0.001, output=0.005, cache_read=0.0001, cache_write=0.00125),
    ),
    "sonnet4": ModelConfig(
        key="sonnet4",
        name="Claude 4 Sonnet",
        model_id="claude-sonnet-4-20250514",
        max_output_tokens=64_000,
        max_input_tokens=200_000,
        reasoning_support=True,
        cache_support=True,
        pricing=Pricing(input=0.003, output=0.015, cache_read=0.0003, cache_write=0.00375),
    ),
    "opus4.1": ModelConfig(
        key="opus4.1",
        name="Claude 4.1 Opus",
        model_id="claude-opus-4-1-20250805",
        max_output_tokens=32_000,
        max_input_tokens=200_000,
        reasoning_support=True,
        cache_support=True,
        pricing=Pricing(input=0.015, output=0.075, cache_read=0.0015, cache_write=0.01875),
    ),
    "haiku3.5": ModelConfig(
        key="haiku3.5",
        name="Claude 3.5 Haiku",
        model_id="claude-3-5-haiku-20241022",
        max_output_tokens=8192,
        max_input_tokens=200_000,
        reasoning_support=False,
        cache_support=True,
        pricing=Pricing(input=0.0008, output=0.004, cache_read=0.00008, cache_write=0.001),
    ),
    "gpt-4.1": ModelConfig(
        key="gpt-4.1",
        name="GPT-4.1",
        model_id="gpt-4.1",
        max_output_tokens=32_768,
        max_input_tokens=1_000_000,
        reasoning_support=False,
        cache_support=False,
        pricing=Pricing(input=0.002, output=0.008, cache_read=0.0005, cache_write=0.0),
    ),
}


def get_model_config(key: str) -> ModelConfig:
    """Look up a catalog entry; unknown keys are treated as raw provider model ids."""
    config = MODEL_CONFIGS.get(key)
    if config is not None:
        return config
    for candidate in MODEL_CONFIGS.values():
        if candidate.model_id == key:
            return candidate
    return ModelConfig(
        key=key,
        name=key,
        model_id=key,
        max_output_tokens=8192,
        max_input_tokens=200_000,
        reasoning_support=False,
        cache_support=False,
        pricing=Pricing(input=0.0, output=0.0, cache_read=0.0, cache_write=0.0),
    )
