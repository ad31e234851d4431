from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Mapping


class Provider(StrEnum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    XAI = "xai"
    OPENAI_HYBRID = "openai-hybrid"
    CLAUDE_HYBRID = "claude-hybrid"
    MANUAL_HYBRID = "manual-hybrid"
    COMBINED_HYBRID = "combined-hybrid"


class ApiConvention(StrEnum):
    MESSAGES = "messages"    # Anthropic messages with tool_use blocks
    CHAT = "chat"            # OpenAI-compatible chat completions
    RESPONSES = "responses"  # OpenAI responses, single flattened input


HYBRID_PROVIDERS = frozenset({
    Provider.OPENAI_HYBRID,
    Provider.CLAUDE_HYBRID,
    Provider.MANUAL_HYBRID,
    Provider.COMBINED_HYBRID,
})


@dataclass(frozen=True)
class ModelConfiguration:
    key: str
    label: str
    provider: Provider
    api_convention: ApiConvention
    model_id: str | None = None
    max_output_tokens: int = 16000
    extract_model_id: str | None = None
    refine_model_id: str | None = None
    generate_model_id: str | None = None

    @property
    def is_hybrid(self) -> bool:
        return self.provider in HYBRID_PROVIDERS

    @property
    def providers_used(self) -> frozenset[Provider]:
        """Concrete providers whose credentials this configuration needs."""
        if self.provider == Provider.OPENAI_HYBRID or self.provider == Provider.MANUAL_HYBRID:
            return frozenset({Provider.OPENAI})
        if self.provider in (Provider.CLAUDE_HYBRID, Provider.COMBINED_HYBRID):
            return frozenset({Provider.ANTHROPIC, Provider.OPENAI})
        return frozenset({self.provider})


def _registry(*configs: ModelConfiguration) -> Mapping[str, ModelConfiguration]:
    return MappingProxyType({c.key: c for c in configs})


CLAUDE_OPUS_46 = "claude-opus-4-6"
CLAUDE_OPUS_45 = "claude-opus-4-5-20251101"
CLAUDE_SONNET_45 = "claude-sonnet-4-5-20250929"
CLAUDE_HAIKU_45 = "claude-haiku-4-5-20251001"

TEMPLATE_MODELS = _registry(
    ModelConfiguration("claude-opus-4-6", "Claude Opus 4.6", Provider.ANTHROPIC,
                       ApiConvention.MESSAGES, model_id=CLAUDE_OPUS_46),
    ModelConfiguration("claude-opus-4-5", "Claude Opus 4.5", Provider.ANTHROPIC,
                       ApiConvention.MESSAGES, model_id=CLAUDE_OPUS_45),
    ModelConfiguration("claude-sonnet-4-5", "Claude Sonnet 4.5", Provider.ANTHROPIC,
                       ApiConvention.MESSAGES, model_id=CLAUDE_SONNET_45),
    ModelConfiguration("claude-haiku-4-5", "Claude Haiku 4.5", Provider.ANTHROPIC,
                       ApiConvention.MESSAGES, model_id=CLAUDE_HAIKU_45),
    ModelConfiguration("gpt-4o", "ChatGPT-4o", Provider.OPENAI,
                       ApiConvention.CHAT, model_id="gpt-4o"),
    ModelConfiguration("gpt-4o-mini", "ChatGPT-4o Mini", Provider.OPENAI,
                       ApiConvention.CHAT, model_id="gpt-4o-mini"),
    ModelConfiguration("gpt-4o-extract-mini-generate", "GPT-4o Extract + Mini Generate",
                       Provider.OPENAI_HYBRID, ApiConvention.CHAT,
                       extract_model_id="gpt-4o", generate_model_id="gpt-4o-mini"),
    ModelConfiguration("claude-sonnet-extract-mini-generate", "Claude Sonnet Extract + Mini Generate",
                       Provider.CLAUDE_HYBRID, ApiConvention.MESSAGES,
                       extract_model_id=CLAUDE_SONNET_45, generate_model_id="gpt-4o-mini"),
    ModelConfiguration("claude-haiku-extract-mini-generate", "Claude Haiku Extract + Mini Generate",
                       Provider.CLAUDE_HYBRID, ApiConvention.MESSAGES,
                       extract_model_id=CLAUDE_HAIKU_45, generate_model_id="gpt-4o-mini"),
    ModelConfiguration("manual-extract-mini-refine-generate",
                       "Manual Extract + Mini Refine + Generate (Cheapest)",
                       Provider.MANUAL_HYBRID, ApiConvention.CHAT,
                       refine_model_id="gpt-4o-mini", generate_model_id="gpt-4o-mini"),
    ModelConfiguration("smart-extract-mini-generate", "Manual Extract (Haiku fallback) + Mini Generate",
                       Provider.COMBINED_HYBRID, ApiConvention.CHAT,
                       extract_model_id=CLAUDE_HAIKU_45, generate_model_id="gpt-4o-mini"),
)
DEFAULT_TEMPLATE_MODEL = "claude-opus-4-5"

TEXT_EMAIL_MODELS = _registry(
    ModelConfiguration("gpt-5.2", "GPT-5.2", Provider.OPENAI, ApiConvention.RESPONSES,
                       model_id="gpt-5.2", max_output_tokens=4000),
    ModelConfiguration("gpt-5.2-pro", "GPT-5.2 Pro", Provider.OPENAI, ApiConvention.RESPONSES,
                       model_id="gpt-5.2-pro", max_output_tokens=4000),
    ModelConfiguration("grok-4-1-fast", "Grok 4.1 Fast (Reasoning)", Provider.XAI, ApiConvention.CHAT,
                       model_id="grok-4-1-fast", max_output_tokens=4000),
)
DEFAULT_TEXT_MODEL = "gpt-5.2"


def get_model_config(key: str | None, registry: Mapping[str, ModelConfiguration] = TEMPLATE_MODELS) -> ModelConfiguration:
    """Look up a model; unknown keys fall back to the registry's default entry."""
    default = DEFAULT_TEXT_MODEL if registry is TEXT_EMAIL_MODELS else DEFAULT_TEMPLATE_MODEL
    return registry.get(key or default, registry[default])
