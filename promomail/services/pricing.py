from types import MappingProxyType

from promomail.schemas.usage import UsageRecord

# USD per 1K tokens, keyed by provider model id
PRICING = MappingProxyType({
    "claude-opus-4-6": {"input": 0.005, "output": 0.025},
    "claude-opus-4-5-20251101": {"input": 0.005, "output": 0.025},
    "claude-sonnet-4-5-20250929": {"input": 0.003, "output": 0.015},
    "claude-haiku-4-5-20251001": {"input": 0.001, "output": 0.005},
    "gpt-4o": {"input": 0.0025, "output": 0.010},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-5.2": {"input": 0.002, "output": 0.008},
    "gpt-5.2-pro": {"input": 0.010, "output": 0.040},
    "grok-4-1-fast": {"input": 0.003, "output": 0.015},
})

FALLBACK_PRICING_MODEL = "gpt-4o-mini"


def rates_for(model_id: str) -> dict[str, float]:
    return PRICING.get(model_id, PRICING[FALLBACK_PRICING_MODEL])


def estimate_cost(model_id: str, input_tokens: int, output_tokens: int) -> float:
    rates = rates_for(model_id)
    return (input_tokens / 1000) * rates["input"] + (output_tokens / 1000) * rates["output"]


def format_cost(cost: float) -> str:
    return f"${cost:.6f}"


def priced_usage(
    model_id: str,
    input_tokens: int,
    output_tokens: int,
    generation_time_ms: int | None = None,
) -> UsageRecord:
    return UsageRecord(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        estimated_cost_usd=estimate_cost(model_id, input_tokens, output_tokens),
        generation_time_ms=generation_time_ms,
    )
