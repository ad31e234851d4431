"""Tests for usage accounting and cost estimates."""

import pytest
from pydantic import ValidationError

from promomail.schemas.usage import UsageRecord
from promomail.services.pricing import (
    FALLBACK_PRICING_MODEL,
    PRICING,
    estimate_cost,
    format_cost,
    priced_usage,
    rates_for,
)


class TestUsageRecord:
    def test_total_is_computed(self):
        usage = UsageRecord(input_tokens=120, output_tokens=30)
        assert usage.total_tokens == 150
        assert usage.model_dump()["total_tokens"] == 150

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValidationError):
            UsageRecord(input_tokens=-1)

    def test_addition(self):
        total = UsageRecord(input_tokens=10, output_tokens=2, estimated_cost_usd=0.5, generation_time_ms=100) + \
            UsageRecord(input_tokens=5, output_tokens=3, estimated_cost_usd=0.25)
        assert (total.input_tokens, total.output_tokens, total.total_tokens) == (15, 5, 20)
        assert total.estimated_cost_usd == pytest.approx(0.75)
        assert total.generation_time_ms == 100

    def test_compose_keeps_breakdown_and_sums(self):
        stages = {
            "extraction": UsageRecord(input_tokens=1000, output_tokens=200, estimated_cost_usd=0.004),
            "refinement": UsageRecord(input_tokens=300, output_tokens=100, estimated_cost_usd=0.0001),
            "generation": UsageRecord(input_tokens=2000, output_tokens=1500, estimated_cost_usd=0.0012),
        }
        total = UsageRecord.compose(stages)

        assert total.input_tokens == sum(u.input_tokens for u in stages.values())
        assert total.output_tokens == sum(u.output_tokens for u in stages.values())
        assert total.estimated_cost_usd == pytest.approx(sum(u.estimated_cost_usd for u in stages.values()))
        assert list(total.breakdown) == ["extraction", "refinement", "generation"]
        assert total.breakdown["generation"].total_tokens == 3500

    def test_compose_serializes_nested(self):
        dumped = UsageRecord.compose({"generation": UsageRecord(input_tokens=1, output_tokens=1)}).model_dump()
        assert dumped["breakdown"]["generation"]["total_tokens"] == 2


class TestPricing:
    def test_rates_per_thousand_tokens(self):
        assert estimate_cost("gpt-4o", 1000, 1000) == pytest.approx(0.0025 + 0.010)
        assert estimate_cost("claude-haiku-4-5-20251001", 1_000_000, 1_000_000) == pytest.approx(1.0 + 5.0)

    def test_unknown_model_uses_fallback(self):
        assert rates_for("mystery-model") == PRICING[FALLBACK_PRICING_MODEL]

    def test_format_cost(self):
        assert format_cost(0.0001234567) == "$0.000123"
        assert format_cost(0) == "$0.000000"

    def test_priced_usage(self):
        usage = priced_usage("gpt-4o-mini", 2000, 1000, generation_time_ms=42)
        assert usage.estimated_cost_usd == pytest.approx(0.0003 + 0.0006)
        assert usage.generation_time_ms == 42
        assert usage.total_tokens == 3000

    def test_table_is_read_only(self):
        with pytest.raises(TypeError):
            PRICING["gpt-4o"] = {"input": 0, "output": 0}
