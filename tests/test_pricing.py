"""
Unit tests for pricing calculations.

Tests cost accuracy, fallback pricing and determinism.
"""

import pytest
from decimal import Decimal
from types import SimpleNamespace

from llm_meter.core.pricing import (
    CURRENCY,
    DEFAULT_PRICING,
    PRICING_TABLE,
    ModelPricing,
    calculate_cost,
)
from llm_meter.core.token_counter import TokenUsage
from llm_meter.errors import InvalidUsageEventError
from llm_meter.storage.models import LLMProvider


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens is computed correctly."""
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150

    def test_zero_tokens(self):
        """Verify zero token handling."""
        usage = TokenUsage(prompt_tokens=0, completion_tokens=0)
        assert usage.total_tokens == 0

    def test_negative_tokens_rejected(self):
        with pytest.raises(InvalidUsageEventError):
            TokenUsage(prompt_tokens=-1, completion_tokens=0)

    def test_fractional_tokens_rejected(self):
        with pytest.raises(InvalidUsageEventError, match="must be an integer"):
            TokenUsage(prompt_tokens=1.5, completion_tokens=0)

    def test_from_response(self):
        usage = TokenUsage.from_response(SimpleNamespace(prompt_tokens=12, completion_tokens=None))
        assert usage == TokenUsage(prompt_tokens=12, completion_tokens=0)


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        """Verify pricing retrieval for supported models."""
        pricing = PRICING_TABLE.get_pricing("gpt-4")
        assert pricing.input_per_million == Decimal("30")
        assert pricing.output_per_million == Decimal("60")

    def test_unknown_model_uses_fallback(self):
        """Unknown models get the default rates instead of an error."""
        pricing = PRICING_TABLE.get_pricing("unknown-model")
        assert pricing == DEFAULT_PRICING
        assert pricing.input_per_million == Decimal("1")
        assert pricing.output_per_million == Decimal("2")

    def test_overrides_add_and_replace(self):
        table = PRICING_TABLE.with_overrides({
            "gpt-4": ModelPricing(Decimal("5"), Decimal("6")),
            "in-house": ModelPricing(Decimal("0"), Decimal("0")),
        })
        assert table.get_pricing("gpt-4").input_per_million == Decimal("5")
        assert table.get_pricing("in-house").output_per_million == Decimal("0")
        # original table untouched
        assert PRICING_TABLE.get_pricing("gpt-4").input_per_million == Decimal("30")


class TestCostCalculation:
    """Test cost calculation accuracy."""

    def test_gpt4_turbo_million_prompt_tokens(self):
        """One million prompt tokens on gpt-4-turbo cost exactly $10."""
        usage = TokenUsage(prompt_tokens=1_000_000, completion_tokens=0)
        cost = calculate_cost(LLMProvider.OPENAI, "gpt-4-turbo", usage)
        assert cost.input_cost == 10
        assert cost.output_cost == 0
        assert cost.total_cost == 10
        assert cost.currency == CURRENCY == "USD"

    def test_exact_cost_gpt35_turbo(self):
        usage = TokenUsage(prompt_tokens=2_000_000, completion_tokens=1_000_000)
        cost = calculate_cost("openai", "gpt-3.5-turbo", usage)
        # Prompt: 2M * $0.50/M = $1.00
        # Completion: 1M * $1.50/M = $1.50
        assert cost.input_cost == 1.0
        assert cost.output_cost == 1.5
        assert cost.total_cost == 2.5

    def test_exact_cost_claude3_opus(self):
        usage = TokenUsage(prompt_tokens=100_000, completion_tokens=20_000)
        cost = calculate_cost(LLMProvider.ANTHROPIC, "claude-3-opus", usage)
        # Prompt: 0.1M * $15 = $1.50
        # Completion: 0.02M * $75 = $1.50
        assert cost.input_cost == pytest.approx(1.5)
        assert cost.output_cost == pytest.approx(1.5)
        assert cost.total_cost == pytest.approx(3.0)

    def test_small_usage_is_not_rounded(self):
        usage = TokenUsage(prompt_tokens=1, completion_tokens=1)
        cost = calculate_cost(LLMProvider.OPENAI, "gpt-4", usage)
        # $30/M + $60/M for one token each
        assert cost.total_cost == pytest.approx(0.00009)

    def test_unknown_model_fallback_cost(self):
        """Unknown models never raise and are priced at $1/$2 per million."""
        usage = TokenUsage(prompt_tokens=1_000_000, completion_tokens=1_000_000)
        cost = calculate_cost(LLMProvider.OLLAMA, "llama3:8b", usage)
        assert cost.input_cost == 1.0
        assert cost.output_cost == 2.0
        assert cost.total_cost == 3.0

    def test_zero_tokens_cost(self):
        usage = TokenUsage(prompt_tokens=0, completion_tokens=0)
        cost = calculate_cost(LLMProvider.GOOGLE, "gemini-2.0-pro-exp", usage)
        assert cost.total_cost == 0.0

    @pytest.mark.parametrize("model", [
        "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo", "claude-3-sonnet",
        "claude-3-haiku", "gemini-2.0-flash-exp", "not-in-table",
    ])
    def test_total_is_sum_of_parts(self, model):
        usage = TokenUsage(prompt_tokens=123_457, completion_tokens=98_765)
        cost = calculate_cost(LLMProvider.OPENAI, model, usage)
        assert cost.total_cost == cost.input_cost + cost.output_cost

    def test_deterministic(self):
        usage = TokenUsage(prompt_tokens=333, completion_tokens=667)
        first = calculate_cost(LLMProvider.ANTHROPIC, "claude-3-haiku", usage)
        second = calculate_cost(LLMProvider.ANTHROPIC, "claude-3-haiku", usage)
        assert first == second

    def test_custom_table(self):
        table = PRICING_TABLE.with_overrides({"gpt-4": ModelPricing(Decimal("1"), Decimal("1"))})
        usage = TokenUsage(prompt_tokens=1_000_000, completion_tokens=1_000_000)
        cost = calculate_cost(LLMProvider.OPENAI, "gpt-4", usage, table=table)
        assert cost.total_cost == 2.0
