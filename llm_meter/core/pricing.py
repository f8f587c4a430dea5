"""
Pricing calculations and rate management.

Maps provider token counts to a monetary cost using a static price table.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Mapping, Optional, Union

from llm_meter.storage.models import LLMProvider
from .token_counter import TokenUsage

CURRENCY = "USD"

_ONE_MILLION = Decimal(1_000_000)


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_per_million: Decimal  # Cost per 1M prompt tokens
    output_per_million: Decimal  # Cost per 1M completion tokens


# Rates used for any model missing from the table
DEFAULT_PRICING = ModelPricing(
    input_per_million=Decimal("1"),
    output_per_million=Decimal("2")
)


@dataclass(frozen=True)
class CostInfo:
    """Cost breakdown for one call."""
    input_cost: float
    output_cost: float
    total_cost: float
    currency: str = CURRENCY


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for known models."""
    prices: Dict[str, ModelPricing]
    fallback: ModelPricing = field(default=DEFAULT_PRICING)

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Unknown models get the fallback rates; a gap in the table never
        blocks a request.
        """
        return self.prices.get(model, self.fallback)

    def with_overrides(self, overrides: Mapping[str, ModelPricing]) -> "PricingTable":
        """Return a new table with ``overrides`` added or replacing entries."""
        merged = dict(self.prices)
        merged.update(overrides)
        return PricingTable(merged, fallback=self.fallback)


def _pricing(input_rate: str, output_rate: str) -> ModelPricing:
    return ModelPricing(Decimal(input_rate), Decimal(output_rate))


PRICING_TABLE = PricingTable({
    "gpt-4-turbo": _pricing("10", "30"),
    "gpt-4": _pricing("30", "60"),
    "gpt-3.5-turbo": _pricing("0.5", "1.5"),
    "claude-3-opus": _pricing("15", "75"),
    "claude-3-sonnet": _pricing("3", "15"),
    "claude-3-haiku": _pricing("0.25", "1.25"),
    "gemini-2.0-pro-exp": _pricing("1.25", "5"),
    "gemini-2.0-flash-exp": _pricing("0.075", "0.3"),
})


def calculate_cost(
    provider: Union[LLMProvider, str],
    model: str,
    usage: TokenUsage,
    table: Optional[PricingTable] = None
) -> CostInfo:
    """Calculate the cost of one call.

    Pricing is keyed by model only; ``provider`` is accepted so callers
    pass the full identity of the call. No rounding is applied.

    Args:
        provider: Provider that served the call
        model: Model identifier
        usage: Token usage data
        table: Price table to use (defaults to PRICING_TABLE)

    Returns:
        CostInfo where total_cost == input_cost + output_cost
    """
    pricing = (table or PRICING_TABLE).get_pricing(model)

    # (tokens / 1M) * rate, computed in Decimal then reported as float
    input_cost = float(Decimal(usage.prompt_tokens) / _ONE_MILLION * pricing.input_per_million)
    output_cost = float(Decimal(usage.completion_tokens) / _ONE_MILLION * pricing.output_per_million)

    return CostInfo(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
    )
