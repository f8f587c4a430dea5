"""
Usage metrics for reporting.

Aggregates arbitrary historical slices from the ledger. Counters only know
running totals, so reports never read them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from llm_meter.storage.models import LLMProvider, UsageEvent, UsageFilters, ensure_utc
from llm_meter.storage.repository import UsageLedger


@dataclass
class ModelBreakdown:
    """Usage for one provider/model pair."""
    provider: LLMProvider
    model: str
    requests: int = 0
    tokens: int = 0
    cost: float = 0.0


@dataclass
class UsageMetrics:
    """Totals over a period plus the per-model breakdown."""
    period_start: datetime
    period_end: datetime
    total_requests: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    avg_cost_per_request: float = 0.0
    breakdown: List[ModelBreakdown] = field(default_factory=list)


def summarize_events(
    events: List[UsageEvent],
    start: datetime,
    end: datetime
) -> UsageMetrics:
    """Aggregate a list of events into UsageMetrics.

    The breakdown is sorted by descending cost; ties keep first-seen order.
    """
    metrics = UsageMetrics(period_start=ensure_utc(start), period_end=ensure_utc(end))
    groups: Dict[Tuple[LLMProvider, str], ModelBreakdown] = {}

    for event in events:
        metrics.total_requests += 1
        metrics.total_prompt_tokens += event.prompt_tokens
        metrics.total_completion_tokens += event.completion_tokens
        metrics.total_tokens += event.total_tokens
        metrics.total_cost += event.cost

        key = (event.provider, event.model)
        group = groups.get(key)
        if group is None:
            group = groups[key] = ModelBreakdown(provider=event.provider, model=event.model)
        group.requests += 1
        group.tokens += event.total_tokens
        group.cost += event.cost

    if metrics.total_requests:
        metrics.avg_cost_per_request = metrics.total_cost / metrics.total_requests
    metrics.breakdown = sorted(groups.values(), key=lambda g: g.cost, reverse=True)
    return metrics


def get_usage_metrics(
    ledger: UsageLedger,
    start: datetime,
    end: datetime,
    filters: Optional[UsageFilters] = None
) -> UsageMetrics:
    """Report usage between ``start`` and ``end`` (inclusive).

    An empty or inverted range yields all-zero metrics.
    """
    return summarize_events(ledger.export(start, end, filters), start, end)
