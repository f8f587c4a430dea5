"""
Budget policy evaluation.

Decides, before money is spent, whether a prospective charge would reach a
configured ceiling.

Evaluation Order:
1. Global daily total
2. Global monthly total
3. Per-customer daily
4. Per-agent daily
5. Per-campaign monthly

The first violated rule wins. Counter read failures fail open: the charge
is admitted and a warning is logged.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from llm_meter.config.loader import BudgetLimit
from llm_meter.errors import StorageUnavailableError
from llm_meter.storage.models import Attribution, Dimension
from .aggregation import (
    AGENT_DAILY,
    CAMPAIGN_MONTHLY,
    CUSTOMER_DAILY,
    TOTAL_DAILY,
    TOTAL_MONTHLY,
    AggregationCounters,
    CounterPolicy,
)

logger = logging.getLogger(__name__)


class BudgetPeriod(Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class LimitCheck:
    """Current spend against one ceiling."""
    exceeded: bool
    current: float
    limit: float


@dataclass(frozen=True)
class Admission:
    """Outcome of an admission check. Denial is a normal result, not an error."""
    allowed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class _Rule:
    label: str
    period: BudgetPeriod
    policy: CounterPolicy


_RULES = {
    (BudgetPeriod.DAILY, Dimension.TOTAL): _Rule("Daily budget", BudgetPeriod.DAILY, TOTAL_DAILY),
    (BudgetPeriod.MONTHLY, Dimension.TOTAL): _Rule("Monthly budget", BudgetPeriod.MONTHLY, TOTAL_MONTHLY),
    (BudgetPeriod.DAILY, Dimension.CUSTOMER): _Rule("Customer daily budget", BudgetPeriod.DAILY, CUSTOMER_DAILY),
    (BudgetPeriod.DAILY, Dimension.AGENT): _Rule("Agent daily budget", BudgetPeriod.DAILY, AGENT_DAILY),
    (BudgetPeriod.MONTHLY, Dimension.CAMPAIGN): _Rule("Campaign monthly budget", BudgetPeriod.MONTHLY, CAMPAIGN_MONTHLY),
}


def _limit_for(limits: BudgetLimit, period: BudgetPeriod, scope: Dimension) -> float:
    if period == BudgetPeriod.DAILY:
        return {
            Dimension.TOTAL: limits.daily.total,
            Dimension.CUSTOMER: limits.daily.per_customer,
            Dimension.AGENT: limits.daily.per_agent,
        }[scope]
    return {
        Dimension.TOTAL: limits.monthly.total,
        Dimension.CAMPAIGN: limits.monthly.per_campaign,
    }[scope]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BudgetEvaluator:
    """Compares aggregate spend against a BudgetLimit."""

    def __init__(
        self,
        counters: AggregationCounters,
        limits: BudgetLimit,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.counters = counters
        self.limits = limits
        self._clock = clock

    def _rule(self, period: BudgetPeriod, scope: Dimension, identifier: Optional[str]) -> _Rule:
        period, scope = BudgetPeriod(period), Dimension(scope)
        rule = _RULES.get((period, scope))
        if rule is None:
            raise ValueError(f"No {period.value} limit is defined for scope '{scope.value}'")
        if scope != Dimension.TOTAL and not identifier:
            raise ValueError(f"Scope '{scope.value}' requires an identifier")
        return rule

    def check_limit(
        self,
        period: BudgetPeriod,
        scope: Dimension,
        identifier: Optional[str] = None
    ) -> LimitCheck:
        """Compare current spend with one ceiling. Never mutates state.

        ``exceeded`` is True once the ceiling has been reached.

        Raises:
            ValueError: For a period/scope pair without a ceiling, or a
                scoped check without an identifier
        """
        rule = self._rule(period, scope, identifier)
        limit = _limit_for(self.limits, rule.period, rule.policy.dimension)
        key_id = identifier if rule.policy.dimension != Dimension.TOTAL else None
        try:
            current = self.counters.current(rule.policy, key_id, self._clock())
        except StorageUnavailableError as e:
            logger.warning(
                "Failed to check budget limit %s/%s (%s); failing open: %s",
                rule.period.value, rule.policy.dimension.value, identifier, e
            )
            return LimitCheck(exceeded=False, current=0.0, limit=limit)
        return LimitCheck(exceeded=current >= limit, current=current, limit=limit)

    def admit(
        self,
        prospective_cost: float,
        attribution: Optional[Attribution] = None
    ) -> Admission:
        """Decide whether a charge of ``prospective_cost`` may proceed.

        A rule is violated when ``current + prospective_cost >= limit``.

        Raises:
            ValueError: If prospective_cost is negative
        """
        if not math.isfinite(prospective_cost):
            raise ValueError("prospective_cost must be a finite number")
        if prospective_cost < 0:
            raise ValueError("prospective_cost cannot be negative")

        attribution = attribution or Attribution()
        checks = [
            (BudgetPeriod.DAILY, Dimension.TOTAL, None),
            (BudgetPeriod.MONTHLY, Dimension.TOTAL, None),
            (BudgetPeriod.DAILY, Dimension.CUSTOMER, attribution.customer_id),
            (BudgetPeriod.DAILY, Dimension.AGENT, attribution.agent_id),
            (BudgetPeriod.MONTHLY, Dimension.CAMPAIGN, attribution.campaign_id),
        ]

        now = self._clock()
        for period, scope, identifier in checks:
            if scope != Dimension.TOTAL and not identifier:
                continue
            rule = _RULES[(period, scope)]
            limit = _limit_for(self.limits, period, scope)
            try:
                current = self.counters.current(rule.policy, identifier, now)
            except StorageUnavailableError as e:
                logger.warning("Budget counters unavailable; admitting request: %s", e)
                return Admission(allowed=True)

            if current + prospective_cost >= limit:
                return Admission(
                    allowed=False,
                    reason=(
                        f"{rule.label} limit exceeded: ${current:.2f} + "
                        f"${prospective_cost:.2f} >= ${limit:.2f}"
                    )
                )

        return Admission(allowed=True)
