"""
Usage meter service.

Wires the ledger, the aggregation counters, the budget evaluator and the
price table into the object callers talk to:

    meter.admit(cost, attribution)      before spend
    meter.record(event)                 after spend
    meter.get_budget_status()           dashboards
    meter.get_usage_metrics(start, end) reports

Construct one explicitly and pass it where it is needed; there is no
module-level instance.

``record`` performs two independent writes, ledger first and counters
second. If the process dies between them the counters are short, and
``rebuild_counters`` replays the ledger to restore them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union

from llm_meter.config.loader import BudgetLimit, MeterConfig
from llm_meter.errors import CounterSyncError, StorageUnavailableError
from llm_meter.storage.counters import CounterStore, InMemoryCounterStore, RedisCounterStore
from llm_meter.storage.models import (
    Attribution,
    Dimension,
    LLMProvider,
    UsageEvent,
    UsageFilters,
    ensure_utc,
)
from llm_meter.storage.repository import InMemoryUsageLedger, SQLiteUsageLedger, UsageLedger
from .aggregation import TOTAL_DAILY, TOTAL_MONTHLY, AggregationCounters
from .budget import Admission, BudgetEvaluator, BudgetPeriod, LimitCheck
from .metrics import UsageMetrics, get_usage_metrics
from .pricing import PRICING_TABLE, CostInfo, PricingTable, calculate_cost
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WindowStatus:
    """Spend against one global ceiling."""
    used: float
    limit: float
    remaining: float
    percentage: float

    @classmethod
    def of(cls, used: float, limit: float) -> "WindowStatus":
        if limit > 0:
            percentage = used / limit * 100
        else:
            percentage = 100.0
        return cls(used=used, limit=limit, remaining=limit - used, percentage=percentage)


@dataclass(frozen=True)
class BudgetStatus:
    daily: WindowStatus
    monthly: WindowStatus


class UsageMeter:
    """Metering and budget enforcement for paid LLM calls."""

    def __init__(
        self,
        ledger: Optional[UsageLedger] = None,
        counter_store: Optional[CounterStore] = None,
        limits: Optional[BudgetLimit] = None,
        pricing: PricingTable = PRICING_TABLE,
        clock: Callable[[], datetime] = _utcnow
    ):
        """Initialize the meter.

        Args:
            ledger: Event ledger (defaults to an in-memory ledger)
            counter_store: Counter backend (defaults to in-memory counters)
            limits: Budget ceilings (defaults to BudgetLimit())
            pricing: Price table used by record_usage
            clock: Source of the current UTC time
        """
        self.ledger = ledger if ledger is not None else InMemoryUsageLedger()
        self.counters = AggregationCounters(
            counter_store if counter_store is not None else InMemoryCounterStore()
        )
        self.pricing = pricing
        self._clock = clock
        self.evaluator = BudgetEvaluator(self.counters, limits or BudgetLimit(), clock=clock)
        logger.info("Usage meter initialized with limits %s", self.limits)

    @classmethod
    def from_config(
        cls,
        config: MeterConfig,
        counter_store: Optional[CounterStore] = None
    ) -> "UsageMeter":
        """Build a meter from a validated MeterConfig.

        ``counter_store`` overrides the configured counter backend.
        """
        storage = config.storage
        if storage.ledger == "sqlite":
            ledger: UsageLedger = SQLiteUsageLedger(storage.db_path, timeout=storage.timeout_seconds)
        else:
            ledger = InMemoryUsageLedger()

        if counter_store is None:
            if storage.counters == "redis":
                counter_store = RedisCounterStore.from_url(
                    storage.redis_url,
                    timeout=storage.timeout_seconds,
                    key_prefix=storage.key_prefix
                )
            else:
                counter_store = InMemoryCounterStore()

        return cls(
            ledger=ledger,
            counter_store=counter_store,
            limits=config.budget,
            pricing=PRICING_TABLE.with_overrides(config.pricing)
        )

    @property
    def limits(self) -> BudgetLimit:
        return self.evaluator.limits

    def replace_limits(self, limits: BudgetLimit) -> None:
        """Swap in a new set of ceilings."""
        self.evaluator.limits = limits
        logger.info("Budget limits replaced: %s", limits)

    # Admission

    def admit(self, prospective_cost: float, attribution: Optional[Attribution] = None) -> Admission:
        return self.evaluator.admit(prospective_cost, attribution)

    def check_limit(
        self,
        period: Union[BudgetPeriod, str],
        scope: Union[Dimension, str],
        identifier: Optional[str] = None
    ) -> LimitCheck:
        return self.evaluator.check_limit(period, scope, identifier)

    # Recording

    def calculate_cost(
        self,
        provider: Union[LLMProvider, str],
        model: str,
        usage: TokenUsage
    ) -> CostInfo:
        return calculate_cost(provider, model, usage, table=self.pricing)

    def record(self, event: UsageEvent) -> None:
        """Append an event to the ledger and update the counters.

        Raises:
            StorageUnavailableError: The ledger write failed; nothing was
                recorded and the call may be retried
            CounterSyncError: The ledger write succeeded but the counters
                were not updated; do not retry
        """
        self.ledger.append(event)
        try:
            self.counters.apply(event)
        except StorageUnavailableError as e:
            logger.error(
                "Usage recorded in ledger but counters not updated (%s/%s, $%.6f): %s",
                event.provider.value, event.model, event.cost, e
            )
            raise CounterSyncError(f"Counter update failed after ledger write: {e}", event) from e

        logger.debug(
            "Usage recorded: %s/%s tokens=%d cost=%.6f customer=%s agent=%s campaign=%s",
            event.provider.value, event.model, event.total_tokens, event.cost,
            event.customer_id, event.agent_id, event.campaign_id
        )

    def record_usage(
        self,
        provider: Union[LLMProvider, str],
        model: str,
        usage: TokenUsage,
        attribution: Optional[Attribution] = None,
        request_id: Optional[str] = None
    ) -> UsageEvent:
        """Price a completed call and record it. Returns the stored event."""
        attribution = attribution or Attribution()
        cost = self.calculate_cost(provider, model, usage)
        event = UsageEvent(
            timestamp=self._clock(),
            provider=provider,
            model=model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost=cost.total_cost,
            customer_id=attribution.customer_id,
            agent_id=attribution.agent_id,
            campaign_id=attribution.campaign_id,
            request_id=request_id
        )
        self.record(event)
        return event

    # Fast-path reads

    def get_daily_usage(self, at: Optional[datetime] = None) -> float:
        return self.counters.current(TOTAL_DAILY, None, at or self._clock())

    def get_monthly_usage(self, at: Optional[datetime] = None) -> float:
        return self.counters.current(TOTAL_MONTHLY, None, at or self._clock())

    def get_budget_status(self) -> BudgetStatus:
        now = self._clock()
        return BudgetStatus(
            daily=WindowStatus.of(self.get_daily_usage(now), self.limits.daily.total),
            monthly=WindowStatus.of(self.get_monthly_usage(now), self.limits.monthly.total),
        )

    def reset_daily_usage(self) -> None:
        """Drop today's global daily counter (manual reset or tests)."""
        now = self._clock()
        self.counters.reset(TOTAL_DAILY, None, now)
        logger.info("Daily usage reset for %s", now.date().isoformat())

    # Ledger reads and maintenance

    def get_usage_metrics(
        self,
        start: datetime,
        end: datetime,
        filters: Optional[UsageFilters] = None
    ) -> UsageMetrics:
        return get_usage_metrics(self.ledger, start, end, filters)

    def export(
        self,
        start: datetime,
        end: datetime,
        filters: Optional[UsageFilters] = None
    ) -> List[UsageEvent]:
        return self.ledger.export(start, end, filters)

    def trim(self, retention_days: int) -> int:
        return self.ledger.trim(retention_days, now=self._clock())

    def rebuild_counters(self, start: datetime, end: Optional[datetime] = None) -> int:
        """Replay ledger events into the counters.

        Intended for empty or expired counters, e.g. after a Redis flush or
        a crash between the ledger and counter writes. Replaying into
        counters that already hold these events double counts them.

        Returns:
            Number of events replayed
        """
        end = ensure_utc(end) if end is not None else self._clock()
        events = self.ledger.export(start, end)
        for event in events:
            self.counters.apply(event)
        logger.info("Rebuilt counters from %d ledger events", len(events))
        return len(events)
