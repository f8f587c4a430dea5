"""
Aggregation counters keyed by time bucket and attribution dimension.

Answers "how much has been spent" per dimension and window in O(1),
without scanning the ledger.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from llm_meter.storage.counters import CounterStore
from llm_meter.storage.models import Dimension, UsageEvent, ensure_utc

_DAY = 86400


class BucketSize(Enum):
    """Time window of a counter bucket."""
    DAY = "day"
    MONTH = "month"


def day_key(ts: datetime) -> str:
    """Calendar date of ``ts`` in UTC as YYYY-MM-DD."""
    return ensure_utc(ts).strftime("%Y-%m-%d")


def month_key(ts: datetime) -> str:
    """Calendar month of ``ts`` in UTC as YYYY-MM."""
    return ensure_utc(ts).strftime("%Y-%m")


def bucket_key(size: BucketSize, ts: datetime) -> str:
    return day_key(ts) if size == BucketSize.DAY else month_key(ts)


@dataclass(frozen=True)
class CounterPolicy:
    """Bucket size and expiry for one counter family."""
    dimension: Dimension
    bucket: BucketSize
    ttl_seconds: int


TOTAL_DAILY = CounterPolicy(Dimension.TOTAL, BucketSize.DAY, 7 * _DAY)
TOTAL_MONTHLY = CounterPolicy(Dimension.TOTAL, BucketSize.MONTH, 60 * _DAY)
CUSTOMER_DAILY = CounterPolicy(Dimension.CUSTOMER, BucketSize.DAY, 30 * _DAY)
AGENT_DAILY = CounterPolicy(Dimension.AGENT, BucketSize.DAY, 30 * _DAY)
CAMPAIGN_MONTHLY = CounterPolicy(Dimension.CAMPAIGN, BucketSize.MONTH, 90 * _DAY)


def _identifier(event: UsageEvent, dimension: Dimension) -> Optional[str]:
    return {
        Dimension.TOTAL: None,
        Dimension.CUSTOMER: event.customer_id,
        Dimension.AGENT: event.agent_id,
        Dimension.CAMPAIGN: event.campaign_id,
    }[dimension]


class AggregationCounters:
    """Running cost totals over a CounterStore."""

    POLICIES = (TOTAL_DAILY, TOTAL_MONTHLY, CUSTOMER_DAILY, AGENT_DAILY, CAMPAIGN_MONTHLY)

    def __init__(self, store: CounterStore):
        self.store = store

    def increment(
        self,
        policy: CounterPolicy,
        identifier: Optional[str],
        bucket: str,
        amount: float
    ) -> float:
        if policy.dimension != Dimension.TOTAL and not identifier:
            raise ValueError(f"{policy.dimension.value} counters require an identifier")
        return self.store.increment(
            policy.dimension, identifier, bucket, amount, policy.ttl_seconds
        )

    def get(self, policy: CounterPolicy, identifier: Optional[str], bucket: str) -> float:
        return self.store.get(policy.dimension, identifier, bucket)

    def current(self, policy: CounterPolicy, identifier: Optional[str], at: datetime) -> float:
        """Counter value for the bucket containing ``at``."""
        return self.get(policy, identifier, bucket_key(policy.bucket, at))

    def apply(self, event: UsageEvent) -> List[CounterPolicy]:
        """Add the event's cost to every counter it applies to.

        Returns the policies that were incremented.
        """
        applied = []
        for policy in self.POLICIES:
            identifier = _identifier(event, policy.dimension)
            if policy.dimension != Dimension.TOTAL and not identifier:
                continue
            self.increment(
                policy, identifier, bucket_key(policy.bucket, event.timestamp), event.cost
            )
            applied.append(policy)
        return applied

    def reset(self, policy: CounterPolicy, identifier: Optional[str], at: datetime) -> None:
        self.store.delete(policy.dimension, identifier, bucket_key(policy.bucket, at))
