"""
Data models for storage layer.

Defines the immutable usage event recorded in the ledger.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from llm_meter.errors import InvalidUsageEventError


class LLMProvider(Enum):
    """Metered LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OLLAMA = "ollama"


class Dimension(Enum):
    """Attribution dimension of an aggregate counter."""
    TOTAL = "total"
    CUSTOMER = "customer"
    AGENT = "agent"
    CAMPAIGN = "campaign"


@dataclass(frozen=True)
class Attribution:
    """Optional billing tags attached to a usage event."""
    customer_id: Optional[str] = None
    agent_id: Optional[str] = None
    campaign_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.customer_id or self.agent_id or self.campaign_id)


@dataclass(frozen=True)
class UsageFilters:
    """Optional filters for ledger exports and metric queries."""
    provider: Optional[LLMProvider] = None
    customer_id: Optional[str] = None
    agent_id: Optional[str] = None
    campaign_id: Optional[str] = None

    def matches(self, event: "UsageEvent") -> bool:
        if self.provider is not None and event.provider != self.provider:
            return False
        if self.customer_id is not None and event.customer_id != self.customer_id:
            return False
        if self.agent_id is not None and event.agent_id != self.agent_id:
            return False
        if self.campaign_id is not None and event.campaign_id != self.campaign_id:
            return False
        return True


def ensure_utc(ts: datetime) -> datetime:
    """Return ``ts`` as an aware UTC datetime; naive values are taken as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one metered LLM call.

    Append-only events that create an auditable ledger of AI costs.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    provider: LLMProvider
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    customer_id: Optional[str] = None
    agent_id: Optional[str] = None
    campaign_id: Optional[str] = None
    request_id: Optional[str] = None

    def __post_init__(self):
        """Reject malformed events before they reach the ledger."""
        if not isinstance(self.timestamp, datetime):
            raise InvalidUsageEventError("timestamp must be a datetime")
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

        if not isinstance(self.provider, LLMProvider):
            try:
                object.__setattr__(self, "provider", LLMProvider(self.provider))
            except ValueError:
                valid = [p.value for p in LLMProvider]
                raise InvalidUsageEventError(
                    f"provider must be one of: {valid}"
                ) from None

        if not self.model:
            raise InvalidUsageEventError("model is required and cannot be empty")

        for name in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidUsageEventError(f"{name} must be an integer")
            if value < 0:
                raise InvalidUsageEventError(f"{name} cannot be negative")

        if self.total_tokens != self.prompt_tokens + self.completion_tokens:
            raise InvalidUsageEventError(
                "total_tokens must equal prompt_tokens + completion_tokens"
            )

        if isinstance(self.cost, bool) or not isinstance(self.cost, (int, float)):
            raise InvalidUsageEventError("cost must be a number")
        if not math.isfinite(self.cost):
            raise InvalidUsageEventError("cost must be a finite number")
        if self.cost < 0:
            raise InvalidUsageEventError("cost cannot be negative")
        object.__setattr__(self, "cost", float(self.cost))

    @property
    def attribution(self) -> Attribution:
        return Attribution(
            customer_id=self.customer_id,
            agent_id=self.agent_id,
            campaign_id=self.campaign_id,
        )
