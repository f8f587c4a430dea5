"""
Metered OpenAI client wrapper.

Checks the budget before each call and records usage after it, without
modifying the response.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.meter import UsageMeter
from ..core.token_counter import TokenUsage
from ..errors import BudgetExceededError
from ..storage.models import Attribution, LLMProvider


class MeteredOpenAI:
    """Chat completions gated by a UsageMeter.

    Every call is admitted against the budgets first and recorded against
    the meter afterwards, tagged with this wrapper's attribution.
    """

    def __init__(
        self,
        meter: UsageMeter,
        model: str,
        attribution: Optional[Attribution] = None,
        client: Optional[OpenAI] = None
    ):
        """Initialize metered OpenAI client.

        Args:
            meter: Usage meter that admits and records calls (required)
            model: OpenAI model name (required)
            attribution: Customer/agent/campaign tags for every call
            client: Preconfigured OpenAI client (defaults to OpenAI())

        Raises:
            ValueError: If meter or model is missing/empty
        """
        if meter is None:
            raise ValueError("meter is required")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.meter = meter
        self.model = model
        self.attribution = attribution or Attribution()
        self.client = client or OpenAI()

    def chat(
        self,
        messages: List[Dict[str, str]],
        estimated_cost: float = 0.0,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Admit, call ``chat.completions.create``, then record the usage.

        ``estimated_cost`` is what admission checks against the budgets;
        the recorded cost comes from the token counts in the response,
        which is returned unchanged. Extra keyword arguments go to OpenAI.

        Raises:
            ValueError: If messages is empty
            BudgetExceededError: If a budget ceiling would be reached
            OpenAI API errors: Propagated without modification
            StorageUnavailableError, CounterSyncError: If recording fails
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        admission = self.meter.admit(estimated_cost, self.attribution)
        if not admission.allowed:
            raise BudgetExceededError(admission.reason)

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        self.meter.record_usage(
            LLMProvider.OPENAI,
            self.model,
            TokenUsage.from_response(usage),
            attribution=self.attribution,
            request_id=response.id
        )

        return response
