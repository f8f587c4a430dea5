"""
Token counts reported by a provider for one completed call.
"""

from dataclasses import dataclass
from typing import Any

from llm_meter.errors import InvalidUsageEventError


@dataclass(frozen=True)
class TokenUsage:
    """Prompt and completion token counts, as billed by the provider."""
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        for name in ("prompt_tokens", "completion_tokens"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidUsageEventError(f"{name} must be an integer")
            if value < 0:
                raise InvalidUsageEventError(f"{name} cannot be negative")

    @classmethod
    def from_response(cls, usage: Any) -> "TokenUsage":
        """Read counts from a provider ``usage`` object (OpenAI style)."""
        return cls(
            prompt_tokens=usage.prompt_tokens or 0,
            completion_tokens=usage.completion_tokens or 0
        )

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens
