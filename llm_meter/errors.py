"""
Exception hierarchy for LLM Meter.

Configuration and event validation errors are also ValueErrors so callers
that only catch ValueError keep working.
"""


class MeterError(Exception):
    """Base class for all metering errors."""


class ConfigurationError(MeterError, ValueError):
    """Raised when budget limits or storage settings are malformed."""


class InvalidUsageEventError(MeterError, ValueError):
    """Raised when a usage event fails boundary validation."""


class StorageUnavailableError(MeterError):
    """Raised when the ledger or counter store cannot be reached.

    Writes that fail this way were not applied and may be retried.
    """
    retryable = True


class CounterSyncError(MeterError):
    """Raised when a ledger write succeeded but the counter update failed.

    The event is durable; do not retry the record. Counters can be rebuilt
    from the ledger with ``UsageMeter.rebuild_counters``.
    """
    retryable = False

    def __init__(self, message: str, event=None):
        super().__init__(message)
        self.event = event


class BudgetExceededError(MeterError):
    """Raised by metered clients when admission is denied."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
