"""
Configuration management and loading.

Budget ceilings, storage settings and pricing overrides, loaded from YAML
with strict validation.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict

import yaml

from llm_meter.core.pricing import ModelPricing
from llm_meter.errors import ConfigurationError

DEFAULT_CONFIG_PATH = "llm_meter.yaml"


def _check_amount(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"'{path}' must be a number")
    if not math.isfinite(value):
        raise ConfigurationError(f"'{path}' must be a finite number")
    if value < 0:
        raise ConfigurationError(f"'{path}' cannot be negative")
    return float(value)


@dataclass(frozen=True)
class DailyLimits:
    """Daily spending ceilings."""
    total: float = 100.0
    per_customer: float = 5.0
    per_agent: float = 20.0

    def __post_init__(self):
        for name in ("total", "per_customer", "per_agent"):
            object.__setattr__(self, name, _check_amount(getattr(self, name), f"daily.{name}"))


@dataclass(frozen=True)
class MonthlyLimits:
    """Monthly spending ceilings."""
    total: float = 2000.0
    per_campaign: float = 500.0

    def __post_init__(self):
        for name in ("total", "per_campaign"):
            object.__setattr__(self, name, _check_amount(getattr(self, name), f"monthly.{name}"))


@dataclass(frozen=True)
class BudgetLimit:
    """Budget ceilings per scope and window. Read-only once built."""
    daily: DailyLimits = field(default_factory=DailyLimits)
    monthly: MonthlyLimits = field(default_factory=MonthlyLimits)


@dataclass(frozen=True)
class StorageConfig:
    """Where the ledger and counters live."""
    ledger: str = "sqlite"
    db_path: str = "llm_meter.db"
    counters: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = ""
    timeout_seconds: float = 1.0

    def __post_init__(self):
        if self.ledger not in ("sqlite", "memory"):
            raise ConfigurationError("'storage.ledger' must be one of: ['sqlite', 'memory']")
        if self.counters not in ("redis", "memory"):
            raise ConfigurationError("'storage.counters' must be one of: ['redis', 'memory']")
        if isinstance(self.timeout_seconds, bool) or not isinstance(self.timeout_seconds, (int, float)) \
                or self.timeout_seconds <= 0:
            raise ConfigurationError("'storage.timeout_seconds' must be > 0")


@dataclass(frozen=True)
class MeterConfig:
    """Complete metering configuration."""
    budget: BudgetLimit = field(default_factory=BudgetLimit)
    storage: StorageConfig = field(default_factory=StorageConfig)
    retention_days: int = 90
    pricing: Dict[str, ModelPricing] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.retention_days, bool) or not isinstance(self.retention_days, int) \
                or self.retention_days < 1:
            raise ConfigurationError("'retention_days' must be a positive integer")


def load_meter_config(path: str = DEFAULT_CONFIG_PATH) -> MeterConfig:
    """Load and validate metering configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If YAML is invalid or configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Meter config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {path}: {e}") from e

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    return parse_meter_config(raw_config)


def parse_meter_config(raw_config: Dict[str, Any]) -> MeterConfig:
    """Validate an already-parsed configuration mapping."""
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration must be a dictionary")

    _reject_unknown(raw_config, {'budget', 'storage', 'retention_days', 'pricing'}, "configuration")

    budget = _parse_budget(raw_config.get('budget', {}))
    storage = _parse_storage(raw_config.get('storage', {}))
    pricing = _parse_pricing(raw_config.get('pricing', {}))

    kwargs: Dict[str, Any] = {}
    if 'retention_days' in raw_config:
        kwargs['retention_days'] = raw_config['retention_days']

    return MeterConfig(budget=budget, storage=storage, pricing=pricing, **kwargs)


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {path}: {sorted(unknown_keys)}")


def _section(data: Any, path: str) -> Dict:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{path}' must be a dictionary")
    return data


def _parse_budget(data: Any) -> BudgetLimit:
    data = _section(data, "budget")
    _reject_unknown(data, {'daily', 'monthly'}, "budget")

    daily_data = _section(data.get('daily'), "budget.daily")
    _reject_unknown(daily_data, {'total', 'per_customer', 'per_agent'}, "budget.daily")

    monthly_data = _section(data.get('monthly'), "budget.monthly")
    _reject_unknown(monthly_data, {'total', 'per_campaign'}, "budget.monthly")

    return BudgetLimit(
        daily=DailyLimits(**daily_data),
        monthly=MonthlyLimits(**monthly_data)
    )


def _parse_storage(data: Any) -> StorageConfig:
    data = _section(data, "storage")
    _reject_unknown(
        data,
        {'ledger', 'db_path', 'counters', 'redis_url', 'key_prefix', 'timeout_seconds'},
        "storage"
    )
    for key in ('ledger', 'db_path', 'counters', 'redis_url', 'key_prefix'):
        if key in data and not isinstance(data[key], str):
            raise ConfigurationError(f"'storage.{key}' must be a string")
    return StorageConfig(**data)


def _parse_pricing(data: Any) -> Dict[str, ModelPricing]:
    """Parse per-model overrides of the built-in price table.

    Raises:
        ConfigurationError: If an entry is missing a rate or has a negative rate
    """
    data = _section(data, "pricing")
    pricing = {}
    for model, entry in data.items():
        path = f"pricing.{model}"
        entry = _section(entry, path)
        _reject_unknown(entry, {'input', 'output'}, path)
        if 'input' not in entry or 'output' not in entry:
            raise ConfigurationError(f"Missing required 'input' or 'output' in {path}")
        pricing[str(model)] = ModelPricing(
            input_per_million=_parse_rate(entry['input'], f"{path}.input"),
            output_per_million=_parse_rate(entry['output'], f"{path}.output")
        )
    return pricing


def _parse_rate(value: Any, path: str) -> Decimal:
    _check_amount(value, path)
    try:
        # str() keeps 0.075 from turning into a binary float expansion
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ConfigurationError(f"'{path}' is not a valid rate") from e
