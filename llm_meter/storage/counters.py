"""
Counter stores for running cost totals.

Both stores expose the same atomic increment/get/delete contract. The
in-memory store serialises access with a lock; the Redis store relies on
INCRBYFLOAT, which the server applies atomically.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis

from llm_meter.errors import StorageUnavailableError
from .models import Dimension

CounterKey = Tuple[Dimension, Optional[str], str]


class CounterStore(ABC):
    """Key-value store of float counters with per-key expiry."""

    @abstractmethod
    def increment(
        self,
        dimension: Dimension,
        identifier: Optional[str],
        bucket: str,
        amount: float,
        ttl_seconds: int
    ) -> float:
        """Atomically add ``amount``, creating the counter at zero; return the new value."""

    @abstractmethod
    def get(self, dimension: Dimension, identifier: Optional[str], bucket: str) -> float:
        """Return the counter value, or 0.0 when it does not exist."""

    @abstractmethod
    def delete(self, dimension: Dimension, identifier: Optional[str], bucket: str) -> None:
        """Remove a counter if present."""


class InMemoryCounterStore(CounterStore):
    """Process-local counters. Expired keys are dropped lazily on access."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._values: Dict[CounterKey, float] = {}
        self._expires_at: Dict[CounterKey, float] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _expire_if_due(self, key: CounterKey) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def increment(
        self,
        dimension: Dimension,
        identifier: Optional[str],
        bucket: str,
        amount: float,
        ttl_seconds: int
    ) -> float:
        key = (dimension, identifier, bucket)
        with self._lock:
            self._expire_if_due(key)
            value = self._values.get(key, 0.0) + amount
            self._values[key] = value
            self._expires_at[key] = self._clock() + ttl_seconds
            return value

    def get(self, dimension: Dimension, identifier: Optional[str], bucket: str) -> float:
        key = (dimension, identifier, bucket)
        with self._lock:
            self._expire_if_due(key)
            return self._values.get(key, 0.0)

    def delete(self, dimension: Dimension, identifier: Optional[str], bucket: str) -> None:
        key = (dimension, identifier, bucket)
        with self._lock:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)


class RedisCounterStore(CounterStore):
    """Counters kept in Redis under ``{prefix}usage:{dimension}[:{id}]:{bucket}``.

    Redis errors, including socket timeouts, are raised as
    StorageUnavailableError.
    """

    def __init__(self, client: redis.Redis, key_prefix: str = ""):
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, timeout: float = 1.0, key_prefix: str = "") -> "RedisCounterStore":
        client = redis.Redis.from_url(
            url,
            socket_connect_timeout=timeout,
            socket_timeout=timeout,
            decode_responses=True,
        )
        return cls(client, key_prefix=key_prefix)

    def key_for(self, dimension: Dimension, identifier: Optional[str], bucket: str) -> str:
        if identifier is None:
            return f"{self.key_prefix}usage:{dimension.value}:{bucket}"
        return f"{self.key_prefix}usage:{dimension.value}:{identifier}:{bucket}"

    def increment(
        self,
        dimension: Dimension,
        identifier: Optional[str],
        bucket: str,
        amount: float,
        ttl_seconds: int
    ) -> float:
        key = self.key_for(dimension, identifier, bucket)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.incrbyfloat(key, amount)
            pipe.expire(key, ttl_seconds)
            new_value, _ = pipe.execute()
        except redis.RedisError as e:
            raise StorageUnavailableError(f"Counter increment failed for {key}: {e}") from e
        return float(new_value)

    def get(self, dimension: Dimension, identifier: Optional[str], bucket: str) -> float:
        key = self.key_for(dimension, identifier, bucket)
        try:
            value = self.client.get(key)
        except redis.RedisError as e:
            raise StorageUnavailableError(f"Counter read failed for {key}: {e}") from e
        return float(value) if value is not None else 0.0

    def delete(self, dimension: Dimension, identifier: Optional[str], bucket: str) -> None:
        key = self.key_for(dimension, identifier, bucket)
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            raise StorageUnavailableError(f"Counter delete failed for {key}: {e}") from e
