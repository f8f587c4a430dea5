"""
Usage ledger repositories.

Append-only storage for usage events, with an in-memory backend for
single-process use and a SQLite backend for durable accounting.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from llm_meter.errors import StorageUnavailableError
from .models import LLMProvider, UsageEvent, UsageFilters, ensure_utc

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "llm_meter.db"

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Open the ledger database, waiting up to ``timeout`` seconds on a locked file."""
    return sqlite3.connect(db_path, timeout=timeout)


_EVENT_COLUMNS = """
    timestamp, provider, model, prompt_tokens, completion_tokens,
    total_tokens, cost, customer_id, agent_id, campaign_id, request_id
"""


def _to_db_timestamp(ts: datetime) -> str:
    # Fixed width so that string comparison matches time ordering
    return ensure_utc(ts).strftime(_TIMESTAMP_FORMAT)


def _from_db_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class UsageLedger(ABC):
    """Append-only record of every metered event."""

    @abstractmethod
    def append(self, event: UsageEvent) -> None:
        """Store a single event."""

    @abstractmethod
    def export(
        self,
        start: datetime,
        end: datetime,
        filters: Optional[UsageFilters] = None
    ) -> List[UsageEvent]:
        """Return events with ``start <= timestamp <= end`` in insertion order."""

    @abstractmethod
    def trim(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Remove events older than ``now - retention_days``; return the count removed."""

    @staticmethod
    def _cutoff(retention_days: int, now: Optional[datetime]) -> datetime:
        if retention_days < 0:
            raise ValueError("retention_days cannot be negative")
        now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
        return now - timedelta(days=retention_days)


class InMemoryUsageLedger(UsageLedger):
    """Process-local ledger. Cannot fail on write; lost on restart."""

    def __init__(self):
        self._events: List[UsageEvent] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._events)

    def append(self, event: UsageEvent) -> None:
        with self._lock:
            self._events.append(event)

    def export(
        self,
        start: datetime,
        end: datetime,
        filters: Optional[UsageFilters] = None
    ) -> List[UsageEvent]:
        start, end = ensure_utc(start), ensure_utc(end)
        filters = filters or UsageFilters()
        with self._lock:
            snapshot = list(self._events)
        return [
            e for e in snapshot
            if start <= e.timestamp <= end and filters.matches(e)
        ]

    def trim(self, retention_days: int, now: Optional[datetime] = None) -> int:
        cutoff = self._cutoff(retention_days, now)
        with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.timestamp >= cutoff]
            removed = before - len(self._events)
        logger.info("Cleared %d old usage records", removed)
        return removed


class SQLiteUsageLedger(UsageLedger):
    """Durable ledger stored in the ``llm_usage_logs`` table.

    Every call opens its own connection, so one instance can be shared
    across threads. Database errors are raised as StorageUnavailableError.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        timeout: float = 5.0,
        create_schema: bool = True
    ):
        """Initialize the ledger with a database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for a locked database
            create_schema: Create the table on first use if missing
        """
        self.db_path = db_path
        self.timeout = timeout
        if create_schema:
            initialize_schema(db_path, timeout=timeout)

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Cannot open usage ledger {self.db_path}: {e}") from e

    def append(self, event: UsageEvent) -> None:
        conn = self._connect()
        try:
            conn.execute(
                f"INSERT INTO llm_usage_logs ({_EVENT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _event_to_row(event)
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageUnavailableError(f"Failed to append usage event: {e}") from e
        finally:
            conn.close()

    def append_many(self, events: List[UsageEvent]) -> None:
        """Insert multiple events atomically in a single transaction."""
        if not events:
            return

        conn = self._connect()
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.executemany(
                f"INSERT INTO llm_usage_logs ({_EVENT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [_event_to_row(e) for e in events]
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageUnavailableError(f"Failed to append usage events: {e}") from e
        finally:
            conn.close()

    def export(
        self,
        start: datetime,
        end: datetime,
        filters: Optional[UsageFilters] = None
    ) -> List[UsageEvent]:
        query = f"SELECT {_EVENT_COLUMNS} FROM llm_usage_logs WHERE timestamp >= ? AND timestamp <= ?"
        params = [_to_db_timestamp(start), _to_db_timestamp(end)]

        if filters:
            if filters.provider is not None:
                query += " AND provider = ?"
                params.append(filters.provider.value)
            if filters.customer_id is not None:
                query += " AND customer_id = ?"
                params.append(filters.customer_id)
            if filters.agent_id is not None:
                query += " AND agent_id = ?"
                params.append(filters.agent_id)
            if filters.campaign_id is not None:
                query += " AND campaign_id = ?"
                params.append(filters.campaign_id)

        query += " ORDER BY id ASC"

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Failed to export usage events: {e}") from e
        finally:
            conn.close()
        return [_row_to_event(row) for row in rows]

    def trim(self, retention_days: int, now: Optional[datetime] = None) -> int:
        cutoff = self._cutoff(retention_days, now)
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM llm_usage_logs WHERE timestamp < ?",
                (_to_db_timestamp(cutoff),)
            )
            conn.commit()
            removed = cursor.rowcount
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageUnavailableError(f"Failed to trim usage ledger: {e}") from e
        finally:
            conn.close()
        logger.info("Cleared %d old usage records", removed)
        return removed


def _event_to_row(event: UsageEvent) -> tuple:
    return (
        _to_db_timestamp(event.timestamp),
        event.provider.value,
        event.model,
        event.prompt_tokens,
        event.completion_tokens,
        event.total_tokens,
        event.cost,
        event.customer_id,
        event.agent_id,
        event.campaign_id,
        event.request_id
    )


def _row_to_event(row: tuple) -> UsageEvent:
    return UsageEvent(
        timestamp=_from_db_timestamp(row[0]),
        provider=LLMProvider(row[1]),
        model=row[2],
        prompt_tokens=row[3],
        completion_tokens=row[4],
        total_tokens=row[5],
        cost=row[6],
        customer_id=row[7],
        agent_id=row[8],
        campaign_id=row[9],
        request_id=row[10]
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> None:
    """Create the llm_usage_logs table and its indexes if they don't exist.

    This creates an append-only ledger for immutable usage events.
    Rows are only ever removed by retention trimming.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a locked database
    """
    try:
        conn = get_connection(db_path, timeout=timeout)
    except sqlite3.Error as e:
        raise StorageUnavailableError(f"Cannot open usage ledger {db_path}: {e}") from e
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS llm_usage_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                cost REAL NOT NULL,
                customer_id TEXT,
                agent_id TEXT,
                campaign_id TEXT,
                request_id TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_llm_usage_timestamp ON llm_usage_logs(timestamp);
            CREATE INDEX IF NOT EXISTS idx_llm_usage_customer ON llm_usage_logs(customer_id);
            CREATE INDEX IF NOT EXISTS idx_llm_usage_agent ON llm_usage_logs(agent_id);
            CREATE INDEX IF NOT EXISTS idx_llm_usage_campaign ON llm_usage_logs(campaign_id);
            CREATE INDEX IF NOT EXISTS idx_llm_usage_provider ON llm_usage_logs(provider, model);
        """)
        conn.commit()
    except sqlite3.Error as e:
        raise StorageUnavailableError(f"Cannot create usage ledger schema in {db_path}: {e}") from e
    finally:
        conn.close()
