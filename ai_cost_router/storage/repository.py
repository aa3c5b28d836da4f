"""
Repository pattern for usage persistence.

Usage records are find-or-create/increment rows keyed by
(provider, tool_context, user_id). Every repository method is a
coroutine; the SQLite implementation pushes blocking work to a thread.
"""

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageEvent, UsageKey, UsageRecord


class UsageRepository(ABC):
    """Storage contract consumed by the cost ledger."""

    @abstractmethod
    async def increment(self, event: UsageEvent, cost: Decimal, now: datetime) -> UsageRecord:
        """Find or create the record for the event's key and add one request to it.

        Args:
            event: Usage of the completed request
            cost: Priced cost of the request
            now: Timestamp used as last_reset for a new record

        Returns:
            Snapshot of the record after the increment
        """

    @abstractmethod
    async def all_records(self) -> List[UsageRecord]:
        """Snapshot of every stored usage record."""

    @abstractmethod
    async def reset(self, provider: Optional[str], now: datetime) -> int:
        """Zero the records of one provider (or all of them when None).

        Returns:
            Number of records reset
        """


class InMemoryUsageRepository(UsageRepository):
    """Process-local repository, used by default and in tests."""

    def __init__(self):
        self._records: Dict[UsageKey, UsageRecord] = {}

    async def increment(self, event: UsageEvent, cost: Decimal, now: datetime) -> UsageRecord:
        record = self._records.get(event.key)
        if record is None:
            record = UsageRecord(
                provider=event.provider,
                tool_context=event.tool_context,
                user_id=event.user_id,
                last_reset=now,
            )
            self._records[event.key] = record
        record.add(event.input_tokens, event.output_tokens, cost)
        return dataclasses.replace(record)

    async def all_records(self) -> List[UsageRecord]:
        return [dataclasses.replace(record) for record in self._records.values()]

    async def reset(self, provider: Optional[str], now: datetime) -> int:
        count = 0
        for record in self._records.values():
            if provider is None or record.provider == provider:
                record.reset(now)
                count += 1
        return count


_SCHEMA = """
    CREATE TABLE IF NOT EXISTS usage_record (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        provider TEXT NOT NULL,
        tool_context TEXT NOT NULL,
        user_id TEXT NOT NULL DEFAULT '',
        requests INTEGER NOT NULL DEFAULT 0,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        total_cost TEXT NOT NULL DEFAULT '0',
        last_reset TEXT NOT NULL,
        UNIQUE (provider, tool_context, user_id)
    )
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_record table if it doesn't exist.

    user_id is stored as '' for anonymous usage so the UNIQUE constraint
    also holds for rows without a user. total_cost is stored as text to
    keep exact decimal sums.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(_SCHEMA)
    finally:
        conn.close()


def _row_to_record(row) -> UsageRecord:
    return UsageRecord(
        provider=row[0],
        tool_context=row[1],
        user_id=row[2] or None,
        requests=row[3],
        input_tokens=row[4],
        output_tokens=row[5],
        total_cost=Decimal(row[6]),
        last_reset=datetime.fromisoformat(row[7]),
    )


class SqliteUsageRepository(UsageRepository):
    """Repository persisting usage records to SQLite.

    Each increment runs inside a single BEGIN IMMEDIATE transaction, so
    concurrent writers (threads or processes) never lose an update.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._schema_ready = False

    def _ensure_schema(self) -> None:
        if not self._schema_ready:
            initialize_schema(self.db_path)
            self._schema_ready = True

    async def increment(self, event: UsageEvent, cost: Decimal, now: datetime) -> UsageRecord:
        return await asyncio.to_thread(self._increment_sync, event, cost, now)

    async def all_records(self) -> List[UsageRecord]:
        return await asyncio.to_thread(self._all_records_sync)

    async def reset(self, provider: Optional[str], now: datetime) -> int:
        return await asyncio.to_thread(self._reset_sync, provider, now)

    def _increment_sync(self, event: UsageEvent, cost: Decimal, now: datetime) -> UsageRecord:
        self._ensure_schema()
        user_id = event.user_id or ""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("""
                SELECT provider, tool_context, user_id, requests, input_tokens,
                       output_tokens, total_cost, last_reset
                FROM usage_record
                WHERE provider = ? AND tool_context = ? AND user_id = ?
            """, (event.provider, event.tool_context, user_id)).fetchone()

            if row is None:
                record = UsageRecord(
                    provider=event.provider,
                    tool_context=event.tool_context,
                    user_id=event.user_id,
                    last_reset=now,
                )
            else:
                record = _row_to_record(row)
            record.add(event.input_tokens, event.output_tokens, cost)

            conn.execute("""
                INSERT INTO usage_record
                (provider, tool_context, user_id, requests, input_tokens,
                 output_tokens, total_cost, last_reset)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (provider, tool_context, user_id) DO UPDATE SET
                    requests = excluded.requests,
                    input_tokens = excluded.input_tokens,
                    output_tokens = excluded.output_tokens,
                    total_cost = excluded.total_cost
            """, (
                record.provider,
                record.tool_context,
                user_id,
                record.requests,
                record.input_tokens,
                record.output_tokens,
                str(record.total_cost),
                record.last_reset.isoformat(),
            ))
            conn.execute("COMMIT")
            return record
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _all_records_sync(self) -> List[UsageRecord]:
        self._ensure_schema()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT provider, tool_context, user_id, requests, input_tokens,
                       output_tokens, total_cost, last_reset
                FROM usage_record
                ORDER BY provider, tool_context, user_id
            """)
            return [_row_to_record(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def _reset_sync(self, provider: Optional[str], now: datetime) -> int:
        self._ensure_schema()
        query = """
            UPDATE usage_record
            SET requests = 0, input_tokens = 0, output_tokens = 0,
                total_cost = '0', last_reset = ?
        """
        params = [now.isoformat()]
        if provider is not None:
            query += " WHERE provider = ?"
            params.append(provider)

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            return cursor.rowcount
        finally:
            conn.close()
