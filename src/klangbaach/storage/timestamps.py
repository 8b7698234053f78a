"""Height → timestamp cache backed by DuckDB.

Schema
------
height_to_timestamp(height UBIGINT PRIMARY KEY, timestamp TIMESTAMP)

Timestamps are stored as naive UTC values and handed back timezone-aware.
Writes are insert-if-absent (`ON CONFLICT DO NOTHING`); a conflicting value
for an existing height raises `PersistenceConflict`.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

import duckdb

from klangbaach.core.errors import PersistenceConflict, TransientCacheError
from klangbaach.core.models import TimestampRecord, as_utc

_SCHEMA = """
CREATE TABLE IF NOT EXISTS height_to_timestamp (
    height UBIGINT PRIMARY KEY,
    timestamp TIMESTAMP NOT NULL
)
"""

_INSERT = "INSERT INTO height_to_timestamp (height, timestamp) VALUES (?, ?) ON CONFLICT (height) DO NOTHING"

T = TypeVar("T")


def _naive_utc(ts: datetime) -> datetime:
    return as_utc(ts).replace(tzinfo=None)


class DuckDBTimestampCache:
    """Persistent cache; calls are serialized behind an asyncio lock.

    Every worker-thread call runs on its own cursor, so a call abandoned by
    a timeout never shares a connection with the next one.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = str(path)
        self.con = duckdb.connect(self.path)
        self.con.execute(_SCHEMA)
        self._lock = asyncio.Lock()

    # ---------- sync primitives (run in a worker thread) ----------

    def _on_cursor(self, fn: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        cur = self.con.cursor()
        try:
            return fn(cur)
        except (duckdb.IOException, duckdb.TransactionException) as e:
            raise TransientCacheError(f"timestamp cache {self.path}: {e}") from e
        finally:
            cur.close()

    @staticmethod
    def _select(cur: duckdb.DuckDBPyConnection, height: int) -> datetime | None:
        row = cur.execute("SELECT timestamp FROM height_to_timestamp WHERE height = ?", [height]).fetchone()
        return None if row is None else row[0].replace(tzinfo=timezone.utc)

    def _get(self, height: int) -> datetime | None:
        return self._on_cursor(lambda cur: self._select(cur, height))

    def _upsert(self, height: int, timestamp: datetime) -> bool:
        def run(cur: duckdb.DuckDBPyConnection) -> bool:
            existing = self._select(cur, height)
            if existing is not None:
                if existing != as_utc(timestamp):
                    raise PersistenceConflict(height, existing, as_utc(timestamp))
                return False
            cur.execute(_INSERT, [height, _naive_utc(timestamp)])
            return True

        return self._on_cursor(run)

    def _upsert_many(self, records: list[TimestampRecord]) -> None:
        rows = [[r.height, _naive_utc(r.timestamp)] for r in records]
        self._on_cursor(lambda cur: cur.executemany(_INSERT, rows))

    # ---------- async API ----------

    async def get(self, height: int) -> datetime | None:
        async with self._lock:
            return await asyncio.to_thread(self._get, height)

    async def upsert(self, height: int, timestamp: datetime) -> bool:
        async with self._lock:
            return await asyncio.to_thread(self._upsert, height, timestamp)

    async def upsert_many(self, records: Iterable[TimestampRecord]) -> None:
        """Bulk insert-if-absent; existing heights are left untouched."""
        batch = list(records)
        if not batch:
            return
        async with self._lock:
            await asyncio.to_thread(self._upsert_many, batch)

    def count(self) -> int:
        return self._on_cursor(lambda cur: cur.execute("SELECT count(*) FROM height_to_timestamp").fetchone()[0])

    def close(self) -> None:
        self.con.close()


class NullTimestampCache:
    """No-op cache stage: every lookup misses and nothing is persisted."""

    async def get(self, height: int) -> datetime | None:
        return None

    async def upsert(self, height: int, timestamp: datetime) -> bool:
        return False
