from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol, runtime_checkable

from klangbaach.core.models import BatchRecord, DataPoint, RawLogEntry


# ---------------------------------------------------------------------------
# ILogSource
# ---------------------------------------------------------------------------

@runtime_checkable
class ILogSource(Protocol):
    """
    Abstract provider of raw EVM logs.

    Domain expectations:
    - Entries are returned in chain order for the inclusive range.
    - Retryable conditions surface as `TransientSourceError`.
    """

    async def get_logs(
        self,
        *,
        address: str,
        topic0s: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> list[RawLogEntry]:
        ...

    async def latest_block(self) -> int:
        """Return the current chain head height."""
        ...


# ---------------------------------------------------------------------------
# IHeaderSource
# ---------------------------------------------------------------------------

@runtime_checkable
class IHeaderSource(Protocol):
    """Provider of block header timestamps (UTC)."""

    async def get_block_timestamp(self, height: int) -> datetime:
        ...


# ---------------------------------------------------------------------------
# ITimestampCache
# ---------------------------------------------------------------------------

@runtime_checkable
class ITimestampCache(Protocol):
    """
    Persistent height → timestamp mapping.

    Domain expectations:
    - Records are immutable once written.
    - `upsert` is insert-if-absent: it returns True when a row was written,
      False when the same value already existed, and raises
      `PersistenceConflict` when a different value exists.
    - Safe to call concurrently from several resolution tasks.
    """

    async def get(self, height: int) -> datetime | None:
        ...

    async def upsert(self, height: int, timestamp: datetime) -> bool:
        ...


# ---------------------------------------------------------------------------
# IPointSink
# ---------------------------------------------------------------------------

@runtime_checkable
class IPointSink(Protocol):
    """
    Time-series store for data points.

    Domain expectations:
    - Points arrive in ascending timestamp/height order and must be written
      in that order.
    - A failure raises `SinkError`; there is no partial-success reporting.
    """

    @property
    def buffered(self) -> int:
        """Points accepted by `write` but not yet flushed."""
        ...

    async def write(self, points: Sequence[DataPoint]) -> int:
        """Buffer points, flushing when the write batch is full; return how many were flushed."""
        ...

    async def close(self) -> None:
        """Flush buffered points and release resources."""
        ...


# ---------------------------------------------------------------------------
# ITagsProvider
# ---------------------------------------------------------------------------

@runtime_checkable
class ITagsProvider(Protocol):
    """Resolves the fixed tag set stamped on every point of a run."""

    async def tags(self) -> dict[str, str]:
        ...


# ---------------------------------------------------------------------------
# IManifestRepository
# ---------------------------------------------------------------------------

@runtime_checkable
class IManifestRepository(Protocol):
    """Append-only journal of batch executions (started/done/failed)."""

    async def append(self, record: BatchRecord) -> None:
        ...
