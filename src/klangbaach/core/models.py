"""Core data models for the pair miner.

This module defines:
- `RawLogEntry`: minimally normalized RPC log record consumed by the decoder.
- `SwapEvent` / `SyncEvent`: typed pair events.
- `Accumulator`: per-height mutable reserves / volumes.
- `TimestampRecord`: persisted height → UTC instant mapping.
- `DataPoint`: immutable time-series point handed to the sinks.
- `BatchRecord`: journal entry used for resumability.

Design notes
------------
- All amounts are Python ints (arbitrary precision, uint112/uint256 safe).
- Timestamps are timezone-aware `datetime` objects in UTC.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Literal, Mapping

Status = Literal["started", "done", "failed"]


# === RPC record ===


@dataclass(slots=True, frozen=True)
class RawLogEntry:
    """Raw log as fetched from RPC, minimally normalized."""

    height: int
    topics: tuple[str, ...]  # lowercased 0x...
    data: bytes
    address: str = ""  # lowercased 0x...
    tx_hash: str = ""
    log_index: int = 0

    @property
    def topic0(self) -> str | None:
        return self.topics[0] if self.topics else None


# === Pair events ===


@dataclass(slots=True, frozen=True)
class SwapEvent:
    amount0_in: int
    amount1_in: int
    amount0_out: int
    amount1_out: int


@dataclass(slots=True, frozen=True)
class SyncEvent:
    reserve0: int
    reserve1: int


PairEvent = SwapEvent | SyncEvent


# === Aggregation state ===


@dataclass(slots=True)
class Accumulator:
    """Reserves and volumes folded for a single block height."""

    reserve0: int = 0
    reserve1: int = 0
    volume0: int = 0
    volume1: int = 0

    def fields(self) -> dict[str, int]:
        return {
            "reserve0": self.reserve0,
            "reserve1": self.reserve1,
            "volume0": self.volume0,
            "volume1": self.volume1,
        }


@dataclass(slots=True, frozen=True)
class TimestampRecord:
    height: int
    timestamp: datetime


def utc_from_unix(seconds: int) -> datetime:
    """Return the UTC instant for a unix timestamp in seconds."""
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def as_utc(ts: datetime) -> datetime:
    """Normalize a datetime to UTC (naive values are taken as UTC)."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# === Time-series point ===


@dataclass(frozen=True)
class DataPoint:
    """Immutable time-series point.

    Identity for store-side deduplication is (measurement, tags, timestamp).
    Field values are already encoded as text.
    """

    measurement: str
    tags: Mapping[str, str]
    fields: Mapping[str, str]
    timestamp: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))


# === Run state ===


class RunState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DECODING = "decoding"
    AGGREGATING = "aggregating"
    RESOLVING_TIMESTAMPS = "resolving_timestamps"
    BUILDING = "building"
    WRITING = "writing"
    DRAINING = "draining"
    TERMINATED = "terminated"


# === Journal record ===


@dataclass(slots=True)
class BatchRecord:
    """A single batch execution record persisted to the live manifest."""

    from_block: int
    to_block: int
    status: Status
    attempts: int
    error: str | None
    logs: int  # raw logs fetched
    heights: int  # heights touched
    points: int  # points written
    updated_at: float
    ignored: int = 0  # logs with a topic we do not aggregate

    def to_json_line(self) -> str:
        """Serialize as a compact JSON line."""
        return json.dumps(asdict(self), separators=(",", ":")) + "\n"
