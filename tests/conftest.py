from collections.abc import Sequence
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from klangbaach.core.models import DataPoint, RawLogEntry, utc_from_unix
from klangbaach.decoding.registry import SWAP_T0, SYNC_T0

PAIR = "0xb4e16d0168e52d35cacd2c6185b44281ec28c9dc"
SENDER_TOPIC = "0x" + "0" * 24 + "7a250d5630b4cf539739df2c5dacb4c659f2488d"
TO_TOPIC = "0x" + "0" * 24 + "d8da6bf26964af9d7eed9e03e53415d37aa96045"


def words(*values: int) -> bytes:
    return b"".join(v.to_bytes(32, "big") for v in values)


def header_time(height: int) -> datetime:
    return utc_from_unix(1_588_000_000 + 13 * height)


class MemorySink:
    """Point sink keeping flushed points in memory."""

    def __init__(self, points_per_write: int = 1) -> None:
        self.points_per_write = points_per_write
        self.buf: list[DataPoint] = []
        self.flushed: list[DataPoint] = []
        self.closed = False

    @property
    def buffered(self) -> int:
        return len(self.buf)

    async def write(self, points: Sequence[DataPoint]) -> int:
        self.buf.extend(points)
        if len(self.buf) >= self.points_per_write:
            return self._flush()
        return 0

    def _flush(self) -> int:
        n = len(self.buf)
        self.flushed.extend(self.buf)
        self.buf.clear()
        return n

    async def close(self) -> None:
        self._flush()
        self.closed = True


class MemoryManifest:
    def __init__(self) -> None:
        self.records = []

    async def append(self, record) -> None:
        self.records.append(record)


@pytest.fixture
def make_swap():
    def _make(height: int, a0in: int, a1in: int, a0out: int = 0, a1out: int = 0, log_index: int = 0) -> RawLogEntry:
        return RawLogEntry(
            height=height,
            topics=(SWAP_T0, SENDER_TOPIC, TO_TOPIC),
            data=words(a0in, a1in, a0out, a1out),
            address=PAIR,
            log_index=log_index,
        )

    return _make


@pytest.fixture
def make_sync():
    def _make(height: int, reserve0: int, reserve1: int, log_index: int = 0) -> RawLogEntry:
        return RawLogEntry(
            height=height,
            topics=(SYNC_T0,),
            data=words(reserve0, reserve1),
            address=PAIR,
            log_index=log_index,
        )

    return _make


@pytest.fixture
def mock_rpc():
    rpc = AsyncMock()
    rpc.get_logs = AsyncMock(return_value=[])
    rpc.latest_block = AsyncMock(return_value=100)
    rpc.aclose = AsyncMock()
    return rpc


@pytest.fixture
def log_source(mock_rpc):
    """`mock_rpc` serving `mock_rpc.entries` filtered by the requested range."""
    mock_rpc.entries = []

    async def get_logs(*, address, topic0s, from_block, to_block):
        return [e for e in mock_rpc.entries if from_block <= e.height <= to_block]

    mock_rpc.get_logs = AsyncMock(side_effect=get_logs)
    return mock_rpc


@pytest.fixture
def headers():
    src = AsyncMock()
    src.get_block_timestamp = AsyncMock(side_effect=header_time)
    return src


@pytest.fixture
def memory_sink():
    return MemorySink()


@pytest.fixture
def memory_manifest():
    return MemoryManifest()


@pytest.fixture
def abi_words():
    return words


@pytest.fixture
def block_time():
    return header_time


@pytest.fixture
def make_memory_sink():
    return MemorySink
