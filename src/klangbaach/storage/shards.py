"""Parquet time-series store for data points.

Layout: ``<out_root>/<measurement>/<key>/shards/shard_00000.parquet``

Each shard holds at most `rows_per_shard` points in arrival (height) order.
Columns: ``measurement``, ``timestamp`` (UTC, seconds), one string column
per tag, one string column per encoded field.

The last shard stays "open" while it is not full: later flushes, even from
later runs, top it up by rewriting it atomically before a new shard starts.
"""

from __future__ import annotations

import asyncio
import glob
import logging
import os
from collections.abc import Sequence
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq

from klangbaach.core.config import RetryPolicy
from klangbaach.core.errors import RetriesExhaustedError, SinkError, TransientSinkError
from klangbaach.core.models import DataPoint
from klangbaach.core.points import FIELD_NAMES
from klangbaach.core.retry import with_retries

log = logging.getLogger(__name__)


class ShardsDir:
    def __init__(self, *, out_root: Path, measurement: str, key: str) -> None:
        self.key_dir = out_root / measurement / key
        self.shards_dir = self.key_dir / "shards"
        self.shards_dir.mkdir(exist_ok=True, parents=True)

    def shards_files_pattern(self) -> str:
        return (self.shards_dir / "shard_*.parquet").as_posix()

    def list_shards(self) -> list[str]:
        return sorted(glob.glob(self.shards_files_pattern()))

    def shard_path(self, idx: int) -> Path:
        return self.shards_dir / f"shard_{idx:05d}.parquet"


def points_to_table(points: Sequence[DataPoint]) -> pa.Table:
    """Convert points to an Arrow table with a deterministic column order."""
    tag_keys = sorted({k for p in points for k in p.tags})
    clash = set(tag_keys) & (set(FIELD_NAMES) | {"measurement", "timestamp"})
    if clash:
        raise ValueError(f"tag names clash with point columns: {sorted(clash)}")
    arrays: dict[str, pa.Array] = {
        "measurement": pa.array([p.measurement for p in points], type=pa.string()),
        "timestamp": pa.array([p.timestamp for p in points], type=pa.timestamp("s", tz="UTC")),
    }
    for k in tag_keys:
        arrays[k] = pa.array([p.tags.get(k) for p in points], type=pa.string())
    for k in FIELD_NAMES:
        arrays[k] = pa.array([p.fields.get(k) for p in points], type=pa.string())
    return pa.Table.from_pydict(arrays)


class ShardWriter:
    """Appends Arrow tables to rolling Parquet shards."""

    def __init__(self, shards_dir: ShardsDir, *, rows_per_shard: int = 100_000, codec: str = "zstd") -> None:
        if rows_per_shard < 1:
            raise ValueError("rows_per_shard must be >= 1")
        self.shards_dir = shards_dir
        self.rows_per_shard = rows_per_shard
        self.codec = codec

        # Partial-open shard state (if last shard < rows_per_shard)
        self._open_tbl: pa.Table | None = None
        self.shard_idx = self._init_from_existing()

    def _init_from_existing(self) -> int:
        """Load last shard (if any). If it's partial, keep it open for topping up."""
        existing = self.shards_dir.list_shards()
        if not existing:
            return 0

        last_path = existing[-1]
        last_idx = int(os.path.basename(last_path).split("_")[1].split(".")[0])
        last_rows = pq.ParquetFile(last_path).metadata.num_rows
        if 0 < last_rows < self.rows_per_shard:
            self._open_tbl = pq.read_table(last_path)
            return last_idx
        return last_idx + 1

    def _atomic_write(self, out_path: Path, table: pa.Table) -> Path:
        """Write Parquet atomically (tmp + replace)."""
        tmp = out_path.with_suffix(".tmp")
        pq.write_table(table, tmp, compression=self.codec)
        os.replace(tmp, out_path)
        log.info("wrote → %s (rows=%d, cols=%d)", out_path, len(table), len(table.schema))
        return out_path

    def append_chunk(self, table: pa.Table) -> tuple[Path, int]:
        """Write the head of `table` into the current shard.

        Returns the shard path and how many rows were taken. Writer state only
        advances after the shard has been replaced on disk, so a failed call
        can be repeated with the same table.
        """
        base = self._open_tbl
        room = self.rows_per_shard - (len(base) if base is not None else 0)
        chunk = table.slice(0, room)
        merged = chunk if base is None else pa.concat_tables([base, chunk], promote_options="default")
        path = self._atomic_write(self.shards_dir.shard_path(self.shard_idx), merged)
        if len(merged) >= self.rows_per_shard:
            self._open_tbl = None
            self.shard_idx += 1
        else:
            self._open_tbl = merged
        return path, len(chunk)


class ParquetPointSink:
    """Point sink buffering up to `points_per_write` points per Parquet flush."""

    def __init__(
        self,
        writer: ShardWriter,
        *,
        points_per_write: int = 5_000,
        retry: RetryPolicy = RetryPolicy(),
    ) -> None:
        self.writer = writer
        self.points_per_write = max(1, points_per_write)
        self.retry = retry
        self.buf: list[DataPoint] = []

    @property
    def buffered(self) -> int:
        return len(self.buf)

    def _write_chunk(self, table: pa.Table) -> tuple[Path, int]:
        try:
            return self.writer.append_chunk(table)
        except OSError as e:
            raise TransientSinkError(f"parquet write failed: {e}") from e
        except pa.ArrowException as e:
            raise SinkError(f"parquet write failed: {e}") from e

    async def _flush(self) -> int:
        if not self.buf:
            return 0
        table = points_to_table(self.buf)
        while len(table):
            try:
                path, taken = await with_retries(
                    lambda: asyncio.to_thread(self._write_chunk, table),
                    what="parquet flush",
                    policy=self.retry,
                    retry_on=(TransientSinkError,),
                )
            except RetriesExhaustedError as e:
                raise SinkError(str(e)) from e
            log.debug("wrote %d points to %s", taken, path.name)
            table = table.slice(taken)
        flushed = len(self.buf)
        self.buf.clear()
        return flushed

    async def write(self, points: Sequence[DataPoint]) -> int:
        self.buf.extend(points)
        if len(self.buf) >= self.points_per_write:
            return await self._flush()
        return 0

    async def close(self) -> None:
        await self._flush()
