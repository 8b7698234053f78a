"""Bulk import of height → timestamp mappings from CSV.

The CSV has a header row and two columns: block height and unix timestamp
(seconds), e.g. the ``export-Height2Time.csv`` dumps of block explorers.
Rows are inserted in chunks with insert-if-absent semantics, so re-importing
the same file is harmless.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

from klangbaach.core.models import TimestampRecord, utc_from_unix
from klangbaach.storage.timestamps import DuckDBTimestampCache

log = logging.getLogger(__name__)

IMPORT_CHUNK_ROWS = 1_000


def read_height_timestamps(path: str | Path) -> list[TimestampRecord]:
    df = pd.read_csv(path, usecols=[0, 1], dtype="int64")
    df.columns = ["height", "timestamp"]
    if (df["height"] < 0).any() or (df["timestamp"] < 0).any():
        raise ValueError(f"{path}: heights and timestamps must be non-negative")
    return [
        TimestampRecord(height=int(h), timestamp=utc_from_unix(int(ts)))
        for h, ts in zip(df["height"], df["timestamp"])
    ]


async def import_height_timestamps(
    path: str | Path,
    cache: DuckDBTimestampCache,
    *,
    chunk_rows: int = IMPORT_CHUNK_ROWS,
) -> int:
    """Load a height,timestamp CSV into the cache; return the number of rows read."""
    records = read_height_timestamps(path)
    for i in range(0, len(records), chunk_rows):
        await cache.upsert_many(records[i : i + chunk_rows])
        log.debug("imported rows %d-%d", i, min(i + chunk_rows, len(records)) - 1)
    log.info("imported %d height timestamps from %s", len(records), path)
    return len(records)
