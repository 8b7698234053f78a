"""Storage components for the timestamp cache, batch journal and Parquet points.

This package provides:
- DuckDBTimestampCache / NullTimestampCache: height → timestamp persistence
- LiveManifest: append-only journal of batch status records
- ShardWriter / ParquetPointSink: rolling Parquet shards of data points
"""

from klangbaach.storage.manifest import LiveManifest
from klangbaach.storage.shards import ParquetPointSink, ShardWriter
from klangbaach.storage.timestamps import DuckDBTimestampCache, NullTimestampCache

__all__ = [
    "DuckDBTimestampCache",
    "LiveManifest",
    "NullTimestampCache",
    "ParquetPointSink",
    "ShardWriter",
]
