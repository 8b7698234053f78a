from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

FieldEncoding = Literal["decimal", "hex"]
ReservePolicy = Literal["additive", "last"]
TagsSource = Literal["static", "token-metadata"]
SinkKind = Literal["parquet", "influx"]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with linear backoff for retryable external calls."""

    max_attempts: int = 5
    backoff_s: float = 0.8
    retry_timeouts: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


@dataclass(frozen=True)
class InfluxConfig:
    """Connection settings for the InfluxDB v2 write API."""

    url: str
    token: str
    org: str
    bucket: str


@dataclass(frozen=True)
class MinerConfig:
    """Configuration for one mining run over a pair contract."""

    rpc_url: str
    pair_address: str
    start_height: int
    end_height: int | str = "latest"
    batch_size: int = 100
    measurement: str = "ethereum"
    pair_name: str = "WETH/USDC"
    chain_name: str | None = None
    field_encoding: FieldEncoding = "decimal"
    reserve_policy: ReservePolicy = "additive"
    tags_source: TagsSource = "static"
    # pair ABI JSON to build the event registry from; None uses the built-in signatures
    abi_path: Path | None = None
    # DuckDB file for the height → timestamp cache; None runs without a cache
    cache_path: Path | None = Path("./data/timestamps.duckdb")
    sink: SinkKind = "parquet"
    out_root: Path = Path("./data")
    points_per_shard: int = 100_000
    points_per_write: int = 5_000
    influx: InfluxConfig | None = None
    timestamp_concurrency: int = 16
    timeout_s: int = 20
    retry: RetryPolicy = RetryPolicy()
    pipeline_writes: bool = False
    manifest: bool = True
    resume: bool = False

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.timestamp_concurrency < 1:
            raise ValueError("timestamp_concurrency must be >= 1")
        if self.sink == "influx" and self.influx is None:
            raise ValueError("influx sink selected without influx settings")
