"""Run orchestration: resolve range → plan batches → mine → close resources.

This module provides two layers:

1) `mine_pair(...)`:
   - Application-layer use case.
   - Depends ONLY on interfaces (ILogSource, IHeaderSource, ITimestampCache,
     ITagsProvider, IPointSink, IManifestRepository).
   - Does NOT instantiate RPC, DuckDB, sinks, etc., nor close them.

2) `mine(...)`:
   - Wires concrete implementations (RPC, DuckDBTimestampCache, Parquet or
     InfluxDB sink, LiveManifest) from a `MinerConfig` for CLI / script use.
   - Calls `mine_pair(...)` under the hood and releases every resource.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from klangbaach.abi_events import make_pair_registry_from_abi
from klangbaach.clients.influx import InfluxPointSink
from klangbaach.clients.rpc import RPC
from klangbaach.core.cancel import CancelToken
from klangbaach.core.config import MinerConfig, RetryPolicy
from klangbaach.core.errors import SinkError
from klangbaach.core.interfaces import (
    IHeaderSource,
    ILogSource,
    IManifestRepository,
    IPointSink,
    ITagsProvider,
    ITimestampCache,
)
from klangbaach.core.points import PointBuilder
from klangbaach.core.retry import with_retries
from klangbaach.core.tags import StaticTagsProvider, TokenMetadataTagsProvider
from klangbaach.core.timestamps import TimestampResolver
from klangbaach.core.use_cases.mine_pair import PairMinerService, RunStats
from klangbaach.decoding.registry import make_pair_registry
from klangbaach.decoding.specs import EventRegistry, get_event_registry_topic0s
from klangbaach.orchestration.scanner import RangeScanner
from klangbaach.orchestration.utils import load_done_coverage, pair_key
from klangbaach.storage.manifest import LiveManifest
from klangbaach.storage.shards import ParquetPointSink, ShardsDir, ShardWriter
from klangbaach.storage.timestamps import DuckDBTimestampCache, NullTimestampCache

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MIN_RPC_CONNECTIONS = 32


async def _resolve_block_range(
    logs_provider: ILogSource,
    start_block: int | str,
    end_block: int | str,
    *,
    retry: RetryPolicy,
    timeout_s: float | None,
) -> tuple[int, int]:
    """Resolve start and end blocks, handling special values like 'latest'."""
    if isinstance(start_block, str) and start_block.lower() in ("earliest", "genesis"):
        start = 0
    else:
        start = int(start_block)

    if isinstance(end_block, str) and end_block.lower() == "latest":
        end = await with_retries(logs_provider.latest_block, what="eth_blockNumber", policy=retry, timeout_s=timeout_s)
    else:
        end = int(end_block)

    if start < 0:
        raise ValueError("start_block must be >= 0")
    if start > end:
        raise ValueError("start_block must be <= end_block")

    return start, end


# ---------------------------------------------------------------------------
# Output DTO
# ---------------------------------------------------------------------------


@dataclass(kw_only=True)
class MineOutput:
    """High-level output of a mining run."""

    stats: RunStats
    start_height: int
    last_height: int
    key_dir: Path | None = None
    manifest_path: Path | None = None


OnStart = Callable[[int, int, int], None]  # (start, last, batches)
OnBatch = Callable[[int, int, RunStats], None]


# ---------------------------------------------------------------------------
# 1) Application use case (no concrete instantiation)
# ---------------------------------------------------------------------------


async def mine_pair(
    *,
    config: MinerConfig,
    registry: EventRegistry,
    logs_provider: ILogSource,
    headers: IHeaderSource,
    cache: ITimestampCache,
    tags_provider: ITagsProvider,
    sink: IPointSink,
    manifest_repo: IManifestRepository | None = None,
    covered: list[tuple[int, int]] | None = None,
    cancel: CancelToken | None = None,
    on_start: OnStart | None = None,
    on_batch: OnBatch | None = None,
) -> MineOutput:
    """Mine `config.pair_address` over the configured range into `sink`.

    This function:
    - Resolves the block range using the injected logs provider.
    - Resolves the tag set once for the whole run.
    - Builds the scanner, resolver and point builder.
    - Invokes the domain service `PairMinerService`.
    """
    cancel = cancel or CancelToken()
    start, end = await _resolve_block_range(
        logs_provider, config.start_height, config.end_height, retry=config.retry, timeout_s=config.timeout_s
    )

    tags = await with_retries(tags_provider.tags, what="tag set", policy=config.retry, timeout_s=config.timeout_s)
    log.info("mining %s %s over [%d, %d] (tags=%s)", config.measurement, config.pair_address, start, end, tags)

    scanner = RangeScanner(
        logs_provider,
        address=config.pair_address,
        topic0s=get_event_registry_topic0s(registry),
        start_height=start,
        last_height=end,
        batch_size=config.batch_size,
        retry=config.retry,
        timeout_s=config.timeout_s,
    )
    resolver = TimestampResolver(
        headers=headers,
        cache=cache,
        concurrency=config.timestamp_concurrency,
        retry=config.retry,
        timeout_s=config.timeout_s,
        cancel=cancel,
    )
    builder = PointBuilder(measurement=config.measurement, tags=tags, encoding=config.field_encoding)

    if on_start is not None:
        on_start(start, end, len(scanner))

    service = PairMinerService(
        scanner=scanner,
        registry=registry,
        resolver=resolver,
        builder=builder,
        sink=sink,
        manifest=manifest_repo,
        reserve_policy=config.reserve_policy,
        pipeline_writes=config.pipeline_writes,
        covered=covered,
        cancel=cancel,
    )
    stats = await service.run(on_batch=on_batch)
    log.info(
        "done: batches=%d skipped=%d logs=%d heights=%d points=%d (timestamps cached=%d fetched=%d) in %.2fs",
        stats.batches_done,
        stats.batches_skipped,
        stats.total_logs,
        stats.heights,
        stats.points_emitted,
        stats.timestamps_cached,
        stats.timestamps_fetched,
        stats.elapsed_s,
    )
    return MineOutput(stats=stats, start_height=start, last_height=end)


# ---------------------------------------------------------------------------
# 2) Concrete wiring
# ---------------------------------------------------------------------------


def build_registry(config: MinerConfig) -> EventRegistry:
    if config.abi_path is not None:
        return make_pair_registry_from_abi(Path(config.abi_path))
    return make_pair_registry()


def build_tags_provider(config: MinerConfig, rpc: RPC) -> ITagsProvider:
    if config.tags_source == "token-metadata":
        return TokenMetadataTagsProvider(rpc, config.pair_address, chain=config.chain_name)
    return StaticTagsProvider(config.pair_name, config.chain_name)


async def mine(
    config: MinerConfig,
    *,
    cancel: CancelToken | None = None,
    on_start: OnStart | None = None,
    on_batch: OnBatch | None = None,
) -> MineOutput:
    """Convenience wrapper wiring concrete adapters from `config`.

    Output layout under ``out_root``::

        <measurement>/<pair address>/shards/shard_00000.parquet   (parquet sink)
        <measurement>/<pair address>/manifests/run_<unix>.jsonl   (journal)
    """
    registry = build_registry(config)
    key_dir = Path(config.out_root) / config.measurement / pair_key(config.pair_address)

    rpc = RPC(config.rpc_url, timeout_s=config.timeout_s, max_connections=max(MIN_RPC_CONNECTIONS, config.timestamp_concurrency))
    cache: DuckDBTimestampCache | NullTimestampCache = (
        DuckDBTimestampCache(config.cache_path) if config.cache_path is not None else NullTimestampCache()
    )
    sink: ParquetPointSink | InfluxPointSink
    if config.sink == "influx":
        if config.influx is None:
            raise ValueError("influx sink selected without influx settings")
        sink = InfluxPointSink(
            config.influx,
            points_per_write=config.points_per_write,
            retry=config.retry,
            timeout_s=config.timeout_s,
        )
    else:
        shards_dir = ShardsDir(
            out_root=Path(config.out_root),
            measurement=config.measurement,
            key=pair_key(config.pair_address),
        )
        writer = ShardWriter(shards_dir, rows_per_shard=config.points_per_shard)
        sink = ParquetPointSink(writer, points_per_write=config.points_per_write, retry=config.retry)

    manifests_dir = key_dir / "manifests"
    manifest_path: Path | None = None
    manifest_repo: LiveManifest | None = None
    covered: list[tuple[int, int]] = []
    if config.manifest:
        run_id = f"run_{int(time.time())}.jsonl"
        manifest_path = manifests_dir / run_id
        if config.resume:
            covered = load_done_coverage(manifests_dir, exclude_basename=run_id)
            log.info("resume: %d covered interval(s) from earlier runs", len(covered))
        manifest_repo = LiveManifest(manifest_path)

    try:
        if isinstance(sink, InfluxPointSink) and not await sink.ready():
            raise SinkError(f"InfluxDB at {sink.config.url} is not ready")
        out = await mine_pair(
            config=config,
            registry=registry,
            logs_provider=rpc,
            headers=rpc,
            cache=cache,
            tags_provider=build_tags_provider(config, rpc),
            sink=sink,
            manifest_repo=manifest_repo,
            covered=covered,
            cancel=cancel,
            on_start=on_start,
            on_batch=on_batch,
        )
    finally:
        if isinstance(sink, InfluxPointSink):
            await sink.aclose()
        if isinstance(cache, DuckDBTimestampCache):
            cache.close()
        await rpc.aclose()

    out.key_dir = key_dir
    out.manifest_path = manifest_path
    return out
