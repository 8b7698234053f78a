from unittest.mock import AsyncMock, patch

import pyarrow.parquet as pq
import pytest

from klangbaach.clients.influx import InfluxPointSink
from klangbaach.core.cancel import CancelToken
from klangbaach.core.config import InfluxConfig, MinerConfig, RetryPolicy
from klangbaach.core.errors import (
    FatalDecodeError,
    PipelineError,
    RetriesExhaustedError,
    RunCancelled,
    SinkError,
    SourceError,
    TransientSinkError,
    TransientSourceError,
)
from klangbaach.core.models import RawLogEntry, RunState
from klangbaach.core.tags import StaticTagsProvider, TokenMetadataTagsProvider
from klangbaach.decoding.registry import SYNC_T0, make_pair_registry
from klangbaach.orchestration.orchestrator import mine, mine_pair
from klangbaach.storage.timestamps import DuckDBTimestampCache

PAIR = "0xb4e16d0168e52d35cacd2c6185b44281ec28c9dc"
FAST = RetryPolicy(max_attempts=2, backoff_s=0.0)


def _config(**overrides) -> MinerConfig:
    values = dict(
        rpc_url="http://node",
        pair_address=PAIR,
        start_height=1000,
        end_height=1050,
        batch_size=100,
        cache_path=None,
        manifest=False,
        retry=FAST,
    )
    values.update(overrides)
    return MinerConfig(**values)


@pytest.fixture
def cache():
    c = DuckDBTimestampCache(":memory:")
    yield c
    c.close()


async def _run(config, log_source, headers, cache, sink, **kwargs):
    return await mine_pair(
        config=config,
        registry=make_pair_registry(),
        logs_provider=log_source,
        headers=headers,
        cache=cache,
        tags_provider=StaticTagsProvider("WETH/USDC", "eth"),
        sink=sink,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_end_to_end_single_batch(log_source, headers, cache, memory_sink, make_swap, make_sync, block_time):
    log_source.entries = [
        make_sync(1010, 100, 200, log_index=0),
        make_swap(1010, 5, 0, 0, 9, log_index=1),
        make_sync(1020, 10, 1, log_index=0),
        make_sync(1020, 10, 1, log_index=1),
        make_swap(1030, 0, 7, 3, 0),
        RawLogEntry(height=1040, topics=("0x" + "ee" * 32,), data=b""),
    ]
    await cache.upsert(1030, block_time(1030))

    out = await _run(_config(), log_source, headers, cache, memory_sink)

    log_source.get_logs.assert_awaited_once()
    assert log_source.get_logs.await_args.kwargs["from_block"] == 1000
    assert log_source.get_logs.await_args.kwargs["to_block"] == 1050

    points = memory_sink.flushed
    assert [p.timestamp for p in points] == [block_time(h) for h in (1010, 1020, 1030)]
    assert dict(points[0].fields) == {"reserve0": "100", "reserve1": "200", "volume0": "5", "volume1": "0"}
    assert points[1].fields["reserve0"] == "20"
    assert dict(points[2].fields) == {"reserve0": "0", "reserve1": "0", "volume0": "0", "volume1": "7"}
    assert all(p.measurement == "ethereum" and dict(p.tags) == {"pair": "WETH/USDC", "chain": "eth"} for p in points)

    fetched = [c.args[0] for c in headers.get_block_timestamp.await_args_list]
    assert sorted(fetched) == [1010, 1020]
    assert memory_sink.closed

    stats = out.stats
    assert (out.start_height, out.last_height) == (1000, 1050)
    assert stats.batches_done == 1
    assert stats.total_logs == 6
    assert stats.ignored_logs == 1
    assert stats.points_emitted == 3
    assert stats.timestamps_cached == 1
    assert stats.timestamps_fetched == 2
    assert stats.state is RunState.TERMINATED


@pytest.mark.asyncio
async def test_empty_range_emits_nothing(log_source, headers, cache, memory_sink):
    out = await _run(_config(), log_source, headers, cache, memory_sink)
    assert memory_sink.flushed == []
    assert out.stats.batches_done == 1
    headers.get_block_timestamp.assert_not_awaited()


@pytest.mark.parametrize("pipeline_writes", [False, True])
@pytest.mark.asyncio
async def test_points_ascending_across_batches(
    pipeline_writes, log_source, headers, cache, memory_sink, make_sync, make_swap
):
    log_source.entries = [make_sync(h, h, 1) for h in range(1000, 1051, 3)] + [make_swap(1048, 1, 1)]
    await _run(_config(batch_size=7, pipeline_writes=pipeline_writes), log_source, headers, cache, memory_sink)

    reserves = [int(p.fields["reserve0"]) for p in memory_sink.flushed]
    assert reserves == list(range(1000, 1051, 3))
    stamps = [p.timestamp for p in memory_sink.flushed]
    assert stamps == sorted(stamps) and len(set(stamps)) == len(stamps)
    assert log_source.get_logs.await_count == 8


@pytest.mark.asyncio
async def test_decode_failure_aborts_with_range(
    log_source, headers, cache, memory_sink, memory_manifest, make_sync, block_time
):
    log_source.entries = [
        make_sync(1005, 1, 1),
        make_sync(1012, 2, 2),
        RawLogEntry(height=1015, topics=(SYNC_T0,), data=(1).to_bytes(32, "big")),
    ]
    with pytest.raises(PipelineError) as exc:
        await _run(_config(batch_size=10), log_source, headers, cache, memory_sink, manifest_repo=memory_manifest)

    err = exc.value
    assert err.stage == "decoding"
    assert (err.from_block, err.to_block) == (1010, 1019)
    assert isinstance(err.cause, FatalDecodeError)
    assert err.cause.height == 1015

    # the completed batch is still flushed, the failed one emits nothing
    assert [p.timestamp for p in memory_sink.flushed] == [block_time(1005)]
    assert [(r.from_block, r.status) for r in memory_manifest.records] == [
        (1000, "started"),
        (1000, "done"),
        (1010, "started"),
        (1010, "failed"),
    ]


def _fail_nth_write(sink, n: int):
    write = sink.write
    calls = 0

    async def failing(points):
        nonlocal calls
        calls += 1
        if calls == n:
            raise SinkError("bucket not found")
        return await write(points)

    sink.write = failing
    return sink


@pytest.mark.parametrize("pipeline_writes", [False, True])
@pytest.mark.asyncio
async def test_sink_failure_aborts_at_writing_stage(
    pipeline_writes, log_source, headers, cache, memory_manifest, make_memory_sink, make_sync, block_time
):
    log_source.entries = [make_sync(h, 1, 1) for h in (1005, 1015, 1025)]
    sink = _fail_nth_write(make_memory_sink(), 2)

    with pytest.raises(PipelineError) as exc:
        await _run(
            _config(batch_size=10, end_height=1029, pipeline_writes=pipeline_writes),
            log_source,
            headers,
            cache,
            sink,
            manifest_repo=memory_manifest,
        )

    err = exc.value
    assert err.stage == "writing"
    assert (err.from_block, err.to_block) == (1010, 1019)
    assert isinstance(err.cause, SinkError)

    # completed points are not flushed again after the sink failed
    assert [p.timestamp for p in sink.flushed] == [block_time(1005)]
    assert not sink.closed

    last_status = {r.from_block: r.status for r in memory_manifest.records}
    expected = {1000: "done", 1010: "failed"}
    if pipeline_writes:
        # the batch queued behind the failed write never reaches the sink
        expected[1020] = "failed"
    assert last_status == expected


@pytest.mark.asyncio
async def test_header_failure_aborts_run(log_source, headers, cache, memory_sink, make_sync):
    log_source.entries = [make_sync(1010, 1, 1)]
    headers.get_block_timestamp.side_effect = SourceError("block 1010 not found")
    with pytest.raises(PipelineError) as exc:
        await _run(_config(), log_source, headers, cache, memory_sink)
    assert exc.value.stage == "resolving_timestamps"
    assert memory_sink.flushed == []


@pytest.mark.asyncio
async def test_cancellation_between_batches(log_source, headers, cache, memory_sink, make_sync):
    log_source.entries = [make_sync(h, 1, 1) for h in (1001, 1011, 1021)]
    cancel = CancelToken()

    def on_batch(a, b, stats):
        cancel.cancel()

    with pytest.raises(RunCancelled):
        await _run(_config(batch_size=10), log_source, headers, cache, memory_sink, cancel=cancel, on_batch=on_batch)

    assert log_source.get_logs.await_count == 1
    assert len(memory_sink.flushed) == 1
    assert memory_sink.closed


@pytest.mark.asyncio
async def test_done_is_journaled_only_after_flush(
    log_source, headers, cache, memory_manifest, make_memory_sink, make_sync
):
    sink = make_memory_sink(points_per_write=100)
    log_source.entries = [make_sync(h, 1, 1) for h in (1001, 1011)]
    journal_after_batch = []

    def on_batch(a, b, stats):
        journal_after_batch.append([r.status for r in memory_manifest.records])

    await _run(
        _config(batch_size=10, end_height=1019),
        log_source,
        headers,
        cache,
        sink,
        manifest_repo=memory_manifest,
        on_batch=on_batch,
    )

    assert journal_after_batch == [["started"], ["started", "started"]]
    assert [(r.from_block, r.status) for r in memory_manifest.records] == [
        (1000, "started"),
        (1010, "started"),
        (1000, "done"),
        (1010, "done"),
    ]
    assert [r.points for r in memory_manifest.records if r.status == "done"] == [1, 1]


@pytest.mark.asyncio
async def test_resume_skips_covered_batches(log_source, headers, cache, memory_sink, make_sync):
    log_source.entries = [make_sync(h, h, 1) for h in (1005, 1015, 1025)]
    out = await _run(
        _config(batch_size=10, end_height=1029),
        log_source,
        headers,
        cache,
        memory_sink,
        covered=[(990, 1019)],
    )
    assert out.stats.batches_skipped == 2
    assert log_source.get_logs.await_count == 1
    assert [p.fields["reserve0"] for p in memory_sink.flushed] == ["1025"]


@pytest.mark.asyncio
async def test_latest_end_height(log_source, headers, cache, memory_sink):
    log_source.latest_block.return_value = 1004
    out = await _run(_config(end_height="latest", batch_size=2), log_source, headers, cache, memory_sink)
    assert out.last_height == 1004
    assert out.stats.batches_done == 3


@pytest.mark.asyncio
async def test_latest_end_height_retries_rate_limit(log_source, headers, cache, memory_sink):
    log_source.latest_block = AsyncMock(side_effect=[TransientSourceError("HTTP 429"), 1004])
    out = await _run(_config(end_height="latest", batch_size=2), log_source, headers, cache, memory_sink)
    assert out.last_height == 1004
    assert log_source.latest_block.await_count == 2


@pytest.mark.asyncio
async def test_latest_end_height_gives_up_after_max_attempts(log_source, headers, cache, memory_sink):
    log_source.latest_block = AsyncMock(side_effect=TransientSourceError("HTTP 429"))
    with pytest.raises(RetriesExhaustedError, match="eth_blockNumber"):
        await _run(_config(end_height="latest"), log_source, headers, cache, memory_sink)
    assert log_source.latest_block.await_count == FAST.max_attempts
    log_source.get_logs.assert_not_awaited()


@pytest.mark.asyncio
async def test_token_metadata_tags_retry_rate_limit(log_source, headers, cache, memory_sink, make_sync):
    log_source.entries = [make_sync(1010, 1, 2)]
    reader = AsyncMock()
    reader.call_address = AsyncMock(side_effect=[TransientSourceError("RPC error: -32005 limit"), "0xt0", "0xt1"])
    reader.call_string = AsyncMock(side_effect=["USDC", "WETH"])
    reader.chain_id = AsyncMock(return_value=1)

    await mine_pair(
        config=_config(),
        registry=make_pair_registry(),
        logs_provider=log_source,
        headers=headers,
        cache=cache,
        tags_provider=TokenMetadataTagsProvider(reader, PAIR),
        sink=memory_sink,
    )
    assert dict(memory_sink.flushed[0].tags) == {"pair": "USDC/WETH", "chain": "eth"}
    assert reader.call_address.await_count == 3


@pytest.mark.asyncio
async def test_start_after_end_is_rejected(log_source, headers, cache, memory_sink):
    with pytest.raises(ValueError):
        await _run(_config(start_height=10, end_height=5), log_source, headers, cache, memory_sink)


@pytest.mark.asyncio
async def test_mine_writes_parquet_and_manifest(tmp_path, log_source, block_time, make_sync):
    log_source.entries = [make_sync(1010, 100, 200), make_sync(1020, 300, 400)]
    log_source.get_block_timestamp = AsyncMock(side_effect=block_time)
    config = _config(out_root=tmp_path, manifest=True, batch_size=20)

    with patch("klangbaach.orchestration.orchestrator.RPC", return_value=log_source):
        out = await mine(config)

    log_source.aclose.assert_awaited_once()
    shards = sorted((out.key_dir / "shards").glob("shard_*.parquet"))
    assert len(shards) == 1
    table = pq.read_table(shards[0])
    assert table.column("reserve0").to_pylist() == ["100", "300"]
    assert table.column("pair").to_pylist() == ["WETH/USDC", "WETH/USDC"]

    lines = out.manifest_path.read_text().splitlines()
    assert sum('"status":"done"' in line for line in lines) == 3

    # a resumed run skips every batch journaled as done
    log_source.get_logs.reset_mock()
    resumed = _config(out_root=tmp_path, manifest=True, batch_size=20, resume=True)
    with patch("klangbaach.orchestration.orchestrator.RPC", return_value=log_source), patch(
        "klangbaach.orchestration.orchestrator.time.time", return_value=2_000_000_000
    ):
        again = await mine(resumed)
    assert again.stats.batches_skipped == 3
    log_source.get_logs.assert_not_awaited()


@pytest.mark.asyncio
async def test_mine_refuses_unready_influx(tmp_path, log_source):
    config = _config(
        out_root=tmp_path,
        sink="influx",
        influx=InfluxConfig(url="http://influx:8086", token="t", org="o", bucket="b"),
    )
    with patch("klangbaach.orchestration.orchestrator.RPC", return_value=log_source), patch.object(
        InfluxPointSink, "ready", AsyncMock(return_value=False)
    ):
        with pytest.raises(SinkError, match="not ready"):
            await mine(config)

    log_source.get_logs.assert_not_awaited()
    log_source.aclose.assert_awaited_once()
