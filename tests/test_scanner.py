import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from klangbaach.core.config import RetryPolicy
from klangbaach.core.errors import RetriesExhaustedError, SourceError, TransientSourceError
from klangbaach.orchestration.scanner import RangeScanner
from klangbaach.core.models import BatchRecord
from klangbaach.orchestration.utils import is_covered, iter_chunks, load_done_coverage, merge_intervals
from klangbaach.storage.manifest import LiveManifest

FAST = RetryPolicy(max_attempts=3, backoff_s=0.0)


def test_single_batch_when_range_is_smaller_than_batch():
    assert list(iter_chunks(1000, 1050, 100)) == [(1000, 1050)]


def test_empty_when_start_after_last():
    assert list(iter_chunks(11, 10, 5)) == []


def test_batch_size_must_be_positive():
    with pytest.raises(ValueError):
        list(iter_chunks(0, 10, 0))
    with pytest.raises(ValueError):
        RangeScanner(AsyncMock(), address="0x1", topic0s=[], start_height=0, last_height=1, batch_size=0)


def test_batches_cover_range_exactly():
    rng = random.Random(7)
    for _ in range(200):
        start = rng.randrange(0, 10_000)
        last = start + rng.randrange(0, 2_000)
        size = rng.randrange(1, 300)
        batches = list(iter_chunks(start, last, size))
        assert batches[0][0] == start
        assert batches[-1][1] == last
        for (a, b), (c, _) in zip(batches, batches[1:]):
            assert c == b + 1
        assert all(b - a + 1 <= size for a, b in batches)
        assert sum(b - a + 1 for a, b in batches) == last - start + 1


def test_batches_are_restartable():
    scanner = RangeScanner(AsyncMock(), address="0x1", topic0s=[], start_height=0, last_height=9, batch_size=4)
    assert list(scanner.batches()) == list(scanner.batches()) == [(0, 3), (4, 7), (8, 9)]
    assert len(scanner) == 3


@pytest.mark.asyncio
async def test_fetch_passes_filter(mock_rpc):
    scanner = RangeScanner(mock_rpc, address="0xpair", topic0s=["0xa", "0xb"], start_height=0, last_height=9, batch_size=5)
    await scanner.fetch(0, 4)
    mock_rpc.get_logs.assert_awaited_once_with(address="0xpair", topic0s=["0xa", "0xb"], from_block=0, to_block=4)


@pytest.mark.asyncio
async def test_fetch_retries_transient_errors(mock_rpc):
    mock_rpc.get_logs.side_effect = [TransientSourceError("429"), TransientSourceError("503"), []]
    scanner = RangeScanner(mock_rpc, address="0xpair", topic0s=[], start_height=0, last_height=9, batch_size=5, retry=FAST)
    assert await scanner.fetch(5, 9) == []
    assert mock_rpc.get_logs.await_count == 3


@pytest.mark.asyncio
async def test_fetch_gives_up_after_max_attempts(mock_rpc):
    mock_rpc.get_logs.side_effect = TransientSourceError("429")
    scanner = RangeScanner(mock_rpc, address="0xpair", topic0s=[], start_height=0, last_height=9, batch_size=5, retry=FAST)
    with pytest.raises(RetriesExhaustedError) as exc:
        await scanner.fetch(0, 4)
    assert exc.value.attempts == 3
    assert "[0, 4]" in str(exc.value)


@pytest.mark.asyncio
async def test_fetch_does_not_retry_fatal_errors(mock_rpc):
    mock_rpc.get_logs.side_effect = SourceError("bad filter")
    scanner = RangeScanner(mock_rpc, address="0xpair", topic0s=[], start_height=0, last_height=9, batch_size=5, retry=FAST)
    with pytest.raises(SourceError):
        await scanner.fetch(0, 4)
    assert mock_rpc.get_logs.await_count == 1


@pytest.mark.asyncio
async def test_fetch_timeout_is_fatal_when_not_retryable(mock_rpc):
    async def slow(**kwargs):
        await asyncio.sleep(1)
        return []

    mock_rpc.get_logs.side_effect = slow
    policy = RetryPolicy(max_attempts=3, backoff_s=0.0, retry_timeouts=False)
    scanner = RangeScanner(
        mock_rpc, address="0xpair", topic0s=[], start_height=0, last_height=9, batch_size=5, retry=policy, timeout_s=0.01
    )
    with pytest.raises(SourceError, match="timed out"):
        await scanner.fetch(0, 4)
    assert mock_rpc.get_logs.await_count == 1


def test_merge_and_cover():
    merged = merge_intervals([(10, 19), (0, 9), (30, 40), (35, 50)])
    assert merged == [(0, 19), (30, 50)]
    assert is_covered((5, 15), merged)
    assert not is_covered((15, 35), merged)


def test_load_done_coverage(tmp_path):
    (tmp_path / "run_1.jsonl").write_text(
        '{"from_block":0,"to_block":9,"status":"done"}\n'
        '{"from_block":10,"to_block":19,"status":"failed"}\n'
        '{"from_block":20,"to_block":29,"status":"done"}\n'
        '{"from_block":30,"to_bl'
    )
    (tmp_path / "run_2.jsonl").write_text('{"from_block":10,"to_block":19,"status":"done"}\n')
    assert load_done_coverage(tmp_path) == [(0, 29)]
    assert load_done_coverage(tmp_path, exclude_basename="run_2.jsonl") == [(0, 9), (20, 29)]
    assert load_done_coverage(tmp_path / "missing") == []


def _record(a: int, b: int, status: str, error: str | None = None) -> BatchRecord:
    return BatchRecord(
        from_block=a, to_block=b, status=status, attempts=1, error=error,
        logs=0, heights=0, points=0, updated_at=0.0,
    )


@pytest.mark.asyncio
async def test_live_manifest_journals_and_feeds_coverage(tmp_path):
    manifest = LiveManifest(tmp_path / "manifests" / "run_1.jsonl")
    await manifest.append(_record(0, 9, "started"))
    await manifest.append(_record(0, 9, "done"))
    await manifest.append(_record(10, 19, "started"))
    await manifest.append(_record(10, 19, "failed", error="boom"))

    assert [(r["from_block"], r["status"]) for r in manifest.records()] == [
        (0, "started"),
        (0, "done"),
        (10, "started"),
        (10, "failed"),
    ]
    assert manifest.written == {"started": 2, "done": 1, "failed": 1}
    assert load_done_coverage(tmp_path / "manifests") == [(0, 9)]


@pytest.mark.asyncio
async def test_live_manifest_drops_torn_line(tmp_path):
    manifest = LiveManifest(tmp_path / "run_1.jsonl")
    await manifest.append(_record(0, 9, "done"))
    with manifest.path.open("a") as f:
        f.write('{"from_block": 10, "to_')
    assert [r["from_block"] for r in manifest.records()] == [0]
