from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from klangbaach.core.aggregation import Aggregator
from klangbaach.core.cancel import CancelToken
from klangbaach.core.config import ReservePolicy
from klangbaach.core.errors import PipelineError, RunCancelled, SinkError
from klangbaach.core.interfaces import IManifestRepository, IPointSink
from klangbaach.core.models import BatchRecord, DataPoint, PairEvent, RawLogEntry, RunState
from klangbaach.core.points import PointBuilder
from klangbaach.core.timestamps import TimestampResolver
from klangbaach.decoding.decoder import decode_event
from klangbaach.decoding.specs import EventRegistry
from klangbaach.orchestration.scanner import RangeScanner
from klangbaach.orchestration.utils import is_covered

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


@dataclass(kw_only=True)
class RunStats:
    """
    Aggregated counters of a mining run.

    Mutated by the service as batches complete:
    - how many batches were processed / skipped as already covered
    - how many logs were fetched and how many were ignored
    - how many heights were touched and points emitted / flushed
    - how many timestamps came from the cache vs the header source
    """

    batches_done: int = 0
    batches_skipped: int = 0
    total_logs: int = 0
    ignored_logs: int = 0
    heights: int = 0
    points_emitted: int = 0
    points_flushed: int = 0
    timestamps_cached: int = 0
    timestamps_fetched: int = 0
    state: RunState = RunState.IDLE
    error: str | None = None
    elapsed_s: float = 0.0


# ---------------------------------------------------------------------------
# Batch record helpers
# ---------------------------------------------------------------------------


def _create_started_record(a: int, b: int) -> BatchRecord:
    """Create a 'started' batch record."""
    return BatchRecord(
        from_block=a,
        to_block=b,
        status="started",
        attempts=1,
        error=None,
        logs=0,
        heights=0,
        points=0,
        updated_at=time.time(),
    )


def _create_done_record(a: int, b: int, logs: int, heights: int, points: int, ignored: int) -> BatchRecord:
    """Create a 'done' batch record."""
    return BatchRecord(
        from_block=a,
        to_block=b,
        status="done",
        attempts=1,
        error=None,
        logs=logs,
        heights=heights,
        points=points,
        updated_at=time.time(),
        ignored=ignored,
    )


def _create_failed_record(a: int, b: int, error: str) -> BatchRecord:
    """Create a 'failed' batch record."""
    return BatchRecord(
        from_block=a,
        to_block=b,
        status="failed",
        attempts=1,
        error=error,
        logs=0,
        heights=0,
        points=0,
        updated_at=time.time(),
    )


@dataclass(slots=True)
class _Batch:
    """Working state of the batch being processed."""

    from_block: int
    to_block: int
    logs: int = 0
    ignored: int = 0
    heights: list[int] = field(default_factory=list)
    points: list[DataPoint] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Domain service – PairMinerService
# ---------------------------------------------------------------------------


class PairMinerService:
    """
    Runs the scan → decode → aggregate → resolve → build → write pipeline.

    Batches are processed strictly in sequence. With `pipeline_writes` the
    sink write of batch N overlaps with fetching batch N+1; the write of
    N+1 only starts once N's has completed, so points reach the sink in
    height order.

    A batch is journaled `done` only once all of its points have been
    flushed by the sink, so `resume` never skips a batch whose points were
    still sitting in a write buffer when the process died.
    """

    def __init__(
        self,
        *,
        scanner: RangeScanner,
        registry: EventRegistry,
        resolver: TimestampResolver,
        builder: PointBuilder,
        sink: IPointSink,
        manifest: IManifestRepository | None = None,
        reserve_policy: ReservePolicy = "additive",
        pipeline_writes: bool = False,
        covered: list[tuple[int, int]] | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self.scanner = scanner
        self.registry = registry
        self.resolver = resolver
        self.builder = builder
        self.sink = sink
        self.manifest = manifest
        self.reserve_policy = reserve_policy
        self.pipeline_writes = pipeline_writes
        self.covered = covered or []
        self.cancel = cancel or resolver.cancel
        self.stats = RunStats()
        self._pending: asyncio.Task[None] | None = None
        self._unflushed: list[BatchRecord] = []

    # ---------- state / journal ----------

    def _set_state(self, state: RunState) -> None:
        log.debug("state %s → %s", self.stats.state.value, state.value)
        self.stats.state = state

    async def _journal(self, record: BatchRecord) -> None:
        if self.manifest is not None:
            await self.manifest.append(record)

    async def _mark_flushed(self) -> None:
        """Journal every completed batch whose points the sink has flushed."""
        if self.sink.buffered:
            return
        done, self._unflushed = self._unflushed, []
        for rec in done:
            rec.updated_at = time.time()
            await self._journal(rec)

    # ---------- stages ----------

    def _decode(self, batch: _Batch, entries: Sequence[RawLogEntry]) -> list[tuple[int, PairEvent]]:
        events: list[tuple[int, PairEvent]] = []
        for entry in entries:
            ev = decode_event(entry, self.registry)
            if ev is None:
                batch.ignored += 1
                continue
            events.append((entry.height, ev))
        return events

    async def _write(self, batch: _Batch, record: BatchRecord) -> None:
        self._unflushed.append(record)
        try:
            self.stats.points_flushed += await self.sink.write(batch.points)
        except Exception as e:
            self._unflushed.remove(record)
            await self._journal(_create_failed_record(batch.from_block, batch.to_block, f"{type(e).__name__}: {e}"))
            raise PipelineError(RunState.WRITING.value, batch.from_block, batch.to_block, e) from e
        await self._mark_flushed()

    async def _await_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None:
            await pending

    async def _process_batch(self, a: int, b: int) -> None:
        batch = _Batch(a, b)
        await self._journal(_create_started_record(a, b))
        stage = RunState.SCANNING
        try:
            self._set_state(stage)
            entries = await self.scanner.fetch(a, b)
            batch.logs = len(entries)

            stage = RunState.DECODING
            self._set_state(stage)
            events = self._decode(batch, entries)

            stage = RunState.AGGREGATING
            self._set_state(stage)
            agg = Aggregator(self.reserve_policy).fold(events)
            batch.heights = agg.heights()

            stage = RunState.RESOLVING_TIMESTAMPS
            self._set_state(stage)
            fetched_before = self.resolver.fetched
            timestamps = await self.resolver.resolve(batch.heights)
            fetched = self.resolver.fetched - fetched_before
            self.stats.timestamps_fetched += fetched
            self.stats.timestamps_cached += len(batch.heights) - fetched

            stage = RunState.BUILDING
            self._set_state(stage)
            batch.points = self.builder.build(batch.heights, {h: agg.get(h) for h in batch.heights}, timestamps)
        except RunCancelled:
            raise
        except Exception as e:
            await self._journal(_create_failed_record(a, b, f"{type(e).__name__}: {e}"))
            raise PipelineError(stage.value, a, b, e) from e

        record = _create_done_record(a, b, batch.logs, len(batch.heights), len(batch.points), batch.ignored)
        self._set_state(RunState.WRITING)
        try:
            await self._await_pending()
        except PipelineError as e:
            await self._journal(_create_failed_record(a, b, f"previous write failed: {e.cause}"))
            raise
        if self.pipeline_writes:
            self._pending = asyncio.create_task(self._write(batch, record))
        else:
            await self._write(batch, record)

        self.stats.batches_done += 1
        self.stats.total_logs += batch.logs
        self.stats.ignored_logs += batch.ignored
        self.stats.heights += len(batch.heights)
        self.stats.points_emitted += len(batch.points)
        log.info(
            "batch [%d, %d]: logs=%d ignored=%d heights=%d points=%d",
            a, b, batch.logs, batch.ignored, len(batch.heights), len(batch.points),
        )

    # ---------- draining ----------

    async def _drain(self) -> None:
        await self._await_pending()
        try:
            await self.sink.close()
        except Exception as e:
            raise PipelineError(RunState.DRAINING.value, None, None, e) from e
        self.stats.points_flushed = self.stats.points_emitted
        await self._mark_flushed()

    async def _drain_after_failure(self, err: BaseException) -> None:
        """Flush the points of batches completed before `err`, unless the sink itself failed."""
        cause = err.cause if isinstance(err, PipelineError) else err
        if isinstance(cause, SinkError):
            return
        try:
            await self._drain()
        except PipelineError as e:
            log.error("could not flush completed batches after failure: %s", e)

    # ---------- run ----------

    async def run(self, on_batch: Callable[[int, int, RunStats], None] | None = None) -> RunStats:
        """
        Mine every batch of the scanner's range.

        Parameters
        ----------
        on_batch : callable, optional
            Called as ``on_batch(from_block, to_block, stats)`` after each
            batch is processed or skipped (progress reporting).

        Raises
        ------
        PipelineError
            A stage failed; carries the stage name and batch range.
        RunCancelled
            The cancel token was set; completed batches are still flushed.
        """
        started = time.perf_counter()
        try:
            for a, b in self.scanner.batches():
                self.cancel.raise_if_cancelled()
                if is_covered((a, b), self.covered):
                    self.stats.batches_skipped += 1
                    log.debug("batch [%d, %d] already covered, skipping", a, b)
                else:
                    await self._process_batch(a, b)
                if on_batch is not None:
                    on_batch(a, b, self.stats)
            self._set_state(RunState.DRAINING)
            await self._drain()
        except (PipelineError, RunCancelled) as e:
            self.stats.error = str(e)
            self._set_state(RunState.DRAINING)
            await self._drain_after_failure(e)
            raise
        finally:
            self.stats.elapsed_s = time.perf_counter() - started
            self._set_state(RunState.TERMINATED)
        return self.stats
