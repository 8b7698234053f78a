"""Error taxonomy for the mining pipeline.

Adapters translate their transport failures into these types so the
pipeline can tell retryable conditions from fatal ones:

- `TransientSourceError`: rate limiting / temporary unavailability, retried.
- `SourceError`: a source answered with something we cannot use, fatal.
- `FatalDecodeError`: payload shape mismatch, fatal (ABI/config mismatch).
- `PersistenceConflict`: cache holds a different value for a height, fatal.
- `TransientCacheError`: the cache store failed on I/O, retried.
- `SinkError`: the time-series store rejected a write.
- `TransientSinkError`: the store was unavailable, the write is retried.
- `RunCancelled`: cooperative cancellation was observed.
- `PipelineError`: fatal error surfaced at the run boundary, with context.
"""

from __future__ import annotations

from datetime import datetime


class KlangbaachError(Exception):
    """Base class for all pipeline errors."""


class TransientSourceError(KlangbaachError):
    """Retryable failure from a log or header source."""


class RetriesExhaustedError(KlangbaachError):
    """A retryable operation kept failing until it ran out of attempts."""

    def __init__(self, what: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{what}: gave up after {attempts} attempts ({type(last_error).__name__}: {last_error})")
        self.what = what
        self.attempts = attempts
        self.last_error = last_error


class SourceError(KlangbaachError):
    """Non-retryable failure from a log or header source."""


class FatalDecodeError(KlangbaachError):
    """Raw payload does not match the event ABI."""

    def __init__(self, message: str, *, height: int, topic0: str) -> None:
        super().__init__(f"{message} (height={height}, topic0={topic0})")
        self.height = height
        self.topic0 = topic0


class PersistenceConflict(KlangbaachError):
    """The cache already holds a different timestamp for this height."""

    def __init__(self, height: int, existing: datetime, attempted: datetime) -> None:
        super().__init__(
            f"height {height} already cached as {existing.isoformat()}, refusing {attempted.isoformat()}"
        )
        self.height = height
        self.existing = existing
        self.attempted = attempted


class TransientCacheError(KlangbaachError):
    """Retryable failure of the timestamp cache store (I/O, write conflict)."""


class SinkError(KlangbaachError):
    """Failure to flush points to the time-series store."""


class TransientSinkError(SinkError):
    """Sink failure worth retrying (throttling, unavailable store, I/O error)."""


class RunCancelled(KlangbaachError):
    """Cancellation was requested while the run was in progress."""


class PipelineError(KlangbaachError):
    """Fatal error at the run boundary, annotated with stage and batch range."""

    def __init__(self, stage: str, from_block: int | None, to_block: int | None, cause: BaseException) -> None:
        where = f"[{from_block}, {to_block}]" if from_block is not None else "run"
        super().__init__(f"{stage} failed for {where}: {type(cause).__name__}: {cause}")
        self.stage = stage
        self.from_block = from_block
        self.to_block = to_block
        self.cause = cause
