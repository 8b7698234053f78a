from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence

from klangbaach.core.config import RetryPolicy
from klangbaach.core.interfaces import ILogSource
from klangbaach.core.models import RawLogEntry
from klangbaach.core.retry import with_retries
from klangbaach.orchestration.utils import iter_chunks

log = logging.getLogger(__name__)


class RangeScanner:
    """Partitions [start_height, last_height] into batches and fetches their logs.

    Parameters
    ----------
    logs : ILogSource
        Provider of raw logs.
    address : str
        Pair contract address.
    topic0s : Sequence[str]
        Topics of interest (Swap and Sync).
    start_height, last_height : int
        Inclusive height interval of the run.
    batch_size : int
        Heights per batch; must be >= 1.
    retry : RetryPolicy
        Backoff policy for retryable source failures.
    timeout_s : float | None
        Per-request timeout.
    """

    def __init__(
        self,
        logs: ILogSource,
        *,
        address: str,
        topic0s: Sequence[str],
        start_height: int,
        last_height: int,
        batch_size: int,
        retry: RetryPolicy = RetryPolicy(),
        timeout_s: float | None = 20,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch size must be >= 1")
        self.logs = logs
        self.address = address
        self.topic0s = list(topic0s)
        self.start_height = start_height
        self.last_height = last_height
        self.batch_size = batch_size
        self.retry = retry
        self.timeout_s = timeout_s

    def batches(self) -> Iterator[tuple[int, int]]:
        return iter_chunks(self.start_height, self.last_height, self.batch_size)

    def __len__(self) -> int:
        if self.start_height > self.last_height:
            return 0
        return (self.last_height - self.start_height) // self.batch_size + 1

    async def fetch(self, from_block: int, to_block: int) -> list[RawLogEntry]:
        """Raw logs of one batch, retried on transient source failures."""
        entries = await with_retries(
            lambda: self.logs.get_logs(
                address=self.address,
                topic0s=self.topic0s,
                from_block=from_block,
                to_block=to_block,
            ),
            what=f"eth_getLogs [{from_block}, {to_block}]",
            policy=self.retry,
            timeout_s=self.timeout_s,
        )
        log.debug("fetched %d logs for [%d, %d]", len(entries), from_block, to_block)
        return entries
