"""Height → timestamp resolution with a persistent cache.

`TimestampResolver.resolve(heights)`:
1. Looks every height up in the cache.
2. Resolves the misses on a bounded pool of asyncio tasks, each fetching the
   block header timestamp and upserting it into the cache.
3. Waits for all tasks; if any failed, raises the error of the lowest
   failing height so the outcome does not depend on task scheduling.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime

from klangbaach.core.cancel import CancelToken
from klangbaach.core.config import RetryPolicy
from klangbaach.core.errors import TransientCacheError
from klangbaach.core.interfaces import IHeaderSource, ITimestampCache
from klangbaach.core.models import as_utc
from klangbaach.core.retry import with_retries

log = logging.getLogger(__name__)


class TimestampResolver:
    def __init__(
        self,
        *,
        headers: IHeaderSource,
        cache: ITimestampCache,
        concurrency: int = 16,
        retry: RetryPolicy = RetryPolicy(),
        timeout_s: float | None = 20,
        cancel: CancelToken | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.headers = headers
        self.cache = cache
        self.concurrency = concurrency
        self.retry = retry
        self.timeout_s = timeout_s
        self.cancel = cancel or CancelToken()
        self.fetched = 0
        self.cache_hits = 0

    async def _fetch_and_store(self, height: int, sem: asyncio.Semaphore) -> datetime:
        async with sem:
            self.cancel.raise_if_cancelled()
            ts = await with_retries(
                lambda: self.headers.get_block_timestamp(height),
                what=f"header {height}",
                policy=self.retry,
                timeout_s=self.timeout_s,
            )
            ts = as_utc(ts)
            self.fetched += 1
            inserted = await with_retries(
                lambda: self.cache.upsert(height, ts),
                what=f"cache upsert {height}",
                policy=self.retry,
                timeout_s=self.timeout_s,
                retry_on=(TransientCacheError,),
            )
            if not inserted:
                log.debug("timestamp of height %d already cached", height)
            return ts

    async def resolve(self, heights: Iterable[int]) -> dict[int, datetime]:
        """Return a timestamp for every height, fetching and caching misses."""
        wanted = sorted(set(heights))
        out: dict[int, datetime] = {}
        misses: list[int] = []
        for h in wanted:
            cached = await with_retries(
                lambda: self.cache.get(h),
                what=f"cache lookup {h}",
                policy=self.retry,
                timeout_s=self.timeout_s,
                retry_on=(TransientCacheError,),
            )
            if cached is None:
                misses.append(h)
            else:
                out[h] = as_utc(cached)
        self.cache_hits += len(out)
        if not misses:
            return out

        sem = asyncio.Semaphore(self.concurrency)
        tasks = [asyncio.create_task(self._fetch_and_store(h, sem)) for h in misses]
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            raise

        for h, res in zip(misses, results):
            if isinstance(res, BaseException):
                raise res
            out[h] = res
        log.debug("resolved %d timestamps (%d cached, %d fetched)", len(out), len(out) - len(misses), len(misses))
        return out
