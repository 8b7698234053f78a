"""Retry and timeout helpers shared by every external call of the pipeline."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from klangbaach.core.config import RetryPolicy
from klangbaach.core.errors import RetriesExhaustedError, SourceError, TransientSourceError

log = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_timeout(fn: Callable[[], Awaitable[T]], timeout_s: float | None) -> T:
    """Await `fn()` under a per-call timeout (None disables it)."""
    if timeout_s is None:
        return await fn()
    return await asyncio.wait_for(fn(), timeout=timeout_s)


async def with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    what: str,
    policy: RetryPolicy,
    timeout_s: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (TransientSourceError,),
) -> T:
    """Run `fn` until it succeeds, retrying retryable failures with backoff.

    Timeouts are retried only when the policy allows it; otherwise they are
    raised as `SourceError`. Any other exception propagates untouched.
    """
    tries = 0
    while True:
        tries += 1
        try:
            return await call_with_timeout(fn, timeout_s)
        except asyncio.TimeoutError as e:
            if not policy.retry_timeouts:
                raise SourceError(f"{what}: timed out after {timeout_s}s") from e
            err: BaseException = e
        except retry_on as e:
            err = e
        if tries >= policy.max_attempts:
            raise RetriesExhaustedError(what, tries, err) from err
        delay = policy.backoff_s * tries
        log.warning("%s failed (%s), retry %d/%d in %.1fs", what, str(err) or type(err).__name__, tries, policy.max_attempts - 1, delay)
        await asyncio.sleep(delay)
