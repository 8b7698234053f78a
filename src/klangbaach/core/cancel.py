from __future__ import annotations

import asyncio

from klangbaach.core.errors import RunCancelled


class CancelToken:
    """Cooperative cancellation flag checked between batches and resolution tasks."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled("run cancelled")
