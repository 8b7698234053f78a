"""Per-height aggregation of pair events.

One `Aggregator` owns the accumulator table of a single batch. Sync events
carry the pool's absolute reserves; the default `additive` policy sums them
per height (the long-standing output of this miner), `last` keeps the value
of the last Sync seen in the block instead.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from klangbaach.core.config import ReservePolicy
from klangbaach.core.models import Accumulator, PairEvent, SwapEvent, SyncEvent

log = logging.getLogger(__name__)


class Aggregator:
    def __init__(self, reserve_policy: ReservePolicy = "additive") -> None:
        if reserve_policy not in ("additive", "last"):
            raise ValueError(f"unknown reserve policy: {reserve_policy}")
        self.reserve_policy = reserve_policy
        self._table: dict[int, Accumulator] = {}

    def accumulator(self, height: int) -> Accumulator:
        """Return the accumulator of `height`, allocating it on first touch."""
        acc = self._table.get(height)
        if acc is None:
            acc = Accumulator()
            self._table[height] = acc
        return acc

    def add(self, height: int, event: PairEvent) -> None:
        acc = self.accumulator(height)
        match event:
            case SyncEvent():
                if self.reserve_policy == "additive":
                    acc.reserve0 += event.reserve0
                    acc.reserve1 += event.reserve1
                else:
                    acc.reserve0 = event.reserve0
                    acc.reserve1 = event.reserve1
                log.debug("sync decoded height=%d reserve0=%d reserve1=%d", height, event.reserve0, event.reserve1)
            case SwapEvent():
                # volume counts incoming amounts only
                acc.volume0 += event.amount0_in
                acc.volume1 += event.amount1_in
                log.debug("swap decoded height=%d volume0=%d volume1=%d", height, acc.volume0, acc.volume1)
            case _:
                raise TypeError(f"unsupported event type: {type(event).__name__}")

    def fold(self, events: Iterable[tuple[int, PairEvent]]) -> Aggregator:
        for height, event in events:
            self.add(height, event)
        return self

    def heights(self) -> list[int]:
        """Touched heights in ascending order."""
        return sorted(self._table)

    def get(self, height: int) -> Accumulator:
        """Accumulator of `height`, or an all-zero one if the height saw no events."""
        return self._table.get(height) or Accumulator()

    def __len__(self) -> int:
        return len(self._table)
