"""Pair event decoder.

This module translates raw logs into typed `SwapEvent` / `SyncEvent` values
using an `EventRegistry`. Logs whose topic0 is not registered are ignored;
logs whose payload does not match the registered ABI shape abort the run
with `FatalDecodeError`, since that points at a configuration mismatch and
not at a transient condition.
"""

from __future__ import annotations

from klangbaach.constants import SWAP_EVENT, SYNC_EVENT
from klangbaach.core.errors import FatalDecodeError
from klangbaach.core.models import PairEvent, RawLogEntry, SwapEvent, SyncEvent
from klangbaach.decoding.specs import EventRegistry, EventSpec
from klangbaach.decoding.utils import parse_data_word, word_at


def _check_shape(entry: RawLogEntry, spec: EventSpec) -> None:
    if len(entry.topics) != spec.topics_count:
        raise FatalDecodeError(
            f"{spec.name}: expected {spec.topics_count} topics, got {len(entry.topics)}",
            height=entry.height,
            topic0=spec.topic0,
        )
    if len(entry.data) != spec.data_size:
        raise FatalDecodeError(
            f"{spec.name}: expected {spec.data_size} payload bytes, got {len(entry.data)}",
            height=entry.height,
            topic0=spec.topic0,
        )


def _data_values(entry: RawLogEntry, spec: EventSpec) -> list[int]:
    values: list[int] = []
    for df in sorted(spec.data_fields, key=lambda f: f.word_index):
        try:
            values.append(parse_data_word(word_at(entry.data, df.word_index), df.type))
        except ValueError as e:
            raise FatalDecodeError(f"{spec.name}.{df.name}: {e}", height=entry.height, topic0=spec.topic0) from e
    return values


def decode_event(entry: RawLogEntry, registry: EventRegistry) -> PairEvent | None:
    """Decode one raw log into a pair event, or return None if its topic is not ours."""
    if not entry.topic0:
        return None
    spec = registry.get(entry.topic0.lower())
    if spec is None or spec.name not in (SWAP_EVENT, SYNC_EVENT):
        return None

    _check_shape(entry, spec)
    values = _data_values(entry, spec)

    if spec.name == SYNC_EVENT:
        reserve0, reserve1 = values
        return SyncEvent(reserve0=reserve0, reserve1=reserve1)
    amount0_in, amount1_in, amount0_out, amount1_out = values
    return SwapEvent(
        amount0_in=amount0_in,
        amount1_in=amount1_in,
        amount0_out=amount0_out,
        amount1_out=amount1_out,
    )
