from __future__ import annotations

from .core.models import Accumulator, DataPoint, RawLogEntry, SwapEvent, SyncEvent
from .decoding.registry import SWAP_T0, SYNC_T0, add_event_spec, make_pair_registry
from .decoding.specs import DataFieldSpec, EventRegistry, EventSpec, TopicFieldSpec

__all__ = [
    "make_pair_registry",
    "add_event_spec",
    "EventSpec",
    "TopicFieldSpec",
    "DataFieldSpec",
    "EventRegistry",
    "SWAP_T0",
    "SYNC_T0",
    "RawLogEntry",
    "SwapEvent",
    "SyncEvent",
    "Accumulator",
    "DataPoint",
]
