"""Event decoding for pair contracts.

This package provides:
- Event specification system (EventSpec, TopicFieldSpec, DataFieldSpec)
- Decoder that translates raw logs into SwapEvent / SyncEvent values
- Registry management and the default pair registry
"""

from klangbaach.decoding.decoder import decode_event
from klangbaach.decoding.registry import SWAP_T0, SYNC_T0, add_event_spec, make_pair_registry
from klangbaach.decoding.specs import (
    DataFieldSpec,
    EventRegistry,
    EventSpec,
    TopicFieldSpec,
    get_event_registry_topic0s,
)

__all__ = [
    "decode_event",
    "SWAP_T0",
    "SYNC_T0",
    "add_event_spec",
    "make_pair_registry",
    "DataFieldSpec",
    "EventRegistry",
    "EventSpec",
    "TopicFieldSpec",
    "get_event_registry_topic0s",
]
