"""Default event registry for Uniswap-v2 style pairs.

This module exposes:
- `make_pair_registry()` → EventRegistry prefilled with Swap and Sync
- `add_event_spec(registry, spec)` → append one spec (lowercases key)
- `SWAP_T0` / `SYNC_T0` → topic0 hashes of the aggregated events
"""

from __future__ import annotations

from klangbaach.constants import SWAP_SIGNATURE, SYNC_SIGNATURE
from klangbaach.decoding.registry_builder import event_spec_from_signature, make_registry
from klangbaach.decoding.specs import EventRegistry, EventSpec

SWAP_T0 = event_spec_from_signature(SWAP_SIGNATURE).topic0
SYNC_T0 = event_spec_from_signature(SYNC_SIGNATURE).topic0


def make_pair_registry() -> EventRegistry:
    """Build the registry with the pair events the miner aggregates."""
    return make_registry([SWAP_SIGNATURE, SYNC_SIGNATURE])


def add_event_spec(registry: EventRegistry, spec: EventSpec) -> None:
    """Insert one spec into the registry keyed by lowercased topic0."""
    registry[spec.topic0.lower()] = spec
