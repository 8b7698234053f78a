"""Build event registries from a contract ABI JSON (e.g. the UniswapV2Pair ABI)."""

import json
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel

from klangbaach.constants import SWAP_EVENT, SYNC_EVENT
from klangbaach.decoding.registry import add_event_spec
from klangbaach.decoding.registry_builder import event_topic0
from klangbaach.decoding.specs import DataFieldSpec, EventRegistry, EventSpec, TopicFieldSpec


class AbiInput(BaseModel):
    indexed: bool
    internalType: str | None = None
    name: str
    type: str


class AbiEvent(BaseModel):
    anonymous: bool = False
    inputs: Sequence[AbiInput]
    name: str
    type: Literal["event"]


def get_event_signature(event: AbiEvent) -> str:
    return f"{event.name}({','.join(event_input.type for event_input in event.inputs)})"


def get_event_topic0(event: AbiEvent) -> str:
    return event_topic0(get_event_signature(event))


def get_event_topic_field_specs(event: AbiEvent) -> list[TopicFieldSpec]:
    return [
        TopicFieldSpec(event_input.name, event_input_idx + 1, event_input.type)
        for event_input_idx, event_input in enumerate(
            [event_input for event_input in event.inputs if event_input.indexed]
        )
    ]


def get_event_data_field_specs(event: AbiEvent) -> list[DataFieldSpec]:
    return [
        DataFieldSpec(event_input.name, event_input_idx, event_input.type)
        for event_input_idx, event_input in enumerate(
            [event_input for event_input in event.inputs if not event_input.indexed]
        )
    ]


def get_event_spec(event: AbiEvent) -> EventSpec:
    return EventSpec(
        topic0=get_event_topic0(event),
        name=event.name,
        topic_fields=get_event_topic_field_specs(event),
        data_fields=get_event_data_field_specs(event),
    )


AbiJson = Iterable[dict[str, Any]]
AbiSpec = AbiJson | Path


def _load_abi(abi: AbiSpec) -> AbiJson:
    if isinstance(abi, Path):
        return json.loads(abi.read_text())
    return abi


def get_events_from_abi(abi: AbiSpec) -> dict[str, AbiEvent]:
    abi = _load_abi(abi)
    return {entry["name"]: AbiEvent.model_validate(entry) for entry in abi if entry.get("type") == "event"}


def make_event_registry_from_events(events: Iterable[AbiEvent]) -> EventRegistry:
    reg: EventRegistry = {}
    for event in events:
        add_event_spec(reg, get_event_spec(event))
    return reg


def make_pair_registry_from_abi(abi: AbiSpec) -> EventRegistry:
    """Registry of the Swap and Sync events declared by a pair ABI.

    Raises ValueError when the ABI lacks one of them.
    """
    events = get_events_from_abi(abi)
    missing = [name for name in (SWAP_EVENT, SYNC_EVENT) if name not in events]
    if missing:
        raise ValueError(f"ABI does not declare {', '.join(missing)}")
    return make_event_registry_from_events(events[name] for name in (SWAP_EVENT, SYNC_EVENT))
