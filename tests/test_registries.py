from pathlib import Path

import pytest

from klangbaach.abi_events import get_event_topic0, get_events_from_abi, make_pair_registry_from_abi
from klangbaach.decoding.registry import SWAP_T0, SYNC_T0, make_pair_registry

ABI = Path(__file__).parent / "abi" / "uniswap_v2_pair_abi.json"


def test_make_pair_registry():
    registry = make_pair_registry()
    assert set(registry) == {SWAP_T0, SYNC_T0}


def test_get_events_from_abi():
    assert ABI.is_file()
    events = get_events_from_abi(ABI)
    assert set(events) == {"Approval", "Burn", "Mint", "Swap", "Sync", "Transfer"}


def test_make_pair_registry_from_abi_matches_signatures():
    registry = make_pair_registry_from_abi(ABI)
    events = get_events_from_abi(ABI)
    assert set(registry) == {get_event_topic0(events["Swap"]), get_event_topic0(events["Sync"])}
    assert registry == make_pair_registry()


def test_make_pair_registry_from_abi_requires_swap_and_sync():
    abi = [
        {
            "anonymous": False,
            "inputs": [
                {"indexed": False, "name": "reserve0", "type": "uint112"},
                {"indexed": False, "name": "reserve1", "type": "uint112"},
            ],
            "name": "Sync",
            "type": "event",
        }
    ]
    with pytest.raises(ValueError, match="Swap"):
        make_pair_registry_from_abi(abi)
