from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Chain:
    name: str
    chain_id: int
    short_name: str
    network_id: int


KNOWN_CHAINS: dict[int, Chain] = {
    c.chain_id: c
    for c in (
        Chain("Ethereum Mainnet", 1, "eth", 1),
        Chain("OP Mainnet", 10, "oeth", 10),
        Chain("BNB Smart Chain Mainnet", 56, "bnb", 56),
        Chain("Gnosis", 100, "gno", 100),
        Chain("Polygon Mainnet", 137, "matic", 137),
        Chain("Base", 8453, "base", 8453),
        Chain("Arbitrum One", 42161, "arb1", 42161),
        Chain("Avalanche C-Chain", 43114, "avax", 43114),
        Chain("Sepolia", 11155111, "sep", 11155111),
    )
}


def chain_tag(chain_id: int) -> str:
    """Short name of a known chain, or `chain-<id>` for unknown ones."""
    chain = KNOWN_CHAINS.get(chain_id)
    return chain.short_name if chain else f"chain-{chain_id}"
