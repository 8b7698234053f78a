"""Tag-set providers for data points.

- `StaticTagsProvider`: tags given in the run configuration.
- `TokenMetadataTagsProvider`: pair tag built from the on-chain symbols of the
  pair's two tokens (``SYMBOL0/SYMBOL1``) and chain tag from ``eth_chainId``.
"""

from __future__ import annotations

from typing import Protocol

from klangbaach.core.chains import chain_tag


class IContractReader(Protocol):
    async def call_string(self, to: str, selector: str) -> str: ...

    async def call_address(self, to: str, selector: str) -> str: ...

    async def chain_id(self) -> int: ...


# 4-byte selectors
TOKEN0_SELECTOR = "0x0dfe1681"  # token0()
TOKEN1_SELECTOR = "0xd21220a7"  # token1()
SYMBOL_SELECTOR = "0x95d89b41"  # symbol()


def base_tags(pair: str, chain: str | None) -> dict[str, str]:
    tags = {"pair": pair}
    if chain:
        tags["chain"] = chain
    return tags


class StaticTagsProvider:
    def __init__(self, pair: str, chain: str | None = None) -> None:
        self._tags = base_tags(pair, chain)

    async def tags(self) -> dict[str, str]:
        return dict(self._tags)


class TokenMetadataTagsProvider:
    def __init__(self, reader: IContractReader, pair_address: str, *, chain: str | None = None) -> None:
        self.reader = reader
        self.pair_address = pair_address
        self.chain = chain
        self._tags: dict[str, str] | None = None

    async def tags(self) -> dict[str, str]:
        if self._tags is None:
            token0 = await self.reader.call_address(self.pair_address, TOKEN0_SELECTOR)
            token1 = await self.reader.call_address(self.pair_address, TOKEN1_SELECTOR)
            symbol0 = await self.reader.call_string(token0, SYMBOL_SELECTOR)
            symbol1 = await self.reader.call_string(token1, SYMBOL_SELECTOR)
            chain = self.chain or chain_tag(await self.reader.chain_id())
            self._tags = base_tags(f"{symbol0}/{symbol1}", chain)
        return dict(self._tags)
