"""Lightweight JSON-RPC client for Ethereum-compatible nodes.

This module provides:
- `RPC`: an async client with sane timeouts/connection limits, usable as the
  log source, the header source and the contract reader of the miner
- Helper utilities to format block numbers and topics

Failures are mapped to the pipeline error taxonomy: rate limits, 5xx answers
and transport errors become `TransientSourceError`, any other JSON-RPC error
becomes `SourceError`.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

import httpx

from klangbaach.core.errors import SourceError, TransientSourceError
from klangbaach.core.models import RawLogEntry, utc_from_unix
from klangbaach.decoding.utils import hex_to_bytes, word_at

# JSON-RPC error codes providers use for throttling / capacity limits
RETRYABLE_RPC_CODES = {-32005, 429}


def to_hex_block(x: int) -> str:
    """Return a 0x-prefixed hex block number."""
    return hex(x)


def topics_param(topic0s: Sequence[str]) -> list[list[str]]:
    """Format topic0 signatures for eth_getLogs RPC call."""
    return [[t.lower() for t in topic0s]]


def decode_abi_string(data: bytes) -> str:
    """Decode an ABI `string` return value (bytes32 symbols are accepted too)."""
    if len(data) == 32:
        return data.rstrip(b"\x00").decode("utf-8", errors="replace")
    if len(data) < 64:
        raise SourceError(f"cannot decode string from {len(data)} bytes")
    offset = int.from_bytes(word_at(data, 0), "big")
    length = int.from_bytes(data[offset : offset + 32], "big")
    raw = data[offset + 32 : offset + 32 + length]
    return raw.decode("utf-8", errors="replace")


class RPC:
    """Minimal async RPC client.

    Parameters
    ----------
    url : str
        RPC endpoint URL.
    timeout_s : int
        Per-operation timeout in seconds (connect/read/write).
    max_connections : int
        Maximum concurrent connections to keep in the pool.
    transport : httpx.AsyncBaseTransport | None
        Optional transport override (tests use `httpx.MockTransport`).
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: int = 20,
        max_connections: int = 64,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._next_id = 0
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=timeout_s,
                read=timeout_s,
                write=timeout_s,
                pool=max(30, timeout_s * 3),
            ),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max(1, max_connections // 2),
            ),
            http2=True,
            transport=transport,
        )

    async def _call(self, method: str, params: list[Any]) -> Any:
        self._next_id += 1
        payload = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params}
        try:
            r = await self.client.post(self.url, json=payload)
        except httpx.TransportError as e:
            raise TransientSourceError(f"{method}: {type(e).__name__}: {e}") from e
        if r.status_code == 429 or r.status_code >= 500:
            raise TransientSourceError(f"{method}: HTTP {r.status_code}")
        if r.status_code >= 400:
            raise SourceError(f"{method}: HTTP {r.status_code}")
        data = r.json()
        if "error" in data:
            e = data["error"]
            code = e.get("code") if isinstance(e, dict) else None
            msg = e.get("message") if isinstance(e, dict) else str(e)
            if code in RETRYABLE_RPC_CODES:
                raise TransientSourceError(f"RPC error: {code} {msg}")
            raise SourceError(f"RPC error: {code} {msg}")
        return data.get("result")

    async def latest_block(self) -> int:
        """Return the latest block number as an int."""
        return int(await self._call("eth_blockNumber", []), 16)

    async def chain_id(self) -> int:
        return int(await self._call("eth_chainId", []), 16)

    async def get_logs(
        self,
        *,
        address: str,
        topic0s: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> list[RawLogEntry]:
        """Fetch logs for an address and a set of topic0 signatures within a block range."""
        params = [
            {
                "address": address.lower(),
                "fromBlock": to_hex_block(from_block),
                "toBlock": to_hex_block(to_block),
                "topics": topics_param(topic0s),
            }
        ]
        out: list[RawLogEntry] = []
        for rl in await self._call("eth_getLogs", params) or []:
            if rl.get("removed"):
                continue
            out.append(
                RawLogEntry(
                    height=int(rl["blockNumber"], 16),
                    topics=tuple(t.lower() for t in rl.get("topics", [])),
                    data=hex_to_bytes(str(rl.get("data") or "0x")),
                    address=rl["address"].lower(),
                    tx_hash=(rl.get("transactionHash") or "").lower(),
                    log_index=int(rl["logIndex"], 16),
                )
            )
        out.sort(key=lambda e: (e.height, e.log_index))
        return out

    async def get_block_timestamp(self, height: int) -> datetime:
        """Return the header timestamp of block `height` in UTC."""
        block = await self._call("eth_getBlockByNumber", [to_hex_block(height), False])
        if block is None:
            raise SourceError(f"block {height} not found")
        return utc_from_unix(int(block["timestamp"], 16))

    async def eth_call(self, to: str, data: str) -> bytes:
        result = await self._call("eth_call", [{"to": to, "data": data}, "latest"])
        return hex_to_bytes(result or "0x")

    async def call_address(self, to: str, selector: str) -> str:
        return "0x" + word_at(await self.eth_call(to, selector), 0)[-20:].hex()

    async def call_string(self, to: str, selector: str) -> str:
        return decode_abi_string(await self.eth_call(to, selector))

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()
