"""Decoding utilities: ABI word access and typed parsers."""

from __future__ import annotations


def word_at(data: bytes, i: int) -> bytes:
    """Return the i-th 32-byte ABI word (zero-padded if out-of-range)."""
    start = 32 * i
    end = start + 32
    return data[start:end] if start < len(data) else b"\x00" * 32


def type_bits(typ: str) -> int:
    """Bit width of an unsigned ABI type (`uint` alone means 256)."""
    digits = typ.lstrip("uint")
    return int(digits) if digits else 256


def parse_data_word(word: bytes, typ: str) -> int:
    """Parse one unsigned ABI word from data according to the declared type.

    Raises ValueError for a non-`uint` type or a value wider than its width.
    """
    if not typ.startswith("uint"):
        raise ValueError(f"unsupported data field type {typ}")
    v = int.from_bytes(word, "big", signed=False)
    if v >> type_bits(typ):
        raise ValueError(f"value {v} overflows {typ}")
    return v


def hex_to_bytes(data_hex: str) -> bytes:
    """Decode a 0x-prefixed (or bare) hex payload into bytes."""
    h = data_hex[2:] if data_hex.lower().startswith("0x") else data_hex
    return bytes.fromhex(h) if h else b""
