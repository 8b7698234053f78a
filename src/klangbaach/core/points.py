"""Data point construction and field encoding.

Reserves and volumes are arbitrary-precision integers (uint112 / uint256),
so fields are never emitted as floats. Two stable text encodings exist:

- ``decimal``: base-10 digits, e.g. ``"1000000000000000000000"``
- ``hex``: big-endian bytes as 0x-prefixed hex, zero is ``"0x00"``
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime

from klangbaach.core.config import FieldEncoding
from klangbaach.core.models import Accumulator, DataPoint

FIELD_NAMES = ("reserve0", "reserve1", "volume0", "volume1")


def encode_value(value: int, encoding: FieldEncoding) -> str:
    if value < 0:
        raise ValueError("field values must be non-negative")
    if encoding == "decimal":
        return str(value)
    if encoding == "hex":
        n = max(1, (value.bit_length() + 7) // 8)
        return "0x" + value.to_bytes(n, "big").hex()
    raise ValueError(f"unknown field encoding: {encoding}")


def decode_value(text: str, encoding: FieldEncoding) -> int:
    if encoding == "decimal":
        return int(text, 10)
    if encoding == "hex":
        if not text.startswith("0x"):
            raise ValueError(f"hex field without 0x prefix: {text!r}")
        return int.from_bytes(bytes.fromhex(text[2:]), "big")
    raise ValueError(f"unknown field encoding: {encoding}")


class PointBuilder:
    """Turns ordered (height, accumulator, timestamp) triples into data points."""

    def __init__(self, *, measurement: str, tags: Mapping[str, str], encoding: FieldEncoding = "decimal") -> None:
        if encoding not in ("decimal", "hex"):
            raise ValueError(f"unknown field encoding: {encoding}")
        self.measurement = measurement
        self.tags = dict(tags)
        self.encoding = encoding

    def point(self, acc: Accumulator, timestamp: datetime) -> DataPoint:
        return DataPoint(
            measurement=self.measurement,
            tags=self.tags,
            fields={k: encode_value(v, self.encoding) for k, v in acc.fields().items()},
            timestamp=timestamp,
        )

    def build(
        self,
        heights: Sequence[int],
        accumulators: Mapping[int, Accumulator],
        timestamps: Mapping[int, datetime],
    ) -> list[DataPoint]:
        """One point per height; `heights` must be strictly ascending."""
        points: list[DataPoint] = []
        prev: int | None = None
        for h in heights:
            if prev is not None and h <= prev:
                raise ValueError(f"heights must be strictly ascending ({prev} then {h})")
            prev = h
            points.append(self.point(accumulators.get(h) or Accumulator(), timestamps[h]))
        return points
