"""Block-range utilities for batching and resumable mining.

Functions
---------
- iter_chunks: split [start, last] into inclusive batches of `step` heights.
- merge_intervals: merge overlapping/adjacent [start, end] integer ranges.
- is_covered: whether a range lies entirely inside merged covered intervals.
- load_done_coverage: scan manifest files and collect 'done' ranges.

All intervals are inclusive on both ends: [start, end].
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Generator
from pathlib import Path

log = logging.getLogger(__name__)


def pair_key(address: str) -> str:
    """Directory key of a pair run (lowercased contract address)."""
    return (address or "").lower()


def iter_chunks(a: int, b: int, step: int) -> Generator[tuple[int, int], None, None]:
    """Yield inclusive [start, end] block ranges of size at most `step`.

    Nothing is yielded when ``a > b``. Each call returns a fresh generator,
    so the sequence can be restarted from the beginning.
    """
    if step < 1:
        raise ValueError("batch size must be >= 1")
    x = a
    while x <= b:
        y = min(b, x + step - 1)
        yield (x, y)
        x = y + 1


def merge_intervals(intervals: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Merge overlapping/adjacent inclusive intervals.

    Parameters
    ----------
    intervals : list[tuple[int, int]]
        Unordered inclusive ranges.

    Returns
    -------
    list[tuple[int, int]]
        Minimal set of merged inclusive ranges.
    """
    if not intervals:
        return []
    intervals_sorted = sorted(intervals)
    out: list[list[int]] = [[intervals_sorted[0][0], intervals_sorted[0][1]]]
    for s, e in intervals_sorted[1:]:
        _, me = out[-1]
        if s <= me + 1:
            out[-1][1] = max(me, e)
        else:
            out.append([s, e])
    return [(s, e) for s, e in out]


def is_covered(iv: tuple[int, int], covered: list[tuple[int, int]]) -> bool:
    """True when the inclusive range `iv` lies inside one merged covered interval."""
    s, e = iv
    return any(cs <= s and e <= ce for cs, ce in covered)


def load_done_coverage(manifests_dir: Path, exclude_basename: str | None = None) -> list[tuple[int, int]]:
    """Load all `[from_block, to_block]` ranges with status 'done' from manifests.

    Parameters
    ----------
    manifests_dir : Path
        Directory containing *.jsonl manifest files. A missing directory
        means nothing is covered yet.
    exclude_basename : str | None
        If provided, skip this single file (the live manifest of the current run).

    Returns
    -------
    list[tuple[int, int]]
        Merged 'done' intervals across all manifests.
    """
    intervals: list[tuple[int, int]] = []
    if not manifests_dir.exists():
        return []
    if not manifests_dir.is_dir():
        raise ValueError("manifests_dir should be a directory")
    for name in sorted(os.listdir(manifests_dir)):
        if not name.endswith(".jsonl"):
            continue
        if exclude_basename and name == exclude_basename:
            continue
        path = manifests_dir / name
        with open(path) as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError:
                    # a crash can leave a torn last line
                    log.warning("skipping unreadable manifest line %s:%d", path, lineno)
                    continue
                if rec.get("status") == "done":
                    intervals.append((int(rec["from_block"]), int(rec["to_block"])))
    return merge_intervals(intervals)
