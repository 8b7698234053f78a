"""Orchestration of mining runs with resumability.

This package provides:
- RangeScanner (orchestration.scanner): batch planning and log fetching
- Mining entry points (orchestration.orchestrator): `mine_pair`, `mine`
- Interval utilities for coverage tracking and resumability
"""

from klangbaach.orchestration.utils import (
    is_covered,
    iter_chunks,
    load_done_coverage,
    merge_intervals,
)

__all__ = [
    "is_covered",
    "iter_chunks",
    "load_done_coverage",
    "merge_intervals",
]
