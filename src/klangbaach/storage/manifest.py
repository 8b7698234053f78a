"""Run journal: one JSON line per batch state change.

Each run owns its own file (``manifests/run_<unix>.jsonl``). A batch gets a
``started`` line when it is scanned, then ``failed`` or, once its points have
left the sink buffer, ``done``. Resume only trusts ``done`` lines.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import Counter
from pathlib import Path

from klangbaach.core.models import BatchRecord

log = logging.getLogger(__name__)


class LiveManifest:
    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)
        self.written: Counter[str] = Counter()
        self._lock = asyncio.Lock()

    async def append(self, rec: BatchRecord) -> None:
        """Write `rec` and fsync before returning, so a crash never loses an acknowledged line."""
        line = rec.to_json_line()
        async with self._lock:
            await asyncio.to_thread(self._append_synced, line)
            self.written[rec.status] += 1
        if rec.status == "failed":
            log.warning("batch [%d, %d] failed: %s", rec.from_block, rec.to_block, rec.error)

    def _append_synced(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    def records(self) -> list[dict]:
        """Read back the journal; a torn trailing line is dropped."""
        out = []
        with self.path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(json.loads(line))
                except json.JSONDecodeError:
                    log.warning("skipping torn manifest line in %s", self.path)
        return out
