"""InfluxDB v2 point sink speaking line protocol over httpx.

Fields are written as string fields (already encoded by the point builder),
timestamps with second precision. A point's identity in InfluxDB is
(measurement, tag set, timestamp), so re-writing the same batch overwrites
instead of duplicating.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from klangbaach.core.config import InfluxConfig, RetryPolicy
from klangbaach.core.errors import RetriesExhaustedError, SinkError, TransientSinkError
from klangbaach.core.models import DataPoint
from klangbaach.core.retry import with_retries

log = logging.getLogger(__name__)


def _escape_key(s: str) -> str:
    return s.replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def _escape_measurement(s: str) -> str:
    return s.replace("\\", "\\\\").replace(",", "\\,").replace(" ", "\\ ")


def _quote_field(s: str) -> str:
    return '"' + s.replace("\\", "\\\\").replace('"', '\\"') + '"'


def to_line(point: DataPoint) -> str:
    """Render one point as an InfluxDB line-protocol record (seconds precision)."""
    head = _escape_measurement(point.measurement)
    for k in sorted(point.tags):
        head += f",{_escape_key(k)}={_escape_key(point.tags[k])}"
    fields = ",".join(f"{_escape_key(k)}={_quote_field(v)}" for k, v in point.fields.items())
    return f"{head} {fields} {int(point.timestamp.timestamp())}"


class InfluxPointSink:
    def __init__(
        self,
        config: InfluxConfig,
        *,
        points_per_write: int = 5_000,
        retry: RetryPolicy = RetryPolicy(),
        timeout_s: int = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.points_per_write = max(1, points_per_write)
        self.retry = retry
        self.buf: list[DataPoint] = []
        self.client = httpx.AsyncClient(
            base_url=config.url,
            headers={"Authorization": f"Token {config.token}"},
            timeout=timeout_s,
            transport=transport,
        )

    @property
    def buffered(self) -> int:
        return len(self.buf)

    async def ready(self) -> bool:
        """True when the server answers its readiness probe."""
        try:
            r = await self.client.get("/ready")
        except httpx.TransportError:
            return False
        return r.status_code == 200

    async def _post(self, body: str) -> None:
        try:
            r = await self.client.post(
                "/api/v2/write",
                params={"org": self.config.org, "bucket": self.config.bucket, "precision": "s"},
                content=body.encode(),
                headers={"Content-Type": "text/plain; charset=utf-8"},
            )
        except httpx.TransportError as e:
            raise TransientSinkError(f"influx write: {type(e).__name__}: {e}") from e
        if r.status_code == 429 or r.status_code >= 500:
            raise TransientSinkError(f"influx write: HTTP {r.status_code}")
        if r.status_code >= 300:
            raise SinkError(f"influx write: HTTP {r.status_code} {r.text}")

    async def _flush(self) -> int:
        if not self.buf:
            return 0
        body = "\n".join(to_line(p) for p in self.buf)
        try:
            await with_retries(
                lambda: self._post(body),
                what="influx write",
                policy=self.retry,
                retry_on=(TransientSinkError,),
            )
        except RetriesExhaustedError as e:
            raise SinkError(str(e)) from e
        flushed = len(self.buf)
        self.buf.clear()
        log.info("wrote %d points → %s/%s", flushed, self.config.org, self.config.bucket)
        return flushed

    async def write(self, points: Sequence[DataPoint]) -> int:
        self.buf.extend(points)
        if len(self.buf) >= self.points_per_write:
            return await self._flush()
        return 0

    async def close(self) -> None:
        try:
            await self._flush()
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Release the HTTP client without flushing."""
        await self.client.aclose()
