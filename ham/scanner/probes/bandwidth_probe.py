# ham/scanner/probes/bandwidth_probe.py
"""
Upload / download throughput probes.

Both move a fixed number of bytes over HTTPS with httpx and report the
achieved rate. Comparing the two (and comparing each with its expected
rate) is what exposes asymmetric throttling, e.g. uploads capped at a
couple of Mbps while downloads run free.

Target params:
    url           endpoint to POST to / GET from
    bytes         payload size (upload) or byte cap (download)
    expected_bps  rate considered healthy on this link (default 2 Mbps)

Metadata:
    bytes, throughput_bps, expected_bps, direction
"""

from __future__ import annotations

import logging
import os
import time
from typing import Optional

import httpx

from ham.errors import ProbeProtocolError, ProbeTimeout
from ham.scanner.base import BaseProbe, ProbeResult, TestTarget

logger = logging.getLogger(__name__)

DEFAULT_BYTES = 500_000
DEFAULT_EXPECTED_BPS = 2_000_000
CHUNK_SIZE = 64 * 1024


class _ThroughputProbe(BaseProbe):
    direction = "download"

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        self._transport = transport

    @property
    def name(self) -> str:
        return self.direction

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(timeout=httpx.Timeout(timeout), transport=self._transport)

    def _measure(self, client: httpx.Client, url: str, size: int) -> int:
        raise NotImplementedError

    def test(self, target: TestTarget, timeout: float) -> ProbeResult:
        url = target.param("url") or f"https://{target.host}/"
        size = int(target.param("bytes", DEFAULT_BYTES))
        expected = float(target.param("expected_bps", DEFAULT_EXPECTED_BPS))

        start = time.monotonic()
        try:
            with self._client(timeout) as client:
                moved = self._measure(client, url, size)
        except httpx.TimeoutException as e:
            raise ProbeTimeout(f"{self.direction} via {url} timed out after {timeout:.1f}s") from e
        elapsed = max(time.monotonic() - start, 1e-6)

        return self.ok(
            target,
            elapsed * 1000,
            direction=self.direction,
            bytes=moved,
            throughput_bps=round(moved * 8 / elapsed, 1),
            expected_bps=expected,
        )


class UploadProbe(_ThroughputProbe):
    direction = "upload"

    def _measure(self, client: httpx.Client, url: str, size: int) -> int:
        resp = client.post(url, content=os.urandom(size),
                           headers={"Content-Type": "application/octet-stream"})
        if resp.status_code >= 400:
            raise ProbeProtocolError(f"upload rejected with HTTP {resp.status_code}")
        return size


class DownloadProbe(_ThroughputProbe):
    direction = "download"

    def _measure(self, client: httpx.Client, url: str, size: int) -> int:
        moved = 0
        with client.stream("GET", url) as resp:
            if resp.status_code >= 400:
                raise ProbeProtocolError(f"download failed with HTTP {resp.status_code}")
            for chunk in resp.iter_bytes(CHUNK_SIZE):
                moved += len(chunk)
                if moved >= size:
                    break
        if moved == 0:
            raise ProbeProtocolError("download returned no data")
        return moved
