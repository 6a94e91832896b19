# ham/scanner/probes/tcp_probe.py
"""
TCP connect probes.

TCPProbe measures how long a plain TCP three-way handshake takes. It is the
baseline every other probe is compared against: when TCP to a host succeeds
but TLS or QUIC to the same host is reset, the interference is above the
transport layer.

IPv6Probe does the same over AF_INET6 only, so a region that drops IPv6
entirely shows up as its own protocol rather than as noise in the TCP score.

Target params:
    port defaults to 80 when the target has none
"""

from __future__ import annotations

import logging
import socket
import time

from ham.errors import ProbeConnectionError, ProbeTimeout
from ham.scanner.base import BaseProbe, ProbeResult, TestTarget

logger = logging.getLogger(__name__)

DEFAULT_PORT = 80


class TCPProbe(BaseProbe):

    @property
    def name(self) -> str:
        return "tcp"

    def test(self, target: TestTarget, timeout: float) -> ProbeResult:
        port = target.port or DEFAULT_PORT
        start = time.monotonic()
        try:
            sock = socket.create_connection((target.host, port), timeout=timeout)
        except socket.timeout as e:
            raise ProbeTimeout(f"TCP connect to {target.host}:{port} timed out after {timeout:.1f}s") from e
        latency_ms = (time.monotonic() - start) * 1000
        sock.close()
        return self.ok(target, latency_ms, port=port)


class IPv6Probe(BaseProbe):
    """TCP connect restricted to IPv6 addresses."""

    @property
    def name(self) -> str:
        return "ipv6"

    def test(self, target: TestTarget, timeout: float) -> ProbeResult:
        port = target.port or DEFAULT_PORT
        infos = socket.getaddrinfo(target.host, port, socket.AF_INET6, socket.SOCK_STREAM)
        if not infos:
            raise ProbeConnectionError(f"no IPv6 address for {target.host}", kind="unreachable")

        family, socktype, proto, _, address = infos[0]
        sock = socket.socket(family, socktype, proto)
        sock.settimeout(timeout)
        start = time.monotonic()
        try:
            sock.connect(address)
        except socket.timeout as e:
            raise ProbeTimeout(f"IPv6 connect to [{address[0]}]:{port} timed out") from e
        finally:
            latency_ms = (time.monotonic() - start) * 1000
            sock.close()
        return self.ok(target, latency_ms, port=port, family="inet6", address=address[0])
