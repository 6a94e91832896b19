# ham/scanner/probes/tls_probe.py
"""
TLS handshake probe with an explicit SNI.

Connects to host:port and completes a TLS handshake presenting
params["sni"] as the server name. The config layer fans a target with a
list of server names out into one TestTarget per name, so one host is tried
with several SNIs in the same cycle. SNI filtering then shows up as some
names failing against a host that completes the handshake for others.

A DPI box that cuts a handshake usually shows as an unexpected EOF or a
reset before ServerHello, both recorded as connection_reset.

Target params:
    sni      server name to present (defaults to host)
    verify   verify the certificate chain (default False; the handshake
             itself is what is being measured)

Metadata:
    sni, tls_version, cipher
"""

from __future__ import annotations

import logging
import socket
import ssl
import time

from ham.errors import ProbeTimeout
from ham.scanner.base import BaseProbe, ProbeResult, TestTarget

logger = logging.getLogger(__name__)

DEFAULT_PORT = 443


def _make_context(verify: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class TLSProbe(BaseProbe):

    @property
    def name(self) -> str:
        return "tls"

    def test(self, target: TestTarget, timeout: float) -> ProbeResult:
        port = target.port or DEFAULT_PORT
        sni = target.sni or target.host
        context = _make_context(bool(target.param("verify", False)))

        start = time.monotonic()
        try:
            with socket.create_connection((target.host, port), timeout=timeout) as raw:
                with context.wrap_socket(raw, server_hostname=sni) as tls:
                    latency_ms = (time.monotonic() - start) * 1000
                    version = tls.version()
                    cipher = tls.cipher()
        except socket.timeout as e:
            raise ProbeTimeout(f"TLS handshake with {target.host}:{port} (sni={sni}) timed out") from e

        return self.ok(
            target,
            latency_ms,
            sni=sni,
            port=port,
            tls_version=version,
            cipher=cipher[0] if cipher else None,
        )
