# ham/scanner/probes/quic_probe.py
"""
QUIC reachability probe.

Sends a single QUIC long-header packet carrying a reserved version
(0x?a?a?a?a pattern). Any conforming QUIC server must answer with a Version
Negotiation packet listing the versions it supports, so a reply proves that
QUIC over UDP reaches the server without completing a handshake.

The config layer fans a target with several ports out into one TestTarget
per port, so 443 can be compared with alternative ports in one cycle.

Metadata:
    port, versions (hex strings the server offered)
"""

from __future__ import annotations

import logging
import os
import socket
import struct
import time
from typing import List, Tuple

from ham.errors import ProbeProtocolError, ProbeTimeout
from ham.scanner.base import BaseProbe, ProbeResult, TestTarget

logger = logging.getLogger(__name__)

DEFAULT_PORT = 443
PROBE_VERSION = 0x1A2A3A4A
MIN_INITIAL_SIZE = 1200
CID_LENGTH = 8


def build_probe_packet(dcid: bytes, scid: bytes) -> bytes:
    """Long-header packet with a reserved version, padded like an Initial."""
    first = 0xC0 | (os.urandom(1)[0] & 0x0F)
    header = struct.pack("!BI", first, PROBE_VERSION)
    header += bytes([len(dcid)]) + dcid + bytes([len(scid)]) + scid
    return header + os.urandom(MIN_INITIAL_SIZE - len(header))


def parse_version_negotiation(packet: bytes, scid: bytes) -> Tuple[str, ...]:
    """
    Validate a Version Negotiation reply and return the offered versions.

    Raises ProbeProtocolError for anything that is not a VN addressed to us.
    """
    if len(packet) < 7 or not packet[0] & 0x80:
        raise ProbeProtocolError("reply is not a QUIC long-header packet")
    (version,) = struct.unpack("!I", packet[1:5])
    if version != 0:
        raise ProbeProtocolError(f"expected version negotiation, got version 0x{version:08x}")

    pos = 5
    dcid_len = packet[pos]
    dcid = packet[pos + 1:pos + 1 + dcid_len]
    pos += 1 + dcid_len
    if dcid != scid:
        raise ProbeProtocolError("version negotiation not addressed to this probe")
    if pos >= len(packet):
        raise ProbeProtocolError("truncated version negotiation")
    pos += 1 + packet[pos]

    versions: List[str] = []
    while pos + 4 <= len(packet):
        (offered,) = struct.unpack("!I", packet[pos:pos + 4])
        versions.append(f"0x{offered:08x}")
        pos += 4
    if not versions:
        raise ProbeProtocolError("version negotiation lists no versions")
    return tuple(versions)


class QUICProbe(BaseProbe):

    @property
    def name(self) -> str:
        return "quic"

    def test(self, target: TestTarget, timeout: float) -> ProbeResult:
        port = target.port or DEFAULT_PORT
        dcid = os.urandom(CID_LENGTH)
        scid = os.urandom(CID_LENGTH)

        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.settimeout(timeout)
            sock.connect((target.host, port))
            start = time.monotonic()
            sock.send(build_probe_packet(dcid, scid))
            try:
                reply = sock.recv(2048)
            except socket.timeout as e:
                raise ProbeTimeout(f"no QUIC reply from {target.host}:{port}") from e
            latency_ms = (time.monotonic() - start) * 1000

        versions = parse_version_negotiation(reply, scid)
        return self.ok(target, latency_ms, port=port, versions=versions)
