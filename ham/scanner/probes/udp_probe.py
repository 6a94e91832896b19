# ham/scanner/probes/udp_probe.py
"""
UDP round-trip probe.

Sends `count` request datagrams to one endpoint and counts the replies. UDP
has no handshake, so the only things worth measuring are whether answers
come back and how many get lost on the way.

Payload depends on the port so that a real service answers:
    53   DNS query (dnspython wire format), replies matched by query id
    123  NTP client request (mode 3), replies matched by length
    *    zero-padded payload of `payload_size` bytes, any reply counts

Target params:
    count          datagrams to send (default 5)
    payload_size   bytes for the generic payload (default 64)
    query_name     name asked for on port 53 (default "example.com")
    baseline_loss  loss considered normal on this path (default 0.0)

Metadata:
    sent, received, packet_loss, baseline_loss, measurements
"""

from __future__ import annotations

import logging
import socket
import time
from typing import Callable, Optional, Tuple

import dns.message
import dns.rdatatype

from ham.errors import ProbeTimeout
from ham.scanner.base import BaseProbe, ProbeResult, TestTarget

logger = logging.getLogger(__name__)

DEFAULT_COUNT = 5
DEFAULT_PAYLOAD_SIZE = 64
NTP_REQUEST = b"\x1b" + 47 * b"\0"

Matcher = Callable[[bytes], bool]


def _dns_datagram(name: str) -> Tuple[bytes, Matcher]:
    query = dns.message.make_query(name, dns.rdatatype.A)
    wire = query.to_wire()

    def matches(reply: bytes) -> bool:
        return len(reply) >= 2 and reply[:2] == wire[:2]

    return wire, matches


def _ntp_datagram() -> Tuple[bytes, Matcher]:
    return NTP_REQUEST, lambda reply: len(reply) >= 48


def _generic_datagram(size: int) -> Tuple[bytes, Matcher]:
    return b"\0" * max(1, size), lambda reply: True


class UDPProbe(BaseProbe):

    @property
    def name(self) -> str:
        return "udp"

    def _datagram(self, target: TestTarget) -> Tuple[bytes, Matcher]:
        if target.port == 53:
            return _dns_datagram(str(target.param("query_name", "example.com")))
        if target.port == 123:
            return _ntp_datagram()
        return _generic_datagram(int(target.param("payload_size", DEFAULT_PAYLOAD_SIZE)))

    def test(self, target: TestTarget, timeout: float) -> ProbeResult:
        count = max(1, int(target.param("count", DEFAULT_COUNT)))
        baseline = float(target.param("baseline_loss", 0.0))
        per_packet = max(0.05, timeout / count)

        received = 0
        rtts = []
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.settimeout(per_packet)
            sock.connect((target.host, target.port or 53))
            for _ in range(count):
                rtt = self._exchange(sock, target, per_packet)
                if rtt is not None:
                    received += 1
                    rtts.append(rtt)

        if received == 0:
            raise ProbeTimeout(f"no UDP replies from {target.label} ({count} sent)")

        loss = 1.0 - received / count
        return self.ok(
            target,
            sum(rtts) / len(rtts),
            sent=count,
            received=received,
            packet_loss=round(loss, 4),
            baseline_loss=baseline,
            measurements=count,
        )

    def _exchange(self, sock: socket.socket, target: TestTarget, wait: float) -> Optional[float]:
        """Send one datagram and wait for its reply. Returns the RTT in ms or None."""
        payload, matches = self._datagram(target)
        start = time.monotonic()
        sock.send(payload)
        deadline = start + wait
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            sock.settimeout(remaining)
            try:
                reply = sock.recv(4096)
            except socket.timeout:
                return None
            if matches(reply):
                return (time.monotonic() - start) * 1000
