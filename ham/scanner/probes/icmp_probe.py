# ham/scanner/probes/icmp_probe.py
"""
ICMP echo probe.

Runs the system `ping` binary (the core never opens raw sockets itself)
and parses the per-sequence replies, so that both overall loss and the
shape of the loss are visible. A path that answers the first few echoes and
then goes silent is the classic ICMP rate-limit signature.

Target params:
    count      echo requests (default 5)
    interval   seconds between requests (default 0.2, the unprivileged minimum)

Metadata:
    sent, received, packet_loss, reply_sequence (bool per icmp_seq),
    rtt_avg_ms, measurements
"""

from __future__ import annotations

import logging
import math
import re
import subprocess
import sys
from typing import Dict, List

from ham.errors import ProbeTimeout
from ham.scanner.base import BaseProbe, ProbeResult, TestTarget

logger = logging.getLogger(__name__)

DEFAULT_COUNT = 5
DEFAULT_INTERVAL = 0.2

_REPLY_RE = re.compile(r"icmp_seq=(\d+).*?time[=<]([\d.]+)\s*ms", re.IGNORECASE)


def parse_ping_output(output: str, count: int) -> Dict[str, object]:
    """
    Extract per-sequence replies from iputils/BSD ping output.

    Sequence numbers start at 1 on Linux and 0 on BSD; both are normalised
    onto positions 0..count-1.
    """
    replies: Dict[int, float] = {}
    for line in output.splitlines():
        m = _REPLY_RE.search(line)
        if m:
            replies[int(m.group(1))] = float(m.group(2))

    offset = 0 if 0 in replies else 1
    sequence: List[bool] = [(i + offset) in replies for i in range(count)]
    rtts = [replies[i + offset] for i in range(count) if (i + offset) in replies]
    received = sum(sequence)
    return {
        "sent": count,
        "received": received,
        "packet_loss": round(1.0 - received / count, 4) if count else 1.0,
        "reply_sequence": tuple(sequence),
        "rtt_avg_ms": round(sum(rtts) / len(rtts), 2) if rtts else None,
    }


class ICMPProbe(BaseProbe):

    @property
    def name(self) -> str:
        return "icmp"

    def _command(self, host: str, count: int, interval: float, deadline: int) -> List[str]:
        if sys.platform.startswith("win"):
            return ["ping", "-n", str(count), "-w", str(deadline * 1000), host]
        return ["ping", "-n", "-c", str(count), "-i", str(interval), "-w", str(deadline), host]

    def test(self, target: TestTarget, timeout: float) -> ProbeResult:
        count = max(1, int(target.param("count", DEFAULT_COUNT)))
        interval = float(target.param("interval", DEFAULT_INTERVAL))
        deadline = max(1, int(math.ceil(timeout)))

        try:
            proc = subprocess.run(
                self._command(target.host, count, interval, deadline),
                capture_output=True,
                text=True,
                timeout=deadline + 1,
            )
        except subprocess.TimeoutExpired as e:
            raise ProbeTimeout(f"ping {target.host} did not finish in {deadline}s") from e

        facts = parse_ping_output(proc.stdout, count)
        if not facts["received"]:
            raise ProbeTimeout(f"no echo replies from {target.host} ({count} sent)")

        return self.ok(target, facts["rtt_avg_ms"], measurements=count, **facts)
