# ham/scanner/scorer.py
"""
Protocol scorers.

Every probe's (possibly merged) ProbeResult is turned into a ProtocolScore:

    value = clamp(10 − Σ penalties, 0, 10)

Penalties (per ScoringProfile, one reasoning line each):
    - Failed samples:  penalty[error kind] × fraction of samples with that error
                       timeout 10, reset 6, refused 5, unreachable 10,
                       dns_failure 8, protocol_error 5, block_page 10
    - Latency:         graded, proportional to the excess over the protocol's
                       threshold, capped at max_latency_penalty
    - Packet loss:     loss_penalty_scale × (loss − baseline loss)
    - Throughput:      (ThroughputScorer) proportional to the shortfall
                       against the expected rate

Confidence starts at 1.0 and only goes down:
    - a single measurement caps it at SINGLE_MEASUREMENT_CAP
    - every retry costs RETRY_CONFIDENCE_STEP (floor RETRY_CONFIDENCE_FLOOR)
    - mixed success/failure across targets costs MIXED_OUTCOME_STEP
    - it never exceeds the least-certain sample's metadata["confidence"]
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from ham.scanner.base import ErrorKind, ProbeResult, ProtocolScore
from ham.utils.scoring import clamp, clamp_score

logger = logging.getLogger(__name__)

SINGLE_MEASUREMENT_CAP = 0.7
RETRY_CONFIDENCE_STEP = 0.1
RETRY_CONFIDENCE_FLOOR = 0.3
MIXED_OUTCOME_STEP = 0.15

DEFAULT_ERROR_PENALTIES: Mapping[ErrorKind, float] = MappingProxyType({
    ErrorKind.TIMEOUT: 10.0,
    ErrorKind.CONNECTION_RESET: 6.0,
    ErrorKind.CONNECTION_REFUSED: 5.0,
    ErrorKind.UNREACHABLE: 10.0,
    ErrorKind.DNS_FAILURE: 8.0,
    ErrorKind.PROTOCOL_ERROR: 5.0,
    ErrorKind.BLOCK_PAGE: 10.0,
    ErrorKind.CONTRACT_VIOLATION: 10.0,
    ErrorKind.PROBE_ERROR: 10.0,
})


@dataclass(frozen=True)
class ScoringProfile:
    """Protocol-specific scoring thresholds."""

    latency_threshold_ms: float = 300.0
    latency_penalty_per_threshold: float = 2.0
    max_latency_penalty: float = 4.0
    loss_penalty_scale: float = 10.0
    max_throughput_penalty: float = 8.0
    error_penalties: Mapping[ErrorKind, float] = field(default_factory=lambda: DEFAULT_ERROR_PENALTIES)


PROFILES: Dict[str, ScoringProfile] = {
    "tcp": ScoringProfile(latency_threshold_ms=300.0),
    "ipv6": ScoringProfile(latency_threshold_ms=300.0),
    "udp": ScoringProfile(latency_threshold_ms=300.0),
    "dns": ScoringProfile(latency_threshold_ms=200.0),
    "tls": ScoringProfile(latency_threshold_ms=600.0),
    "https": ScoringProfile(latency_threshold_ms=1500.0),
    "icmp": ScoringProfile(latency_threshold_ms=250.0),
    "quic": ScoringProfile(latency_threshold_ms=600.0),
    "upload": ScoringProfile(latency_threshold_ms=10_000.0, max_latency_penalty=2.0),
    "download": ScoringProfile(latency_threshold_ms=10_000.0, max_latency_penalty=2.0),
}


# ---------------------------------------------------------------------------
# Scorers
# ---------------------------------------------------------------------------

class BaseScorer(ABC):
    """Maps a ProbeResult to a ProtocolScore. One implementation per protocol."""

    protocol: str = "base"

    @abstractmethod
    def score(self, result: ProbeResult) -> ProtocolScore:
        ...


class ProtocolScorer(BaseScorer):
    """
    Default penalty-based scorer.

    Subclasses add protocol-specific deductions by overriding
    extra_penalties(); the failure, latency, loss and confidence handling is
    shared.
    """

    def __init__(self, protocol: str, profile: Optional[ScoringProfile] = None):
        self.protocol = protocol
        self.profile = profile or PROFILES.get(protocol, ScoringProfile())

    def score(self, result: ProbeResult) -> ProtocolScore:
        penalties: List[Tuple[float, str]] = []
        samples = result.sample_results()

        penalties.extend(self._failure_penalties(samples))
        if result.success:
            penalties.extend(self._latency_penalty(result))
            penalties.extend(self._loss_penalty(result))
            penalties.extend(self.extra_penalties(result))

        total = sum(p for p, _ in penalties)
        reasoning = [reason for p, reason in penalties if p > 0]
        value = clamp_score(10.0 - total)

        confidence, notes = self._confidence(result, samples)
        reasoning.extend(notes)
        if value < 10 and not reasoning:
            reasoning.append(f"minor deductions totalling {total:.2f}")

        return ProtocolScore(
            protocol=self.protocol,
            value=value,
            confidence=confidence,
            reasoning=tuple(reasoning),
        )

    def extra_penalties(self, result: ProbeResult) -> List[Tuple[float, str]]:
        """Hook for protocol-specific deductions on successful results."""
        return []

    # ── Shared deductions ──

    def _failure_penalties(self, samples: Tuple[ProbeResult, ...]) -> List[Tuple[float, str]]:
        failed = [s for s in samples if not s.success]
        if not failed:
            return []
        total = len(samples)
        counts = Counter(s.error or ErrorKind.PROBE_ERROR for s in failed)
        out: List[Tuple[float, str]] = []
        for kind in ErrorKind:  # declaration order keeps reasoning stable
            n = counts.get(kind, 0)
            if not n:
                continue
            base = self.profile.error_penalties.get(kind, 10.0)
            penalty = base * n / total
            where = f"{n}/{total} targets" if total > 1 else "the target"
            out.append((penalty, f"{kind.value} on {where}: -{penalty:.1f}"))
        return out

    def _latency_penalty(self, result: ProbeResult) -> List[Tuple[float, str]]:
        threshold = self.profile.latency_threshold_ms
        latency = result.latency_ms
        if latency is None or threshold <= 0 or latency <= threshold:
            return []
        excess = (latency - threshold) / threshold
        penalty = min(self.profile.max_latency_penalty,
                      self.profile.latency_penalty_per_threshold * excess)
        return [(penalty, f"latency {latency:.0f}ms above {threshold:.0f}ms threshold: -{penalty:.1f}")]

    def _loss_penalty(self, result: ProbeResult) -> List[Tuple[float, str]]:
        loss = result.metadata.get("packet_loss")
        if loss is None:
            return []
        baseline = result.metadata.get("baseline_loss", 0.0) or 0.0
        effective = clamp(float(loss) - float(baseline))
        if effective <= 0:
            return []
        penalty = self.profile.loss_penalty_scale * effective
        note = f" (baseline {baseline:.0%})" if baseline else ""
        return [(penalty, f"packet loss {float(loss):.0%}{note}: -{penalty:.1f}")]

    def _confidence(self, result: ProbeResult,
                    samples: Tuple[ProbeResult, ...]) -> Tuple[float, List[str]]:
        confidence = 1.0
        notes: List[str] = []

        measurements = sum(int(s.metadata.get("measurements", 1) or 1) for s in samples)
        if measurements <= 1:
            confidence = min(confidence, SINGLE_MEASUREMENT_CAP)
            notes.append("confidence reduced: single measurement")

        extra_attempts = max(s.attempts for s in samples) - 1
        if extra_attempts > 0:
            confidence = max(RETRY_CONFIDENCE_FLOOR,
                             confidence - RETRY_CONFIDENCE_STEP * extra_attempts)
            notes.append(f"confidence reduced: result needed {extra_attempts} retr{'y' if extra_attempts == 1 else 'ies'}")

        if any(s.success for s in samples) and any(not s.success for s in samples):
            confidence -= MIXED_OUTCOME_STEP
            notes.append("confidence reduced: targets disagree")

        declared = [float(s.metadata["confidence"]) for s in samples if "confidence" in s.metadata]
        if declared and min(declared) < confidence:
            confidence = min(declared)
            notes.append(f"confidence capped by least-certain measurement ({confidence:.2f})")

        return round(clamp(confidence), 4), notes


class ThroughputScorer(ProtocolScorer):
    """Adds a shortfall penalty for bandwidth probes (upload / download)."""

    def extra_penalties(self, result: ProbeResult) -> List[Tuple[float, str]]:
        throughput = result.metadata.get("throughput_bps")
        expected = result.metadata.get("expected_bps")
        if expected is None and result.samples:
            values = [s.metadata["expected_bps"] for s in result.samples if "expected_bps" in s.metadata]
            expected = min(values) if values else None
        if throughput is None or not expected:
            return []
        ratio = float(throughput) / float(expected)
        if ratio >= 1.0:
            return []
        penalty = min(self.profile.max_throughput_penalty, 10.0 * (1.0 - ratio))
        return [(
            penalty,
            f"throughput {float(throughput) / 1e6:.2f} Mbps below expected "
            f"{float(expected) / 1e6:.2f} Mbps: -{penalty:.1f}",
        )]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

SCORERS: Dict[str, BaseScorer] = {
    name: ProtocolScorer(name) for name in ("tcp", "ipv6", "udp", "dns", "tls", "https", "icmp", "quic")
}
SCORERS["upload"] = ThroughputScorer("upload")
SCORERS["download"] = ThroughputScorer("download")


def scorer_for(protocol: str) -> BaseScorer:
    """Registered scorer for a protocol, or a default-profile scorer."""
    scorer = SCORERS.get(protocol)
    if scorer is None:
        scorer = ProtocolScorer(protocol)
    return scorer
