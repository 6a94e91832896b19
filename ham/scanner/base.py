# ham/scanner/base.py
"""
Base classes for the HAM diagnosis pipeline.

Architecture:
    Snapshot flows through:  Probes → Scorers → Correlator/Analyzers → Reasoner

BaseProbe:     Runs one protocol test against one target and reports the raw
               outcome. Probes NEVER judge censorship; they only measure.

BaseScorer:    (ham.scanner.scorer) Maps a probe's raw outcome to a 0–10
               ProtocolScore with a confidence and a reasoning trail.

BaseAnalyzer:  Reads a finished Snapshot and emits PatternIndicators.
               Analyzers NEVER measure; they only interpret.

This separation means:
  - You can swap the TLS probe implementation without touching any heuristics
  - You can tune scoring penalties without changing how data is collected
  - Each probe can fail independently without crashing the whole cycle

Every value type in this module is frozen once constructed and can be shared
across threads without synchronization.
"""

from __future__ import annotations

import errno
import logging
import socket
import ssl
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ham.errors import (
    BlockPageDetected,
    PluginContractViolation,
    ProbeConnectionError,
    ProbeProtocolError,
    ProbeTimeout,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_utc() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    """Read-only shallow copy of a mapping."""
    return MappingProxyType(dict(mapping or {}))


def _plain(value: Any) -> Any:
    """Convert frozen containers back to plain JSON-friendly values."""
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ErrorKind(str, Enum):
    """Why a probe invocation failed. Stored in ProbeResult.error."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_RESET = "connection_reset"
    UNREACHABLE = "unreachable"
    DNS_FAILURE = "dns_failure"
    PROTOCOL_ERROR = "protocol_error"
    BLOCK_PAGE = "block_page"
    CONTRACT_VIOLATION = "contract_violation"
    PROBE_ERROR = "probe_error"


class IndicatorName(str, Enum):
    """Named censorship signatures the correlator and analyzers can emit."""

    DNS_POISONING = "dns_poisoning"
    BANDWIDTH_THROTTLE = "bandwidth_throttle"
    DPI_RESET = "dpi_reset"
    SNI_FILTERING = "sni_filtering"
    BLOCK_PAGE = "block_page"
    QUIC_BLOCKING = "quic_blocking"
    IPV6_BLOCKED = "ipv6_blocked"
    ICMP_RATE_LIMIT = "icmp_rate_limit"
    WIDESPREAD_BLOCKING = "widespread_blocking"
    NEWLY_BLOCKED = "newly_blocked"
    STATISTICAL_ANOMALY = "statistical_anomaly"


# ---------------------------------------------------------------------------
# Data structures: these flow through the entire pipeline
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TestTarget:
    """
    One endpoint a probe is pointed at.

    Fields:
        host:    Address or hostname (for DNS: the domain being resolved)
        port:    Port, when the protocol has one
        params:  Protocol-specific parameters, e.g.
                 {"sni": "example.com"}                 for tls
                 {"resolver": "8.8.8.8", "query_type": "A"}  for dns
                 {"count": 5, "payload_size": 512}      for udp / icmp
    """

    __test__ = False  # not a pytest test class

    host: str
    port: Optional[int] = None
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "params", _freeze(self.params))

    def param(self, key: str, default: Any = None) -> Any:
        return self.params.get(key, default)

    @property
    def sni(self) -> Optional[str]:
        return self.params.get("sni")

    @property
    def query_type(self) -> str:
        return str(self.params.get("query_type", "A"))

    @property
    def label(self) -> str:
        """Short human label: host:port plus the distinguishing parameter."""
        base = f"{self.host}:{self.port}" if self.port is not None else self.host
        if self.params.get("sni"):
            return f"{base} (sni={self.params['sni']})"
        if self.params.get("resolver"):
            return f"{base} @{self.params['resolver']}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        return {"host": self.host, "port": self.port, "params": _plain(self.params)}


@dataclass(frozen=True)
class ProbeResult:
    """
    Standardized output from any probe invocation.

    Produced once per invocation and never mutated. When a protocol has
    several targets, the orchestrator folds the per-target results into one
    merged ProbeResult via ProbeResult.merge(); the originals stay available
    in `samples`.

    Fields:
        protocol:      Probe name that produced this (e.g. "tcp", "dns")
        success:       Did the measurement succeed?
        latency_ms:    Round-trip / handshake latency, when measured
        error:         ErrorKind when success is False
        error_detail:  Free-text detail for the reasoning trail
        metadata:      Probe-specific facts (packet_loss, answers, sni, ...)
        target:        The TestTarget this ran against (None when merged)
        attempts:      How many attempts it took (1 = no retry)
        samples:       Per-target results folded into this one (merged only)
    """

    protocol: str
    success: bool
    latency_ms: Optional[float] = None
    error: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    target: Optional[TestTarget] = None
    attempts: int = 1
    samples: Tuple["ProbeResult", ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "metadata", _freeze(self.metadata))
        object.__setattr__(self, "samples", tuple(self.samples))
        if self.error is not None and not isinstance(self.error, ErrorKind):
            object.__setattr__(self, "error", ErrorKind(self.error))

    @classmethod
    def timeout(cls, protocol: str, target: Optional[TestTarget] = None,
                detail: str = "timed out", attempts: int = 1) -> "ProbeResult":
        """Synthesized result for a probe that never finalized in time."""
        return cls(
            protocol=protocol,
            success=False,
            error=ErrorKind.TIMEOUT,
            error_detail=detail,
            target=target,
            attempts=attempts,
        )

    def sample_results(self) -> Tuple["ProbeResult", ...]:
        """The individual measurements behind this result."""
        return self.samples if self.samples else (self,)

    @property
    def retried(self) -> bool:
        return any(s.attempts > 1 for s in self.sample_results())

    @classmethod
    def merge(cls, protocol: str, results: Sequence["ProbeResult"]) -> "ProbeResult":
        """
        Fold several per-target results of one protocol into a single result.

        A single result is returned unchanged. Otherwise:
            success      any sample succeeded
            latency_ms   mean latency of successful samples
            error        dominant error kind, only when every sample failed
            metadata     sample/failure counts, error histogram, mean loss
        """
        results = list(results)
        if not results:
            raise ValueError(f"No results to merge for protocol '{protocol}'")
        if len(results) == 1:
            return results[0]

        ok = [r for r in results if r.success]
        failed = [r for r in results if not r.success]

        latencies = [r.latency_ms for r in ok if r.latency_ms is not None]
        latency = round(sum(latencies) / len(latencies), 2) if latencies else None

        error_counts = Counter(r.error.value for r in failed if r.error is not None)
        dominant: Optional[ErrorKind] = None
        detail: Optional[str] = None
        if failed and not ok:
            # Ties resolve in ErrorKind declaration order for determinism
            order = [k.value for k in ErrorKind]
            name = sorted(error_counts.items(), key=lambda kv: (-kv[1], order.index(kv[0])))[0][0] \
                if error_counts else ErrorKind.PROBE_ERROR.value
            dominant = ErrorKind(name)
            detail = f"all {len(results)} targets failed"

        metadata: Dict[str, Any] = {
            "sample_count": len(results),
            "failed_count": len(failed),
            "error_counts": dict(sorted(error_counts.items())),
        }
        losses = [r.metadata["packet_loss"] for r in ok if "packet_loss" in r.metadata]
        if losses:
            metadata["packet_loss"] = round(sum(losses) / len(losses), 4)
        baselines = [r.metadata["baseline_loss"] for r in ok if "baseline_loss" in r.metadata]
        if baselines:
            metadata["baseline_loss"] = round(sum(baselines) / len(baselines), 4)
        throughputs = [r.metadata["throughput_bps"] for r in ok if "throughput_bps" in r.metadata]
        if throughputs:
            metadata["throughput_bps"] = round(sum(throughputs) / len(throughputs), 1)

        return cls(
            protocol=protocol,
            success=bool(ok),
            latency_ms=latency,
            error=dominant,
            error_detail=detail,
            metadata=metadata,
            attempts=max(r.attempts for r in results),
            samples=tuple(results),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "protocol": self.protocol,
            "success": self.success,
            "latency_ms": self.latency_ms,
            "error": self.error.value if self.error else None,
            "error_detail": self.error_detail,
            "metadata": _plain(self.metadata),
            "attempts": self.attempts,
        }
        if self.target is not None:
            data["target"] = self.target.to_dict()
        if self.samples:
            data["samples"] = [s.to_dict() for s in self.samples]
        return data


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class ProtocolScore:
    """
    Normalized verdict for one protocol in one cycle.

    Invariants (enforced on construction, violations raise
    PluginContractViolation so third-party scorers are caught):
        0 <= value <= 10
        0.0 <= confidence <= 1.0
        reasoning is non-empty whenever value < 10
    """

    protocol: str
    value: int
    confidence: float
    reasoning: Tuple[str, ...] = ()

    def __post_init__(self):
        if not _is_number(self.value) or not 0 <= self.value <= 10:
            raise PluginContractViolation(
                f"score value {self.value!r} outside [0, 10]", plugin=self.protocol
            )
        if not _is_number(self.confidence) or not 0.0 <= self.confidence <= 1.0:
            raise PluginContractViolation(
                f"confidence {self.confidence!r} outside [0, 1]", plugin=self.protocol
            )
        object.__setattr__(self, "reasoning", tuple(str(r) for r in self.reasoning))
        if self.value < 10 and not self.reasoning:
            raise PluginContractViolation(
                f"score {self.value} below 10 without reasoning", plugin=self.protocol
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "value": self.value,
            "confidence": self.confidence,
            "reasoning": list(self.reasoning),
        }


@dataclass(frozen=True)
class Evidence:
    """One (protocol, observation) pair backing a pattern indicator."""

    protocol: str
    observation: str


@dataclass(frozen=True)
class PatternIndicator:
    """
    A named, confidence-scored hypothesis about a censorship technique.

    Produced fresh every cycle; combining two indicators with the same name
    always builds a new one (see Correlator.merge).
    """

    name: IndicatorName
    confidence: float
    evidence: Tuple[Evidence, ...] = ()
    sources: Tuple[str, ...] = ()

    def __post_init__(self):
        if not isinstance(self.name, IndicatorName):
            try:
                object.__setattr__(self, "name", IndicatorName(self.name))
            except ValueError:
                raise PluginContractViolation(f"unknown indicator name {self.name!r}")
        if not _is_number(self.confidence) or not 0.0 <= self.confidence <= 1.0:
            raise PluginContractViolation(
                f"indicator confidence {self.confidence!r} outside [0, 1]",
                plugin=self.name.value,
            )
        object.__setattr__(self, "evidence", tuple(self.evidence))
        object.__setattr__(self, "sources", tuple(self.sources))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name.value,
            "confidence": self.confidence,
            "evidence": [{"protocol": e.protocol, "observation": e.observation} for e in self.evidence],
            "sources": list(self.sources),
        }


@dataclass(frozen=True)
class Snapshot:
    """
    Everything measured in one scan cycle.

    Built by the orchestrator only after every scheduled probe finalized (or
    was synthesized as a timeout at the deadline), then handed read-only to
    the correlator, analyzers and reasoner.

    Fields:
        cycle_id:          Monotonic cycle counter
        timestamp:         When the cycle started
        targets:           protocol → targets that were scheduled
        results:           protocol → merged ProbeResult
        scores:            protocol → ProtocolScore
        duration_seconds:  Wall-clock time the cycle took
        cancelled:         A stop was requested while probes were in flight
        deadline_exceeded: The cycle-wide deadline elapsed before all finalized
    """

    cycle_id: int
    timestamp: datetime
    targets: Mapping[str, Tuple[TestTarget, ...]] = field(default_factory=dict)
    results: Mapping[str, ProbeResult] = field(default_factory=dict)
    scores: Mapping[str, ProtocolScore] = field(default_factory=dict)
    duration_seconds: float = 0.0
    cancelled: bool = False
    deadline_exceeded: bool = False

    def __post_init__(self):
        object.__setattr__(
            self, "targets", _freeze({k: tuple(v) for k, v in dict(self.targets).items()})
        )
        object.__setattr__(self, "results", _freeze(self.results))
        object.__setattr__(self, "scores", _freeze(self.scores))

    @property
    def protocols(self) -> Tuple[str, ...]:
        """Scored protocols in stable (sorted) order."""
        return tuple(sorted(self.scores))

    @property
    def missing(self) -> Tuple[str, ...]:
        """Protocols that were scheduled but produced no score."""
        return tuple(sorted(p for p in self.targets if p not in self.scores))

    def get_score(self, protocol: str) -> Optional[ProtocolScore]:
        return self.scores.get(protocol)

    def get_result(self, protocol: str) -> Optional[ProbeResult]:
        return self.results.get(protocol)

    def samples(self, protocol: str) -> Tuple[ProbeResult, ...]:
        """Individual per-target results for a protocol (empty if absent)."""
        result = self.results.get(protocol)
        return result.sample_results() if result is not None else ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "timestamp": self.timestamp.isoformat(),
            "duration_seconds": self.duration_seconds,
            "cancelled": self.cancelled,
            "deadline_exceeded": self.deadline_exceeded,
            "targets": {p: [t.to_dict() for t in ts] for p, ts in sorted(self.targets.items())},
            "results": {p: r.to_dict() for p, r in sorted(self.results.items())},
            "scores": {p: s.to_dict() for p, s in sorted(self.scores.items())},
        }


# ---------------------------------------------------------------------------
# Exception classification
# ---------------------------------------------------------------------------

_RESET_ERRNOS = {errno.ECONNRESET, errno.ECONNABORTED, errno.EPIPE}
_UNREACH_ERRNOS = {errno.ENETUNREACH, errno.EHOSTUNREACH, errno.ENETDOWN, errno.EHOSTDOWN}
_RESET_MARKERS = ("connection reset", "eof occurred in violation", "unexpected eof", "connection aborted")


def _exception_chain(exc: BaseException, max_depth: int = 10) -> List[BaseException]:
    chain: List[BaseException] = []
    current: Optional[BaseException] = exc
    while current is not None and len(chain) < max_depth:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def _classify_one(exc: BaseException) -> Optional[ErrorKind]:
    if isinstance(exc, PluginContractViolation):
        return ErrorKind.CONTRACT_VIOLATION
    if isinstance(exc, ProbeTimeout):
        return ErrorKind.TIMEOUT
    if isinstance(exc, BlockPageDetected):
        return ErrorKind.BLOCK_PAGE
    if isinstance(exc, ProbeProtocolError):
        return ErrorKind.PROTOCOL_ERROR
    if isinstance(exc, ProbeConnectionError):
        return {
            "refused": ErrorKind.CONNECTION_REFUSED,
            "reset": ErrorKind.CONNECTION_RESET,
        }.get(exc.kind, ErrorKind.UNREACHABLE)
    if isinstance(exc, socket.gaierror):
        return ErrorKind.DNS_FAILURE
    # DPI boxes typically cut the handshake: the client sees EOF mid-handshake
    if isinstance(exc, (ssl.SSLEOFError, ssl.SSLZeroReturnError)):
        return ErrorKind.CONNECTION_RESET
    if isinstance(exc, ssl.SSLError):
        text = str(exc).lower()
        if any(m in text for m in _RESET_MARKERS):
            return ErrorKind.CONNECTION_RESET
        return ErrorKind.PROTOCOL_ERROR
    if isinstance(exc, ConnectionRefusedError):
        return ErrorKind.CONNECTION_REFUSED
    if isinstance(exc, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
        return ErrorKind.CONNECTION_RESET
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, OSError):
        if exc.errno in _RESET_ERRNOS:
            return ErrorKind.CONNECTION_RESET
        if exc.errno in _UNREACH_ERRNOS:
            return ErrorKind.UNREACHABLE
        if exc.errno == errno.ETIMEDOUT:
            return ErrorKind.TIMEOUT
        if exc.errno == errno.ECONNREFUSED:
            return ErrorKind.CONNECTION_REFUSED
    return None


def classify_exception(exc: BaseException) -> Tuple[ErrorKind, str]:
    """
    Map any exception raised by a probe onto an ErrorKind.

    Walks the __cause__/__context__ chain so wrapped errors (httpx, dnspython)
    are classified by their root socket/ssl error. Anything unrecognised
    (malformed target, programming error) becomes PROBE_ERROR.
    """
    detail = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    for link in _exception_chain(exc):
        kind = _classify_one(link)
        if kind is not None:
            return kind, detail
    return ErrorKind.PROBE_ERROR, detail


# ---------------------------------------------------------------------------
# Abstract base classes
# ---------------------------------------------------------------------------

class BaseProbe(ABC):
    """
    Abstract base for protocol probes.

    To create a new probe:
        1. Subclass BaseProbe
        2. Set the `name` property (e.g., "tcp", "dns", "quic")
        3. Implement `test(target, timeout) -> ProbeResult`
        4. Optionally override `score()` or set `scorer` for custom heuristics

    The base class handles automatically:
        - Timing (latency_ms is filled from wall-clock if the probe didn't)
        - Error catching (exceptions become ProbeResult with success=False)
        - Scoring through the protocol's registered scorer
    """

    scorer = None  # BaseScorer; resolved from the scorer registry when None

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique protocol identifier. Used as key in Snapshot.results."""
        ...

    def run(self, target: TestTarget, timeout: float) -> ProbeResult:
        """
        Execute the probe with automatic timing and error handling.

        DO NOT OVERRIDE THIS METHOD. Override `test()` instead.

        Returns ProbeResult, always, even on failure.
        """
        start = time.monotonic()
        try:
            result = self.test(target, timeout)
            if not isinstance(result, ProbeResult):
                raise PluginContractViolation(
                    f"test() returned {type(result).__name__}, expected ProbeResult",
                    plugin=self.name,
                )
        except Exception as e:
            kind, detail = classify_exception(e)
            if kind in (ErrorKind.PROBE_ERROR, ErrorKind.CONTRACT_VIOLATION):
                logger.exception(f"Probe '{self.name}' failed for {target.label}")
            else:
                logger.debug(f"Probe '{self.name}' {kind.value} for {target.label}: {detail}")
            return ProbeResult(
                protocol=self.name,
                success=False,
                error=kind,
                error_detail=detail,
                target=target,
            )

        elapsed_ms = round((time.monotonic() - start) * 1000, 2)
        changes: Dict[str, Any] = {}
        if result.protocol != self.name:
            changes["protocol"] = self.name
        if result.target is None:
            changes["target"] = target
        if result.success and result.latency_ms is None:
            changes["latency_ms"] = elapsed_ms
        return replace(result, **changes) if changes else result

    @abstractmethod
    def test(self, target: TestTarget, timeout: float) -> ProbeResult:
        """
        Perform the actual measurement. Override this in subclasses.

        Raise ProbeTimeout / ProbeConnectionError / ProbeProtocolError (or let
        socket/ssl errors propagate) on failure; run() records them.
        """
        ...

    def score(self, result: ProbeResult) -> "ProtocolScore":
        """Score a (possibly merged) result with this protocol's scorer."""
        scorer = self.scorer
        if scorer is None:
            from ham.scanner.scorer import scorer_for

            scorer = scorer_for(self.name)
        return scorer.score(result)

    # ── Result builders for subclasses ──

    def ok(self, target: TestTarget, latency_ms: Optional[float] = None,
           **metadata: Any) -> ProbeResult:
        return ProbeResult(
            protocol=self.name,
            success=True,
            latency_ms=round(latency_ms, 2) if latency_ms is not None else None,
            metadata=metadata,
            target=target,
        )


class BaseAnalyzer(ABC):
    """
    Abstract base for pluggable indicator sources.

    An analyzer is an alternate/additional source of PatternIndicators
    (e.g. a statistical classifier). Its output is merged with the built-in
    correlator rules by indicator name using the same combination rule.

    The base class handles automatically:
        - Error catching (exceptions return an empty list, never crash the cycle)
        - Contract checks (non-PatternIndicator output is rejected and logged)
        - Auto-tagging every indicator with the analyzer name as its source
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique analyzer identifier."""
        ...

    def run(self, snapshot: Snapshot) -> List[PatternIndicator]:
        """
        Execute the analyzer with error handling.

        DO NOT OVERRIDE THIS METHOD. Override `analyze()` instead.
        """
        try:
            produced = list(self.analyze(snapshot) or [])
        except PluginContractViolation as e:
            logger.error(f"Analyzer '{self.name}' violated its contract: {e}")
            return []
        except Exception:
            logger.exception(f"Analyzer '{self.name}' failed for cycle {snapshot.cycle_id}")
            return []

        indicators: List[PatternIndicator] = []
        for item in produced:
            if not isinstance(item, PatternIndicator):
                logger.error(
                    f"Analyzer '{self.name}' returned {type(item).__name__}, "
                    f"expected PatternIndicator; dropped"
                )
                continue
            if item.confidence <= 0.0 or not item.evidence:
                continue
            if not item.sources:
                item = replace(item, sources=(self.name,))
            indicators.append(item)
        return indicators

    @abstractmethod
    def analyze(self, snapshot: Snapshot) -> List[PatternIndicator]:
        """Inspect the snapshot and return indicators (empty list if none)."""
        ...
