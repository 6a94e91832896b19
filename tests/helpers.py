"""Builders shared by the test modules."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from ham.config import DEFAULT_CONFIG, CoreConfig
from ham.scanner.base import (
    BaseProbe,
    ErrorKind,
    ProbeResult,
    ProtocolScore,
    Snapshot,
    TestTarget,
)
from ham.scanner.scorer import scorer_for

T0 = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def ok(protocol: str, latency: float = 20.0, target: Optional[TestTarget] = None,
       attempts: int = 1, **metadata) -> ProbeResult:
    return ProbeResult(protocol=protocol, success=True, latency_ms=latency,
                       metadata=metadata, target=target, attempts=attempts)


def fail(protocol: str, error: ErrorKind = ErrorKind.TIMEOUT, target: Optional[TestTarget] = None,
         attempts: int = 1, **metadata) -> ProbeResult:
    return ProbeResult(protocol=protocol, success=False, error=error, error_detail=error.value,
                       metadata=metadata, target=target, attempts=attempts)


def score(protocol: str, value: int, confidence: float = 1.0) -> ProtocolScore:
    reasoning = () if value == 10 else (f"{protocol} degraded",)
    return ProtocolScore(protocol=protocol, value=value, confidence=confidence, reasoning=reasoning)


PerTarget = Union[ProbeResult, Sequence[ProbeResult]]


def snapshot_from_results(results: Dict[str, PerTarget], cycle_id: int = 1,
                          timestamp: Optional[datetime] = None,
                          extra_targets: Iterable[str] = ()) -> Snapshot:
    """Merge and score per-target results the way the orchestrator does."""
    merged: Dict[str, ProbeResult] = {}
    scores: Dict[str, ProtocolScore] = {}
    targets: Dict[str, tuple] = {}
    for protocol, outcome in results.items():
        per_target = [outcome] if isinstance(outcome, ProbeResult) else list(outcome)
        merged[protocol] = ProbeResult.merge(protocol, per_target)
        scores[protocol] = scorer_for(protocol).score(merged[protocol])
        targets[protocol] = tuple(r.target or TestTarget(host=f"{protocol}.test") for r in per_target)
    for protocol in extra_targets:
        targets.setdefault(protocol, (TestTarget(host=f"{protocol}.test"),))
    return Snapshot(
        cycle_id=cycle_id,
        timestamp=timestamp or T0 + timedelta(seconds=3 * cycle_id),
        targets=targets,
        results=merged,
        scores=scores,
    )


def snapshot_from_scores(values: Dict[str, int], cycle_id: int = 1,
                         timestamp: Optional[datetime] = None,
                         confidence: float = 1.0) -> Snapshot:
    """Snapshot carrying only scores (results are plain success/timeout)."""
    results = {
        p: ok(p) if v > 0 else fail(p)
        for p, v in values.items()
    }
    return Snapshot(
        cycle_id=cycle_id,
        timestamp=timestamp or T0 + timedelta(seconds=3 * cycle_id),
        targets={p: (TestTarget(host=f"{p}.test"),) for p in values},
        results=results,
        scores={p: score(p, v, confidence) for p, v in values.items()},
    )


def make_config(protocols: Optional[Dict[str, dict]] = None, **sections) -> CoreConfig:
    """
    Config with every default protocol switched off and not required, then
    the given protocols layered on top.
    """
    raw_protocols = {name: {"enabled": False, "required": False} for name in DEFAULT_CONFIG["protocols"]}
    for name, settings in (protocols or {}).items():
        raw_protocols[name] = {"enabled": True, "required": False, **settings}
    mapping = {"protocols": raw_protocols}
    mapping.update(sections)
    return CoreConfig.from_mapping(mapping)


Behaviour = Callable[[TestTarget, int], Optional[Union[ProbeResult, Exception]]]


class FakeProbe(BaseProbe):
    """
    Scriptable probe.

    behaviour(target, attempt_number) may return a ProbeResult, raise or
    return an exception (raised for it), or return None for a plain success.
    """

    def __init__(self, name: str, behaviour: Optional[Behaviour] = None,
                 delay: float = 0.0, latency: float = 20.0,
                 release: Optional[threading.Event] = None):
        self._name = name
        self.behaviour = behaviour
        self.delay = delay
        self.latency = latency
        self.release = release
        self.calls: List[TestTarget] = []
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    @property
    def name(self) -> str:
        return self._name

    def test(self, target: TestTarget, timeout: float) -> ProbeResult:
        with self._lock:
            self.calls.append(target)
            attempt = sum(1 for t in self.calls if t == target)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.release is not None:
                self.release.wait(10)
            elif self.delay:
                time.sleep(self.delay)
            outcome = self.behaviour(target, attempt) if self.behaviour else None
        finally:
            with self._lock:
                self.active -= 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome if outcome is not None else self.ok(target, self.latency)


def diagnose(snapshot: Snapshot, indicators: Sequence = (), window=None,
             config: Optional[CoreConfig] = None):
    """Diagnosis for a snapshot with the default reasoner."""
    from ham.scanner.reasoner import Reasoner

    return Reasoner(config).diagnose(snapshot, list(indicators), window)


def build_store(history: Sequence[Dict[str, int]], max_entries: int = 20, config: Optional[CoreConfig] = None):
    """TemporalStore holding one scored cycle per mapping in history (cycle ids from 1)."""
    from ham.scanner.temporal import TemporalStore

    store = TemporalStore(max_entries=max_entries)
    for cycle_id, values in enumerate(history, start=1):
        snapshot = snapshot_from_scores(values, cycle_id=cycle_id)
        store.append(snapshot, diagnose(snapshot, config=config))
    return store
