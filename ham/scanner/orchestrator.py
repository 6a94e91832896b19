# ham/scanner/orchestrator.py
"""
Scan Orchestrator: runs one diagnosis cycle end to end.

Coordinates the full pipeline:

    1. Expand the enabled protocols into one job per (protocol, target)
    2. Run jobs on a bounded worker pool (scanning.parallel_tests slots);
       extra jobs queue until a slot frees
    3. Inside each job: probe.run() with the per-attempt timeout, then up to
       scanning.retries retries with exponential backoff. Retries are local
       to the job and never block other jobs
    4. Collect until every job finalized, the cycle deadline elapsed or a
       stop was requested. Anything unfinished becomes a timeout result;
       nothing is silently dropped
    5. Merge per-target results, score each protocol, build the Snapshot
    6. Correlator + analyzer → indicators; Reasoner → NetworkDiagnosis
    7. Append (Snapshot, NetworkDiagnosis) to the Temporal Store

Cycles are serialized by a lock, so the store sees one writer in one total
order.

Usage:
    from ham.scanner.orchestrator import ScanOrchestrator

    orchestrator = ScanOrchestrator(CoreConfig.from_mapping(raw))
    outcome = orchestrator.run_cycle()
    outcome.diagnosis.overall_status
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from ham.config import CoreConfig
from ham.errors import ConfigurationError, PluginContractViolation
from ham.scanner.base import (
    BaseAnalyzer,
    BaseProbe,
    ErrorKind,
    PatternIndicator,
    ProbeResult,
    ProtocolScore,
    Snapshot,
    TestTarget,
    now_utc,
)
from ham.scanner.correlator import Correlator
from ham.scanner.diagnosis import NetworkDiagnosis
from ham.scanner.reasoner import Reasoner
from ham.scanner.registry import (
    AnalyzerRegistry,
    ProbeRegistry,
    default_analyzer_registry,
    default_probe_registry,
)
from ham.scanner.scorer import ProtocolScorer
from ham.scanner.temporal import TemporalStore

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.25
JOB_GRACE = 1.0

# Deterministic answers: asking again cannot change them
NON_RETRYABLE = {ErrorKind.BLOCK_PAGE, ErrorKind.CONTRACT_VIOLATION}


def _is_definitive(result: ProbeResult) -> bool:
    """A failure another attempt cannot change. A resolver that returned an rcode has answered."""
    if result.error in NON_RETRYABLE:
        return True
    return result.error is ErrorKind.DNS_FAILURE and bool(result.metadata.get("rcode"))


@dataclass(frozen=True)
class CycleOutcome:
    """Everything one cycle produced."""

    snapshot: Snapshot
    indicators: Tuple[PatternIndicator, ...]
    diagnosis: NetworkDiagnosis

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot": self.snapshot.to_dict(),
            "indicators": [i.to_dict() for i in self.indicators],
            "diagnosis": self.diagnosis.to_dict(),
        }


@dataclass(frozen=True)
class _Job:
    index: int
    protocol: str
    target: TestTarget
    probe: BaseProbe


class ScanOrchestrator:
    """
    Owns the probe schedule, the cycle loop and the Temporal Store.

    Startup validation (fatal, raised from __init__):
        - an enabled or required protocol with no registered probe
        - an unknown analyzer name
        - no protocol enabled at all
    """

    def __init__(
        self,
        config: Optional[CoreConfig] = None,
        probes: Optional[ProbeRegistry] = None,
        analyzers: Optional[AnalyzerRegistry] = None,
        store: Optional[TemporalStore] = None,
        correlator: Optional[Correlator] = None,
        reasoner: Optional[Reasoner] = None,
    ):
        self.config = config or CoreConfig.defaults()
        self.probes = probes if probes is not None else default_probe_registry()
        if analyzers is None:
            analyzers = default_analyzer_registry(self.config.analysis.analyzer_options)

        if not self.config.enabled_protocols:
            raise ConfigurationError("no protocol is enabled", field="protocols")
        for protocol in self.config.enabled_protocols:
            self.probes.get(protocol)
        for protocol in self.config.required_protocols:
            if protocol not in self.config.protocols and protocol not in self.probes:
                raise ConfigurationError(f"unknown required protocol '{protocol}'",
                                         field="analysis.required_protocols")
        self.analyzer: BaseAnalyzer = analyzers.get(self.config.analysis.analyzer)

        analysis = self.config.analysis
        if store is None:
            store = TemporalStore(max_entries=analysis.window_size, max_age=analysis.window_duration)
        self.store = store
        self.correlator = correlator or Correlator.from_config(self.config)
        self.reasoner = reasoner or Reasoner(self.config)

        latest = self.store.window().latest
        self._cycle_id = latest.cycle_id if latest else 0
        self._cycle_lock = threading.Lock()
        self._active_cancel: Optional[threading.Event] = None

        logger.info(
            f"Orchestrator ready: protocols={','.join(self.config.enabled_protocols)} "
            f"required={','.join(self.config.required_protocols) or '(all)'} "
            f"analyzer={self.analyzer.name} parallel={self.config.scanning.parallel_tests}"
        )

    # ── Public API ──

    def run_cycle(self, stop_event: Optional[threading.Event] = None) -> CycleOutcome:
        """
        Run one complete cycle and return its outcome.

        stop_event (or stop()) cancels in-flight probes cooperatively: results
        already finalized are kept, unfinished ones become timeouts.
        """
        with self._cycle_lock:
            cancel = stop_event or threading.Event()
            self._active_cancel = cancel
            try:
                return self._run_cycle(cancel)
            finally:
                self._active_cancel = None

    def stop(self) -> None:
        """Cancel the cycle currently in flight, if any."""
        cancel = self._active_cancel
        if cancel is not None:
            logger.info("Stop requested; cancelling in-flight probes")
            cancel.set()

    @property
    def last_cycle_id(self) -> int:
        return self._cycle_id

    # ── Cycle ──

    def _run_cycle(self, cancel: threading.Event) -> CycleOutcome:
        self._cycle_id += 1
        cycle_id = self._cycle_id
        timestamp = now_utc()
        started = time.monotonic()

        jobs = self._plan_jobs()
        logger.debug(f"Cycle {cycle_id}: {len(jobs)} probe jobs")
        results, cancelled, deadline_exceeded = self._execute(jobs, cancel)

        merged: Dict[str, ProbeResult] = {}
        scores: Dict[str, ProtocolScore] = {}
        targets: Dict[str, Tuple[TestTarget, ...]] = {}
        for protocol in self.config.enabled_protocols:
            targets[protocol] = self.config.targets_for(protocol)
            per_target = [results[job.index] for job in jobs if job.protocol == protocol]
            merged[protocol], scores[protocol] = self._score(protocol, per_target)

        snapshot = Snapshot(
            cycle_id=cycle_id,
            timestamp=timestamp,
            targets=targets,
            results=merged,
            scores=scores,
            duration_seconds=round(time.monotonic() - started, 3),
            cancelled=cancelled,
            deadline_exceeded=deadline_exceeded,
        )

        window = self.store.window(self.config.analysis.window_duration, until=timestamp)
        indicators = self.correlator.correlate(snapshot, window)
        extra = self.analyzer.run(snapshot)
        if extra:
            indicators = self.correlator.merge(indicators, extra)

        diagnosis = self.reasoner.diagnose(snapshot, indicators, window)
        self.store.append(snapshot, diagnosis)

        logger.info(
            f"Cycle {cycle_id} finished in {snapshot.duration_seconds:.1f}s: "
            f"status={diagnosis.overall_status.value} "
            f"likelihood={diagnosis.censorship_likelihood:.2f} "
            f"confidence={diagnosis.confidence_level:.2f} "
            f"indicators=[{', '.join(diagnosis.indicator_names())}]"
        )
        return CycleOutcome(snapshot=snapshot, indicators=tuple(indicators), diagnosis=diagnosis)

    def _plan_jobs(self) -> List[_Job]:
        jobs: List[_Job] = []
        for protocol in self.config.enabled_protocols:
            probe = self.probes.get(protocol)
            for target in self.config.targets_for(protocol):
                jobs.append(_Job(len(jobs), protocol, target, probe))
        return jobs

    def _execute(self, jobs: List[_Job],
                 cancel: threading.Event) -> Tuple[Dict[int, ProbeResult], bool, bool]:
        scanning = self.config.scanning
        budget = scanning.job_budget() + JOB_GRACE
        deadline = time.monotonic() + scanning.effective_deadline(len(jobs))

        results: Dict[int, ProbeResult] = {}
        job_started: Dict[int, float] = {}
        cancelled = False
        deadline_exceeded = False

        executor = ThreadPoolExecutor(
            max_workers=max(1, min(scanning.parallel_tests, len(jobs))),
            thread_name_prefix="ham-probe",
        )
        try:
            futures: Dict[Future, _Job] = {
                executor.submit(self._run_job, job, cancel, job_started): job for job in jobs
            }
            pending = set(futures)
            while pending:
                now = time.monotonic()
                if cancel.is_set():
                    cancelled = True
                    break
                if now >= deadline:
                    deadline_exceeded = True
                    break

                done, pending = wait(pending, timeout=min(POLL_INTERVAL, deadline - now),
                                     return_when=FIRST_COMPLETED)
                for future in done:
                    job = futures[future]
                    results[job.index] = self._collect(future, job)

                now = time.monotonic()
                for future in list(pending):
                    job = futures[future]
                    began = job_started.get(job.index)
                    if began is not None and now - began > budget:
                        pending.discard(future)
                        logger.warning(f"Probe '{job.protocol}' on {job.target.label} overran {budget:.1f}s")
                        results[job.index] = ProbeResult.timeout(
                            job.protocol, job.target, detail=f"probe did not finish within {budget:.1f}s",
                        )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if cancelled or deadline_exceeded:
            reason = "cycle cancelled" if cancelled else "cycle deadline exceeded"
            unfinished = [job for job in jobs if job.index not in results]
            if unfinished:
                logger.warning(f"{reason}: {len(unfinished)} probe job(s) recorded as timeouts")
            for job in unfinished:
                results[job.index] = ProbeResult.timeout(job.protocol, job.target, detail=reason)
        return results, cancelled, deadline_exceeded

    def _collect(self, future: Future, job: _Job) -> ProbeResult:
        try:
            return future.result()
        except Exception as e:
            logger.exception(f"Probe job '{job.protocol}' on {job.target.label} crashed")
            return ProbeResult(
                protocol=job.protocol,
                success=False,
                error=ErrorKind.PROBE_ERROR,
                error_detail=f"{type(e).__name__}: {e}",
                target=job.target,
            )

    def _run_job(self, job: _Job, cancel: threading.Event, job_started: Dict[int, float]) -> ProbeResult:
        """Worker body: one target, with retries and backoff."""
        job_started[job.index] = time.monotonic()
        scanning = self.config.scanning
        delays = scanning.retry_delays()

        attempt = 0
        while True:
            attempt += 1
            result = job.probe.run(job.target, scanning.timeout)
            if result.success or _is_definitive(result):
                break
            if attempt > scanning.retries or cancel.is_set():
                break
            delay = delays[attempt - 1]
            logger.debug(
                f"Probe '{job.protocol}' on {job.target.label} failed ({result.error.value if result.error else '?'}); "
                f"retry {attempt}/{scanning.retries} in {delay:.2f}s"
            )
            if cancel.wait(delay):
                break
        return replace(result, attempts=attempt) if result.attempts != attempt else result

    def _score(self, protocol: str, per_target: List[ProbeResult]) -> Tuple[ProbeResult, ProtocolScore]:
        """Merge and score one protocol; a misbehaving scorer fails only that protocol."""
        probe = self.probes.get(protocol)
        merged = ProbeResult.merge(protocol, per_target)
        try:
            score = probe.score(merged)
            if not isinstance(score, ProtocolScore):
                raise PluginContractViolation(
                    f"score() returned {type(score).__name__}, expected ProtocolScore", plugin=protocol,
                )
            if score.protocol != protocol:
                score = replace(score, protocol=protocol)
            return merged, score
        except PluginContractViolation as e:
            logger.error(f"Scorer contract violation for '{protocol}': {e}; treating probe as failed")
            kind, detail = ErrorKind.CONTRACT_VIOLATION, str(e)
        except Exception as e:
            logger.exception(f"Scoring '{protocol}' failed; treating probe as failed")
            kind, detail = ErrorKind.PROBE_ERROR, f"{type(e).__name__}: {e}"

        failed = ProbeResult(protocol=protocol, success=False, error=kind, error_detail=detail,
                             attempts=merged.attempts)
        return failed, ProtocolScorer(protocol).score(failed)
