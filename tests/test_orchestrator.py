"""Tests for ham.scanner.orchestrator."""

import threading
import time

import pytest

from ham.errors import BlockPageDetected, ConfigurationError, ProbeTimeout
from ham.scanner.base import ErrorKind
from ham.scanner.diagnosis import OverallStatus
from ham.scanner.orchestrator import ScanOrchestrator
from ham.scanner.registry import ProbeRegistry
from ham.scanner.temporal import TemporalStore
from tests.helpers import FakeProbe, build_store, fail, make_config

TWO_TARGETS = ["192.0.2.1:80", "192.0.2.2:80"]


def _config(fast_scanning, protocols=None, **scanning):
    protocols = protocols or {"tcp": {"required": True, "targets": TWO_TARGETS}}
    return make_config(protocols, scanning={**fast_scanning, **scanning})


def _orchestrator(config, *probes, analyzers=None, store=None):
    return ScanOrchestrator(config, probes=ProbeRegistry(probes), analyzers=analyzers, store=store)


# ---------------------------------------------------------------------------
# Cycles
# ---------------------------------------------------------------------------

def test_healthy_cycle(tcp_only_config, tcp_registry, analyzers) -> None:
    orchestrator = ScanOrchestrator(tcp_only_config, probes=tcp_registry, analyzers=analyzers)

    outcome = orchestrator.run_cycle()

    snapshot = outcome.snapshot
    assert snapshot.cycle_id == 1
    assert not snapshot.cancelled and not snapshot.deadline_exceeded
    assert len(snapshot.samples("tcp")) == 2
    assert snapshot.scores["tcp"].value == 10
    assert snapshot.scores["tcp"].confidence == 1.0
    assert outcome.diagnosis.overall_status is OverallStatus.GOOD
    assert outcome.diagnosis.cycle_id == 1
    assert len(orchestrator.store) == 1


def test_cycle_ids_increase_and_history_accumulates(tcp_only_config, tcp_registry, analyzers) -> None:
    orchestrator = ScanOrchestrator(tcp_only_config, probes=tcp_registry, analyzers=analyzers)

    ids = [orchestrator.run_cycle().snapshot.cycle_id for _ in range(3)]

    assert ids == [1, 2, 3]
    assert orchestrator.last_cycle_id == 3
    assert [e.cycle_id for e in orchestrator.store.window()] == [1, 2, 3]


def test_cycle_ids_continue_from_existing_store(tcp_only_config, tcp_registry, analyzers) -> None:
    store = build_store([{"tcp": 10}, {"tcp": 10}])
    orchestrator = ScanOrchestrator(tcp_only_config, probes=tcp_registry, analyzers=analyzers, store=store)

    assert orchestrator.run_cycle().snapshot.cycle_id == 3


def test_several_protocols_are_merged_separately(fast_scanning, analyzers) -> None:
    config = _config(fast_scanning, {
        "tcp": {"required": True, "targets": TWO_TARGETS},
        "https": {"targets": ["https://www.example.com"]},
    })
    https = FakeProbe("https", behaviour=lambda target, attempt: BlockPageDetected("HTTP 451"))
    orchestrator = _orchestrator(config, FakeProbe("tcp"), https, analyzers=analyzers)

    outcome = orchestrator.run_cycle()

    assert set(outcome.snapshot.results) == {"tcp", "https"}
    assert outcome.snapshot.results["https"].error is ErrorKind.BLOCK_PAGE
    assert outcome.snapshot.scores["https"].value == 0
    assert "block_page" in outcome.diagnosis.indicator_names()


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

def test_failed_attempts_are_retried(fast_scanning, analyzers) -> None:
    def flaky(target, attempt):
        return ProbeTimeout("no answer") if attempt < 3 else None

    probe = FakeProbe("tcp", behaviour=flaky)
    orchestrator = _orchestrator(_config(fast_scanning, retries=2), probe, analyzers=analyzers)

    outcome = orchestrator.run_cycle()

    samples = outcome.snapshot.samples("tcp")
    assert all(s.success for s in samples)
    assert [s.attempts for s in samples] == [3, 3]
    assert len(probe.calls) == 6
    # two measurements, two retries each
    assert outcome.snapshot.scores["tcp"].confidence == pytest.approx(0.8)


def test_retries_give_up_after_limit(fast_scanning, analyzers) -> None:
    probe = FakeProbe("tcp", behaviour=lambda target, attempt: ProbeTimeout("no answer"))
    orchestrator = _orchestrator(_config(fast_scanning, retries=1), probe, analyzers=analyzers)

    outcome = orchestrator.run_cycle()

    samples = outcome.snapshot.samples("tcp")
    assert all(s.error is ErrorKind.TIMEOUT for s in samples)
    assert [s.attempts for s in samples] == [2, 2]
    assert outcome.snapshot.scores["tcp"].value == 0


def test_block_pages_are_not_retried(fast_scanning, analyzers) -> None:
    config = _config(fast_scanning, {"https": {"required": True, "targets": ["https://www.example.com"]}},
                     retries=3)
    probe = FakeProbe("https", behaviour=lambda target, attempt: BlockPageDetected("HTTP 451"))
    orchestrator = _orchestrator(config, probe, analyzers=analyzers)

    outcome = orchestrator.run_cycle()

    assert len(probe.calls) == 1
    assert outcome.snapshot.results["https"].attempts == 1


def test_resolver_answers_are_not_retried(fast_scanning, analyzers) -> None:
    config = _config(fast_scanning, {"dns": {"required": True, "targets": [
        {"domain": "blocked.example", "resolvers": ["8.8.8.8", "1.1.1.1"]},
    ]}}, retries=2)

    def behaviour(target, attempt):
        if target.param("resolver") == "8.8.8.8":
            return fail("dns", ErrorKind.DNS_FAILURE, target=target, rcode="NXDOMAIN", answers=())
        return fail("dns", ErrorKind.DNS_FAILURE, target=target)

    probe = FakeProbe("dns", behaviour=behaviour)
    outcome = _orchestrator(config, probe, analyzers=analyzers).run_cycle()

    calls = [t.param("resolver") for t in probe.calls]
    # NXDOMAIN is an answer; a failure without an rcode is retried
    assert calls.count("8.8.8.8") == 1
    assert calls.count("1.1.1.1") == 3
    assert sorted(s.attempts for s in outcome.snapshot.samples("dns")) == [1, 3]


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------

def test_probe_exception_becomes_failed_result(fast_scanning, analyzers) -> None:
    def crash(target, attempt):
        if target.host == "192.0.2.2":
            return RuntimeError("probe bug")
        return None

    orchestrator = _orchestrator(_config(fast_scanning), FakeProbe("tcp", behaviour=crash), analyzers=analyzers)

    outcome = orchestrator.run_cycle()

    samples = {s.target.host: s for s in outcome.snapshot.samples("tcp")}
    assert samples["192.0.2.1"].success
    assert samples["192.0.2.2"].error is ErrorKind.PROBE_ERROR
    assert "probe bug" in samples["192.0.2.2"].error_detail
    assert outcome.snapshot.scores["tcp"].value == 5


def test_probe_returning_garbage_is_a_contract_violation(fast_scanning, analyzers) -> None:
    probe = FakeProbe("tcp", behaviour=lambda target, attempt: "not a result")
    orchestrator = _orchestrator(_config(fast_scanning, retries=2), probe, analyzers=analyzers)

    outcome = orchestrator.run_cycle()

    assert outcome.snapshot.results["tcp"].error is ErrorKind.CONTRACT_VIOLATION
    assert outcome.snapshot.scores["tcp"].value == 0
    assert len(probe.calls) == 2  # one per target, never retried


def test_scorer_contract_violation_fails_only_that_protocol(fast_scanning, analyzers) -> None:
    class BadScore(FakeProbe):
        def score(self, result):
            return {"value": 11}

    config = _config(fast_scanning, {
        "tcp": {"required": True, "targets": TWO_TARGETS},
        "udp": {"targets": ["192.0.2.9:53"]},
    })
    orchestrator = _orchestrator(config, FakeProbe("tcp"), BadScore("udp"), analyzers=analyzers)

    outcome = orchestrator.run_cycle()

    assert outcome.snapshot.results["udp"].error is ErrorKind.CONTRACT_VIOLATION
    assert outcome.snapshot.scores["udp"].value == 0
    assert outcome.snapshot.scores["tcp"].value == 10
    assert outcome.diagnosis.overall_status is OverallStatus.GOOD


# ---------------------------------------------------------------------------
# Deadlines and cancellation
# ---------------------------------------------------------------------------

def test_hung_probe_is_recorded_as_timeout(fast_scanning, analyzers, release) -> None:
    config = _config(fast_scanning, {"tcp": {"required": True, "targets": ["192.0.2.1:80"]}},
                     cycle_deadline="30s")
    orchestrator = _orchestrator(config, FakeProbe("tcp", release=release), analyzers=analyzers)

    started = time.monotonic()
    outcome = orchestrator.run_cycle()

    assert time.monotonic() - started < 5
    result = outcome.snapshot.results["tcp"]
    assert result.error is ErrorKind.TIMEOUT
    assert "did not finish" in result.error_detail
    assert not outcome.snapshot.deadline_exceeded


def test_cycle_deadline_synthesizes_timeouts(fast_scanning, analyzers, release) -> None:
    config = _config(fast_scanning, cycle_deadline="300ms")
    orchestrator = _orchestrator(config, FakeProbe("tcp", release=release), analyzers=analyzers)

    outcome = orchestrator.run_cycle()

    snapshot = outcome.snapshot
    assert snapshot.deadline_exceeded
    assert len(snapshot.samples("tcp")) == 2
    assert all(s.error_detail == "cycle deadline exceeded" for s in snapshot.samples("tcp"))
    assert outcome.diagnosis.reasoning_trace[0].startswith("cycle deadline exceeded")


def test_stop_event_cancels_cycle(fast_scanning, analyzers, release) -> None:
    config = _config(fast_scanning, cycle_deadline="30s")
    orchestrator = _orchestrator(config, FakeProbe("tcp", release=release), analyzers=analyzers)
    stop = threading.Event()
    timer = threading.Timer(0.2, stop.set)
    timer.start()

    started = time.monotonic()
    outcome = orchestrator.run_cycle(stop_event=stop)
    timer.cancel()

    assert time.monotonic() - started < 5
    assert outcome.snapshot.cancelled
    assert all(s.error_detail == "cycle cancelled" for s in outcome.snapshot.samples("tcp"))
    assert len(orchestrator.store) == 1


def test_stop_from_another_thread(fast_scanning, analyzers, release) -> None:
    config = _config(fast_scanning, cycle_deadline="30s")
    orchestrator = _orchestrator(config, FakeProbe("tcp", release=release), analyzers=analyzers)
    timer = threading.Timer(0.2, orchestrator.stop)
    timer.start()

    outcome = orchestrator.run_cycle()
    timer.cancel()

    assert outcome.snapshot.cancelled


def test_finished_results_survive_cancellation(fast_scanning, analyzers, release) -> None:
    class HalfHung(FakeProbe):
        def test(self, target, timeout):
            if target.host == "192.0.2.2":
                release.wait(10)
            return self.ok(target, 15.0)

    config = _config(fast_scanning, cycle_deadline="30s")
    orchestrator = _orchestrator(config, HalfHung("tcp"), analyzers=analyzers)
    stop = threading.Event()
    timer = threading.Timer(0.3, stop.set)
    timer.start()

    outcome = orchestrator.run_cycle(stop_event=stop)
    timer.cancel()

    samples = {s.target.host: s for s in outcome.snapshot.samples("tcp")}
    assert samples["192.0.2.1"].success
    assert samples["192.0.2.2"].error_detail == "cycle cancelled"


def test_worker_pool_is_bounded(fast_scanning, analyzers) -> None:
    targets = [f"192.0.2.{i}:80" for i in range(1, 7)]
    config = _config(fast_scanning, {"tcp": {"required": True, "targets": targets}},
                     parallel_tests=2, cycle_deadline="10s")
    probe = FakeProbe("tcp", delay=0.1)
    orchestrator = _orchestrator(config, probe, analyzers=analyzers)

    outcome = orchestrator.run_cycle()

    assert probe.max_active <= 2
    assert len(probe.calls) == 6
    assert all(s.success for s in outcome.snapshot.samples("tcp"))


# ---------------------------------------------------------------------------
# Analyzers
# ---------------------------------------------------------------------------

def test_logistic_analyzer_merges_with_rules(fast_scanning) -> None:
    config = make_config(
        {"tcp": {"required": True, "targets": TWO_TARGETS}},
        scanning=fast_scanning,
        analysis={"analyzer": "logistic"},
    )
    probe = FakeProbe("tcp", behaviour=lambda target, attempt: ProbeTimeout("no answer"))
    orchestrator = ScanOrchestrator(config, probes=ProbeRegistry([probe]))

    outcome = orchestrator.run_cycle()

    names = outcome.diagnosis.indicator_names()
    assert "statistical_anomaly" in names
    assert "widespread_blocking" in names
    anomaly = next(i for i in outcome.indicators if i.name.value == "statistical_anomaly")
    assert anomaly.sources == ("logistic",)
    assert anomaly.confidence == pytest.approx(0.8808)


# ---------------------------------------------------------------------------
# Startup validation
# ---------------------------------------------------------------------------

def test_no_enabled_protocol(fast_scanning, analyzers) -> None:
    with pytest.raises(ConfigurationError):
        _orchestrator(make_config(scanning=fast_scanning), FakeProbe("tcp"), analyzers=analyzers)


def test_enabled_protocol_without_probe(fast_scanning, analyzers) -> None:
    with pytest.raises(ConfigurationError) as exc:
        _orchestrator(_config(fast_scanning), FakeProbe("udp"), analyzers=analyzers)
    assert "tcp" in str(exc.value)


def test_unknown_required_protocol(fast_scanning, analyzers) -> None:
    config = make_config({"tcp": {"targets": TWO_TARGETS}}, scanning=fast_scanning,
                         analysis={"required_protocols": ["sctp"]})
    with pytest.raises(ConfigurationError) as exc:
        _orchestrator(config, FakeProbe("tcp"), analyzers=analyzers)
    assert exc.value.field == "analysis.required_protocols"


def test_unknown_analyzer(fast_scanning, analyzers) -> None:
    config = make_config({"tcp": {"targets": TWO_TARGETS}}, scanning=fast_scanning,
                         analysis={"analyzer": "neural"})
    with pytest.raises(ConfigurationError) as exc:
        _orchestrator(config, FakeProbe("tcp"), analyzers=analyzers)
    assert exc.value.field == "analysis.analyzer"


def test_bad_analyzer_options(fast_scanning) -> None:
    config = make_config({"tcp": {"targets": TWO_TARGETS}}, scanning=fast_scanning,
                         analysis={"analyzer_options": {"logistic": {"threshold": 3}}})
    with pytest.raises(ConfigurationError) as exc:
        ScanOrchestrator(config, probes=ProbeRegistry([FakeProbe("tcp")]))
    assert exc.value.field == "analysis.analyzer_options"


def test_default_store_follows_analysis_settings(fast_scanning, analyzers) -> None:
    config = make_config({"tcp": {"targets": TWO_TARGETS}}, scanning=fast_scanning,
                         analysis={"window_size": 4, "window_duration": "1m"})
    orchestrator = _orchestrator(config, FakeProbe("tcp"), analyzers=analyzers)

    assert isinstance(orchestrator.store, TemporalStore)
    assert orchestrator.store.max_entries == 4
    assert orchestrator.store.max_age == 60.0
