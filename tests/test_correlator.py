"""Tests for ham.scanner.correlator and the rule table."""

import pytest

from ham.config import CoreConfig, HeuristicSettings
from ham.errors import ConfigurationError
from ham.scanner.base import ErrorKind, Evidence, IndicatorName, PatternIndicator, TestTarget
from ham.scanner.correlator import Correlator
from ham.scanner.rules import RULE_NAMES, RULES, CorrelationRule, RuleHit
from ham.utils.scoring import capped_sum, max_combine
from tests.helpers import build_store, fail, ok, snapshot_from_results

REQUIRED = ("dns", "https", "tcp")


def _indicators(snapshot, window=None, required=REQUIRED, **kwargs):
    return {i.name: i for i in Correlator(required=required, **kwargs).correlate(snapshot, window)}


def _dns(resolver: str, answers=(), domain: str = "example.com", **kwargs):
    target = TestTarget(domain, params={"resolver": resolver})
    facts = dict(resolver=resolver, domain=domain, query_type="A", answers=tuple(answers))
    if kwargs.pop("nxdomain", False):
        return fail("dns", ErrorKind.DNS_FAILURE, target=target, rcode="NXDOMAIN", **facts)
    return ok("dns", target=target, rcode="NOERROR", **facts)


def _tls(sni: str, error=None, host: str = "1.1.1.1"):
    target = TestTarget(host, 443, {"sni": sni})
    return fail("tls", error, target=target) if error else ok("tls", target=target, sni=sni)


# ---------------------------------------------------------------------------
# DNS
# ---------------------------------------------------------------------------

def test_consistent_dns_emits_nothing() -> None:
    snapshot = snapshot_from_results({
        "dns": [_dns(r, ["93.184.216.34"]) for r in ("8.8.8.8", "1.1.1.1", "9.9.9.9")],
    })
    assert _indicators(snapshot) == {}


def test_resolver_divergence_and_sinkhole_answer() -> None:
    snapshot = snapshot_from_results({
        "dns": [
            _dns("8.8.8.8", ["93.184.216.34"]),
            _dns("1.1.1.1", ["93.184.216.34"]),
            _dns("192.0.2.53", ["10.10.34.34"]),
        ],
    })

    indicator = _indicators(snapshot)[IndicatorName.DNS_POISONING]

    # divergence 0.8 × 1.0 and sinkhole 0.9, combined by noisy-OR
    assert indicator.confidence == pytest.approx(0.98)
    assert indicator.sources == ("dns_resolver_divergence", "dns_bogon_answer")
    assert any("10.10.34.34" in e.observation for e in indicator.evidence)


def test_nxdomain_lie_counts_as_divergent_answer() -> None:
    snapshot = snapshot_from_results({
        "dns": [_dns("8.8.8.8", ["93.184.216.34"]), _dns("192.0.2.53", nxdomain=True)],
    })

    indicator = _indicators(snapshot)[IndicatorName.DNS_POISONING]
    assert indicator.confidence == pytest.approx(0.8)
    assert indicator.sources == ("dns_resolver_divergence",)


def test_divergence_below_threshold_is_ignored() -> None:
    snapshot = snapshot_from_results({
        "dns": [
            _dns("8.8.8.8", ["93.184.216.34", "93.184.216.35"]),
            _dns("1.1.1.1", ["93.184.216.34", "93.184.216.35", "93.184.216.36"]),
        ],
    })
    assert IndicatorName.DNS_POISONING not in _indicators(snapshot)


def test_cdn_answers_from_each_resolver_are_not_poisoning() -> None:
    snapshot = snapshot_from_results({
        "dns": [
            _dns("8.8.8.8", ["142.250.72.14"], domain="google.com"),
            _dns("1.1.1.1", ["142.250.190.78"], domain="google.com"),
            _dns("9.9.9.9", ["172.217.3.110"], domain="google.com"),
        ],
    })
    assert IndicatorName.DNS_POISONING not in _indicators(snapshot)


def test_lone_public_answer_against_agreeing_resolvers() -> None:
    snapshot = snapshot_from_results({
        "dns": [
            _dns("8.8.8.8", ["93.184.216.34"]),
            _dns("1.1.1.1", ["93.184.216.34"]),
            _dns("192.0.2.53", ["31.13.72.36"]),
        ],
    })

    indicator = _indicators(snapshot)[IndicatorName.DNS_POISONING]
    assert indicator.confidence == pytest.approx(0.8)
    assert indicator.sources == ("dns_resolver_divergence",)


def test_resolver_timeouts_are_not_answers() -> None:
    snapshot = snapshot_from_results({
        "dns": [_dns("8.8.8.8", ["93.184.216.34"]),
                fail("dns", target=TestTarget("example.com", params={"resolver": "1.1.1.1"}))],
    })
    assert IndicatorName.DNS_POISONING not in _indicators(snapshot)


# ---------------------------------------------------------------------------
# Throttling
# ---------------------------------------------------------------------------

def test_udp_loss_signals_throttling() -> None:
    snapshot = snapshot_from_results({"udp": ok("udp", packet_loss=0.8, measurements=5)})

    assert snapshot.scores["udp"].value == 2
    indicator = _indicators(snapshot)[IndicatorName.BANDWIDTH_THROTTLE]
    assert indicator.confidence == pytest.approx(0.64)


def test_udp_loss_below_threshold_is_ignored() -> None:
    snapshot = snapshot_from_results({"udp": ok("udp", packet_loss=0.3, measurements=5)})
    assert IndicatorName.BANDWIDTH_THROTTLE not in _indicators(snapshot)


def test_upload_download_asymmetry() -> None:
    snapshot = snapshot_from_results({
        "upload": ok("upload", latency=100.0, throughput_bps=400_000.0, expected_bps=2_000_000.0, measurements=2),
        "download": ok("download", latency=100.0, throughput_bps=4_000_000.0, expected_bps=2_000_000.0,
                       measurements=2),
    })

    assert snapshot.scores["upload"].value == 2
    assert snapshot.scores["download"].value == 10
    indicator = _indicators(snapshot)[IndicatorName.BANDWIDTH_THROTTLE]
    assert indicator.confidence == pytest.approx(0.8)
    assert indicator.evidence[0] == Evidence("upload", "upload scored 2/10")


def test_throttle_with_icmp_rate_limit() -> None:
    snapshot = snapshot_from_results({
        "udp": ok("udp", packet_loss=0.6, measurements=5),
        "icmp": ok("icmp", packet_loss=0.6, reply_sequence=(True, True, False, False, False), measurements=5),
    })

    found = _indicators(snapshot)
    throttle = found[IndicatorName.BANDWIDTH_THROTTLE]
    # udp loss 0.8 × 0.6 and the combined rule 0.8
    assert throttle.confidence == pytest.approx(1 - (1 - 0.48) * (1 - 0.8), abs=1e-4)
    assert throttle.sources == ("udp_packet_loss", "throttle_with_icmp_rate_limit")
    assert found[IndicatorName.ICMP_RATE_LIMIT].confidence == pytest.approx(0.64)


def test_scattered_icmp_loss_is_not_rate_limiting() -> None:
    snapshot = snapshot_from_results({
        "icmp": ok("icmp", packet_loss=0.6, reply_sequence=(True, False, True, False, False), measurements=5),
    })
    assert IndicatorName.ICMP_RATE_LIMIT not in _indicators(snapshot)


# ---------------------------------------------------------------------------
# DPI / SNI / block pages
# ---------------------------------------------------------------------------

def test_tls_resets_while_tcp_works() -> None:
    snapshot = snapshot_from_results({
        "tcp": ok("tcp"),
        "tls": [_tls("a.example", ErrorKind.CONNECTION_RESET, host="192.0.2.10"),
                _tls("b.example", ErrorKind.CONNECTION_RESET, host="192.0.2.11")],
    })

    indicator = _indicators(snapshot)[IndicatorName.DPI_RESET]
    assert indicator.confidence == pytest.approx(0.9)


def test_tls_resets_with_tcp_down_are_not_dpi() -> None:
    snapshot = snapshot_from_results({
        "tcp": fail("tcp"),
        "tls": _tls("a.example", ErrorKind.CONNECTION_RESET),
    })
    assert IndicatorName.DPI_RESET not in _indicators(snapshot)


def test_sni_selective_failure() -> None:
    snapshot = snapshot_from_results({
        "tls": [_tls("one.one.one.one"), _tls("blocked.example", ErrorKind.TIMEOUT)],
    })

    indicator = _indicators(snapshot)[IndicatorName.SNI_FILTERING]
    assert indicator.confidence == pytest.approx(0.9)
    assert "blocked.example" in indicator.evidence[0].observation


def test_tls_alerts_are_not_sni_filtering() -> None:
    snapshot = snapshot_from_results({
        "tls": [_tls("one.one.one.one"), _tls("expired.example", ErrorKind.PROTOCOL_ERROR)],
    })
    assert IndicatorName.SNI_FILTERING not in _indicators(snapshot)


def test_block_page() -> None:
    https = fail("https", ErrorKind.BLOCK_PAGE, target=TestTarget("www.example.com", 443))
    snapshot = snapshot_from_results({"https": https})

    indicator = _indicators(snapshot)[IndicatorName.BLOCK_PAGE]
    assert indicator.confidence == 1.0


# ---------------------------------------------------------------------------
# QUIC / IPv6
# ---------------------------------------------------------------------------

def test_quic_fails_only_on_443() -> None:
    snapshot = snapshot_from_results({
        "quic": [fail("quic", target=TestTarget("www.example.com", 443)),
                 ok("quic", target=TestTarget("www.example.com", 8080))],
    })

    indicator = _indicators(snapshot)[IndicatorName.QUIC_BLOCKING]
    assert indicator.confidence == pytest.approx(0.7)
    assert indicator.sources == ("quic_port_sensitivity",)


def test_quic_blocked_while_tls_works() -> None:
    snapshot = snapshot_from_results({
        "quic": [fail("quic", target=TestTarget("www.example.com", 443))],
        "tls": _tls("www.example.com"),
    })
    assert _indicators(snapshot)[IndicatorName.QUIC_BLOCKING].confidence == pytest.approx(0.6)


def test_quic_and_tls_both_down_is_not_quic_specific() -> None:
    snapshot = snapshot_from_results({
        "quic": [fail("quic", target=TestTarget("www.example.com", 443))],
        "tls": _tls("www.example.com", ErrorKind.TIMEOUT),
    })
    assert IndicatorName.QUIC_BLOCKING not in _indicators(snapshot)


def test_ipv6_blackout() -> None:
    snapshot = snapshot_from_results({
        "tcp": ok("tcp"),
        "ipv6": [fail("ipv6", target=TestTarget("2001:db8::1", 53)),
                 fail("ipv6", ErrorKind.CONNECTION_REFUSED, target=TestTarget("2001:db8::2", 53))],
    })
    assert _indicators(snapshot)[IndicatorName.IPV6_BLOCKED].confidence == pytest.approx(0.9)


def test_ipv6_unreachable_is_local() -> None:
    snapshot = snapshot_from_results({"ipv6": fail("ipv6", ErrorKind.UNREACHABLE)})
    assert IndicatorName.IPV6_BLOCKED not in _indicators(snapshot)


# ---------------------------------------------------------------------------
# Widespread blocking
# ---------------------------------------------------------------------------

def test_all_required_protocols_timed_out() -> None:
    snapshot = snapshot_from_results({p: fail(p) for p in REQUIRED})

    indicator = _indicators(snapshot)[IndicatorName.WIDESPREAD_BLOCKING]
    assert indicator.confidence == pytest.approx(0.9)
    assert {e.protocol for e in indicator.evidence} == set(REQUIRED)


def test_blackout_with_resets() -> None:
    snapshot = snapshot_from_results({
        "dns": fail("dns"),
        "https": fail("https"),
        "tcp": [fail("tcp", ErrorKind.CONNECTION_RESET, target=TestTarget("192.0.2.1", 80)),
                fail("tcp", target=TestTarget("192.0.2.2", 80))],
    })

    assert snapshot.scores["tcp"].value == 2
    indicator = _indicators(snapshot)[IndicatorName.WIDESPREAD_BLOCKING]
    # blackout 0.9 and 1 of 4 failures reset (0.5 × 0.25), combined by noisy-OR
    assert indicator.sources == ("required_protocols_blackout", "blackout_with_resets")
    assert indicator.confidence == pytest.approx(0.9125)


def test_all_resets_is_widespread_although_scored_limited() -> None:
    def reset(protocol, host):
        return fail(protocol, ErrorKind.CONNECTION_RESET, target=TestTarget(host, 443))

    snapshot = snapshot_from_results({
        "tcp": [reset("tcp", h) for h in ("192.0.2.1", "192.0.2.2", "192.0.2.3")],
        "dns": [reset("dns", h) for h in ("8.8.8.8", "1.1.1.1", "9.9.9.9")],
        "https": reset("https", "example.com"),
    })

    assert {p: s.value for p, s in snapshot.scores.items()} == {"tcp": 4, "dns": 4, "https": 4}
    indicator = _indicators(snapshot)[IndicatorName.WIDESPREAD_BLOCKING]
    # 1 − (1 − 0.9)(1 − 0.5)
    assert indicator.confidence == pytest.approx(0.95)
    assert "required protocol tcp: every sample failed (connection_reset), scored 4/10" in [
        e.observation for e in indicator.evidence
    ]


def test_refused_connections_are_not_a_blackout() -> None:
    snapshot = snapshot_from_results({p: fail(p, ErrorKind.CONNECTION_REFUSED) for p in REQUIRED})
    assert IndicatorName.WIDESPREAD_BLOCKING not in _indicators(snapshot)


def test_unreachable_everywhere_is_a_local_failure() -> None:
    snapshot = snapshot_from_results({p: fail(p, ErrorKind.UNREACHABLE) for p in REQUIRED})
    assert IndicatorName.WIDESPREAD_BLOCKING not in _indicators(snapshot)


def test_one_required_protocol_up_is_not_widespread() -> None:
    snapshot = snapshot_from_results({"dns": fail("dns"), "https": fail("https"), "tcp": ok("tcp")})
    assert IndicatorName.WIDESPREAD_BLOCKING not in _indicators(snapshot)


def test_required_protocols_default_to_everything_scheduled() -> None:
    snapshot = snapshot_from_results({"tcp": fail("tcp"), "quic": fail("quic")})
    found = _indicators(snapshot, required=())
    assert IndicatorName.WIDESPREAD_BLOCKING in found


# ---------------------------------------------------------------------------
# Temporal
# ---------------------------------------------------------------------------

def test_newly_blocked_against_baseline() -> None:
    window = build_store([{"tls": 10}, {"tls": 10}, {"tls": 10}]).window()
    snapshot = snapshot_from_results({"tls": _tls("a.example", ErrorKind.TIMEOUT)}, cycle_id=4)

    indicator = _indicators(snapshot, window)[IndicatorName.NEWLY_BLOCKED]
    # magnitude 10/8 capped at 1, persistence (1 + 0) / (1 + 3)
    assert indicator.confidence == pytest.approx(0.625)
    assert indicator.evidence[0].protocol == "tls"


def test_newly_blocked_grows_with_persistence() -> None:
    window = build_store([{"tls": 10}, {"tls": 10}, {"tls": 0}, {"tls": 0}]).window()
    snapshot = snapshot_from_results({"tls": _tls("a.example", ErrorKind.TIMEOUT)}, cycle_id=5)

    # two cycles already below: persistence 3/4
    assert _indicators(snapshot, window)[IndicatorName.NEWLY_BLOCKED].confidence == pytest.approx(0.875)


def test_newly_blocked_needs_history() -> None:
    window = build_store([{"tls": 10}]).window()
    snapshot = snapshot_from_results({"tls": _tls("a.example", ErrorKind.TIMEOUT)}, cycle_id=2)
    assert IndicatorName.NEWLY_BLOCKED not in _indicators(snapshot, window)


def test_always_blocked_is_not_newly_blocked() -> None:
    window = build_store([{"tls": 0}, {"tls": 0}, {"tls": 0}]).window()
    snapshot = snapshot_from_results({"tls": _tls("a.example", ErrorKind.TIMEOUT)}, cycle_id=4)
    assert IndicatorName.NEWLY_BLOCKED not in _indicators(snapshot, window)


# ---------------------------------------------------------------------------
# Combination, configuration and merging
# ---------------------------------------------------------------------------

def test_healthy_snapshot_emits_nothing() -> None:
    snapshot = snapshot_from_results({
        "tcp": ok("tcp"),
        "tls": [_tls("a.example"), _tls("b.example")],
        "udp": ok("udp", packet_loss=0.0, measurements=5),
        "https": ok("https"),
    })
    assert _indicators(snapshot) == {}


def test_adding_a_healthy_protocol_never_raises_confidence() -> None:
    base = {"tls": _tls("a.example", ErrorKind.CONNECTION_RESET), "quic": fail("quic")}
    before = _indicators(snapshot_from_results(base))
    after = _indicators(snapshot_from_results({**base, "tcp": ok("tcp")}))

    for name, indicator in after.items():
        assert name in before
        assert indicator.confidence <= before[name].confidence


def test_rule_boost_override() -> None:
    snapshot = snapshot_from_results({"https": fail("https", ErrorKind.BLOCK_PAGE)})
    heuristics = HeuristicSettings(rule_boosts={"https_block_page": 0.4})

    assert _indicators(snapshot, heuristics=heuristics)[IndicatorName.BLOCK_PAGE].confidence == pytest.approx(0.4)


def test_unknown_rule_boost_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        Correlator(heuristics=HeuristicSettings(rule_boosts={"no_such_rule": 0.5}))


@pytest.mark.parametrize("combine, expected", [
    (None, 0.98),
    (capped_sum, 1.0),
    (max_combine, 0.9),
])
def test_injected_combiner(combine, expected) -> None:
    snapshot = snapshot_from_results({
        "dns": [_dns("8.8.8.8", ["93.184.216.34"]), _dns("192.0.2.53", ["10.10.34.34"])],
    })
    indicator = _indicators(snapshot, combine=combine)[IndicatorName.DNS_POISONING]
    assert indicator.confidence == pytest.approx(expected)


def test_from_config_uses_configured_combination() -> None:
    config = CoreConfig.from_mapping({"heuristics": {"combination": "max"}})
    correlator = Correlator.from_config(config)
    assert correlator.combine([0.2, 0.7]) == 0.7
    assert correlator.required == ("dns", "https", "tcp")


def test_failing_rule_is_skipped() -> None:
    def explode(ctx):
        raise RuntimeError("boom")

    rules = RULES + (CorrelationRule("explodes", IndicatorName.DPI_RESET, 1.0, explode),)
    snapshot = snapshot_from_results({"udp": ok("udp", packet_loss=0.8, measurements=5)})

    found = _indicators(snapshot, rules=rules)
    assert set(found) == {IndicatorName.BANDWIDTH_THROTTLE}


def test_hits_without_evidence_are_dropped() -> None:
    rules = (CorrelationRule("silent", IndicatorName.DPI_RESET, 1.0, lambda ctx: [RuleHit(1.0, ())]),)
    snapshot = snapshot_from_results({"tcp": ok("tcp")})
    assert _indicators(snapshot, rules=rules) == {}


def test_merge_combines_same_name() -> None:
    correlator = Correlator()
    a = PatternIndicator(IndicatorName.DPI_RESET, 0.5, (Evidence("tls", "reset"),), ("rule",))
    b = PatternIndicator(IndicatorName.DPI_RESET, 0.5, (Evidence("*", "anomaly"),), ("logistic",))
    c = PatternIndicator(IndicatorName.BLOCK_PAGE, 0.3, (Evidence("https", "451"),))

    merged = correlator.merge([a, c], [b])

    assert [i.name for i in merged] == [IndicatorName.BLOCK_PAGE, IndicatorName.DPI_RESET]
    assert merged[1].confidence == pytest.approx(0.75)
    assert merged[1].sources == ("rule", "logistic")
    assert len(merged[1].evidence) == 2


def test_output_is_sorted_and_deterministic() -> None:
    snapshot = snapshot_from_results({
        "https": fail("https", ErrorKind.BLOCK_PAGE),
        "udp": ok("udp", packet_loss=0.9, measurements=5),
        "tcp": ok("tcp"),
        "tls": [_tls("a.example"), _tls("b.example", ErrorKind.CONNECTION_RESET)],
    })
    correlator = Correlator(required=REQUIRED)

    first = correlator.correlate(snapshot)
    second = correlator.correlate(snapshot)

    assert first == second
    names = [i.name.value for i in first]
    assert names == sorted(names)
    assert all(0.0 < i.confidence <= 1.0 for i in first)


def test_describe_rules() -> None:
    described = Correlator().describe_rules()
    assert [d[0] for d in described] == list(RULE_NAMES)
    assert all(d[3] for d in described)
