# ham/scanner/rules.py
"""
Correlation rule table.

Each rule is a predicate over (Snapshot, TemporalWindow) that returns one
RuleHit per place it fires (an empty list when it does not). A hit holds a
strength in (0, 1] plus the observations that justify it. Its confidence is

    boost × strength      (boost overridable via heuristics.rule_boosts)

Several rules may point at the same indicator; the Correlator combines
their boosts with the configured combiner (noisy-OR by default).

Comparison protocols that are absent from a snapshot are presumed healthy:
"TLS is reset while TCP works" fires when TCP is absent. This keeps the
table monotone, so adding a healthy protocol to a snapshot can never raise
an indicator.

Rule → indicator:
    dns_resolver_divergence        dns_poisoning
    dns_bogon_answer               dns_poisoning
    upload_download_asymmetry      bandwidth_throttle
    udp_packet_loss                bandwidth_throttle
    throttle_with_icmp_rate_limit  bandwidth_throttle
    tls_reset_while_tcp_ok         dpi_reset
    sni_selective_failure          sni_filtering
    https_block_page               block_page
    icmp_rate_limit                icmp_rate_limit
    quic_port_sensitivity          quic_blocking
    quic_udp_blocked               quic_blocking
    ipv6_blackout                  ipv6_blocked
    required_protocols_blackout    widespread_blocking
    blackout_with_resets           widespread_blocking
    newly_blocked                  newly_blocked
"""

from __future__ import annotations

import ipaddress
import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from itertools import combinations
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ham.config import AnalysisSettings, HeuristicSettings
from ham.scanner.base import ErrorKind, Evidence, IndicatorName, ProbeResult, Snapshot
from ham.scanner.temporal import TemporalWindow
from ham.utils.scoring import GOOD_MIN, LIMITED_MIN, SCORE_MAX, clamp, jaccard_distance

logger = logging.getLogger(__name__)

BLACKOUT_ERRORS = {ErrorKind.TIMEOUT, ErrorKind.CONNECTION_RESET, ErrorKind.BLOCK_PAGE}
FILTER_ERRORS = {ErrorKind.TIMEOUT, ErrorKind.CONNECTION_RESET}
IPV6_BLOCK_ERRORS = {ErrorKind.TIMEOUT, ErrorKind.CONNECTION_RESET, ErrorKind.CONNECTION_REFUSED}

# Filter landing addresses some resolvers hand out instead of real answers
KNOWN_SINKHOLES = ("10.10.34.34", "10.10.34.35", "10.10.34.36")


# ---------------------------------------------------------------------------
# Rule plumbing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RuleContext:
    """Everything a rule predicate may look at."""

    snapshot: Snapshot
    window: TemporalWindow
    heuristics: HeuristicSettings
    analysis: AnalysisSettings
    required: Tuple[str, ...] = ()

    def score_value(self, protocol: str) -> Optional[int]:
        score = self.snapshot.get_score(protocol)
        return score.value if score is not None else None

    def healthy(self, protocol: str) -> bool:
        """Protocol scored Good, or is absent (presumed healthy)."""
        value = self.score_value(protocol)
        return value is None or value >= GOOD_MIN


@dataclass(frozen=True)
class RuleHit:
    strength: float
    evidence: Tuple[Evidence, ...]

    def __post_init__(self):
        object.__setattr__(self, "strength", clamp(self.strength))
        object.__setattr__(self, "evidence", tuple(self.evidence))


Predicate = Callable[[RuleContext], List[RuleHit]]


@dataclass(frozen=True)
class CorrelationRule:
    name: str
    indicator: IndicatorName
    boost: float
    predicate: Predicate = field(repr=False)
    description: str = ""

    def effective_boost(self, heuristics: HeuristicSettings) -> float:
        return clamp(heuristics.rule_boosts.get(self.name, self.boost))


def _hit(strength: float, *observations: Tuple[str, str]) -> List[RuleHit]:
    return [RuleHit(strength, tuple(Evidence(p, o) for p, o in observations))]


def _failed(results: Sequence[ProbeResult]) -> List[ProbeResult]:
    return [r for r in results if not r.success]


def _error_name(result: ProbeResult) -> str:
    return result.error.value if result.error else "failure"


# ---------------------------------------------------------------------------
# DNS
# ---------------------------------------------------------------------------

def _answer_set(result: ProbeResult) -> Optional[frozenset]:
    """What a resolver claimed. None when it did not answer at all."""
    if result.success:
        return frozenset(str(a) for a in result.metadata.get("answers", ()))
    if result.metadata.get("rcode") == "NXDOMAIN":
        return frozenset({"NXDOMAIN"})
    return None


def _group_dns(ctx: RuleContext) -> Dict[Tuple[str, str], List[ProbeResult]]:
    groups: Dict[Tuple[str, str], List[ProbeResult]] = OrderedDict()
    for sample in ctx.snapshot.samples("dns"):
        target = sample.target
        domain = sample.metadata.get("domain") or (target.host if target else "?")
        qtype = sample.metadata.get("query_type") or (target.query_type if target else "A")
        groups.setdefault((str(domain), str(qtype)), []).append(sample)
    return groups


def _resolver(result: ProbeResult) -> str:
    if "resolver" in result.metadata:
        return str(result.metadata["resolver"])
    return str(result.target.param("resolver", "?")) if result.target else "?"


def _lie_shaped(answers: frozenset) -> bool:
    """NXDOMAIN, an empty answer, or a reserved/sinkhole address."""
    return not answers or "NXDOMAIN" in answers or any(_is_bogon(a) for a in answers)


def dns_resolver_divergence(ctx: RuleContext) -> List[RuleHit]:
    """
    Resolvers that disagree about the same name.

    CDN names legitimately resolve to disjoint public addresses per resolver,
    so a disagreeing pair only counts when one side looks like a lie or when
    one side is the answer most resolvers agree on and the other is not.
    """
    hits: List[RuleHit] = []
    threshold = ctx.heuristics.dns_divergence_threshold
    for (domain, qtype), samples in _group_dns(ctx).items():
        answered = [(s, _answer_set(s)) for s in samples]
        answered = [(s, a) for s, a in answered if a is not None]
        if len(answered) < 2:
            continue
        top, votes = Counter(a for _, a in answered).most_common(1)[0]
        majority = top if votes * 2 > len(answered) else None

        divergence = 0.0
        for (_, a), (_, b) in combinations(answered, 2):
            split = majority is not None and (a == majority) != (b == majority)
            if split or _lie_shaped(a) or _lie_shaped(b):
                divergence = max(divergence, jaccard_distance(a, b))
        if divergence < threshold:
            continue
        evidence = tuple(
            Evidence("dns", f"{_resolver(s)} answered {domain}/{qtype} with {', '.join(sorted(a)) or 'nothing'}")
            for s, a in answered
        )
        hits.append(RuleHit(divergence, evidence))
    return hits


def _is_bogon(answer: str) -> bool:
    try:
        addr = ipaddress.ip_address(answer)
    except ValueError:
        return False
    return (
        answer in KNOWN_SINKHOLES
        or addr.is_private
        or addr.is_loopback
        or addr.is_unspecified
        or addr.is_reserved
        or addr.is_link_local
    )


def dns_bogon_answer(ctx: RuleContext) -> List[RuleHit]:
    evidence = []
    for sample in ctx.snapshot.samples("dns"):
        if not sample.success:
            continue
        bogons = [str(a) for a in sample.metadata.get("answers", ()) if _is_bogon(str(a))]
        if bogons:
            domain = sample.metadata.get("domain", sample.target.host if sample.target else "?")
            evidence.append(Evidence("dns", f"{_resolver(sample)} resolved {domain} to reserved address {', '.join(bogons)}"))
    return [RuleHit(1.0, tuple(evidence))] if evidence else []


# ---------------------------------------------------------------------------
# Throughput / loss
# ---------------------------------------------------------------------------

def upload_download_asymmetry(ctx: RuleContext) -> List[RuleHit]:
    up, down = ctx.score_value("upload"), ctx.score_value("download")
    if up is None and down is None:
        return []
    up_v = SCORE_MAX if up is None else up
    down_v = SCORE_MAX if down is None else down
    gap = abs(up_v - down_v)
    if gap < ctx.heuristics.throttle_asymmetry_threshold:
        return []
    slow = "upload" if up_v < down_v else "download"
    fast = "download" if slow == "upload" else "upload"
    fast_note = f"{fast} scored {max(up_v, down_v)}/10" if ctx.score_value(fast) is not None \
        else f"{fast} not measured (presumed healthy)"
    return _hit(min(1.0, gap / 8.0),
                (slow, f"{slow} scored {min(up_v, down_v)}/10"),
                (fast, fast_note))


def _effective_loss(result: ProbeResult) -> Optional[float]:
    if not result.success or "packet_loss" not in result.metadata:
        return None
    baseline = result.metadata.get("baseline_loss", 0.0) or 0.0
    return clamp(float(result.metadata["packet_loss"]) - float(baseline))


def udp_packet_loss(ctx: RuleContext) -> List[RuleHit]:
    result = ctx.snapshot.get_result("udp")
    if result is None:
        return []
    loss = _effective_loss(result)
    if loss is None or loss < ctx.heuristics.loss_threshold:
        return []
    return _hit(loss, ("udp", f"{loss:.0%} packet loss above baseline while some datagrams pass"))


def _icmp_rate_limited(result: ProbeResult) -> Optional[float]:
    """Fraction of trailing lost echoes after a run of answered ones, or None."""
    sequence = list(result.metadata.get("reply_sequence", ()))
    if len(sequence) < 3 or not sequence[0]:
        return None
    first_lost = sequence.index(False) if False in sequence else len(sequence)
    tail = sequence[first_lost:]
    if len(tail) < 2 or any(tail):
        return None
    return len(tail) / len(sequence)


def icmp_rate_limit(ctx: RuleContext) -> List[RuleHit]:
    hits = []
    for sample in ctx.snapshot.samples("icmp"):
        strength = _icmp_rate_limited(sample)
        if strength is None:
            continue
        host = sample.target.host if sample.target else "?"
        seq = "".join("+" if ok else "-" for ok in sample.metadata["reply_sequence"])
        hits.append(RuleHit(0.5 + strength / 2, (Evidence("icmp", f"{host}: first echoes answered, then silence ({seq})"),)))
    return hits


def throttle_with_icmp_rate_limit(ctx: RuleContext) -> List[RuleHit]:
    if not icmp_rate_limit(ctx):
        return []
    limited = []
    up = ctx.score_value("upload")
    if up is not None and up < GOOD_MIN:
        limited.append(("upload", f"upload scored {up}/10"))
    udp = ctx.snapshot.get_result("udp")
    loss = _effective_loss(udp) if udp is not None else None
    if loss is not None and loss >= ctx.heuristics.loss_threshold:
        limited.append(("udp", f"{loss:.0%} UDP packet loss"))
    if not limited:
        return []
    return _hit(1.0, *limited, ("icmp", "ICMP rate-limited in the same cycle"))


# ---------------------------------------------------------------------------
# DPI / SNI / block pages
# ---------------------------------------------------------------------------

def tls_reset_while_tcp_ok(ctx: RuleContext) -> List[RuleHit]:
    samples = list(ctx.snapshot.samples("tls")) + list(ctx.snapshot.samples("quic"))
    if not samples or not ctx.healthy("tcp"):
        return []
    resets = [s for s in samples if s.error is ErrorKind.CONNECTION_RESET]
    rate = len(resets) / len(samples)
    if not resets or rate < ctx.heuristics.reset_rate_threshold:
        return []
    tcp = ctx.score_value("tcp")
    tcp_note = f"plain TCP scored {tcp}/10" if tcp is not None else "plain TCP not measured (presumed healthy)"
    return _hit(0.5 + rate / 2,
                (resets[0].protocol, f"{len(resets)}/{len(samples)} TLS/QUIC handshakes reset"),
                ("tcp", tcp_note))


def sni_selective_failure(ctx: RuleContext) -> List[RuleHit]:
    groups: Dict[Tuple[str, Optional[int]], List[ProbeResult]] = OrderedDict()
    for sample in ctx.snapshot.samples("tls"):
        if sample.target is None:
            continue
        groups.setdefault((sample.target.host, sample.target.port), []).append(sample)

    hits = []
    for (host, port), samples in groups.items():
        snis = {s.target.sni or host for s in samples}
        if len(snis) < 2:
            continue
        passed = sorted({s.target.sni or host for s in samples if s.success})
        blocked = sorted({s.target.sni or host for s in samples if s.error in FILTER_ERRORS} - set(passed))
        if not passed or not blocked:
            continue
        hits.append(RuleHit(
            len(blocked) / len(snis) + 0.5,
            (Evidence("tls", f"{host}:{port} handshake fails for sni {', '.join(blocked)}"),
             Evidence("tls", f"{host}:{port} handshake succeeds for sni {', '.join(passed)}")),
        ))
    return hits


def https_block_page(ctx: RuleContext) -> List[RuleHit]:
    blocked = [s for s in ctx.snapshot.samples("https") if s.error is ErrorKind.BLOCK_PAGE]
    if not blocked:
        return []
    evidence = tuple(
        Evidence("https", f"{s.target.label if s.target else 'https'}: {s.error_detail or 'block page'}")
        for s in blocked
    )
    return [RuleHit(1.0, evidence)]


# ---------------------------------------------------------------------------
# QUIC / IPv6
# ---------------------------------------------------------------------------

def quic_port_sensitivity(ctx: RuleContext) -> List[RuleHit]:
    by_host: Dict[str, List[ProbeResult]] = OrderedDict()
    for sample in ctx.snapshot.samples("quic"):
        if sample.target is not None:
            by_host.setdefault(sample.target.host, []).append(sample)
    hits = []
    for host, samples in by_host.items():
        on_443 = [s for s in samples if (s.target.port or 443) == 443]
        alt_ok = sorted({s.target.port for s in samples if s.success and (s.target.port or 443) != 443})
        if on_443 and alt_ok and not any(s.success for s in on_443):
            hits.append(RuleHit(1.0, (
                Evidence("quic", f"{host}:443 QUIC {_error_name(on_443[0])}"),
                Evidence("quic", f"{host} QUIC answers on port(s) {', '.join(str(p) for p in alt_ok)}"),
            )))
    return hits


def quic_udp_blocked(ctx: RuleContext) -> List[RuleHit]:
    samples = ctx.snapshot.samples("quic")
    if not samples or any(s.success for s in samples) or not ctx.healthy("tls"):
        return []
    if not all(s.error in FILTER_ERRORS for s in samples):
        return []
    tls = ctx.score_value("tls")
    tls_note = f"TLS over TCP scored {tls}/10" if tls is not None else "TLS not measured (presumed healthy)"
    return _hit(1.0, ("quic", f"QUIC failed on all {len(samples)} endpoint(s)"), ("tls", tls_note))


def ipv6_blackout(ctx: RuleContext) -> List[RuleHit]:
    samples = ctx.snapshot.samples("ipv6")
    if not samples or any(s.success for s in samples) or not ctx.healthy("tcp"):
        return []
    if not all(s.error in IPV6_BLOCK_ERRORS for s in samples):
        return []
    return _hit(1.0,
                ("ipv6", f"all {len(samples)} IPv6 endpoint(s) failed ({_error_name(samples[0])})"),
                ("tcp", "IPv4 TCP healthy"))


# ---------------------------------------------------------------------------
# Widespread / temporal
# ---------------------------------------------------------------------------

def _blackout_samples(ctx: RuleContext) -> Optional[List[ProbeResult]]:
    """Samples of the required protocols, when every present one has samples
    and every sample failed through a blackout error. None otherwise."""
    present = [p for p in ctx.required if ctx.snapshot.get_score(p) is not None]
    if not present:
        return None
    failed: List[ProbeResult] = []
    for protocol in present:
        samples = ctx.snapshot.samples(protocol)
        if not samples or any(s.success or s.error not in BLACKOUT_ERRORS for s in samples):
            return None
        failed.extend(samples)
    return failed


def required_protocols_blackout(ctx: RuleContext) -> List[RuleHit]:
    failed = _blackout_samples(ctx)
    if failed is None:
        return []
    errors: Dict[str, set] = OrderedDict()
    for sample in failed:
        errors.setdefault(sample.protocol, set()).add(_error_name(sample))
    return [RuleHit(1.0, tuple(
        Evidence(p, f"required protocol {p}: every sample failed ({', '.join(sorted(kinds))}), "
                    f"scored {ctx.score_value(p)}/10")
        for p, kinds in sorted(errors.items())
    ))]


def blackout_with_resets(ctx: RuleContext) -> List[RuleHit]:
    # Scored on failures, not on the band: a reset costs less than a timeout,
    # so an all-reset blackout still scores inside Limited
    failed = _blackout_samples(ctx)
    if failed is None:
        return []
    resets = [s for s in failed if s.error is ErrorKind.CONNECTION_RESET]
    if not resets:
        return []
    return _hit(len(resets) / len(failed),
                (resets[0].protocol, f"{len(resets)}/{len(failed)} failures were active resets"))


def newly_blocked(ctx: RuleContext) -> List[RuleHit]:
    """
    A protocol whose score crossed down through the Limited/Blocked boundary
    against its rolling baseline.

        magnitude   = min(1, (baseline − current) / 8)
        persistence = min(1, (1 + cycles already below) / (1 + persistence_cycles))
        strength    = magnitude × (0.5 + 0.5 × persistence)
    """
    if not ctx.window:
        return []
    hits = []
    persistence_cycles = ctx.analysis.persistence_cycles
    for protocol in ctx.snapshot.protocols:
        current = ctx.score_value(protocol)
        if current is None or current >= LIMITED_MIN:
            continue
        baseline = ctx.window.baseline(protocol, LIMITED_MIN, ctx.analysis.min_history)
        if baseline is None or baseline < LIMITED_MIN:
            continue
        run = ctx.window.trailing_run_below(protocol, LIMITED_MIN)
        magnitude = min(1.0, (baseline - current) / 8.0)
        persistence = min(1.0, (1 + run) / (1 + persistence_cycles))
        hits.append(RuleHit(
            magnitude * (0.5 + 0.5 * persistence),
            (Evidence(protocol, f"{protocol} dropped to {current}/10 from a baseline of {baseline:.1f} "
                                f"(below Limited for {run + 1} cycle(s))"),),
        ))
    return hits


# ---------------------------------------------------------------------------
# The table
# ---------------------------------------------------------------------------

RULES: Tuple[CorrelationRule, ...] = (
    CorrelationRule("dns_resolver_divergence", IndicatorName.DNS_POISONING, 0.8, dns_resolver_divergence,
                    "resolvers disagree about the same name beyond the divergence threshold"),
    CorrelationRule("dns_bogon_answer", IndicatorName.DNS_POISONING, 0.9, dns_bogon_answer,
                    "a resolver answers with a private, reserved or sinkhole address"),
    CorrelationRule("upload_download_asymmetry", IndicatorName.BANDWIDTH_THROTTLE, 0.8, upload_download_asymmetry,
                    "upload and download scores differ beyond the asymmetry threshold"),
    CorrelationRule("udp_packet_loss", IndicatorName.BANDWIDTH_THROTTLE, 0.8, udp_packet_loss,
                    "UDP loss above baseline while some datagrams pass"),
    CorrelationRule("throttle_with_icmp_rate_limit", IndicatorName.BANDWIDTH_THROTTLE, 0.8,
                    throttle_with_icmp_rate_limit, "upload or UDP limited together with ICMP rate limiting"),
    CorrelationRule("tls_reset_while_tcp_ok", IndicatorName.DPI_RESET, 0.9, tls_reset_while_tcp_ok,
                    "TLS/QUIC handshakes reset while plain TCP works"),
    CorrelationRule("sni_selective_failure", IndicatorName.SNI_FILTERING, 0.9, sni_selective_failure,
                    "TLS to one host fails only for some server names"),
    CorrelationRule("https_block_page", IndicatorName.BLOCK_PAGE, 1.0, https_block_page,
                    "HTTP 451 or a redirect to a known filter page"),
    CorrelationRule("icmp_rate_limit", IndicatorName.ICMP_RATE_LIMIT, 0.8, icmp_rate_limit,
                    "first echoes answered, then all lost"),
    CorrelationRule("quic_port_sensitivity", IndicatorName.QUIC_BLOCKING, 0.7, quic_port_sensitivity,
                    "QUIC fails on 443 but works on alternative ports"),
    CorrelationRule("quic_udp_blocked", IndicatorName.QUIC_BLOCKING, 0.6, quic_udp_blocked,
                    "QUIC fails everywhere while TLS over TCP works"),
    CorrelationRule("ipv6_blackout", IndicatorName.IPV6_BLOCKED, 0.9, ipv6_blackout,
                    "every IPv6 endpoint fails while IPv4 works"),
    CorrelationRule("required_protocols_blackout", IndicatorName.WIDESPREAD_BLOCKING, 0.9,
                    required_protocols_blackout,
                    "every required sample failed through timeouts, resets or block pages"),
    CorrelationRule("blackout_with_resets", IndicatorName.WIDESPREAD_BLOCKING, 0.5, blackout_with_resets,
                    "required protocols blacked out with active connection resets among the failures"),
    CorrelationRule("newly_blocked", IndicatorName.NEWLY_BLOCKED, 1.0, newly_blocked,
                    "a protocol fell below Limited against its rolling baseline"),
)

RULE_NAMES = tuple(rule.name for rule in RULES)
