# ham/scanner/reasoner.py
"""
Reasoner: Snapshot + indicators (+ window) → NetworkDiagnosis.

A pure function of its inputs. It holds no state between calls, never
reads the clock, and iterates everything in sorted order, so the same
inputs always give a byte-identical diagnosis (see NetworkDiagnosis.to_json).

Decision procedure (trace lines are appended in exactly this order):

    1. Protocol scores         one line per scored protocol
    2. Indicators              one line per indicator, then the likelihood
                               likelihood = combine(weight_i × confidence_i)
    3. Classification          worst (minimum) score over the required
                               protocols: ≥8 Good, 4–7 Limited, 0–3 Blocked.
                               Unknown when no required protocol was scored,
                               or when more than half of them are missing.
                               A required protocol whose every sample failed
                               is Blocked whatever its score.
    4. Confidence              min(contributing score confidences,
                               indicator confidences) − missing_data_penalty
                               per missing protocol
    5. Trend                   diff against the previous diagnosis in the window

Recommended actions come from ACTION_TABLE, with success probabilities
overridable through analysis.action_effectiveness (keyed by action id).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ham.config import CoreConfig
from ham.scanner.base import IndicatorName, PatternIndicator, Snapshot
from ham.scanner.diagnosis import (
    NetworkDiagnosis,
    OverallStatus,
    RecommendedAction,
    diff_diagnoses,
)
from ham.scanner.temporal import TemporalWindow
from ham.utils.scoring import COMBINERS, clamp, score_band

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Indicator → action table
# ---------------------------------------------------------------------------
# (action id, description, default success probability)

ACTION_TABLE: Mapping[IndicatorName, Tuple[Tuple[str, str, float], ...]] = {
    IndicatorName.SNI_FILTERING: (
        ("tls_fragmentation", "Enable TLS ClientHello fragmentation", 0.85),
        ("domain_fronting", "Use domain fronting / a CDN-fronted endpoint", 0.6),
    ),
    IndicatorName.DPI_RESET: (
        ("obfs4_tunnel", "Tunnel traffic through an obfs4 bridge", 0.8),
        ("tls_fragmentation", "Enable TLS ClientHello fragmentation", 0.7),
    ),
    IndicatorName.DNS_POISONING: (
        ("dns_over_https", "Switch to DNS-over-HTTPS", 0.9),
        ("alternate_resolver", "Use an alternative resolver over a non-standard port", 0.6),
    ),
    IndicatorName.BLOCK_PAGE: (
        ("vpn_tunnel", "Route the affected sites through a VPN", 0.8),
        ("tor_bridge", "Use Tor with a bridge", 0.7),
    ),
    IndicatorName.QUIC_BLOCKING: (
        ("disable_quic", "Disable QUIC so clients fall back to TLS over TCP", 0.95),
        ("quic_alt_port", "Run QUIC-based tunnels on an alternative port", 0.6),
    ),
    IndicatorName.IPV6_BLOCKED: (
        ("prefer_ipv4", "Prefer IPv4 for outgoing connections", 0.95),
    ),
    IndicatorName.BANDWIDTH_THROTTLE: (
        ("obfs4_tunnel", "Tunnel traffic through an obfs4 bridge", 0.6),
        ("chunked_uploads", "Split large uploads into smaller parallel chunks", 0.4),
    ),
    IndicatorName.ICMP_RATE_LIMIT: (
        ("tcp_diagnostics", "Use TCP-based reachability checks instead of ping", 0.9),
    ),
    IndicatorName.WIDESPREAD_BLOCKING: (
        ("snowflake_bridge", "Use Tor with a Snowflake bridge", 0.5),
        ("vpn_over_443", "Use a VPN disguised as HTTPS on port 443", 0.4),
    ),
    IndicatorName.NEWLY_BLOCKED: (
        ("monitor_trend", "Keep monitoring; compare with the previous baseline", 0.3),
    ),
    IndicatorName.STATISTICAL_ANOMALY: (
        ("full_diagnostic", "Run a full diagnostic with every protocol enabled", 0.3),
    ),
}

LOCAL_NETWORK_ACTION = ("check_local_network", "Check the local network, gateway and ISP link", 0.5)


_STATUS_FOR_BAND = {
    "good": OverallStatus.GOOD,
    "limited": OverallStatus.LIMITED,
    "blocked_partial": OverallStatus.BLOCKED,
    "blocked": OverallStatus.BLOCKED,
}


class Reasoner:
    """
    Usage:
        reasoner = Reasoner(config)
        diagnosis = reasoner.diagnose(snapshot, indicators, store.window())
    """

    def __init__(self, config: Optional[CoreConfig] = None,
                 action_table: Optional[Mapping[IndicatorName, Sequence[Tuple[str, str, float]]]] = None):
        self.config = config or CoreConfig.defaults()
        self.heuristics = self.config.heuristics
        self.analysis = self.config.analysis
        self.action_table = action_table if action_table is not None else ACTION_TABLE
        self.combine = COMBINERS[self.heuristics.combination]

    def required_for(self, snapshot: Snapshot) -> Tuple[str, ...]:
        """Configured required protocols; every scheduled protocol when none are configured."""
        configured = self.config.required_protocols
        if configured:
            return configured
        return tuple(sorted(set(snapshot.targets) | set(snapshot.scores)))

    def diagnose(self, snapshot: Snapshot, indicators: Sequence[PatternIndicator],
                 window: Optional[TemporalWindow] = None) -> NetworkDiagnosis:
        trace: List[str] = []
        indicators = sorted(indicators, key=lambda i: (i.name.value, -i.confidence))

        if snapshot.deadline_exceeded:
            trace.append("cycle deadline exceeded: unfinished probes recorded as timeouts")
        if snapshot.cancelled:
            trace.append("cycle cancelled: unfinished probes recorded as timeouts")

        # 1. Protocol scores
        for protocol in snapshot.protocols:
            score = snapshot.scores[protocol]
            line = f"{protocol}: {score.value}/10 ({score_band(score.value)}, confidence {score.confidence:.2f})"
            if score.reasoning:
                line += "; " + "; ".join(score.reasoning)
            trace.append(line)

        # 2. Indicators → likelihood
        contributions: List[float] = []
        for indicator in indicators:
            weight = self.heuristics.weight_for(indicator.name.value)
            contribution = weight * indicator.confidence
            contributions.append(contribution)
            trace.append(
                f"indicator {indicator.name.value}: confidence {indicator.confidence:.2f} "
                f"x weight {weight:.2f} = {contribution:.2f}"
                + (f" ({indicator.evidence[0].observation})" if indicator.evidence else "")
            )
        likelihood = round(clamp(self.combine(contributions)), 4) if contributions else 0.0
        detected = likelihood >= self.heuristics.censorship_threshold
        trace.append(
            f"censorship likelihood {likelihood:.2f} "
            f"({'at or above' if detected else 'below'} threshold {self.heuristics.censorship_threshold:.2f})"
        )

        # 3. Classification
        required = self.required_for(snapshot)
        present = [p for p in required if snapshot.get_score(p) is not None]
        missing = sorted(set(snapshot.missing) | {p for p in required if p not in snapshot.scores})
        missing_required = [p for p in required if p not in snapshot.scores]
        status = self._classify(snapshot, required, present, missing_required, trace)

        # 4. Confidence
        confidence = self._confidence(snapshot, present, indicators, missing, trace)
        label = self.heuristics.confidence_label(confidence)

        diagnosis = NetworkDiagnosis(
            cycle_id=snapshot.cycle_id,
            timestamp=snapshot.timestamp,
            overall_status=status,
            censorship_likelihood=likelihood,
            confidence_level=confidence,
            confidence_label=label,
            censorship_detected=detected,
            recommended_actions=self._actions(indicators, status),
            reasoning_trace=tuple(trace),
            indicators=tuple(indicators),
            protocol_statuses=tuple((p, score_band(snapshot.scores[p].value)) for p in snapshot.protocols),
        )

        # 5. Trend
        previous = window.previous_diagnosis if window else None
        if previous is not None:
            trend = diff_diagnoses(previous, diagnosis)
            diagnosis = replace(
                diagnosis,
                reasoning_trace=diagnosis.reasoning_trace + (f"trend since cycle {previous.cycle_id}: {trend.describe()}",),
            )
        return diagnosis

    # ── Steps ──

    def _classify(self, snapshot: Snapshot, required: Sequence[str], present: Sequence[str],
                  missing_required: Sequence[str], trace: List[str]) -> OverallStatus:
        if not present:
            trace.append("status unknown: no required protocol produced a score")
            return OverallStatus.UNKNOWN
        if len(missing_required) * 2 > len(required):
            trace.append(
                f"status unknown: {len(missing_required)}/{len(required)} required protocols missing "
                f"({', '.join(missing_required)})"
            )
            return OverallStatus.UNKNOWN

        worst = min(present, key=lambda p: (snapshot.scores[p].value, p))
        value = snapshot.scores[worst].value
        band = score_band(value)
        status = _STATUS_FOR_BAND[band]
        if status is not OverallStatus.BLOCKED:
            # A cheap failure kind (resets, refusals) can leave a dead protocol in Limited
            dead = [p for p in present if _all_samples_failed(snapshot, p)]
            if dead:
                trace.append(
                    f"status blocked: every sample of required protocol {dead[0]} failed "
                    f"(scored {snapshot.scores[dead[0]].value}/10)"
                )
                return OverallStatus.BLOCKED
        trace.append(f"status {status.value}: worst required protocol {worst} at {value}/10 ({band})")
        return status

    def _confidence(self, snapshot: Snapshot, present: Sequence[str],
                    indicators: Sequence[PatternIndicator], missing: Sequence[str],
                    trace: List[str]) -> float:
        inputs = [snapshot.scores[p].confidence for p in present]
        inputs += [i.confidence for i in indicators]
        if not present:
            base = 0.0
        else:
            base = min(inputs)
        penalty = self.analysis.missing_data_penalty * len(missing)
        confidence = round(clamp(base - penalty), 4)
        line = f"confidence {confidence:.2f} (weakest input {base:.2f}"
        if missing:
            line += f", -{penalty:.2f} for missing {', '.join(missing)}"
        trace.append(line + ")")
        return confidence

    def _actions(self, indicators: Sequence[PatternIndicator],
                 status: OverallStatus) -> Tuple[RecommendedAction, ...]:
        overrides = self.analysis.action_effectiveness
        best: Dict[str, RecommendedAction] = {}
        for indicator in indicators:
            for action_id, description, default in self.action_table.get(indicator.name, ()):
                probability = round(clamp(overrides.get(action_id, default)), 4)
                current = best.get(action_id)
                if current is None or probability > current.success_probability:
                    best[action_id] = RecommendedAction(action_id, description, probability, indicator.name.value)

        if not indicators and status is OverallStatus.BLOCKED:
            action_id, description, default = LOCAL_NETWORK_ACTION
            best[action_id] = RecommendedAction(
                action_id, description, round(clamp(overrides.get(action_id, default)), 4), None,
            )

        return tuple(sorted(best.values(), key=lambda a: (-a.success_probability, a.action_id)))


def _all_samples_failed(snapshot: Snapshot, protocol: str) -> bool:
    samples = snapshot.samples(protocol)
    return bool(samples) and not any(s.success for s in samples)
