# ham/scanner/diagnosis.py
"""
Diagnosis output types.

NetworkDiagnosis is produced once per cycle by the Reasoner and is immutable
thereafter. A later cycle that revises the picture produces a new diagnosis;
trend is obtained by diffing two successive diagnoses with diff_diagnoses(),
never by editing an old one.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ham.scanner.base import PatternIndicator


class OverallStatus(str, Enum):
    GOOD = "good"
    LIMITED = "limited"
    BLOCKED = "blocked"
    UNKNOWN = "unknown"

    @property
    def rank(self) -> int:
        """Good > Limited > Blocked; Unknown sits outside the ordering (-1)."""
        return _STATUS_RANK[self]


_STATUS_RANK = {
    OverallStatus.GOOD: 2,
    OverallStatus.LIMITED: 1,
    OverallStatus.BLOCKED: 0,
    OverallStatus.UNKNOWN: -1,
}


@dataclass(frozen=True)
class RecommendedAction:
    """A circumvention / remediation step and how likely it is to help."""

    action_id: str
    action: str
    success_probability: float
    indicator: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "action": self.action,
            "success_probability": self.success_probability,
            "indicator": self.indicator,
        }


@dataclass(frozen=True)
class NetworkDiagnosis:
    """
    The single explainable verdict for one scan cycle.

    Fields:
        cycle_id:              Cycle this diagnosis belongs to
        timestamp:             The snapshot's timestamp (never wall-clock at
                               diagnosis time, so replays are identical)
        overall_status:        Worst-case status across required protocols
        censorship_likelihood: Weighted combination of indicator confidences
        confidence_level:      Weakest contributing confidence, minus the
                               missing-data penalty
        confidence_label:      "high" / "medium" / "low" per configured levels
        censorship_detected:   likelihood >= censorship_threshold
        recommended_actions:   Sorted by descending success probability
        reasoning_trace:       One line per decision, in evaluation order
        indicators:            The indicators that fed the likelihood
        protocol_statuses:     (protocol, band) pairs in protocol order
    """

    cycle_id: int
    timestamp: datetime
    overall_status: OverallStatus
    censorship_likelihood: float
    confidence_level: float
    confidence_label: str
    censorship_detected: bool
    recommended_actions: Tuple[RecommendedAction, ...] = ()
    reasoning_trace: Tuple[str, ...] = ()
    indicators: Tuple[PatternIndicator, ...] = ()
    protocol_statuses: Tuple[Tuple[str, str], ...] = ()

    def indicator_names(self) -> Tuple[str, ...]:
        return tuple(i.name.value for i in self.indicators)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "timestamp": self.timestamp.isoformat(),
            "overall_status": self.overall_status.value,
            "censorship_likelihood": self.censorship_likelihood,
            "confidence_level": self.confidence_level,
            "confidence_label": self.confidence_label,
            "censorship_detected": self.censorship_detected,
            "recommended_actions": [a.to_dict() for a in self.recommended_actions],
            "reasoning_trace": list(self.reasoning_trace),
            "indicators": [i.to_dict() for i in self.indicators],
            "protocol_statuses": {p: s for p, s in self.protocol_statuses},
        }

    def to_json(self) -> str:
        """Canonical JSON (sorted keys): identical inputs give identical bytes."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Trend
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DiagnosisTrend:
    status_before: OverallStatus
    status_after: OverallStatus
    likelihood_delta: float
    appeared: Tuple[str, ...] = ()
    cleared: Tuple[str, ...] = ()

    @property
    def status_changed(self) -> bool:
        return self.status_before != self.status_after

    @property
    def worsened(self) -> bool:
        if self.status_before.rank < 0 or self.status_after.rank < 0:
            return False
        return self.status_after.rank < self.status_before.rank

    def describe(self) -> str:
        parts = []
        if self.status_changed:
            parts.append(f"status {self.status_before.value} → {self.status_after.value}")
        else:
            parts.append(f"status unchanged ({self.status_after.value})")
        parts.append(f"likelihood {self.likelihood_delta:+.2f}")
        if self.appeared:
            parts.append("new: " + ", ".join(self.appeared))
        if self.cleared:
            parts.append("cleared: " + ", ".join(self.cleared))
        return "; ".join(parts)


def diff_diagnoses(previous: NetworkDiagnosis, current: NetworkDiagnosis) -> DiagnosisTrend:
    """Compare two successive diagnoses. Neither argument is modified."""
    before = set(previous.indicator_names())
    after = set(current.indicator_names())
    return DiagnosisTrend(
        status_before=previous.overall_status,
        status_after=current.overall_status,
        likelihood_delta=round(current.censorship_likelihood - previous.censorship_likelihood, 4),
        appeared=tuple(sorted(after - before)),
        cleared=tuple(sorted(before - after)),
    )
