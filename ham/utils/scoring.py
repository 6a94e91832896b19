# File: ham/utils/scoring.py
# =============================================================================
# Centralized scoring helpers
# =============================================================================
# Single source of truth for score ranges, status bands and evidence
# combination. Used by: scanner/scorer, scanner/correlator, scanner/reasoner,
# analyzers.
#
# Protocol score bands (ProtocolScore.value, 0..10):
#   8–10  = Good
#   4–7   = Limited
#   1–3   = Blocked (partial)
#   0     = Blocked
#
# Evidence combination:
#   noisy_or   1 − Π(1 − p_i)         default, bounded, monotone in N
#   capped_sum min(1, Σ p_i)          additive policy, capped
#   max_combine max(p_i)              most-certain-rule-wins policy
# =============================================================================

from __future__ import annotations

import math
from typing import Callable, Iterable, Optional, Sequence

SCORE_MIN = 0
SCORE_MAX = 10

GOOD_MIN = 8
LIMITED_MIN = 4
BLOCKED_PARTIAL_MIN = 1

Combiner = Callable[[Iterable[float]], float]


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp value into [low, high]. NaN collapses to low."""
    if value != value:  # NaN
        return low
    return max(low, min(high, value))


def clamp_score(value: float) -> int:
    """Round a raw score and clamp it into the 0..10 protocol range."""
    return int(clamp(round(value), SCORE_MIN, SCORE_MAX))


def score_band(value: int) -> str:
    """
    Map a protocol score onto its band.
    Returns: "good" | "limited" | "blocked_partial" | "blocked"
    """
    if value >= GOOD_MIN:
        return "good"
    if value >= LIMITED_MIN:
        return "limited"
    if value >= BLOCKED_PARTIAL_MIN:
        return "blocked_partial"
    return "blocked"


def noisy_or(probabilities: Iterable[float]) -> float:
    """
    Combine independent evidence without exceeding certainty.

    combined = 1 − Π(1 − p_i), every p_i clamped to [0, 1] first.
    Adding another source never decreases the result.
    """
    remaining = 1.0
    for p in probabilities:
        remaining *= 1.0 - clamp(p)
    return clamp(1.0 - remaining)


def capped_sum(probabilities: Iterable[float]) -> float:
    """Additive combination, capped at 1.0."""
    return clamp(sum(clamp(p) for p in probabilities))


def max_combine(probabilities: Iterable[float]) -> float:
    """Strongest single source wins."""
    return clamp(max((clamp(p) for p in probabilities), default=0.0))


COMBINERS = {
    "noisy_or": noisy_or,
    "capped_sum": capped_sum,
    "max": max_combine,
}


def mean(values: Sequence[float]) -> Optional[float]:
    """Arithmetic mean, or None for an empty sequence."""
    if not values:
        return None
    return math.fsum(values) / len(values)


def jaccard_distance(a: Iterable[str], b: Iterable[str]) -> float:
    """
    1 − |a ∩ b| / |a ∪ b|.

    Two empty sets are identical (distance 0); one empty set against a
    non-empty one is maximally divergent (distance 1).
    """
    sa, sb = set(a), set(b)
    union = sa | sb
    if not union:
        return 0.0
    return 1.0 - len(sa & sb) / len(union)
