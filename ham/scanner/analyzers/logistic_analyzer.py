# ham/scanner/analyzers/logistic_analyzer.py
"""
Logistic Analyzer.

A small, fixed-coefficient logistic model over cycle-wide features. It
does not learn anything at runtime; the coefficients come from
analysis.analyzer_options.logistic and default to a hand-tuned set.

Features (all in [0, 1]):
    failure_rate   failed samples / all samples
    reset_rate     connection_reset samples / all samples
    mean_loss      mean effective packet loss over samples that report it
    low_score_rate protocols scoring below Limited / scored protocols

    p = sigmoid(bias + Σ coefficient_i × feature_i)

Emits statistical_anomaly with confidence p when p reaches the activation
threshold. Coefficients must be non-negative so that healthier snapshots
can only lower p.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional

from ham.scanner.base import (
    BaseAnalyzer,
    ErrorKind,
    Evidence,
    IndicatorName,
    PatternIndicator,
    Snapshot,
)
from ham.utils.scoring import LIMITED_MIN, clamp, mean

logger = logging.getLogger(__name__)

DEFAULT_COEFFICIENTS: Dict[str, float] = {
    "failure_rate": 4.0,
    "reset_rate": 3.0,
    "mean_loss": 3.0,
    "low_score_rate": 2.0,
}
DEFAULT_BIAS = -4.0
DEFAULT_THRESHOLD = 0.5


def _sigmoid(z: float) -> float:
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    e = math.exp(z)
    return e / (1.0 + e)


class LogisticAnalyzer(BaseAnalyzer):

    def __init__(self, coefficients: Optional[Dict[str, float]] = None,
                 bias: float = DEFAULT_BIAS, threshold: float = DEFAULT_THRESHOLD):
        merged = dict(DEFAULT_COEFFICIENTS)
        for key, value in (coefficients or {}).items():
            if key not in DEFAULT_COEFFICIENTS:
                raise ValueError(f"unknown feature '{key}'")
            if value < 0:
                raise ValueError(f"coefficient for '{key}' must be non-negative")
            merged[key] = float(value)
        if not 0.0 < threshold <= 1.0:
            raise ValueError("threshold must be in (0, 1]")
        self.coefficients = merged
        self.bias = float(bias)
        self.threshold = float(threshold)

    @property
    def name(self) -> str:
        return "logistic"

    @staticmethod
    def features(snapshot: Snapshot) -> Dict[str, float]:
        samples = [s for p in snapshot.protocols for s in snapshot.samples(p)]
        if not samples:
            return {k: 0.0 for k in DEFAULT_COEFFICIENTS}

        losses = []
        for s in samples:
            if s.success and "packet_loss" in s.metadata:
                baseline = s.metadata.get("baseline_loss", 0.0) or 0.0
                losses.append(clamp(float(s.metadata["packet_loss"]) - float(baseline)))

        scored = snapshot.protocols
        return {
            "failure_rate": sum(1 for s in samples if not s.success) / len(samples),
            "reset_rate": sum(1 for s in samples if s.error is ErrorKind.CONNECTION_RESET) / len(samples),
            "mean_loss": mean(losses) or 0.0,
            "low_score_rate": sum(1 for p in scored if snapshot.scores[p].value < LIMITED_MIN) / len(scored),
        }

    def analyze(self, snapshot: Snapshot) -> List[PatternIndicator]:
        features = self.features(snapshot)
        z = self.bias + sum(self.coefficients[k] * v for k, v in sorted(features.items()))
        p = round(_sigmoid(z), 4)
        logger.debug(f"Logistic analyzer cycle {snapshot.cycle_id}: p={p:.3f} features={features}")
        if p < self.threshold:
            return []

        evidence = tuple(
            Evidence("*", f"{k} = {v:.2f}") for k, v in sorted(features.items()) if v > 0
        )
        return [PatternIndicator(
            name=IndicatorName.STATISTICAL_ANOMALY,
            confidence=p,
            evidence=evidence,
        )]
