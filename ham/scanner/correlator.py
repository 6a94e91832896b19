# ham/scanner/correlator.py
"""
Correlator: cross-protocol censorship signatures.

Runs the rule table (ham.scanner.rules) over a finished Snapshot plus the
preceding TemporalWindow and folds every firing rule into one
PatternIndicator per indicator name:

    confidence = combine(boost_1 × strength_1, boost_2 × strength_2, ...)

combine defaults to noisy-OR (1 − Π(1 − p_i)), so more independent rules
firing never lowers confidence and the result never leaves [0, 1]. Any
combiner from ham.utils.scoring.COMBINERS, or any callable with the same
shape, can be injected for testing or as a policy choice.

Indicators with no contributing evidence are never emitted. Output is
sorted by indicator name, so identical inputs give identical lists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ham.config import AnalysisSettings, CoreConfig, HeuristicSettings
from ham.errors import ConfigurationError
from ham.scanner.base import Evidence, IndicatorName, PatternIndicator, Snapshot
from ham.scanner.rules import RULES, CorrelationRule, RuleContext
from ham.scanner.temporal import TemporalWindow
from ham.utils.scoring import COMBINERS, Combiner

logger = logging.getLogger(__name__)


@dataclass
class _Accumulator:
    confidences: List[float] = field(default_factory=list)
    evidence: List[Evidence] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)

    def add(self, confidence: float, evidence: Iterable[Evidence], sources: Iterable[str]) -> None:
        self.confidences.append(confidence)
        for item in evidence:
            if item not in self.evidence:
                self.evidence.append(item)
        for source in sources:
            if source not in self.sources:
                self.sources.append(source)


class Correlator:
    """
    Usage:
        correlator = Correlator.from_config(config)
        indicators = correlator.correlate(snapshot, store.window())
        indicators = correlator.merge(indicators, analyzer.run(snapshot))
    """

    def __init__(
        self,
        heuristics: Optional[HeuristicSettings] = None,
        analysis: Optional[AnalysisSettings] = None,
        required: Sequence[str] = (),
        rules: Sequence[CorrelationRule] = RULES,
        combine: Optional[Combiner] = None,
    ):
        self.heuristics = heuristics or HeuristicSettings()
        self.analysis = analysis or AnalysisSettings()
        self.required = tuple(required)
        self.rules = tuple(rules)
        self.combine = combine or COMBINERS[self.heuristics.combination]

        known = {rule.name for rule in self.rules}
        unknown = sorted(set(self.heuristics.rule_boosts) - known)
        if unknown:
            raise ConfigurationError(f"unknown rule(s): {', '.join(unknown)}", field="heuristics.rule_boosts")

    @classmethod
    def from_config(cls, config: CoreConfig, combine: Optional[Combiner] = None) -> "Correlator":
        return cls(
            heuristics=config.heuristics,
            analysis=config.analysis,
            required=config.required_protocols,
            combine=combine,
        )

    def correlate(self, snapshot: Snapshot,
                  window: Optional[TemporalWindow] = None) -> List[PatternIndicator]:
        """Evaluate every rule and return the non-empty indicators, sorted by name."""
        required = self.required or tuple(sorted(snapshot.targets or snapshot.scores))
        ctx = RuleContext(
            snapshot=snapshot,
            window=window or TemporalWindow(),
            heuristics=self.heuristics,
            analysis=self.analysis,
            required=required,
        )

        grouped: Dict[IndicatorName, _Accumulator] = {}
        for rule in self.rules:
            try:
                hits = rule.predicate(ctx) or []
            except Exception:
                logger.exception(f"Correlation rule '{rule.name}' failed for cycle {snapshot.cycle_id}")
                continue
            boost = rule.effective_boost(self.heuristics)
            for hit in hits:
                confidence = boost * hit.strength
                if confidence <= 0.0 or not hit.evidence:
                    continue
                grouped.setdefault(rule.indicator, _Accumulator()).add(confidence, hit.evidence, (rule.name,))

        indicators = self._build(grouped)
        if indicators:
            logger.debug(
                "Cycle %d indicators: %s", snapshot.cycle_id,
                ", ".join(f"{i.name.value}={i.confidence:.2f}" for i in indicators),
            )
        return indicators

    def merge(self, *indicator_lists: Iterable[PatternIndicator]) -> List[PatternIndicator]:
        """
        Merge indicators from several sources (correlator, analyzers) by name.
        Duplicate names combine with the same combiner as the rule table.
        """
        grouped: Dict[IndicatorName, _Accumulator] = {}
        for indicators in indicator_lists:
            for indicator in indicators or ():
                grouped.setdefault(indicator.name, _Accumulator()).add(
                    indicator.confidence, indicator.evidence, indicator.sources,
                )
        return self._build(grouped)

    def _build(self, grouped: Dict[IndicatorName, _Accumulator]) -> List[PatternIndicator]:
        indicators: List[PatternIndicator] = []
        for name in sorted(grouped, key=lambda n: n.value):
            acc = grouped[name]
            if not acc.evidence:
                continue
            confidence = round(min(1.0, max(0.0, self.combine(acc.confidences))), 4)
            if confidence <= 0.0:
                continue
            indicators.append(PatternIndicator(
                name=name,
                confidence=confidence,
                evidence=tuple(acc.evidence),
                sources=tuple(acc.sources),
            ))
        return indicators

    def describe_rules(self) -> List[Tuple[str, str, float, str]]:
        """(rule, indicator, effective boost, description) for every rule."""
        return [
            (r.name, r.indicator.value, r.effective_boost(self.heuristics), r.description)
            for r in self.rules
        ]
