# ham/scanner/analyzers/null_analyzer.py
"""
Null analyzer: the default. Contributes no indicators, so the diagnosis is
driven by the built-in correlation rules alone.
"""

from __future__ import annotations

from typing import List

from ham.scanner.base import BaseAnalyzer, PatternIndicator, Snapshot


class NullAnalyzer(BaseAnalyzer):

    @property
    def name(self) -> str:
        return "null"

    def analyze(self, snapshot: Snapshot) -> List[PatternIndicator]:
        return []
