# ham/scanner/analyzers/__init__.py
"""
Pluggable indicator sources.
Each analyzer reads a finished Snapshot and produces PatternIndicators
that are merged with the correlator's by indicator name.
Analyzers do NOT measure; they only interpret.
"""
from ham.scanner.analyzers.null_analyzer import NullAnalyzer
from ham.scanner.analyzers.logistic_analyzer import LogisticAnalyzer

# Registry of all built-in analyzers.
# analysis.analyzer selects one of these by name.
ALL_ANALYZERS = {
    "null": NullAnalyzer,
    "logistic": LogisticAnalyzer,
}

__all__ = ["NullAnalyzer", "LogisticAnalyzer", "ALL_ANALYZERS"]
