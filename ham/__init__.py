# ham/__init__.py
"""
ham: network censorship diagnosis core.

Runs protocol probes concurrently, scores them, correlates the scores into
censorship signatures and reasons them into one explainable diagnosis per
cycle. An in-process library: no server, no CLI.
"""

from ham.errors import (
    ConfigurationError,
    HamError,
    PluginContractViolation,
    ProbeConnectionError,
    ProbeError,
    ProbeProtocolError,
    ProbeTimeout,
)
from ham.config import CoreConfig
from ham.logging_config import configure_logging
from ham.scanner.base import (
    BaseAnalyzer,
    BaseProbe,
    ErrorKind,
    IndicatorName,
    PatternIndicator,
    ProbeResult,
    ProtocolScore,
    Snapshot,
    TestTarget,
)
from ham.scanner.diagnosis import NetworkDiagnosis, OverallStatus, diff_diagnoses
from ham.scanner.orchestrator import CycleOutcome, ScanOrchestrator
from ham.scanner.monitor import ContinuousMonitor

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError", "HamError", "PluginContractViolation", "ProbeConnectionError",
    "ProbeError", "ProbeProtocolError", "ProbeTimeout",
    "CoreConfig", "configure_logging",
    "BaseAnalyzer", "BaseProbe", "ErrorKind", "IndicatorName", "PatternIndicator",
    "ProbeResult", "ProtocolScore", "Snapshot", "TestTarget",
    "NetworkDiagnosis", "OverallStatus", "diff_diagnoses",
    "CycleOutcome", "ScanOrchestrator", "ContinuousMonitor",
]
