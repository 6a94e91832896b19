# ham/errors.py
"""
Exception hierarchy for the diagnosis core.

Only two kinds of error ever reach a caller:

    ConfigurationError       invalid / missing configuration, raised at startup
    PluginContractViolation  a probe or analyzer that does not honour its contract

Everything a probe raises while testing a target (ProbeError and its
subclasses, or any other exception) is caught by BaseProbe.run() and recorded
as ProbeResult.error. A scan cycle never crashes because of a probe.
"""

from __future__ import annotations

from typing import Optional


class HamError(Exception):
    """Base class for all errors raised by the core."""


# ---------------------------------------------------------------------------
# Probe errors (always captured into ProbeResult.error, never propagated)
# ---------------------------------------------------------------------------

class ProbeError(HamError):
    """A probe could not complete its measurement."""


class ProbeTimeout(ProbeError):
    """No answer within the probe timeout."""


class ProbeConnectionError(ProbeError):
    """
    Connection-level failure.

    kind is one of "refused", "reset", "unreachable" and maps onto the
    matching ErrorKind when the result is recorded.
    """

    KINDS = ("refused", "reset", "unreachable")

    def __init__(self, message: str, kind: str = "unreachable"):
        super().__init__(message)
        if kind not in self.KINDS:
            kind = "unreachable"
        self.kind = kind


class ProbeProtocolError(ProbeError):
    """The peer answered, but with something malformed or unexpected."""


class BlockPageDetected(ProbeProtocolError):
    """The peer answered with an explicit block page (HTTP 451, filter redirect)."""

    def __init__(self, message: str, evidence: Optional[str] = None):
        super().__init__(message)
        self.evidence = evidence


# ---------------------------------------------------------------------------
# Startup errors (fatal, reported as a failed initialization)
# ---------------------------------------------------------------------------

class ConfigurationError(HamError):
    """Invalid or missing configuration. Only raised at startup."""

    def __init__(self, message: str, field: Optional[str] = None):
        if field:
            message = f"{field}: {message}"
        super().__init__(message)
        self.field = field


class PluginContractViolation(HamError):
    """
    A plugin broke its contract: missing name/test/score, a score outside
    [0, 10], or a confidence outside [0, 1].

    At registration time this is fatal. During a cycle the offending probe is
    treated as failed for that cycle and the violation is logged.
    """

    def __init__(self, message: str, plugin: Optional[str] = None):
        if plugin:
            message = f"Plugin '{plugin}': {message}"
        super().__init__(message)
        self.plugin = plugin
