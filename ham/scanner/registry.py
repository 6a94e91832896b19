# ham/scanner/registry.py
"""
Startup-time plugin registries.

Probes and analyzers are registered by name before orchestration begins.
The orchestrator only ever looks implementations up here; how they were
found (built in, entry points, a host application) is not its concern.

Registration checks the plugin contract and raises PluginContractViolation
immediately, so a broken plugin fails initialization instead of a cycle.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Union

from ham.errors import ConfigurationError, PluginContractViolation
from ham.scanner.base import BaseAnalyzer, BaseProbe

logger = logging.getLogger(__name__)


def _plugin_name(plugin: object) -> str:
    try:
        name = plugin.name
    except Exception as e:
        raise PluginContractViolation(f"{type(plugin).__name__}.name raised {e!r}") from e
    if not isinstance(name, str) or not name.strip():
        raise PluginContractViolation(f"{type(plugin).__name__} has no usable name ({name!r})")
    return name


class ProbeRegistry:
    """name → BaseProbe instance."""

    def __init__(self, probes: Optional[Iterable[BaseProbe]] = None):
        self._probes: Dict[str, BaseProbe] = {}
        for probe in probes or ():
            self.register(probe)

    def register(self, probe: Union[BaseProbe, type], replace: bool = False) -> BaseProbe:
        """
        Register a probe instance (or class, instantiated without arguments).

        Raises:
            PluginContractViolation: not a BaseProbe, missing name/test/score,
                or a duplicate name without replace=True.
        """
        if isinstance(probe, type):
            probe = probe()
        if not isinstance(probe, BaseProbe):
            raise PluginContractViolation(f"{type(probe).__name__} is not a BaseProbe")
        name = _plugin_name(probe)
        for method in ("test", "score"):
            if not callable(getattr(probe, method, None)):
                raise PluginContractViolation(f"missing {method}()", plugin=name)
        if name in self._probes and not replace:
            raise PluginContractViolation("a probe with this name is already registered", plugin=name)
        self._probes[name] = probe
        logger.debug(f"Registered probe '{name}' ({type(probe).__name__})")
        return probe

    def get(self, name: str) -> BaseProbe:
        try:
            return self._probes[name]
        except KeyError:
            raise ConfigurationError(f"no probe registered for protocol '{name}'", field="protocols") from None

    def names(self) -> List[str]:
        return sorted(self._probes)

    def __contains__(self, name: object) -> bool:
        return name in self._probes

    def __len__(self) -> int:
        return len(self._probes)


class AnalyzerRegistry:
    """name → BaseAnalyzer instance."""

    def __init__(self, analyzers: Optional[Iterable[BaseAnalyzer]] = None):
        self._analyzers: Dict[str, BaseAnalyzer] = {}
        for analyzer in analyzers or ():
            self.register(analyzer)

    def register(self, analyzer: Union[BaseAnalyzer, type], replace: bool = False) -> BaseAnalyzer:
        if isinstance(analyzer, type):
            analyzer = analyzer()
        if not isinstance(analyzer, BaseAnalyzer):
            raise PluginContractViolation(f"{type(analyzer).__name__} is not a BaseAnalyzer")
        name = _plugin_name(analyzer)
        if not callable(getattr(analyzer, "analyze", None)):
            raise PluginContractViolation("missing analyze()", plugin=name)
        if name in self._analyzers and not replace:
            raise PluginContractViolation("an analyzer with this name is already registered", plugin=name)
        self._analyzers[name] = analyzer
        logger.debug(f"Registered analyzer '{name}' ({type(analyzer).__name__})")
        return analyzer

    def get(self, name: str) -> BaseAnalyzer:
        try:
            return self._analyzers[name]
        except KeyError:
            raise ConfigurationError(f"unknown analyzer '{name}'", field="analysis.analyzer") from None

    def names(self) -> List[str]:
        return sorted(self._analyzers)

    def __contains__(self, name: object) -> bool:
        return name in self._analyzers


def default_probe_registry() -> ProbeRegistry:
    """Registry holding every built-in probe."""
    from ham.scanner.probes import ALL_PROBES

    return ProbeRegistry(cls() for cls in ALL_PROBES.values())


def default_analyzer_registry(options: Optional[Dict[str, object]] = None) -> AnalyzerRegistry:
    """
    Registry holding every built-in analyzer.

    options maps analyzer name → constructor keyword arguments, as given in
    analysis.analyzer_options.
    """
    from ham.scanner.analyzers import ALL_ANALYZERS

    options = dict(options or {})
    registry = AnalyzerRegistry()
    for name, cls in ALL_ANALYZERS.items():
        kwargs = options.get(name) or {}
        try:
            registry.register(cls(**kwargs))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"bad options for analyzer '{name}': {e}",
                                     field="analysis.analyzer_options") from e
    return registry
