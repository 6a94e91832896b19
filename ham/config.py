# ham/config.py
"""
Configuration surface consumed by the core.

Loading and merging (global / project / env / CLI layers, YAML files) is done
by an external collaborator. This module receives the already-merged mapping,
overlays it on DEFAULT_CONFIG and validates it into frozen settings objects.
Any problem raises ConfigurationError. Startup is the only point where
configuration can fail.

Accepted shape (a top-level "ham" key, as in the region presets, is unwrapped):

    scanning:
      interval: 3s            # between cycles
      timeout: 5s             # per probe attempt
      retries: 2              # extra attempts for failed probes
      parallel_tests: 5       # concurrent probe slots
      backoff: 500ms          # first retry delay, doubled per retry
      cycle_deadline: null    # cycle-wide cap; derived when null
    protocols:
      dns:
        enabled: true
        required: true
        targets:
          - {domain: example.com, resolvers: [8.8.8.8, 1.1.1.1, 9.9.9.9]}
    heuristics:
      censorship_threshold: 0.6
      confidence_levels: {high: 0.8, medium: 0.5}
      indicator_weights: {sni_filtering: 0.95}
    analysis:
      window_size: 20
      required_protocols: [tcp, dns, https]
      analyzer: "null"
"""

from __future__ import annotations

import copy
import logging
import math
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from ham.errors import ConfigurationError
from ham.scanner.base import IndicatorName, TestTarget
from ham.utils.scoring import COMBINERS

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_INDICATOR_WEIGHTS: Dict[str, float] = {
    IndicatorName.DNS_POISONING.value: 0.9,
    IndicatorName.BANDWIDTH_THROTTLE.value: 0.7,
    IndicatorName.DPI_RESET.value: 0.9,
    IndicatorName.SNI_FILTERING.value: 0.95,
    IndicatorName.BLOCK_PAGE.value: 1.0,
    IndicatorName.QUIC_BLOCKING.value: 0.7,
    IndicatorName.IPV6_BLOCKED.value: 0.8,
    IndicatorName.ICMP_RATE_LIMIT.value: 0.4,
    IndicatorName.WIDESPREAD_BLOCKING.value: 0.95,
    IndicatorName.NEWLY_BLOCKED.value: 0.6,
    IndicatorName.STATISTICAL_ANOMALY.value: 0.5,
}

DEFAULT_CONFIG: Dict[str, Any] = {
    "scanning": {
        "interval": "3s",
        "timeout": "5s",
        "retries": 2,
        "parallel_tests": 5,
        "backoff": "500ms",
        "backoff_factor": 2.0,
        "cycle_deadline": None,
    },
    "protocols": {
        "tcp": {
            "enabled": True,
            "required": True,
            "targets": ["8.8.8.8:53", "1.1.1.1:53", "208.67.222.222:53"],
        },
        "udp": {
            "enabled": True,
            "targets": [
                {"host": "8.8.8.8", "port": 53, "count": 5},
                {"host": "1.1.1.1", "port": 53, "count": 5},
            ],
        },
        "dns": {
            "enabled": True,
            "required": True,
            "targets": [
                {"domain": "example.com", "resolvers": ["8.8.8.8", "1.1.1.1", "9.9.9.9"]},
            ],
        },
        "tls": {
            "enabled": True,
            "targets": [
                {"host": "1.1.1.1", "port": 443,
                 "sni": ["one.one.one.one", "telegram.org", "signal.org"]},
            ],
        },
        "https": {
            "enabled": True,
            "required": True,
            "targets": [{"url": "https://www.google.com"}],
        },
        "icmp": {
            "enabled": True,
            "targets": [
                {"host": "8.8.8.8", "count": 5},
                {"host": "1.1.1.1", "count": 5},
                {"host": "208.67.222.222", "count": 5},
            ],
        },
        "quic": {
            "enabled": True,
            "targets": [{"host": "www.google.com", "ports": [443, 80, 8080]}],
        },
        "ipv6": {
            "enabled": False,
            "targets": [
                {"host": "2001:4860:4860::8888", "port": 53},
                {"host": "2606:4700:4700::1111", "port": 53},
            ],
        },
        "upload": {
            "enabled": False,
            "targets": [{"url": "https://speed.cloudflare.com/__up",
                         "bytes": 500_000, "expected_bps": 2_000_000}],
        },
        "download": {
            "enabled": False,
            "targets": [{"url": "https://speed.cloudflare.com/__down?bytes=1000000",
                         "bytes": 1_000_000, "expected_bps": 2_000_000}],
        },
    },
    "heuristics": {
        "censorship_threshold": 0.6,
        "confidence_levels": {"high": 0.8, "medium": 0.5},
        "indicator_weights": {},
        "rule_boosts": {},
        "combination": "noisy_or",
        "dns_divergence_threshold": 0.5,
        "throttle_asymmetry_threshold": 4,
        "loss_threshold": 0.5,
        "reset_rate_threshold": 0.3,
    },
    "analysis": {
        "window_size": 20,
        "window_duration": None,
        "min_history": 2,
        "persistence_cycles": 3,
        "required_protocols": [],
        "analyzer": "null",
        "analyzer_options": {},
        "action_effectiveness": {},
        "missing_data_penalty": 0.1,
    },
}

# Parameter lists that fan out into one TestTarget per entry
_EXPANDABLE = {
    "resolvers": "resolver",
    "sni": "sni",
    "snis": "sni",
    "ports": "port",
}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def parse_duration(value: Any, field_name: str = "duration") -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds) or strings like "500ms", "3s", "2m", "1h".
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"expected a duration, got {value!r}", field=field_name)
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        m = _DURATION_RE.match(value)
        if not m:
            raise ConfigurationError(f"invalid duration {value!r}", field=field_name)
        unit = m.group(2).lower() if m.group(2) else None
        seconds = float(m.group(1)) * _DURATION_UNITS[unit]
    else:
        raise ConfigurationError(f"expected a duration, got {type(value).__name__}", field=field_name)
    if seconds < 0 or math.isinf(seconds) or seconds != seconds:
        raise ConfigurationError("duration must be a finite non-negative value", field=field_name)
    return seconds


def _deep_merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge. Lists and scalars in overlay replace base values."""
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _number(section: Mapping[str, Any], key: str, field_name: str,
            low: float = 0.0, high: Optional[float] = None) -> float:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"expected a number, got {value!r}", field=field_name)
    if value < low or (high is not None and value > high):
        bound = f"[{low}, {high}]" if high is not None else f">= {low}"
        raise ConfigurationError(f"{value} out of range {bound}", field=field_name)
    return float(value)


def _integer(section: Mapping[str, Any], key: str, field_name: str, low: int = 0) -> int:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"expected an integer, got {value!r}", field=field_name)
    if value < low:
        raise ConfigurationError(f"must be >= {low}", field=field_name)
    return value


def _probabilities(raw: Any, field_name: str) -> Dict[str, float]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError("expected a mapping", field=field_name)
    out: Dict[str, float] = {}
    for key, value in raw.items():
        out[str(key)] = _number({"v": value}, "v", f"{field_name}.{key}", 0.0, 1.0)
    return out


def _split_host_port(text: str) -> Tuple[str, Optional[int]]:
    """'host:port', '[v6]:port', bare host or bare IPv6 literal."""
    text = text.strip()
    if text.startswith("["):
        host, _, rest = text[1:].partition("]")
        port = rest.lstrip(":")
        return host, int(port) if port else None
    if text.count(":") == 1:
        host, port = text.split(":")
        return host, int(port)
    return text, None


def expand_targets(protocol: str, raw_targets: Any) -> Tuple[TestTarget, ...]:
    """
    Turn configured target entries into TestTargets.

    Entries may be strings ("host:port", a URL) or mappings. A mapping's
    host comes from "host", "domain" or the hostname of "url"; list-valued
    "resolvers" / "sni" / "ports" fan out into one target per value.
    """
    field_name = f"protocols.{protocol}.targets"
    if raw_targets is None:
        return ()
    if not isinstance(raw_targets, (list, tuple)):
        raise ConfigurationError("expected a list", field=field_name)

    targets: List[TestTarget] = []
    for index, entry in enumerate(raw_targets):
        where = f"{field_name}[{index}]"
        try:
            if isinstance(entry, str):
                entry = {"url": entry} if "://" in entry else dict(zip(("host", "port"), _split_host_port(entry)))
            if not isinstance(entry, Mapping):
                raise ConfigurationError("expected a string or mapping", field=where)

            params = {k: v for k, v in entry.items() if k not in ("host", "domain", "port")}
            host = entry.get("host") or entry.get("domain")
            port = entry.get("port")
            if not host and entry.get("url"):
                parsed = urlparse(str(entry["url"]))
                host = parsed.hostname
                if port is None:
                    port = parsed.port or (443 if parsed.scheme == "https" else 80)
            if not host:
                raise ConfigurationError("missing host/domain/url", field=where)

            fanned: List[Dict[str, Any]] = [{"port": port, **params}]
            for list_key, single_key in _EXPANDABLE.items():
                if list_key not in params:
                    continue
                values = params[list_key]
                values = values if isinstance(values, (list, tuple)) else [values]
                if not values:
                    raise ConfigurationError(f"'{list_key}' must not be empty", field=where)
                next_round = []
                for base in fanned:
                    for value in values:
                        item = {k: v for k, v in base.items() if k != list_key}
                        item[single_key] = value
                        next_round.append(item)
                fanned = next_round

            for item in fanned:
                item_port = item.pop("port", None)
                if item_port is not None:
                    item_port = int(item_port)
                    if not 0 < item_port < 65536:
                        raise ConfigurationError(f"port {item_port} out of range", field=where)
                targets.append(TestTarget(host=str(host), port=item_port, params=item))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"malformed target: {e}", field=where) from e
    return tuple(targets)


# ---------------------------------------------------------------------------
# Settings objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScanningSettings:
    interval: float = 3.0
    timeout: float = 5.0
    retries: int = 2
    parallel_tests: int = 5
    backoff: float = 0.5
    backoff_factor: float = 2.0
    cycle_deadline: Optional[float] = None

    def retry_delays(self) -> Tuple[float, ...]:
        """Delay before each retry: backoff, backoff×factor, ..."""
        return tuple(self.backoff * (self.backoff_factor ** i) for i in range(self.retries))

    def job_budget(self) -> float:
        """Longest a single probe job may take, retries and backoff included."""
        return self.timeout * (self.retries + 1) + sum(self.retry_delays())

    def effective_deadline(self, job_count: int) -> float:
        """
        Cycle-wide deadline. Uses cycle_deadline when configured, otherwise
        enough time for every queued wave of jobs plus one timeout of slack.
        """
        if self.cycle_deadline is not None:
            return self.cycle_deadline
        waves = max(1, math.ceil(job_count / max(1, self.parallel_tests)))
        return self.job_budget() * waves + self.timeout


@dataclass(frozen=True)
class ProtocolSettings:
    name: str
    enabled: bool = True
    required: bool = False
    targets: Tuple[TestTarget, ...] = ()


@dataclass(frozen=True)
class HeuristicSettings:
    censorship_threshold: float = 0.6
    confidence_levels: Mapping[str, float] = field(default_factory=lambda: {"high": 0.8, "medium": 0.5})
    indicator_weights: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_INDICATOR_WEIGHTS))
    rule_boosts: Mapping[str, float] = field(default_factory=dict)
    combination: str = "noisy_or"
    dns_divergence_threshold: float = 0.5
    throttle_asymmetry_threshold: int = 4
    loss_threshold: float = 0.5
    reset_rate_threshold: float = 0.3

    def __post_init__(self):
        for name in ("confidence_levels", "indicator_weights", "rule_boosts"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    def weight_for(self, indicator: str) -> float:
        return self.indicator_weights.get(indicator, 1.0)

    def confidence_label(self, confidence: float) -> str:
        """Highest configured level whose floor the confidence reaches, else "low"."""
        for label, floor in sorted(self.confidence_levels.items(), key=lambda kv: (-kv[1], kv[0])):
            if confidence >= floor:
                return label
        return "low"


@dataclass(frozen=True)
class AnalysisSettings:
    window_size: int = 20
    window_duration: Optional[float] = None
    min_history: int = 2
    persistence_cycles: int = 3
    required_protocols: Tuple[str, ...] = ()
    analyzer: str = "null"
    analyzer_options: Mapping[str, Any] = field(default_factory=dict)
    action_effectiveness: Mapping[str, float] = field(default_factory=dict)
    missing_data_penalty: float = 0.1

    def __post_init__(self):
        object.__setattr__(self, "analyzer_options", MappingProxyType(dict(self.analyzer_options)))
        object.__setattr__(self, "action_effectiveness", MappingProxyType(dict(self.action_effectiveness)))


@dataclass(frozen=True)
class CoreConfig:
    scanning: ScanningSettings = field(default_factory=ScanningSettings)
    protocols: Mapping[str, ProtocolSettings] = field(default_factory=dict)
    heuristics: HeuristicSettings = field(default_factory=HeuristicSettings)
    analysis: AnalysisSettings = field(default_factory=AnalysisSettings)

    def __post_init__(self):
        object.__setattr__(self, "protocols", MappingProxyType(dict(self.protocols)))

    @property
    def enabled_protocols(self) -> Tuple[str, ...]:
        return tuple(sorted(name for name, p in self.protocols.items() if p.enabled))

    @property
    def required_protocols(self) -> Tuple[str, ...]:
        """Required protocols that will actually run. Unknown names are kept for validation."""
        flagged = {name for name, p in self.protocols.items() if p.required}
        disabled = {name for name, p in self.protocols.items() if not p.enabled}
        return tuple(sorted((flagged | set(self.analysis.required_protocols)) - disabled))

    def targets_for(self, protocol: str) -> Tuple[TestTarget, ...]:
        settings = self.protocols.get(protocol)
        return settings.targets if settings else ()

    @classmethod
    def defaults(cls) -> "CoreConfig":
        return cls.from_mapping({})

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]] = None) -> "CoreConfig":
        """
        Validate an already-merged configuration mapping.

        Raises:
            ConfigurationError on any invalid or missing field.
        """
        mapping = dict(mapping or {})
        if isinstance(mapping.get("ham"), Mapping):
            mapping = dict(mapping["ham"])

        raw = _deep_merge(DEFAULT_CONFIG, mapping)
        for section in ("scanning", "protocols", "heuristics", "analysis"):
            if not isinstance(raw.get(section), Mapping):
                raise ConfigurationError("expected a mapping", field=section)

        return cls(
            scanning=_parse_scanning(raw["scanning"]),
            protocols=_parse_protocols(raw["protocols"]),
            heuristics=_parse_heuristics(raw["heuristics"]),
            analysis=_parse_analysis(raw["analysis"]),
        )


def _parse_scanning(s: Mapping[str, Any]) -> ScanningSettings:
    interval = parse_duration(s.get("interval"), "scanning.interval")
    timeout = parse_duration(s.get("timeout"), "scanning.timeout")
    if timeout <= 0:
        raise ConfigurationError("must be greater than zero", field="scanning.timeout")
    if interval <= 0:
        raise ConfigurationError("must be greater than zero", field="scanning.interval")
    deadline = s.get("cycle_deadline")
    return ScanningSettings(
        interval=interval,
        timeout=timeout,
        retries=_integer(s, "retries", "scanning.retries", low=0),
        parallel_tests=_integer(s, "parallel_tests", "scanning.parallel_tests", low=1),
        backoff=parse_duration(s.get("backoff", 0), "scanning.backoff"),
        backoff_factor=_number(s, "backoff_factor", "scanning.backoff_factor", low=1.0),
        cycle_deadline=parse_duration(deadline, "scanning.cycle_deadline") if deadline is not None else None,
    )


def _parse_protocols(p: Mapping[str, Any]) -> Dict[str, ProtocolSettings]:
    protocols: Dict[str, ProtocolSettings] = {}
    for name, raw in p.items():
        if raw is None:
            continue
        if not isinstance(raw, Mapping):
            raise ConfigurationError("expected a mapping", field=f"protocols.{name}")
        enabled = bool(raw.get("enabled", True))
        targets = expand_targets(name, raw.get("targets"))
        if enabled and not targets:
            raise ConfigurationError("enabled protocol has no targets", field=f"protocols.{name}.targets")
        protocols[name] = ProtocolSettings(
            name=name,
            enabled=enabled,
            required=bool(raw.get("required", False)),
            targets=targets,
        )
    return protocols


def _parse_heuristics(h: Mapping[str, Any]) -> HeuristicSettings:
    levels = _probabilities(h.get("confidence_levels"), "heuristics.confidence_levels")
    weights = dict(DEFAULT_INDICATOR_WEIGHTS)
    for name, value in _probabilities(h.get("indicator_weights"), "heuristics.indicator_weights").items():
        if name not in DEFAULT_INDICATOR_WEIGHTS:
            raise ConfigurationError(f"unknown indicator '{name}'", field="heuristics.indicator_weights")
        weights[name] = value

    combination = str(h.get("combination", "noisy_or"))
    if combination not in COMBINERS:
        raise ConfigurationError(
            f"unknown combination '{combination}' (expected one of {sorted(COMBINERS)})",
            field="heuristics.combination",
        )
    return HeuristicSettings(
        censorship_threshold=_number(h, "censorship_threshold", "heuristics.censorship_threshold", 0.0, 1.0),
        confidence_levels=levels,
        indicator_weights=weights,
        rule_boosts=_probabilities(h.get("rule_boosts"), "heuristics.rule_boosts"),
        combination=combination,
        dns_divergence_threshold=_number(h, "dns_divergence_threshold",
                                         "heuristics.dns_divergence_threshold", 0.0, 1.0),
        throttle_asymmetry_threshold=_integer(h, "throttle_asymmetry_threshold",
                                              "heuristics.throttle_asymmetry_threshold", low=1),
        loss_threshold=_number(h, "loss_threshold", "heuristics.loss_threshold", 0.0, 1.0),
        reset_rate_threshold=_number(h, "reset_rate_threshold", "heuristics.reset_rate_threshold", 0.0, 1.0),
    )


def _parse_analysis(a: Mapping[str, Any]) -> AnalysisSettings:
    duration = a.get("window_duration")
    required = a.get("required_protocols") or []
    if not isinstance(required, (list, tuple)):
        raise ConfigurationError("expected a list", field="analysis.required_protocols")
    options = a.get("analyzer_options") or {}
    if not isinstance(options, Mapping):
        raise ConfigurationError("expected a mapping", field="analysis.analyzer_options")
    return AnalysisSettings(
        window_size=_integer(a, "window_size", "analysis.window_size", low=1),
        window_duration=parse_duration(duration, "analysis.window_duration") if duration is not None else None,
        min_history=_integer(a, "min_history", "analysis.min_history", low=1),
        persistence_cycles=_integer(a, "persistence_cycles", "analysis.persistence_cycles", low=1),
        required_protocols=tuple(str(r) for r in required),
        analyzer=str(a.get("analyzer") or "null"),
        analyzer_options=options,
        action_effectiveness=_probabilities(a.get("action_effectiveness"), "analysis.action_effectiveness"),
        missing_data_penalty=_number(a, "missing_data_penalty", "analysis.missing_data_penalty", 0.0, 1.0),
    )
