"""
Shared fixtures.

Unit tests never touch the network: probes are FakeProbe instances or
have their socket / subprocess / httpx layer patched.
"""

import threading

import pytest

from ham.scanner.registry import AnalyzerRegistry, ProbeRegistry
from ham.scanner.analyzers import ALL_ANALYZERS
from tests.helpers import T0, FakeProbe, make_config


@pytest.fixture
def fixed_time():
    """Fixed timestamp for deterministic snapshots."""
    return T0


@pytest.fixture
def fast_scanning():
    """Scanning section tuned so failing tests finish in well under a second."""
    return {"timeout": 0.2, "retries": 0, "backoff": "10ms", "parallel_tests": 4, "interval": 1}


@pytest.fixture
def analyzers():
    return AnalyzerRegistry(cls() for cls in ALL_ANALYZERS.values())


@pytest.fixture
def release():
    """Event that blocked FakeProbes wait on; always set on teardown."""
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def tcp_only_config(fast_scanning):
    return make_config(
        {"tcp": {"required": True, "targets": ["192.0.2.1:80", "192.0.2.2:80"]}},
        scanning=fast_scanning,
    )


@pytest.fixture
def tcp_registry():
    return ProbeRegistry([FakeProbe("tcp")])
