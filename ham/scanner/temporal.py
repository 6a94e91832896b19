# ham/scanner/temporal.py
"""
Temporal Store: bounded rolling history of (Snapshot, NetworkDiagnosis).

Ownership:
    The orchestrator's cycle loop is the only writer (append). Every other
    component receives a TemporalWindow, an immutable tuple-backed view that
    later appends can never change underneath it.

Retention:
    count-bounded (max_entries) and optionally age-bounded (max_age seconds,
    measured against the newest snapshot's timestamp, never wall-clock).
    Eviction is FIFO: oldest entries leave first and order never changes.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, Iterator, Optional, Tuple

from ham.scanner.base import ProtocolScore, Snapshot
from ham.scanner.diagnosis import NetworkDiagnosis
from ham.utils.scoring import LIMITED_MIN, mean

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemporalEntry:
    snapshot: Snapshot
    diagnosis: NetworkDiagnosis

    @property
    def cycle_id(self) -> int:
        return self.snapshot.cycle_id

    @property
    def timestamp(self) -> datetime:
        return self.snapshot.timestamp


@dataclass(frozen=True)
class TemporalWindow:
    """Read-only, oldest-first sequence of past cycles."""

    entries: Tuple[TemporalEntry, ...] = ()

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[TemporalEntry]:
        return iter(self.entries)

    def __bool__(self) -> bool:
        return bool(self.entries)

    @property
    def latest(self) -> Optional[TemporalEntry]:
        return self.entries[-1] if self.entries else None

    @property
    def previous_diagnosis(self) -> Optional[NetworkDiagnosis]:
        """Diagnosis of the most recent cycle in the window."""
        return self.entries[-1].diagnosis if self.entries else None

    def diagnoses(self) -> Tuple[NetworkDiagnosis, ...]:
        return tuple(e.diagnosis for e in self.entries)

    def scores(self, protocol: str) -> Tuple[ProtocolScore, ...]:
        """Oldest-first scores of one protocol (cycles where it was absent are skipped)."""
        out = []
        for entry in self.entries:
            score = entry.snapshot.get_score(protocol)
            if score is not None:
                out.append(score)
        return tuple(out)

    def trailing_run_below(self, protocol: str, boundary: int = LIMITED_MIN) -> int:
        """How many of the most recent scores for protocol sit below boundary."""
        run = 0
        for score in reversed(self.scores(protocol)):
            if score.value >= boundary:
                break
            run += 1
        return run

    def baseline(self, protocol: str, boundary: int = LIMITED_MIN,
                 min_history: int = 1) -> Optional[float]:
        """
        Rolling baseline for a protocol: the mean score before the current
        below-boundary run started. None when fewer than min_history scores
        are available to average.
        """
        values = [s.value for s in self.scores(protocol)]
        run = self.trailing_run_below(protocol, boundary)
        history = values[:len(values) - run] if run else values
        if len(history) < max(1, min_history):
            return None
        return mean(history)


class TemporalStore:
    """
    Bounded FIFO of past cycles.

    Usage:
        store = TemporalStore(max_entries=20, max_age=600)
        window = store.window()            # immutable view
        store.append(snapshot, diagnosis)  # cycle loop only
    """

    def __init__(self, max_entries: int = 20, max_age: Optional[float] = None):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.max_age = max_age
        self._entries: Deque[TemporalEntry] = deque(maxlen=max_entries)
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, snapshot: Snapshot, diagnosis: NetworkDiagnosis) -> None:
        """
        Add one finished cycle. Cycles must arrive in increasing cycle_id
        order; anything else is a writer bug and raises ValueError.
        """
        if diagnosis.cycle_id != snapshot.cycle_id:
            raise ValueError(
                f"diagnosis for cycle {diagnosis.cycle_id} appended with snapshot {snapshot.cycle_id}"
            )
        with self._write_lock:
            if self._entries and snapshot.cycle_id <= self._entries[-1].cycle_id:
                raise ValueError(
                    f"cycle {snapshot.cycle_id} appended after cycle {self._entries[-1].cycle_id}"
                )
            self._entries.append(TemporalEntry(snapshot, diagnosis))
            self._evict_expired(snapshot.timestamp)
        logger.debug(f"Temporal store: cycle {snapshot.cycle_id} appended ({len(self._entries)} held)")

    def _evict_expired(self, newest: datetime) -> None:
        if self.max_age is None:
            return
        horizon = newest - timedelta(seconds=self.max_age)
        while self._entries and self._entries[0].timestamp < horizon:
            evicted = self._entries.popleft()
            logger.debug(f"Temporal store: evicted cycle {evicted.cycle_id} (older than {self.max_age:.0f}s)")

    def window(self, duration: Optional[float] = None,
               until: Optional[datetime] = None) -> TemporalWindow:
        """
        Immutable view of the held entries, oldest first.

        duration limits the view to entries from the `duration` seconds up to
        `until` (default: the newest held entry).
        """
        with self._write_lock:
            entries = tuple(self._entries)
        if duration is not None and entries:
            reference = until or entries[-1].timestamp
            horizon = reference - timedelta(seconds=duration)
            entries = tuple(e for e in entries if horizon <= e.timestamp <= reference)
        return TemporalWindow(entries)

    def clear(self) -> None:
        with self._write_lock:
            self._entries.clear()
