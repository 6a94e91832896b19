# ham/scanner/monitor.py
"""
Continuous monitoring
─────────────────────
Runs ScanOrchestrator.run_cycle() every scanning.interval on an APScheduler
BackgroundScheduler. max_instances=1 plus coalesce=True means a slow cycle
delays the next one instead of overlapping it, so cycles stay sequential.

Usage:
    monitor = ContinuousMonitor(orchestrator, on_cycle=render)
    monitor.start()
    ...
    monitor.stop()      # cancels in-flight probes, shuts the scheduler down
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ham.scanner.orchestrator import CycleOutcome, ScanOrchestrator

logger = logging.getLogger(__name__)

JOB_ID = "ham_scan_cycle"


class ContinuousMonitor:

    def __init__(self, orchestrator: ScanOrchestrator,
                 on_cycle: Optional[Callable[[CycleOutcome], None]] = None,
                 interval: Optional[float] = None):
        self.orchestrator = orchestrator
        self.on_cycle = on_cycle
        self.interval = interval or orchestrator.config.scanning.interval
        self._scheduler: Optional[BackgroundScheduler] = None
        self._stop_event = threading.Event()
        self.last_outcome: Optional[CycleOutcome] = None
        self.cycles_run = 0

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self, run_immediately: bool = True) -> None:
        if self._scheduler is not None:
            logger.info("Monitor already running")
            return

        self._stop_event.clear()
        extra = {"next_run_time": datetime.now(timezone.utc)} if run_immediately else {}
        self._scheduler = BackgroundScheduler(daemon=True)
        self._scheduler.add_job(
            func=self._tick,
            trigger=IntervalTrigger(seconds=self.interval),
            id=JOB_ID,
            name="HAM diagnosis cycle",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping cycles
            coalesce=True,
            **extra,
        )
        self._scheduler.start()
        logger.info(f"Monitor started (cycle every {self.interval:.1f}s)")

    def stop(self, wait: bool = False) -> None:
        """Cancel the cycle in flight and stop scheduling new ones."""
        self._stop_event.set()
        self.orchestrator.stop()
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None
            logger.info("Monitor stopped")

    def _tick(self) -> None:
        if self._stop_event.is_set():
            return
        try:
            outcome = self.orchestrator.run_cycle(stop_event=self._stop_event)
        except Exception:
            logger.exception("Diagnosis cycle failed")
            return

        self.last_outcome = outcome
        self.cycles_run += 1
        if self.on_cycle is not None:
            try:
                self.on_cycle(outcome)
            except Exception as e:
                logger.error(f"on_cycle callback failed for cycle {outcome.snapshot.cycle_id}: {e}")
