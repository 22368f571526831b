"""Timer-driven automatic sync.

A daemon thread waits ``interval_minutes`` between ticks and runs one cycle
per tick. Interval 0 disables automatic sync. Ticks that find a cycle in
flight or missing credentials are logged and skipped.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any, Optional

from backend.core.logging import get_logger

from .dto import CycleReport
from .errors import ConfigurationError, SyncAlreadyRunningError
from .orchestrator import SyncOrchestrator

logger = get_logger("receivables.scheduler")


class SyncScheduler:
    def __init__(self, orchestrator: SyncOrchestrator, interval_minutes: float = 0):
        self.orchestrator = orchestrator
        self.interval_minutes = max(0.0, float(interval_minutes))
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_run_at: Optional[datetime] = None
        self.last_outcome: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self.interval_minutes > 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the loop; returns False when disabled or already running."""
        if not self.enabled or self.running:
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="bhb-sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("bhb_scheduler_started", extra={"interval_minutes": self.interval_minutes})
        return True

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("bhb_scheduler_stopped")

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def set_interval(self, interval_minutes: float) -> None:
        """Change the interval; 0 stops the loop, a positive value (re)starts it."""
        self.interval_minutes = max(0.0, float(interval_minutes))
        if not self.enabled:
            self.stop()
            return
        if self.running:
            # Wake the waiting thread so the new interval applies immediately.
            self._wake_event.set()
        else:
            self.start()

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self.running,
            "interval_minutes": self.interval_minutes,
            "sync_in_progress": self.orchestrator.is_running,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_outcome": self.last_outcome,
        }

    def run_once(self) -> Optional[CycleReport]:
        """Run one scheduled cycle; returns None when the tick was skipped."""
        self.last_run_at = datetime.now(UTC)
        try:
            report = self.orchestrator.run_cycle(entity_type="both", mode="auto", triggered_by="scheduler")
        except SyncAlreadyRunningError:
            self.last_outcome = "skipped_running"
            logger.info("bhb_scheduler_tick_skipped", extra={"reason": "sync_in_progress"})
            return None
        except ConfigurationError as exc:
            self.last_outcome = "skipped_unconfigured"
            logger.warning("bhb_scheduler_tick_skipped", extra={"reason": "not_configured", "error": str(exc)})
            return None
        self.last_outcome = report.status
        return report

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake_event.wait(self.interval_minutes * 60)
            if self._wake_event.is_set():
                self._wake_event.clear()
                continue
            if self._stop_event.is_set():
                break
            try:
                self.run_once()
            except Exception as exc:
                self.last_outcome = "error"
                logger.error("bhb_scheduler_tick_failed", extra={"error": str(exc)})
