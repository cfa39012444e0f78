from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime

from croniter import croniter

from kube_watchtower.src.engine import ReconciliationEngine
from kube_watchtower.src.health import CycleWatchdog
from kube_watchtower.src.models import CycleCancelled, CycleSummary


class CycleScheduler:
    """Triggers reconciliation cycles until shutdown.

    The first cycle runs immediately. After that a cron ``schedule`` (when
    set) picks the next start time, otherwise cycles repeat every
    ``interval_seconds``. The shutdown event doubles as the cancellation token
    handed to each cycle, so a signal interrupts in-flight remote calls at
    their next boundary.

    A failing cycle is logged and the loop waits for the next trigger; only
    shutdown ends :meth:`run_forever`.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        interval_seconds: float = 300.0,
        schedule: str | None = None,
        run_once: bool = False,
        watchdog: CycleWatchdog | None = None,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.schedule = schedule
        self.run_once = run_once
        self.watchdog = watchdog
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def next_delay(self, now: datetime | None = None) -> float:
        """Return seconds until the next cycle should start."""
        if not self.schedule:
            return self.interval_seconds
        reference = now or self.now_fn()
        upcoming = croniter(self.schedule, reference).get_next(datetime)
        return max(0.0, (upcoming - reference).total_seconds())

    def trigger(self, cancel: threading.Event | None = None) -> CycleSummary | None:
        """Run one cycle, containing any failure. Returns None if it did not complete."""
        if self.watchdog is not None:
            self.watchdog.cycle_started()
        try:
            return self.engine.run_cycle(cancel)
        except CycleCancelled:
            self.logger.info("Reconciliation cycle interrupted by shutdown")
        except Exception:
            self.logger.exception("Reconciliation cycle failed; waiting for the next trigger")
        finally:
            if self.watchdog is not None:
                self.watchdog.cycle_finished()
        return None

    def run_forever(self, shutdown_event: threading.Event) -> None:
        if self.schedule:
            self.logger.info("Scheduling checks with cron expression %r", self.schedule)
        else:
            self.logger.info("Checking for updates every %.0fs", self.interval_seconds)

        while not shutdown_event.is_set():
            self.trigger(shutdown_event)
            if self.run_once:
                self.logger.info("Run-once mode: exiting after a single cycle")
                return
            delay = self.next_delay()
            self.logger.debug("Next check in %.0fs", delay)
            shutdown_event.wait(timeout=delay)
