"""
Background schedule for batch flushing, snapshot persistence and the
decision cycle.

Two APScheduler interval jobs run on a BackgroundScheduler: maintenance
(flush overdue event buffers, persist aggregate snapshots, throttled) every
scheduler_tick_seconds, and the decision cycle every
evaluation_interval_seconds. A failing job is logged and the schedule keeps
going; every run is a restartable pull of current state.
"""

import logging
import time
from functools import wraps
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .aggregator import EventAggregator
from .config import EngineConfig
from .decision import DecisionEngine

logger = logging.getLogger(__name__)


def _wrap_job(job: Callable[[], Any], name: str) -> Callable[[], Any]:
    """Log duration and failures of a scheduled job."""

    @wraps(job)
    def _inner() -> Any:
        started = time.perf_counter()
        try:
            result = job()
        except Exception:
            logger.exception(
                f"Scheduler job {name} failed after {time.perf_counter() - started:.3f}s"
            )
            return None
        logger.debug(f"Scheduler job {name} finished in {time.perf_counter() - started:.3f}s")
        return result

    return _inner


class DecisionScheduler:
    def __init__(
        self,
        aggregator: EventAggregator,
        decision_engine: DecisionEngine,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.aggregator = aggregator
        self.decision_engine = decision_engine
        self.config = config or EngineConfig()
        self._clock = clock
        self._last_cycle: Optional[float] = None
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def maintain(self) -> int:
        """Flush due buffers and persist snapshots (throttled)."""
        written = self.aggregator.flush_due()
        self.aggregator.persist_snapshots()
        return written

    def decide(self) -> Dict[str, str]:
        actions = self.decision_engine.run_cycle()
        if actions:
            logger.info(f"Decision cycle actions: {actions}")
        return actions

    def run_once(self) -> Dict[str, str]:
        """
        One synchronous tick: maintenance, then the decision cycle if it is due.

        Returns:
            Actions taken by the decision cycle (empty if it did not run)
        """
        self.maintain()

        now = self._clock()
        if (
            self._last_cycle is not None
            and now - self._last_cycle < self.config.evaluation_interval_seconds
        ):
            return {}
        self._last_cycle = now
        return self.decide()

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
            daemon=True,
        )
        scheduler.add_job(
            _wrap_job(self.maintain, "maintenance"),
            trigger=IntervalTrigger(seconds=self.config.scheduler_tick_seconds),
            id="maintenance",
            name="maintenance",
        )
        scheduler.add_job(
            _wrap_job(self.decide, "decision_cycle"),
            trigger=IntervalTrigger(seconds=self.config.evaluation_interval_seconds),
            id="decision_cycle",
            name="decision_cycle",
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            f"Scheduler started (tick {self.config.scheduler_tick_seconds}s, "
            f"cycle {self.config.evaluation_interval_seconds}s)"
        )

    def stop(self, wait: bool = True) -> None:
        """Shut the schedule down and flush whatever is still buffered."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        self.aggregator.flush()
        self.aggregator.persist_snapshots(force=True)
        logger.info("Scheduler stopped")
