"""Periodic background tasks on APScheduler."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timezone

from apscheduler.events import EVENT_JOB_MAX_INSTANCES, JobEvent  # type: ignore[import-untyped]
from apscheduler.schedulers.background import BackgroundScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from trade_pilot.utils.logging import get_logger


class PeriodicTask:
    """Runs ``func`` every ``interval`` seconds on a background scheduler.

    One instance of the job runs at a time; a tick that finds the previous
    run still going is skipped. Exceptions from ``func`` are logged and the
    schedule goes on.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], object],
        interval: float,
        *,
        run_immediately: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval_must_be_positive")
        self.name = name
        self._func = func
        self._interval = interval
        self._run_immediately = run_immediately
        self._scheduler: BackgroundScheduler | None = None
        self._lock = threading.Lock()
        self._in_job = threading.local()
        self._logger = get_logger("trade_pilot.bot.scheduler")

    @property
    def is_running(self) -> bool:
        scheduler = self._scheduler
        return scheduler is not None and scheduler.running

    def start(self) -> None:
        with self._lock:
            if self._scheduler is not None:
                return
            scheduler = BackgroundScheduler(timezone=timezone.utc)
            scheduler.add_listener(self._on_job_event, EVENT_JOB_MAX_INSTANCES)
            job_options: dict[str, object] = {}
            if self._run_immediately:
                job_options["next_run_time"] = datetime.now(timezone.utc)
            scheduler.add_job(
                self._run,
                trigger=IntervalTrigger(seconds=self._interval),
                id=self.name,
                name=self.name,
                max_instances=1,
                coalesce=True,
                **job_options,
            )
            scheduler.start()
            self._scheduler = scheduler
        self._logger.debug("task_started", task=self.name, interval=self._interval)

    def stop(self, wait: bool = True) -> None:
        with self._lock:
            scheduler = self._scheduler
            self._scheduler = None
        if scheduler is None:
            return
        # A job stopping its own task cannot wait for itself.
        in_job = getattr(self._in_job, "active", False)
        scheduler.shutdown(wait=wait and not in_job)
        self._logger.debug("task_stopped", task=self.name)

    def _run(self) -> None:
        self._in_job.active = True
        try:
            self._func()
        except Exception as exc:  # noqa: BLE001 - keep the schedule alive.
            self._logger.exception("task_failed", task=self.name, error=str(exc))
        finally:
            self._in_job.active = False

    def _on_job_event(self, event: JobEvent) -> None:
        self._logger.warning("task_run_skipped", task=self.name, reason="previous_run_active")
