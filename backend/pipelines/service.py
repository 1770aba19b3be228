"""Timer-driven wrapper giving each engine a reentrancy guard and health state."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger


class RunSummary(Protocol):
    processed: int
    errors: int


class PeriodicJob(Protocol):
    name: str

    def run(self) -> RunSummary:
        ...


@dataclass(slots=True)
class ServiceState:
    name: str
    is_running: bool = False
    scheduled: bool = False
    last_run: datetime | None = None
    last_duration_ms: float | None = None
    total_runs: int = 0
    total_processed: int = 0
    error_count: int = 0
    skipped_runs: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "is_running": self.is_running,
            "scheduled": self.scheduled,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_duration_ms": self.last_duration_ms,
            "total_runs": self.total_runs,
            "total_processed": self.total_processed,
            "error_count": self.error_count,
            "skipped_runs": self.skipped_runs,
            "last_error": self.last_error,
        }


class PeriodicService:
    """Run ``job`` every ``interval_ms`` without ever overlapping two runs.

    APScheduler's ``max_instances=1`` stops the timer from stacking ticks; the
    non-blocking run lock also covers manual ``run_once`` calls.
    """

    def __init__(
        self,
        job: PeriodicJob,
        *,
        interval_ms: int,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self.job = job
        self.interval = timedelta(milliseconds=interval_ms)
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = ServiceState(name=job.name)

    @property
    def name(self) -> str:
        return self.job.name

    def start(self, *, run_immediately: bool = True) -> None:
        if self._state.scheduled:
            logger.warning("{} already started", self.name)
            return
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(timezone="UTC")
        next_run = datetime.now(timezone.utc) if run_immediately else None
        job_kwargs: dict[str, Any] = {
            "id": self.name,
            "max_instances": 1,
            "coalesce": True,
            "replace_existing": True,
        }
        if next_run is not None:
            job_kwargs["next_run_time"] = next_run
        self._scheduler.add_job(self.run_once, IntervalTrigger(seconds=self.interval.total_seconds()), **job_kwargs)
        if not self._scheduler.running:
            self._scheduler.start()
        with self._state_lock:
            self._state.scheduled = True
        logger.info("{} scheduled every {}s", self.name, self.interval.total_seconds())

    def run_once(self) -> RunSummary | None:
        if not self._run_lock.acquire(blocking=False):
            with self._state_lock:
                self._state.skipped_runs += 1
            logger.warning("{} run skipped: previous run still in progress", self.name)
            return None

        started = time.perf_counter()
        with self._state_lock:
            self._state.is_running = True
        summary: RunSummary | None = None
        try:
            summary = self.job.run()
        except Exception as exc:  # noqa: BLE001 - recorded, next tick retries
            logger.exception("{} run failed: {}", self.name, exc)
            with self._state_lock:
                self._state.error_count += 1
                self._state.last_error = f"{exc.__class__.__name__}: {exc}"
        else:
            with self._state_lock:
                self._state.total_processed += summary.processed
                self._state.error_count += summary.errors
        finally:
            with self._state_lock:
                self._state.is_running = False
                self._state.total_runs += 1
                self._state.last_run = datetime.now(timezone.utc)
                self._state.last_duration_ms = (time.perf_counter() - started) * 1000
            self._run_lock.release()
        return summary

    def stop(self, *, timeout: float | None = None) -> bool:
        """Stop scheduling and wait up to ``timeout`` seconds for an in-flight run.

        Returns True when no run is left in flight.
        """

        if self._scheduler is not None and self._state.scheduled:
            try:
                self._scheduler.remove_job(self.name)
            except Exception as exc:  # noqa: BLE001 - job may already be gone
                logger.debug("{} job removal: {}", self.name, exc)
            if self._owns_scheduler and self._scheduler.running:
                self._scheduler.shutdown(wait=False)
        with self._state_lock:
            self._state.scheduled = False

        drained = self._run_lock.acquire(timeout=-1 if timeout is None else timeout)
        if drained:
            self._run_lock.release()
            logger.info("{} stopped", self.name)
        else:
            logger.warning("{} stopped with a run still in flight after {}s", self.name, timeout)
        return drained

    def state(self) -> ServiceState:
        with self._state_lock:
            return replace(self._state)
