"""Scheduler Module for RecipeDB

Runs the monitoring ticks (metrics, health, hourly report, daily report) and
optional scheduled backups on an APScheduler background scheduler.

Every tick kind is wrapped in a single-flight guard: if the previous tick of
the same kind is still running when the trigger fires again, the new tick is
skipped and logged. Ticks of different kinds may run concurrently.
"""

import logging
import signal
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .backup import BackupService
from .config import MonitoringConfig
from .exceptions import SchedulerError
from .monitoring import MonitoringService


class SingleFlight:
    """Per-key non-blocking mutual exclusion."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self.skipped: Dict[str, int] = {}
        self.logger = logging.getLogger(__name__ + '.SingleFlight')

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
                self.skipped[key] = 0
            return self._locks[key]

    def is_running(self, key: str) -> bool:
        return self._lock_for(key).locked()

    def run(self, key: str, func: Callable[[], Any]) -> Any:
        """Call ``func`` unless another call for ``key`` is in progress.

        Returns the result of ``func``, or None when the call was skipped.
        """
        lock = self._lock_for(key)
        if not lock.acquire(blocking=False):
            self.skipped[key] += 1
            self.logger.warning(f"Skipping '{key}' tick: previous run still in progress")
            return None
        try:
            return func()
        finally:
            lock.release()


class MonitoringScheduler:
    """Schedules the monitoring loop and scheduled backups."""

    def __init__(self, service: MonitoringService, config: Optional[MonitoringConfig] = None,
                 scheduler: Optional[BackgroundScheduler] = None):
        self.service = service
        self.config = config or service.config
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self.guard = SingleFlight()
        self.last_runs: Dict[str, datetime] = {}
        self.running = False
        self.logger = logging.getLogger(__name__)

        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR | EVENT_JOB_MISSED)

    def _tick(self, kind: str, func: Callable[[], Any]) -> Any:
        def run():
            self.last_runs[kind] = datetime.now(timezone.utc)
            self.logger.debug(f"Running {kind} tick")
            return func()

        return self.guard.run(kind, run)

    def _add(self, kind: str, func: Callable[[], Any], trigger) -> None:
        self.scheduler.add_job(
            self._tick,
            trigger=trigger,
            args=[kind, func],
            id=kind,
            name=kind.replace('_', ' '),
            max_instances=2,  # overlapping runs reach the guard and are skipped there
            coalesce=True,
            replace_existing=True,
        )
        self.logger.info(f"Scheduled {kind} job")

    def register_monitoring_jobs(self) -> None:
        """Register the four monitoring tick kinds."""
        try:
            self._add('metrics', self.service.collect_metrics,
                      IntervalTrigger(seconds=self.config.metrics_interval_seconds))
            self._add('health', self.service.check_health,
                      IntervalTrigger(seconds=self.config.health_interval_seconds))
            self._add('hourly_report', self.service.generate_hourly_report,
                      CronTrigger.from_crontab(self.config.hourly_report_cron, timezone="UTC"))
            self._add('daily_report', self.service.generate_daily_report,
                      CronTrigger.from_crontab(self.config.daily_report_cron, timezone="UTC"))
        except ValueError as e:
            raise SchedulerError(f"Invalid monitoring schedule: {e}") from e

    def start(self, initial_health_check: bool = True) -> None:
        """Start the background scheduler."""
        self.logger.info("Starting database monitoring service")
        self.scheduler.start()
        self.running = True
        for job in self.scheduler.get_jobs():
            self.logger.info(f"Job '{job.name}' next run: {job.next_run_time}")
        if initial_health_check:
            self._tick('health', self.service.check_health)

    def stop(self) -> None:
        """Stop the scheduler, waiting for running ticks to finish."""
        self.logger.info("Stopping database monitoring service")
        self.running = False
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

    def run_forever(self, poll_seconds: float = 1.0) -> None:
        """Start and block until SIGINT/SIGTERM."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)
        self.start()
        try:
            while self.running:
                time.sleep(poll_seconds)
        finally:
            self.stop()

    def _signal_handler(self, signum, frame) -> None:
        """Handle shutdown signals."""
        self.logger.info(f"Received signal {signum}, shutting down gracefully")
        self.running = False

    def _job_executed(self, event) -> None:
        self.logger.debug(f"Job {event.job_id} executed successfully")

    def _job_error(self, event) -> None:
        if getattr(event, 'exception', None) is not None:
            self.logger.error(f"Job {event.job_id} failed with exception: {event.exception}")
        else:
            self.logger.warning(f"Job {event.job_id} missed its run time")

    def get_job_status(self) -> Dict[str, Dict[str, Any]]:
        status = {}
        for job in self.scheduler.get_jobs():
            status[job.id] = {
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'last_run': self.last_runs[job.id].isoformat() if job.id in self.last_runs else None,
                'running': self.guard.is_running(job.id),
                'skipped': self.guard.skipped.get(job.id, 0),
            }
        return status


def schedule_backups(scheduler: BackgroundScheduler, backups: BackupService, cron: str,
                     guard: Optional[SingleFlight] = None, **backup_kwargs) -> None:
    """Add a cron-triggered backup job followed by retention cleanup."""
    logger = logging.getLogger(__name__)
    guard = guard or SingleFlight()

    def run_backup():
        try:
            info = backups.create_backup(**backup_kwargs)
            logger.info(f"Scheduled backup created: {info.filename}")
            backups.clean_old_backups()
        except Exception as e:
            logger.error(f"Scheduled backup failed: {e}")

    try:
        trigger = CronTrigger.from_crontab(cron, timezone="UTC")
    except ValueError as e:
        raise SchedulerError(f"Invalid backup schedule '{cron}': {e}") from e

    scheduler.add_job(
        guard.run,
        trigger=trigger,
        args=['backup', run_backup],
        id='backup',
        name='backup',
        max_instances=2,
        coalesce=True,
        replace_existing=True,
    )
    logger.info(f"Scheduled backups with cron '{cron}'")
