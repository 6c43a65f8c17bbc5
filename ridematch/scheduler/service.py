"""Scheduler service for periodic maintenance sweeps."""

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ridematch.logging import get_logger

logger = get_logger(__name__, component="scheduler")

JobSpec = Tuple[Callable[[], Any], int]


class SchedulerService:
    """
    Wraps APScheduler to run each maintenance sweep on its own interval.

    Uses BackgroundScheduler to run jobs in worker threads while the main
    thread handles signals and coordinates shutdown. Every job runs with
    ``max_instances=1`` so a slow sweep never overlaps itself.
    """

    def __init__(
        self,
        jobs: Dict[str, JobSpec],
        shutdown_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the scheduler service.

        Args:
            jobs: Mapping of job name to (callable, interval_seconds)
            shutdown_event: Optional event to set on shutdown for coordination
        """
        self.jobs = dict(jobs)
        self.shutdown_event = shutdown_event

        self.scheduler = BackgroundScheduler(
            job_defaults={
                "max_instances": 1,  # Prevent overlapping runs
                "coalesce": True,  # If run is delayed, only execute once
            },
            timezone=timezone.utc,
        )

    def start(self) -> None:
        """
        Register every sweep and start the scheduler.

        All sweeps run once immediately after startup, then follow their own
        intervals.
        """
        next_run = datetime.now(timezone.utc)
        for name, (func, interval_seconds) in self.jobs.items():
            self.scheduler.add_job(
                func=func,
                trigger=IntervalTrigger(seconds=interval_seconds, timezone=timezone.utc),
                id=self._job_id(name),
                name=f"Maintenance sweep: {name}",
                replace_existing=True,
                next_run_time=next_run,
                misfire_grace_time=interval_seconds,
            )

        self.scheduler.start()

        logger.info(
            f"Scheduler started with {len(self.jobs)} jobs",
            extra={
                "event": "scheduler.started",
                "intervals": {name: seconds for name, (_, seconds) in self.jobs.items()},
                "next_run_time": next_run.isoformat(),
            },
        )

    def shutdown(self, wait: bool = False) -> None:
        """
        Shutdown the scheduler gracefully.

        Args:
            wait: If True, wait for running jobs to complete before returning
        """
        logger.info(
            "Shutting down scheduler",
            extra={"event": "scheduler.stopping", "wait_for_jobs": wait},
        )

        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

        if self.shutdown_event:
            self.shutdown_event.set()

        logger.info("Scheduler shutdown complete", extra={"event": "scheduler.stopped"})

    def trigger_now(self, name: str) -> Any:
        """
        Run one job synchronously in the current thread.

        Raises:
            KeyError: If no job has that name
        """
        func, _ = self.jobs[name]
        logger.info(
            f"Triggering immediate run of '{name}'",
            extra={"event": "scheduler.trigger_now", "job": name},
        )
        return func()

    def is_running(self) -> bool:
        return self.scheduler.running

    def get_next_run_time(self, name: str) -> Optional[datetime]:
        """
        Get the next scheduled run time of a job.

        Returns:
            Next run time as a datetime, or None if not scheduled
        """
        job = self.scheduler.get_job(self._job_id(name))
        return job.next_run_time if job else None

    @staticmethod
    def _job_id(name: str) -> str:
        return f"sweep-{name}"
