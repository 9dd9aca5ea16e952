"""
Periodic Jobs
=============

Thin wrapper around APScheduler's AsyncIOScheduler for the background
cycles (inbox polling, SLA sweeps). Each wrapper owns exactly one job.
"""

from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from support_desk.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class PeriodicJob:
    """
    Runs an async callable on a fixed interval.

    Manages the lifecycle of the scheduler and its single job.
    """

    def __init__(
        self,
        job_id: str,
        name: str,
        interval_seconds: int,
        job_func: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
    ):
        self.job_id = job_id
        self.name = name
        self.interval_seconds = interval_seconds
        self._job_func = job_func
        self._run_immediately = run_immediately
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._job: Optional[Job] = None

    def start(self) -> Job:
        """Start the scheduler; returns the existing job if already started."""
        if self._job is not None:
            logger.warning(f"{self.name} already running", extra={"job_id": self.job_id})
            return self._job

        self._scheduler = AsyncIOScheduler()

        job_kwargs = {}
        if self._run_immediately:
            job_kwargs["next_run_time"] = datetime.now(timezone.utc)

        self._job = self._scheduler.add_job(
            self._job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.job_id,
            name=self.name,
            misfire_grace_time=self.interval_seconds,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **job_kwargs,
        )

        self._scheduler.start()

        logger.info(
            f"{self.name} started",
            extra={"job_id": self.job_id, "interval_seconds": self.interval_seconds}
        )
        return self._job

    def stop(self) -> None:
        """Stop the scheduler (safe to call when not running)."""
        if self._scheduler is None:
            return

        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self._job = None
        logger.info(f"{self.name} stopped", extra={"job_id": self.job_id})

    @property
    def job(self) -> Optional[Job]:
        return self._job

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._job is not None
