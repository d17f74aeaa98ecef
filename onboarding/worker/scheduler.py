"""
Orchestrator Background Schedule
================================

APScheduler jobs that drive the orchestrator's periodic work:

- ``session_cleanup``            -- drop finished sessions past retention
                                    (process-wide, default every 10m)
- ``progress_broadcast:<id>``    -- heartbeat snapshot for one session, every
                                    ``config.progress_interval_seconds`` while
                                    the session is active. Bursts of unit
                                    completions are coalesced into the next tick.
- ``self_healing_sweep:<id>``    -- re-probe/remediate one completed session,
                                    every ``config.health_check_interval_seconds``

Per-session jobs are added and removed by the orchestrator as sessions move
through their lifecycle. The schedule is started and stopped with the
orchestrator, so no timer outlives it.

Usage:
    schedule = OrchestratorSchedule(cleanup=orchestrator.cleanup_expired)
    await schedule.start()
    schedule.add_interval_job(progress_job_id(session.id), tick, 2.0, "Progress")
    ...
    await schedule.shutdown()
"""

import logging
from typing import Any, Awaitable, Callable, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from onboarding.config import CLEANUP_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "session_cleanup"
PROGRESS_JOB_PREFIX = "progress_broadcast"
SELF_HEALING_JOB_PREFIX = "self_healing_sweep"

JobFunc = Callable[[], Awaitable[Any]]


def progress_job_id(session_id: str) -> str:
    return f"{PROGRESS_JOB_PREFIX}:{session_id}"


def self_healing_job_id(session_id: str) -> str:
    return f"{SELF_HEALING_JOB_PREFIX}:{session_id}"


class OrchestratorSchedule:
    """Owns the cleanup job and the per-session heartbeat/self-healing jobs."""

    def __init__(
        self,
        cleanup: JobFunc,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        if scheduler is None:
            self.scheduler = AsyncIOScheduler(timezone="UTC")
            self._owns_scheduler = True
        else:
            self.scheduler = scheduler
            self._owns_scheduler = False

        self._cleanup = cleanup
        self._cleanup_interval = cleanup_interval
        self._job_ids: Set[str] = set()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def job_ids(self) -> Set[str]:
        return set(self._job_ids)

    async def start(self) -> None:
        """Register the cleanup job and start the scheduler."""
        if self._started:
            logger.warning("OrchestratorSchedule already started")
            return

        self.add_interval_job(CLEANUP_JOB_ID, self._cleanup, self._cleanup_interval, "Expire finished sessions")

        if self._owns_scheduler:
            self.scheduler.start()

        self._started = True
        logger.info("OrchestratorSchedule started (cleanup=%.1fs)", self._cleanup_interval)

    def add_interval_job(self, job_id: str, func: JobFunc, seconds: float, name: str) -> None:
        """Add (or replace) an interval job. Jobs added before start() run once it starts."""
        self.scheduler.add_job(
            self._guard(job_id, func),
            IntervalTrigger(seconds=seconds),
            id=job_id,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._job_ids.add(job_id)
        logger.debug("Scheduled job %s every %.2fs", job_id, seconds)

    def remove_job(self, job_id: str) -> None:
        """Remove a job we added. Unknown or already-removed ids are ignored."""
        if job_id not in self._job_ids:
            return
        self._job_ids.discard(job_id)
        try:
            self.scheduler.remove_job(job_id)
        except Exception as remove_err:
            logger.warning("Failed to remove job %s: %s", job_id, remove_err)

    async def shutdown(self) -> None:
        """Remove every job we added and stop the scheduler if we own it."""
        if not self._started:
            return

        for job_id in sorted(self._job_ids):
            self.remove_job(job_id)

        if self._owns_scheduler:
            self.scheduler.shutdown(wait=False)

        self._started = False
        logger.info("OrchestratorSchedule stopped")

    @staticmethod
    def _guard(job_id: str, func: JobFunc) -> JobFunc:
        """Wrap a job so one failed tick is logged and the next tick still runs."""
        async def _run() -> None:
            try:
                await func()
            except Exception as e:
                logger.error("Scheduled job %s failed: %s", job_id, e, exc_info=True)

        _run.__name__ = f"{job_id.split(':')[0]}_job"
        return _run
