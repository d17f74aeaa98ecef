"""
Install Orchestrator - Bounded-Concurrency Auto-Installation
============================================================

Takes the ranked recommendations for a user session, installs them under a
concurrency cap, tracks per-unit and aggregate progress, retries failures
with a bounded fixed-delay policy, runs post-install health verification,
supports cooperative pause/resume and hands completed sessions to the
self-healing monitor.

Key Features:
1. Frozen install queue: filtered/ordered once, never reordered afterwards
2. Work-stealing pool: a finished unit frees its slot for the next queued
   unit immediately; one semaphore per session caps concurrency
3. Single-writer discipline: every session mutation holds the session lock
4. No fail-fast: one unit's failure never cancels its siblings
5. Cooperative pause: in-flight units finish, nothing new is dispatched

Session lifecycle:
    initializing -> installing <-> paused
    installing -> completed  (every unit terminal, zero failures)
    installing -> failed     (every unit terminal, at least one failure)

Usage:
    orchestrator = InstallOrchestrator(recommendations, installer, prober)
    await orchestrator.start()
    session = await orchestrator.start_session("user-1", environment, goals)
    summary = orchestrator.get_progress(session.id)
    await orchestrator.shutdown()
"""

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional, Set, Union

from onboarding.config import SESSION_RETENTION_SECONDS, default_session_config
from onboarding.services.events import (
    EventSink,
    EventType,
    LoggingEventSink,
    emit_safely,
)
from onboarding.services.exceptions import RecommendationFailure
from onboarding.services.install_queue import (
    estimate_total_minutes,
    prepare_install_queue,
)
from onboarding.services.models import (
    EnvironmentContext,
    LifecycleEvent,
    Recommendation,
    Session,
    SessionConfig,
    SessionProgressSummary,
    SessionStatus,
    UnitProgress,
    UserGoals,
    utc_now,
)
from onboarding.services.ports import (
    HealthProber,
    RecommendationSource,
    Remediator,
    UnitInstaller,
)
from onboarding.services.progress_store import SessionRegistry, summarize, touch
from onboarding.services.unit_installer import UnitInstallRunner, UnitOutcome
from onboarding.worker.scheduler import (
    OrchestratorSchedule,
    progress_job_id,
    self_healing_job_id,
)
from onboarding.worker.self_healing import SelfHealingMonitor

logger = logging.getLogger(__name__)

ConfigInput = Union[SessionConfig, Dict[str, Any], None]


class InstallOrchestrator:
    """
    Owns the session registry, the per-session worker pools and the
    background schedule (progress heartbeat, self-healing, cleanup).
    """

    def __init__(
        self,
        recommendations: RecommendationSource,
        installer: UnitInstaller,
        prober: HealthProber,
        sink: Optional[EventSink] = None,
        remediator: Optional[Remediator] = None,
        registry: Optional[SessionRegistry] = None,
        retention_seconds: float = SESSION_RETENTION_SECONDS,
        schedule: Optional[OrchestratorSchedule] = None,
    ) -> None:
        self._recommendations = recommendations
        self.registry = registry or SessionRegistry()
        self.sink: EventSink = sink or LoggingEventSink()
        self.retention_seconds = retention_seconds

        self._runner = UnitInstallRunner(installer, prober, self.registry, self.sink)
        self.monitor = SelfHealingMonitor(self.registry, prober, self.sink, remediator)
        self.schedule = schedule or OrchestratorSchedule(cleanup=self.cleanup_expired)

        # Per-session worker slots, shared across pause/resume dispatch rounds
        self._slots: Dict[str, asyncio.Semaphore] = {}
        self._tasks: Dict[str, Set["asyncio.Task[None]"]] = {}

        logger.info("InstallOrchestrator initialized")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the background schedule."""
        await self.schedule.start()

    async def shutdown(self, cancel_inflight: bool = True) -> None:
        """
        Stop the background schedule and abandon in-flight work (best-effort).

        Args:
            cancel_inflight: Cancel dispatcher and worker tasks. When False
                             they are left to finish on their own.
        """
        await self.schedule.shutdown()

        if cancel_inflight:
            pending = [t for tasks in self._tasks.values() for t in tasks if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.info("Abandoned %d in-flight install tasks", len(pending))

        self.cleanup_expired_now()
        logger.info("InstallOrchestrator shutdown complete")

    # =========================================================================
    # Session Controller
    # =========================================================================

    async def start_session(
        self,
        owner: str,
        environment: Optional[EnvironmentContext] = None,
        goals: Optional[UserGoals] = None,
        config: ConfigInput = None,
    ) -> Session:
        """
        Create a session and start installing in the background.

        Returns as soon as the worker pool is launched.

        Raises:
            RecommendationFailure: If the recommendation source errors
        """
        environment = environment or EnvironmentContext()
        goals = goals or UserGoals()
        session_config = config if isinstance(config, SessionConfig) else default_session_config(config)

        logger.info(
            "Starting auto-installation for %s (project=%s, objective=%s)",
            owner, environment.project_type, goals.primary_objective,
        )

        try:
            candidates: List[Recommendation] = await self._recommendations.generate(owner, environment, goals)
        except Exception as e:
            logger.error("Failed to start auto-installation for %s: %s", owner, e)
            raise RecommendationFailure(
                message=f"Recommendation source failed: {e}",
                owner=owner,
                original_error=e,
            ) from e

        queue, dropped = prepare_install_queue(candidates, session_config.intelligent_ordering)

        session = Session(
            owner=owner,
            environment=environment,
            goals=goals,
            config=session_config,
            queue=queue,
            dropped=dropped,
            units={
                rec.unit.id: UnitProgress(
                    unit_id=rec.unit.id,
                    unit_name=rec.unit.name or rec.unit.id,
                    estimated_remaining=rec.estimated_setup_time,
                )
                for rec in queue
            },
        )
        self.registry.add(session)
        self._slots[session.id] = asyncio.Semaphore(session_config.max_concurrent)
        self._tasks[session.id] = set()

        async with self.registry.lock(session.id):
            session.status = SessionStatus.INSTALLING
            session.started_at = utc_now()
            touch(session)

        await emit_safely(self.sink, self._event(session, EventType.SESSION_STARTED, {
            "unit_count": len(queue),
            "dropped_count": len(dropped),
            "estimated_minutes": estimate_total_minutes(queue),
            "max_concurrent": session_config.max_concurrent,
        }))

        self.schedule.add_interval_job(
            progress_job_id(session.id),
            partial(self.broadcast_progress, session.id),
            session_config.progress_interval_seconds,
            f"Progress heartbeat for {session.id}",
        )
        self._launch_dispatcher(session)
        logger.info(
            "Session %s started: %d units queued, %d not auto-installed",
            session.id, len(queue), len(dropped),
        )
        return session

    async def pause_session(self, session_id: str) -> Session:
        """
        Stop dispatching new units. In-flight units finish normally.

        Pausing a session that is not installing is a no-op.
        """
        session = self.registry.get(session_id)
        async with self.registry.lock(session_id):
            if session.status != SessionStatus.INSTALLING:
                logger.debug("Pause ignored for session %s in state %s", session_id, session.status.value)
                return session
            session.status = SessionStatus.PAUSED
            touch(session)
            summary = self._position(session)

        logger.info("Installation session paused: %s", session_id)
        await emit_safely(self.sink, self._event(session, EventType.SESSION_PAUSED, summary))
        return session

    async def resume_session(self, session_id: str) -> Session:
        """
        Restart dispatch from the queue cursor. Finished units are not replayed.

        Resuming a session that is not paused is a no-op.
        """
        session = self.registry.get(session_id)
        async with self.registry.lock(session_id):
            if session.status != SessionStatus.PAUSED:
                logger.debug("Resume ignored for session %s in state %s", session_id, session.status.value)
                return session
            session.status = SessionStatus.INSTALLING
            touch(session)
            summary = self._position(session)

        logger.info("Installation session resumed: %s", session_id)
        await emit_safely(self.sink, self._event(session, EventType.SESSION_RESUMED, summary))
        self._launch_dispatcher(session)
        return session

    def get_session(self, session_id: str) -> Session:
        """Raises SessionNotFound for unknown or expired ids."""
        return self.registry.get(session_id)

    def get_progress(self, session_id: str) -> SessionProgressSummary:
        return summarize(self.registry.get(session_id))

    def list_sessions(self, owner: Optional[str] = None) -> List[Session]:
        sessions = self.registry.sessions()
        if owner is not None:
            sessions = [s for s in sessions if s.owner == owner]
        return sorted(sessions, key=lambda s: s.created_at)

    # =========================================================================
    # Worker Pool
    # =========================================================================

    def _launch_dispatcher(self, session: Session) -> None:
        task = asyncio.create_task(self._dispatch(session), name=f"dispatch-{session.id}")
        self._track(session.id, task)

    def _track(self, session_id: str, task: "asyncio.Task[None]") -> None:
        tasks = self._tasks.setdefault(session_id, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _dispatch(self, session: Session) -> None:
        """
        Hand queued units to workers while a slot is free.

        Exits when the session stops installing (paused or finished) or the
        cursor reaches the end of the queue. Completion is detected by the
        last worker to finish.
        """
        slots = self._slots[session.id]

        async with self.registry.lock(session.id):
            finished = self._finish_if_drained(session)
        if finished:
            await self._emit_session_result(session)
            return

        while True:
            await slots.acquire()
            async with self.registry.lock(session.id):
                if session.status != SessionStatus.INSTALLING or session.cursor >= len(session.queue):
                    slots.release()
                    return
                rec = session.queue[session.cursor]
                session.cursor += 1
                session.active_count += 1
                touch(session)

            logger.debug(
                "Dispatching unit %s in session %s (%d active, %d queued)",
                rec.unit.id, session.id, session.active_count, session.remaining_in_queue,
            )
            worker = asyncio.create_task(
                self._work(session, rec, slots),
                name=f"install-{session.id}-{rec.unit.id}",
            )
            self._track(session.id, worker)

    async def _work(self, session: Session, rec: Recommendation, slots: asyncio.Semaphore) -> None:
        """Run one unit to a terminal state. The slot is freed before any event is delivered."""
        released = False
        try:
            try:
                outcome = await self._runner.run(session, rec)
            except Exception as exc:
                logger.error(
                    "Unexpected error installing unit %s in session %s: %s",
                    rec.unit.id, session.id, exc, exc_info=True,
                )
                outcome = UnitOutcome(unit_id=rec.unit.id, success=False, error=f"Unexpected error: {exc}")

            async with self.registry.lock(session.id):
                progress = session.units[rec.unit.id]
                UnitInstallRunner.mark_terminal(progress, outcome)
                session.active_count -= 1
                slots.release()
                released = True
                touch(session)
                unit_data = {
                    "unit_id": rec.unit.id,
                    "unit_name": progress.unit_name,
                    "retry_count": progress.retry_count,
                    "health_verdict": progress.health_verdict.value if progress.health_verdict else None,
                    "elapsed_time": progress.elapsed_time,
                    "error": progress.last_error if not outcome.success else None,
                    "completed_count": session.completed_count,
                    "failed_count": session.failed_count,
                    "total_count": session.total_count,
                }
                finished = self._finish_if_drained(session)

            if outcome.success:
                logger.info("Unit %s installed in session %s", rec.unit.id, session.id)
                await emit_safely(self.sink, self._event(session, EventType.UNIT_COMPLETED, unit_data))
            else:
                logger.error(
                    "Unit %s failed in session %s after %d attempts: %s",
                    rec.unit.id, session.id, outcome.attempts, outcome.error,
                )
                await emit_safely(self.sink, self._event(session, EventType.UNIT_FAILED, unit_data))

            if finished:
                await self._emit_session_result(session)
        finally:
            if not released:
                slots.release()

    @staticmethod
    def _finish_if_drained(session: Session) -> bool:
        """
        Move the session to completed/failed once nothing is queued or running.

        Call with the session lock held. Returns True if this call finished it.
        """
        if session.status.is_terminal():
            return False
        if session.active_count > 0 or session.cursor < len(session.queue):
            return False

        session.status = SessionStatus.FAILED if session.failed_count > 0 else SessionStatus.COMPLETED
        session.completed_at = utc_now()
        touch(session)
        return True

    async def _emit_session_result(self, session: Session) -> None:
        self.schedule.remove_job(progress_job_id(session.id))
        if session.status == SessionStatus.COMPLETED and session.config.self_healing:
            self.schedule.add_interval_job(
                self_healing_job_id(session.id),
                partial(self.monitor.sweep, session.id),
                session.config.health_check_interval_seconds,
                f"Self-healing for {session.id}",
            )

        event_type = (
            EventType.SESSION_COMPLETED
            if session.status == SessionStatus.COMPLETED
            else EventType.SESSION_FAILED
        )
        total_time = 0.0
        if session.started_at and session.completed_at:
            total_time = (session.completed_at - session.started_at).total_seconds()

        logger.info(
            "Auto-installation session %s %s: %d completed, %d failed",
            session.id, session.status.value, session.completed_count, session.failed_count,
        )
        await emit_safely(self.sink, self._event(session, event_type, {
            "completed_count": session.completed_count,
            "failed_count": session.failed_count,
            "total_count": session.total_count,
            "total_time_seconds": round(total_time, 3),
        }))

    # =========================================================================
    # Background Jobs
    # =========================================================================

    async def broadcast_progress(self, session_id: Optional[str] = None) -> int:
        """
        Emit one progress snapshot per installing session.

        Args:
            session_id: Only snapshot this session (per-session heartbeat job)

        Returns:
            Number of snapshots emitted
        """
        sent = 0
        for session in self.registry.sessions(SessionStatus.INSTALLING):
            if session_id is not None and session.id != session_id:
                continue
            async with self.registry.lock(session.id):
                summary = summarize(session)
            await emit_safely(self.sink, self._event(
                session, EventType.PROGRESS, summary.model_dump(mode="json"),
            ))
            sent += 1
        return sent

    async def cleanup_expired(self, now: Optional[datetime] = None) -> List[str]:
        return self.cleanup_expired_now(now)

    def cleanup_expired_now(self, now: Optional[datetime] = None) -> List[str]:
        """Drop finished sessions older than the retention window."""
        expired = self.registry.expire(self.retention_seconds, now=now)
        for session_id in expired:
            self.schedule.remove_job(progress_job_id(session_id))
            self.schedule.remove_job(self_healing_job_id(session_id))
            self._slots.pop(session_id, None)
            self._tasks.pop(session_id, None)
        return expired

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _position(session: Session) -> Dict[str, Any]:
        return {
            "cursor": session.cursor,
            "active_count": session.active_count,
            "remaining": session.remaining_in_queue,
        }

    @staticmethod
    def _event(session: Session, event_type: str, data: Dict[str, Any]) -> LifecycleEvent:
        return LifecycleEvent(
            type=event_type,
            session_id=session.id,
            owner=session.owner,
            data=data,
        )
