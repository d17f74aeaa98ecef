"""
Unit Install Lifecycle
======================

Drives one queued unit through its install state machine:

    pending -> downloading -> configuring -> testing -> {completed | failed}

Failures inside an attempt (installer error, poll timeout, failed health
probe) are raised as ``InstallFailure`` subclasses and caught in
``UnitInstallRunner.run``, which either schedules a retry (percent reset to
0, status back to ``pending``, ``retry_count`` + 1, fixed delay) or gives up
once the retry budget is spent.

The terminal transition itself is applied by the worker pool through
``mark_terminal`` so that leaving the active worker set and becoming
``completed``/``failed`` happen under the same session lock.

Percent bands:
    10      claimed, building the install request
    20      dependencies resolved
    30-70   installer running (elapsed / timeout mapped into the band)
    80      health probe
    100     completed
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from onboarding.services.events import EventSink, EventType, emit_safely
from onboarding.services.exceptions import (
    HealthCheckFailure,
    InstallFailure,
    TimeoutFailure,
)
from onboarding.services.models import (
    EnvironmentContext,
    HealthReport,
    HealthVerdict,
    InstallHandle,
    InstallMethod,
    InstallRequest,
    LifecycleEvent,
    Recommendation,
    Session,
    SessionConfig,
    UnitProgress,
    UnitStatus,
    utc_now,
)
from onboarding.services.ports import HealthProber, UnitInstaller
from onboarding.services.progress_store import SessionRegistry, touch

logger = logging.getLogger(__name__)

PERCENT_CLAIMED = 10.0
PERCENT_DEPENDENCIES = 20.0
PERCENT_INSTALL_START = 30.0
PERCENT_INSTALL_END = 70.0
PERCENT_TESTING = 80.0
PERCENT_DONE = 100.0


class UnitOutcome(BaseModel):
    """Result of running a unit through its lifecycle, retries included."""
    unit_id: str
    success: bool
    error: Optional[str] = None
    verdict: Optional[HealthVerdict] = None
    attempts: int = 1
    elapsed_time: float = 0.0


# =============================================================================
# Install Request Building
# =============================================================================

def determine_install_method(rec: Recommendation, environment: EnvironmentContext) -> InstallMethod:
    """Pick docker, npm or binary based on the unit's artifacts and the environment."""
    unit = rec.unit
    if environment.has_tool("docker") and unit.docker_image:
        return InstallMethod.DOCKER
    if environment.project_type == "nodejs" and unit.npm_package:
        return InstallMethod.NPM
    if unit.binary_url and not unit.npm_package:
        return InstallMethod.BINARY
    return InstallMethod.NPM


def generate_auto_configuration(rec: Recommendation, environment: EnvironmentContext) -> Dict[str, Any]:
    """Zero-config defaults derived from the unit's tags."""
    tags = set(rec.unit.tags)
    config: Dict[str, Any] = {}

    if "database" in tags:
        config["auto_discover"] = True
        config["connection_pool_size"] = 5

    if "cloud" in tags and environment.has_tool("aws_cli"):
        config["provider"] = "aws"
        config["use_iam_roles"] = True

    if "monitoring" in tags:
        config["auto_alerts"] = True
        config["health_check_interval"] = 60

    return config


def generate_environment_variables(rec: Recommendation) -> Dict[str, str]:
    env_vars = {
        "NODE_ENV": "production",
        "LOG_LEVEL": "info",
    }
    if "database" in rec.unit.tags:
        env_vars["DB_POOL_SIZE"] = "5"
        env_vars["DB_TIMEOUT"] = "30000"
    return env_vars


def build_install_request(rec: Recommendation, environment: EnvironmentContext) -> InstallRequest:
    return InstallRequest(
        unit=rec.unit,
        method=determine_install_method(rec, environment),
        configuration=generate_auto_configuration(rec, environment),
        env_vars=generate_environment_variables(rec),
    )


def classify_health(report: HealthReport, degraded_threshold_ms: float) -> HealthVerdict:
    """connected and fast -> healthy; connected but slow -> degraded; otherwise unhealthy."""
    if report.status != "connected":
        return HealthVerdict.UNHEALTHY
    if report.response_time_ms < degraded_threshold_ms:
        return HealthVerdict.HEALTHY
    return HealthVerdict.DEGRADED


def install_progress_percent(elapsed: float, timeout: float) -> float:
    """Map elapsed/timeout into the 30-70% installer band."""
    if timeout <= 0:
        return PERCENT_INSTALL_END
    span = PERCENT_INSTALL_END - PERCENT_INSTALL_START
    return min(PERCENT_INSTALL_END, PERCENT_INSTALL_START + (elapsed / timeout) * span)


# =============================================================================
# Runner
# =============================================================================

class UnitInstallRunner:
    """
    Runs units through the install lifecycle for the worker pool.

    All writes to a session's unit records happen under the registry's
    per-session lock.
    """

    def __init__(
        self,
        installer: UnitInstaller,
        prober: HealthProber,
        registry: SessionRegistry,
        sink: EventSink,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._installer = installer
        self._prober = prober
        self._registry = registry
        self._sink = sink
        self._clock = clock

    async def _update(self, session: Session, progress: UnitProgress, **fields: Any) -> None:
        async with self._registry.lock(session.id):
            for name, value in fields.items():
                setattr(progress, name, value)
            touch(session)

    async def run(self, session: Session, rec: Recommendation) -> UnitOutcome:
        """
        Install one unit, retrying up to the session's retry budget.

        Never raises InstallFailure: the final outcome is returned for the
        worker pool to record.
        """
        progress = session.units[rec.unit.id]
        config = session.config
        started = self._clock()

        while True:
            try:
                verdict = await self._attempt(session, rec, progress)
                return UnitOutcome(
                    unit_id=rec.unit.id,
                    success=True,
                    verdict=verdict,
                    attempts=progress.retry_count + 1,
                    elapsed_time=self._clock() - started,
                )
            except InstallFailure as exc:
                logger.warning(
                    "Unit %s failed in session %s (attempt %d/%d): %s",
                    rec.unit.id, session.id,
                    progress.retry_count + 1, config.retry_budget + 1, exc,
                )
                if progress.retry_count >= config.retry_budget:
                    return UnitOutcome(
                        unit_id=rec.unit.id,
                        success=False,
                        error=exc.message,
                        verdict=progress.health_verdict,
                        attempts=progress.retry_count + 1,
                        elapsed_time=self._clock() - started,
                    )
                await self._schedule_retry(session, progress, exc)
                await asyncio.sleep(config.retry_delay_seconds)

    async def _schedule_retry(self, session: Session, progress: UnitProgress, exc: InstallFailure) -> None:
        async with self._registry.lock(session.id):
            progress.retry_count += 1
            progress.percent = 0.0
            progress.status = UnitStatus.PENDING
            progress.last_error = exc.message
            progress.step_details = f"Retrying installation (attempt {progress.retry_count + 1})..."
            touch(session)
            retry_count = progress.retry_count

        logger.info(
            "Retrying unit %s in session %s (retry %d/%d)",
            progress.unit_id, session.id, retry_count, session.config.retry_budget,
        )
        await emit_safely(self._sink, LifecycleEvent(
            type=EventType.UNIT_RETRYING,
            session_id=session.id,
            owner=session.owner,
            data={
                "unit_id": progress.unit_id,
                "retry_count": retry_count,
                "error": exc.message,
                "delay_seconds": session.config.retry_delay_seconds,
            },
        ))

    async def _attempt(self, session: Session, rec: Recommendation, progress: UnitProgress) -> HealthVerdict:
        config = session.config
        unit_id = rec.unit.id

        await self._update(
            session, progress,
            status=UnitStatus.DOWNLOADING,
            percent=PERCENT_CLAIMED,
            step_details="Configuring installation parameters...",
            started_at=utc_now(),
        )
        request = build_install_request(rec, session.environment)

        if config.dependency_auto_resolution and rec.dependencies:
            summary = await self.resolve_dependencies(session, rec)
            await self._update(
                session, progress,
                percent=PERCENT_DEPENDENCIES,
                step_details=f"Dependencies: {summary}",
            )

        await self._update(
            session, progress,
            status=UnitStatus.CONFIGURING,
            percent=PERCENT_INSTALL_START,
            step_details=f"Installing server via {request.method.value}...",
        )
        try:
            handle = await self._installer.install(
                request.unit, request.method, request.configuration, request.env_vars,
            )
        except InstallFailure:
            raise
        except Exception as e:
            raise InstallFailure(unit_id=unit_id, message=f"Installer error: {e}", original_error=e) from e

        await self._update(session, progress, install_handle=handle)
        await self._await_install(session, progress, handle, config)

        await self._update(
            session, progress,
            status=UnitStatus.TESTING,
            percent=PERCENT_TESTING,
            step_details="Performing health checks...",
        )
        verdict = await self._health_check(session, progress, handle, config)
        return verdict

    async def resolve_dependencies(self, session: Session, rec: Recommendation) -> str:
        """
        Classify each declared dependency against the session.

        Dependencies never block dispatch; this only records where each one
        stands (satisfied / queued / failed / external).
        """
        states: Dict[str, str] = {}
        async with self._registry.lock(session.id):
            for dep in rec.dependencies:
                other = session.units.get(dep)
                if other is None:
                    states[dep] = "external"
                elif other.status == UnitStatus.COMPLETED:
                    states[dep] = "satisfied"
                elif other.status == UnitStatus.FAILED:
                    states[dep] = "failed"
                else:
                    states[dep] = "queued"

        for dep, state in states.items():
            logger.info(
                "Auto-resolving dependency %s for unit %s in session %s: %s",
                dep, rec.unit.id, session.id, state,
            )
        return ", ".join(f"{dep}={state}" for dep, state in states.items())

    async def _await_install(
        self,
        session: Session,
        progress: UnitProgress,
        handle: InstallHandle,
        config: SessionConfig,
    ) -> None:
        """Poll the installer until it reports installed, failed, or the hard timeout passes."""
        timeout = config.install_timeout_seconds
        start = self._clock()

        while True:
            remaining = timeout - (self._clock() - start)
            if remaining <= 0:
                raise TimeoutFailure(unit_id=progress.unit_id, timeout_seconds=timeout, stage="install")

            try:
                report = await asyncio.wait_for(self._installer.poll_status(handle), timeout=remaining)
            except asyncio.TimeoutError as e:
                raise TimeoutFailure(
                    unit_id=progress.unit_id, timeout_seconds=timeout, stage="install", original_error=e,
                ) from e
            except InstallFailure:
                raise
            except Exception as e:
                raise InstallFailure(
                    unit_id=progress.unit_id, message=f"Status poll error: {e}", original_error=e,
                ) from e

            if report.status == "installed":
                return
            if report.status == "failed":
                raise InstallFailure(
                    unit_id=progress.unit_id,
                    message=report.detail or "Installer reported failure",
                )

            elapsed = self._clock() - start
            await self._update(
                session, progress,
                percent=max(progress.percent, install_progress_percent(elapsed, timeout)),
                step_details=report.detail or "Installing server components...",
            )
            await asyncio.sleep(min(config.install_poll_seconds, max(0.0, timeout - elapsed)))

    async def _health_check(
        self,
        session: Session,
        progress: UnitProgress,
        handle: InstallHandle,
        config: SessionConfig,
    ) -> HealthVerdict:
        bound = config.health_probe_timeout_seconds * (config.health_probe_retries + 1)
        try:
            report = await asyncio.wait_for(
                self._prober.probe(
                    handle,
                    timeout=config.health_probe_timeout_seconds,
                    max_retries=config.health_probe_retries,
                ),
                timeout=bound,
            )
        except asyncio.TimeoutError as e:
            await self._update(session, progress, health_verdict=HealthVerdict.UNHEALTHY)
            raise TimeoutFailure(
                unit_id=progress.unit_id, timeout_seconds=bound, stage="health_probe", original_error=e,
            ) from e
        except Exception as e:
            await self._update(session, progress, health_verdict=HealthVerdict.UNHEALTHY)
            raise HealthCheckFailure(
                unit_id=progress.unit_id, message=str(e), verdict="unhealthy", original_error=e,
            ) from e

        verdict = classify_health(report, config.degraded_threshold_ms)
        await self._update(session, progress, health_verdict=verdict)
        if verdict == HealthVerdict.UNHEALTHY:
            raise HealthCheckFailure(unit_id=progress.unit_id, verdict=verdict.value)
        if verdict == HealthVerdict.DEGRADED:
            logger.info(
                "Unit %s is degraded (%.0fms) in session %s; accepting",
                progress.unit_id, report.response_time_ms, session.id,
            )
        return verdict

    @staticmethod
    def mark_terminal(progress: UnitProgress, outcome: UnitOutcome) -> None:
        """
        Apply the terminal transition. Call with the session lock held.
        """
        progress.finished_at = utc_now()
        progress.elapsed_time = round(outcome.elapsed_time, 3)
        progress.estimated_remaining = 0.0
        if outcome.success:
            progress.status = UnitStatus.COMPLETED
            progress.percent = PERCENT_DONE
            progress.step_details = "Installation completed successfully"
            progress.health_verdict = outcome.verdict
        else:
            progress.status = UnitStatus.FAILED
            progress.last_error = outcome.error
            progress.step_details = f"Installation failed: {outcome.error}"
