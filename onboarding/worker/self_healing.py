"""
Self-Healing Monitor
====================

Periodic re-validation of finished install sessions.

On every sweep (one per completed session, every
``config.health_check_interval_seconds``), for each ``completed`` session with ``self_healing`` enabled,
every unit that finished ``completed`` but whose recorded health verdict is
not ``healthy`` is:

1. re-probed through the health prober
2. handed to the remediator (reconnect / reconfigure) if still not healthy
3. re-probed once more if a remediation was applied

The final verdict is written to the unit's ``health_verdict`` and a
``remediation_attempted`` event is emitted.  The unit's terminal ``status``
is never touched, and sweep errors are logged rather than raised.
"""

import asyncio
import logging
from typing import Dict, Optional, Tuple

from onboarding.config import REMEDIATION_TIMEOUT_SECONDS
from onboarding.services.events import EventSink, EventType, emit_safely
from onboarding.services.models import (
    HealthVerdict,
    LifecycleEvent,
    Session,
    SessionStatus,
    UnitProgress,
    UnitSpec,
    UnitStatus,
)
from onboarding.services.ports import HealthProber, Remediator
from onboarding.services.progress_store import SessionRegistry, touch
from onboarding.services.unit_installer import classify_health

logger = logging.getLogger(__name__)


class SelfHealingMonitor:
    """
    Re-probes and remediates degraded units in completed sessions.

    Usage:
        monitor = SelfHealingMonitor(registry, prober, sink, remediator)
        stats = await monitor.sweep()
    """

    def __init__(
        self,
        registry: SessionRegistry,
        prober: HealthProber,
        sink: EventSink,
        remediator: Optional[Remediator] = None,
        remediation_timeout: float = REMEDIATION_TIMEOUT_SECONDS,
    ) -> None:
        self._registry = registry
        self._prober = prober
        self._sink = sink
        self._remediator = remediator
        self._remediation_timeout = remediation_timeout
        self.sweep_count = 0

    async def sweep(self, session_id: Optional[str] = None) -> Dict[str, int]:
        """
        Run one self-healing pass over every eligible session.

        Args:
            session_id: Restrict the pass to this session (per-session job)

        Returns:
            Counters: sessions_checked, units_checked, remediations, recovered
        """
        self.sweep_count += 1
        stats = {"sessions_checked": 0, "units_checked": 0, "remediations": 0, "recovered": 0}

        for session in self._registry.sessions(SessionStatus.COMPLETED):
            if session_id is not None and session.id != session_id:
                continue
            if not session.config.self_healing:
                continue
            stats["sessions_checked"] += 1
            try:
                await self._check_session(session, stats)
            except Exception as exc:
                logger.error(
                    "Self-healing check failed for session %s: %s",
                    session.id, exc, exc_info=True,
                )

        if stats["units_checked"]:
            logger.info(
                "Self-healing sweep #%d: %d units checked, %d remediated, %d recovered",
                self.sweep_count, stats["units_checked"], stats["remediations"], stats["recovered"],
            )
        return stats

    async def _check_session(self, session: Session, stats: Dict[str, int]) -> None:
        async with self._registry.lock(session.id):
            candidates = [
                (rec.unit, session.units[rec.unit.id])
                for rec in session.queue
                if session.units[rec.unit.id].status == UnitStatus.COMPLETED
                and session.units[rec.unit.id].health_verdict != HealthVerdict.HEALTHY
            ]

        for unit, progress in candidates:
            if progress.install_handle is None:
                logger.warning(
                    "Unit %s in session %s has no install handle; skipping self-healing",
                    unit.id, session.id,
                )
                continue

            logger.info("Performing self-healing check for unit %s in session %s", unit.id, session.id)
            stats["units_checked"] += 1
            previous = progress.health_verdict
            verdict, remediated, error = await self._heal_unit(session, unit, progress)
            if remediated:
                stats["remediations"] += 1
            if verdict == HealthVerdict.HEALTHY:
                stats["recovered"] += 1

            async with self._registry.lock(session.id):
                progress.health_verdict = verdict
                touch(session)

            await emit_safely(self._sink, LifecycleEvent(
                type=EventType.REMEDIATION_ATTEMPTED,
                session_id=session.id,
                owner=session.owner,
                data={
                    "unit_id": unit.id,
                    "previous_verdict": previous.value if previous else None,
                    "verdict": verdict.value,
                    "remediation_applied": remediated,
                    "error": error,
                },
            ))

    async def _probe(self, session: Session, progress: UnitProgress) -> Tuple[HealthVerdict, Optional[str]]:
        config = session.config
        bound = config.health_probe_timeout_seconds * (config.health_probe_retries + 1)
        try:
            report = await asyncio.wait_for(
                self._prober.probe(
                    progress.install_handle,
                    timeout=config.health_probe_timeout_seconds,
                    max_retries=config.health_probe_retries,
                ),
                timeout=bound,
            )
        except asyncio.TimeoutError:
            return HealthVerdict.UNHEALTHY, f"health probe timed out after {bound:g}s"
        except Exception as exc:
            logger.warning("Self-healing probe failed for unit %s: %s", progress.unit_id, exc)
            return HealthVerdict.UNHEALTHY, str(exc)
        return classify_health(report, config.degraded_threshold_ms), None

    async def _heal_unit(
        self,
        session: Session,
        unit: UnitSpec,
        progress: UnitProgress,
    ) -> Tuple[HealthVerdict, bool, Optional[str]]:
        verdict, error = await self._probe(session, progress)
        if verdict == HealthVerdict.HEALTHY or self._remediator is None:
            return verdict, False, error

        try:
            applied = await asyncio.wait_for(
                self._remediator.remediate(progress.install_handle, unit),
                timeout=self._remediation_timeout,
            )
        except asyncio.TimeoutError:
            return verdict, False, f"remediation timed out after {self._remediation_timeout:g}s"
        except Exception as exc:
            logger.warning("Remediation failed for unit %s in session %s: %s", unit.id, session.id, exc)
            return verdict, False, str(exc)

        if not applied:
            return verdict, False, error

        verdict, error = await self._probe(session, progress)
        return verdict, True, error
