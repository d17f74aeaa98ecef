"""
Progress Store
==============

In-memory table of install sessions and their per-unit progress records.
This is the single source of truth the orchestrator, the workers and the
background sweeps all mutate.

Every mutation of a session goes through ``SessionRegistry.lock(session_id)``
so that concurrent workers of the same session serialise their progress
writes, even though their installs run in parallel.

Example:
    registry = SessionRegistry()
    registry.add(session)
    async with registry.lock(session.id):
        session.units["postgres"].percent = 30
    summary = summarize(registry.get(session.id))
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional

from onboarding.services.exceptions import SessionNotFound
from onboarding.services.models import (
    Session,
    SessionProgressSummary,
    SessionStatus,
    UnitStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

# Units that have been claimed by a worker but are not yet terminal
_IN_FLIGHT = (UnitStatus.DOWNLOADING, UnitStatus.CONFIGURING, UnitStatus.TESTING)


class SessionRegistry:
    """Owns the active session table and one asyncio.Lock per session."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def add(self, session: Session) -> None:
        """Register a new session."""
        self._sessions[session.id] = session
        self._locks[session.id] = asyncio.Lock()
        logger.debug("Registered session %s (owner=%s)", session.id, session.owner)

    def get(self, session_id: str) -> Session:
        """Return a session or raise SessionNotFound."""
        try:
            return self._sessions[session_id]
        except KeyError as e:
            raise SessionNotFound(session_id) from e

    def lock(self, session_id: str) -> asyncio.Lock:
        """Return the single-writer lock for a session."""
        try:
            return self._locks[session_id]
        except KeyError as e:
            raise SessionNotFound(session_id) from e

    def remove(self, session_id: str) -> Optional[Session]:
        self._locks.pop(session_id, None)
        return self._sessions.pop(session_id, None)

    def sessions(self, status: Optional[SessionStatus] = None) -> List[Session]:
        """Snapshot of sessions, optionally filtered by status."""
        if status is None:
            return list(self._sessions.values())
        return [s for s in self._sessions.values() if s.status == status]

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def expire(self, retention_seconds: float, now: Optional[datetime] = None) -> List[str]:
        """
        Drop finished sessions whose completed_at is older than the retention window.

        Returns:
            IDs of the sessions that were removed
        """
        now = now or utc_now()
        cutoff = now - timedelta(seconds=retention_seconds)
        expired = [
            s.id for s in self._sessions.values()
            if s.completed_at is not None and s.completed_at < cutoff
        ]
        for session_id in expired:
            self.remove(session_id)
        if expired:
            logger.info("Expired %d finished sessions", len(expired))
        return expired


def touch(session: Session) -> None:
    """Record that the session changed. Call with the session lock held."""
    session.last_update = utc_now()


def overall_percent(completed: int, failed: int, total: int) -> int:
    """Share of terminal units, as an integer percentage."""
    if total <= 0:
        return 100
    return round(100 * (completed + failed) / total)


def estimate_remaining_minutes(session: Session, now: Optional[datetime] = None) -> float:
    """
    Average time per finished unit multiplied by the units still to finish.

    Before any unit has finished the queue's own setup estimates are used.
    """
    finished = session.completed_count + session.failed_count
    remaining = session.total_count - finished
    if remaining <= 0:
        return 0.0

    if finished == 0 or session.started_at is None:
        return float(sum(
            rec.estimated_setup_time
            for rec in session.queue
            if not session.units[rec.unit.id].status.is_terminal()
        ))

    now = now or utc_now()
    elapsed = (now - session.started_at).total_seconds()
    per_unit = elapsed / finished
    return round(per_unit * remaining / 60.0, 2)


def summarize(session: Session) -> SessionProgressSummary:
    """Build a SessionProgressSummary from the session's unit records."""
    units = [session.units[rec.unit.id].model_copy() for rec in session.queue]
    completed = sum(1 for u in units if u.status == UnitStatus.COMPLETED)
    failed = sum(1 for u in units if u.status == UnitStatus.FAILED)
    pending = sum(1 for u in units if u.status == UnitStatus.PENDING)
    current = [u.unit_id for u in units if u.status in _IN_FLIGHT]

    return SessionProgressSummary(
        session_id=session.id,
        owner=session.owner,
        status=session.status,
        total_count=len(units),
        completed_count=completed,
        failed_count=failed,
        active_count=session.active_count,
        pending_count=pending,
        overall_percent=overall_percent(completed, failed, len(units)),
        estimated_time_remaining=estimate_remaining_minutes(session),
        current_units=current,
        units=units,
        created_at=session.created_at,
        last_update=session.last_update,
        completed_at=session.completed_at,
    )
