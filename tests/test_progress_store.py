"""
Tests for onboarding.services.progress_store
============================================

Session registry lookups and expiry, and the derived progress summary.
"""

from datetime import timedelta

import pytest

from fakes import make_rec, make_session
from onboarding.services.exceptions import SessionNotFound
from onboarding.services.models import SessionStatus, UnitStatus, utc_now
from onboarding.services.progress_store import (
    SessionRegistry,
    estimate_remaining_minutes,
    overall_percent,
    summarize,
)


# =========================================================================
# SessionRegistry
# =========================================================================

class TestSessionRegistry:

    def test_add_and_get(self) -> None:
        registry = SessionRegistry()
        session = make_session([make_rec("a")])
        registry.add(session)
        assert registry.get(session.id) is session
        assert session.id in registry
        assert len(registry) == 1

    def test_unknown_session(self) -> None:
        registry = SessionRegistry()
        with pytest.raises(SessionNotFound):
            registry.get("auto_install_missing")
        with pytest.raises(SessionNotFound):
            registry.lock("auto_install_missing")

    def test_lock_is_per_session(self) -> None:
        registry = SessionRegistry()
        first, second = make_session([]), make_session([])
        registry.add(first)
        registry.add(second)
        assert registry.lock(first.id) is registry.lock(first.id)
        assert registry.lock(first.id) is not registry.lock(second.id)

    def test_sessions_filtered_by_status(self) -> None:
        registry = SessionRegistry()
        installing = make_session([], status=SessionStatus.INSTALLING)
        done = make_session([], status=SessionStatus.COMPLETED)
        registry.add(installing)
        registry.add(done)
        assert registry.sessions(SessionStatus.COMPLETED) == [done]
        assert set(s.id for s in registry) == {installing.id, done.id}

    def test_expire_only_finished_and_old(self) -> None:
        registry = SessionRegistry()
        now = utc_now()

        old = make_session([], status=SessionStatus.COMPLETED)
        old.completed_at = now - timedelta(hours=25)
        recent = make_session([], status=SessionStatus.FAILED)
        recent.completed_at = now - timedelta(hours=1)
        running = make_session([], status=SessionStatus.INSTALLING)
        running.created_at = now - timedelta(days=3)
        for s in (old, recent, running):
            registry.add(s)

        expired = registry.expire(86_400, now=now)

        assert expired == [old.id]
        assert old.id not in registry
        assert recent.id in registry
        assert running.id in registry

    def test_remove_unknown_is_none(self) -> None:
        assert SessionRegistry().remove("nope") is None


# =========================================================================
# Derived progress
# =========================================================================

class TestOverallPercent:

    @pytest.mark.parametrize("completed,failed,total,expected", [
        (0, 0, 4, 0),
        (1, 0, 4, 25),
        (2, 1, 4, 75),
        (3, 1, 4, 100),
        (1, 0, 3, 33),
        (0, 0, 0, 100),
    ])
    def test_values(self, completed: int, failed: int, total: int, expected: int) -> None:
        assert overall_percent(completed, failed, total) == expected


class TestSummarize:

    def _session(self):
        session = make_session([make_rec("a"), make_rec("b"), make_rec("c"), make_rec("d")])
        session.units["a"].status = UnitStatus.COMPLETED
        session.units["b"].status = UnitStatus.FAILED
        session.units["c"].status = UnitStatus.CONFIGURING
        session.cursor = 3
        session.active_count = 1
        return session

    def test_counts_are_derived_from_units(self) -> None:
        summary = summarize(self._session())
        assert summary.total_count == 4
        assert summary.completed_count == 1
        assert summary.failed_count == 1
        assert summary.pending_count == 1
        assert summary.active_count == 1
        assert summary.current_units == ["c"]
        assert summary.overall_percent == 50

    def test_units_in_queue_order(self) -> None:
        summary = summarize(self._session())
        assert [u.unit_id for u in summary.units] == ["a", "b", "c", "d"]

    def test_summary_is_a_snapshot(self) -> None:
        session = self._session()
        summary = summarize(session)
        session.units["c"].status = UnitStatus.COMPLETED
        assert summary.units[2].status == UnitStatus.CONFIGURING
        assert summarize(session).overall_percent == 75

    def test_empty_session_is_complete(self) -> None:
        summary = summarize(make_session([]))
        assert summary.total_count == 0
        assert summary.overall_percent == 100


class TestEstimateRemaining:

    def test_uses_setup_estimates_before_any_unit_finishes(self) -> None:
        session = make_session([make_rec("a", setup_minutes=2), make_rec("b", setup_minutes=3)])
        assert estimate_remaining_minutes(session) == 5.0

    def test_uses_observed_rate_after_first_unit(self) -> None:
        session = make_session([make_rec("a"), make_rec("b"), make_rec("c")])
        now = utc_now()
        session.started_at = now - timedelta(minutes=2)
        session.units["a"].status = UnitStatus.COMPLETED
        assert estimate_remaining_minutes(session, now=now) == 4.0

    def test_zero_when_everything_finished(self) -> None:
        session = make_session([make_rec("a")])
        session.units["a"].status = UnitStatus.FAILED
        assert estimate_remaining_minutes(session) == 0.0
