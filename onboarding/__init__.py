"""
Install Orchestrator
====================

Bounded-concurrency installation and onboarding sessions: ranked units are
installed under a concurrency cap with bounded retries, post-install health
verification, cooperative pause/resume and periodic self-healing.

Usage:
    from onboarding import InstallOrchestrator

    orchestrator = InstallOrchestrator(recommendations, installer, prober)
    await orchestrator.start()
    session = await orchestrator.start_session("user-1", environment, goals)
    summary = orchestrator.get_progress(session.id)
"""

from onboarding.services.exceptions import (
    HealthCheckFailure,
    InstallFailure,
    OrchestratorError,
    RecommendationFailure,
    SessionNotFound,
    TimeoutFailure,
)
from onboarding.services.models import (
    EnvironmentContext,
    PriorityLabel,
    Recommendation,
    Session,
    SessionConfig,
    SessionProgressSummary,
    SessionStatus,
    UnitSpec,
    UnitStatus,
    UserGoals,
)
from onboarding.services.orchestrator import InstallOrchestrator

__all__ = [
    "InstallOrchestrator",
    "EnvironmentContext",
    "PriorityLabel",
    "Recommendation",
    "Session",
    "SessionConfig",
    "SessionProgressSummary",
    "SessionStatus",
    "UnitSpec",
    "UnitStatus",
    "UserGoals",
    "OrchestratorError",
    "RecommendationFailure",
    "InstallFailure",
    "TimeoutFailure",
    "HealthCheckFailure",
    "SessionNotFound",
]
