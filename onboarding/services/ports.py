"""
Collaborator Ports
==================

Narrow async interfaces for the external systems the orchestrator depends on.
Concrete implementations (registry-backed recommendation engine, npm/docker
installer, MCP connection prober) live outside this package and are injected
into ``InstallOrchestrator``.
"""

from typing import List, Protocol, runtime_checkable

from onboarding.services.models import (
    EnvironmentContext,
    HealthReport,
    InstallHandle,
    InstallMethod,
    InstallStatusReport,
    Recommendation,
    UnitSpec,
    UserGoals,
)


@runtime_checkable
class RecommendationSource(Protocol):
    """Supplies ranked candidate units for an owner/environment/goals triple."""

    async def generate(
        self,
        owner: str,
        environment: EnvironmentContext,
        goals: UserGoals,
    ) -> List[Recommendation]:
        ...


@runtime_checkable
class UnitInstaller(Protocol):
    """Performs the install-and-configure action for one unit."""

    async def install(
        self,
        unit: UnitSpec,
        method: InstallMethod,
        config: dict,
        env_vars: dict,
    ) -> InstallHandle:
        ...

    async def poll_status(self, handle: InstallHandle) -> InstallStatusReport:
        """Return the installer's own status for a handle (installing | installed | failed)."""
        ...


@runtime_checkable
class HealthProber(Protocol):
    """Opens a connection to an installed unit and reports its health."""

    async def probe(
        self,
        handle: InstallHandle,
        timeout: float,
        max_retries: int,
    ) -> HealthReport:
        ...


@runtime_checkable
class Remediator(Protocol):
    """Best-effort repair (reconnect / reconfigure) of an unhealthy unit."""

    async def remediate(self, handle: InstallHandle, unit: UnitSpec) -> bool:
        """Return True if a remediation action was applied."""
        ...
