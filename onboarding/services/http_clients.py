"""
Installer Service Client
========================

httpx-based adapter that implements every collaborator port
(recommendations, unit installer, health prober, remediator) against the
registry/installer REST service.

Endpoints used (relative to ``INSTALLER_API_URL``):
    POST /recommendations                      -> {"recommendations": [...]}
    POST /installations                        -> InstallHandle
    GET  /installations/{handle_id}            -> {"status": ..., "detail": ...}
    POST /installations/{handle_id}/probe      -> {"status": ..., "response_time_ms": ...}
    POST /installations/{handle_id}/remediate  -> {"applied": bool}

HTTP errors are raised as ``httpx.HTTPError``; the orchestrator maps them to
``RecommendationFailure`` or unit-level ``InstallFailure``.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

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

logger = logging.getLogger(__name__)


class InstallerServiceClient:
    """
    One client for all collaborator ports.

    Usage:
        client = InstallerServiceClient("https://registry.internal/api")
        orchestrator = InstallOrchestrator(client, client, client, remediator=client)
        ...
        await client.aclose()
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"json": payload}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await self._client.post(path, **kwargs)
        response.raise_for_status()
        return response.json()

    # --- RecommendationSource ---

    async def generate(
        self,
        owner: str,
        environment: EnvironmentContext,
        goals: UserGoals,
    ) -> List[Recommendation]:
        data = await self._post("/recommendations", {
            "owner": owner,
            "environment": environment.model_dump(mode="json"),
            "goals": goals.model_dump(mode="json"),
        })
        recommendations = [Recommendation.model_validate(item) for item in data.get("recommendations", [])]
        logger.debug("Received %d recommendations for %s", len(recommendations), owner)
        return recommendations

    # --- UnitInstaller ---

    async def install(
        self,
        unit: UnitSpec,
        method: InstallMethod,
        config: dict,
        env_vars: dict,
    ) -> InstallHandle:
        data = await self._post("/installations", {
            "unit": unit.model_dump(mode="json"),
            "method": method.value,
            "configuration": config,
            "env_vars": env_vars,
            "auto_start": True,
        })
        return InstallHandle.model_validate(data)

    async def poll_status(self, handle: InstallHandle) -> InstallStatusReport:
        response = await self._client.get(f"/installations/{handle.handle_id}")
        response.raise_for_status()
        return InstallStatusReport.model_validate(response.json())

    # --- HealthProber ---

    async def probe(self, handle: InstallHandle, timeout: float, max_retries: int) -> HealthReport:
        # Leave headroom for the service's own retries
        data = await self._post(
            f"/installations/{handle.handle_id}/probe",
            {"timeout_ms": int(timeout * 1000), "max_retries": max_retries},
            timeout=timeout * (max_retries + 1),
        )
        return HealthReport.model_validate(data)

    # --- Remediator ---

    async def remediate(self, handle: InstallHandle, unit: UnitSpec) -> bool:
        data = await self._post(
            f"/installations/{handle.handle_id}/remediate",
            {"unit_id": unit.id, "actions": ["reconnect", "reconfigure"]},
        )
        applied = bool(data.get("applied", False))
        logger.info("Remediation for unit %s (handle %s): applied=%s", unit.id, handle.handle_id, applied)
        return applied
