"""
FastAPI Server - Install Orchestrator API

Exposes install sessions over HTTP and runs the orchestrator's background
schedule (progress heartbeat, self-healing sweep, session cleanup) for the
lifetime of the app.

Run with:
    python run_server.py

Or with uvicorn:
    uvicorn onboarding.server:app --host 0.0.0.0 --port 8001
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from fastapi import FastAPI

from onboarding import config
from onboarding.routers.sessions import router as sessions_router
from onboarding.services.events import build_default_sink
from onboarding.services.exceptions import ConfigurationError
from onboarding.services.http_clients import InstallerServiceClient
from onboarding.services.models import SessionStatus
from onboarding.services.orchestrator import InstallOrchestrator

logger = logging.getLogger(__name__)


def build_orchestrator_from_env() -> Tuple[InstallOrchestrator, InstallerServiceClient]:
    """
    Wire an orchestrator against the installer service configured in the environment.

    Returns:
        (orchestrator, client): the caller owns the client and must aclose() it

    Raises:
        ConfigurationError: If INSTALLER_API_URL is not set
    """
    if not config.INSTALLER_API_URL:
        raise ConfigurationError(
            message="INSTALLER_API_URL must be set",
            config_key="INSTALLER_API_URL",
        )

    client = InstallerServiceClient(
        base_url=config.INSTALLER_API_URL,
        api_key=config.INSTALLER_API_KEY,
        timeout_seconds=config.INSTALLER_API_TIMEOUT_SECONDS,
    )
    orchestrator = InstallOrchestrator(
        recommendations=client,
        installer=client,
        prober=client,
        remediator=client,
        sink=build_default_sink(config.EVENT_WEBHOOK_URL, attempts=config.EVENT_WEBHOOK_ATTEMPTS),
    )
    return orchestrator, client


def create_app(orchestrator: Optional[InstallOrchestrator] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        orchestrator: Pre-built orchestrator (tests, embedding). When None the
                      orchestrator is built from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        client: Optional[InstallerServiceClient] = None
        if orchestrator is None:
            instance, client = build_orchestrator_from_env()
        else:
            instance = orchestrator
        app.state.orchestrator = instance
        await instance.start()
        logger.info("Install orchestrator API ready")
        try:
            yield
        finally:
            logger.info("Install orchestrator API shutting down...")
            await instance.shutdown()
            if client is not None:
                await client.aclose()

    app = FastAPI(
        title="Install Orchestrator",
        description="Bounded-concurrency auto-installation and onboarding sessions",
        lifespan=lifespan,
    )
    app.include_router(sessions_router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        """Liveness probe with session counts by status."""
        instance: Optional[InstallOrchestrator] = getattr(app.state, "orchestrator", None)
        if instance is None:
            return {"status": "starting", "sessions": {}}
        counts = {
            status.value: len(instance.registry.sessions(status))
            for status in SessionStatus
        }
        return {
            "status": "healthy",
            "sessions": counts,
            "scheduler_running": instance.schedule.started,
        }

    return app


app = create_app()
