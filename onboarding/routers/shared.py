"""
Shared dependencies for FastAPI routers.

This module contains:
- API key authentication
- Orchestrator lookup from application state
- Mapping of orchestrator exceptions to HTTP errors
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader

from onboarding.config import AGENT_API_KEY
from onboarding.services.exceptions import OrchestratorError
from onboarding.services.orchestrator import InstallOrchestrator

logger = logging.getLogger(__name__)

# =============================================================================
# Authentication
# =============================================================================

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: Optional[str] = Depends(api_key_header)) -> bool:
    """Gate the install-session endpoints on the shared ``X-API-Key`` secret."""
    if not AGENT_API_KEY:
        logger.error("AGENT_API_KEY is not set; install-session API is disabled")
        raise HTTPException(
            status_code=500,
            detail="Install orchestrator API key not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="X-API-Key header required for install-session endpoints",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not secrets.compare_digest(api_key, AGENT_API_KEY):
        logger.warning("Rejected install-session request with a non-matching API key")
        raise HTTPException(
            status_code=401,
            detail="API key rejected",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return True


# =============================================================================
# Orchestrator
# =============================================================================

def get_orchestrator(request: Request) -> InstallOrchestrator:
    """Return the orchestrator attached to the app by create_app()."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Install orchestrator not initialized")
    return orchestrator


def to_http_error(exc: OrchestratorError) -> HTTPException:
    """Convert an orchestrator exception into an HTTPException with its payload."""
    if exc.status_code >= 500:
        logger.error("Orchestrator error: %s", exc)
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())
