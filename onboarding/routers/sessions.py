"""
Install Sessions Router - start, inspect, pause and resume auto-installation.

Endpoints:
- POST /api/install-sessions                - Start a session (returns immediately)
- GET  /api/install-sessions                - List sessions (optionally by owner)
- GET  /api/install-sessions/{id}           - Progress summary
- GET  /api/install-sessions/{id}/session   - Full session record
- POST /api/install-sessions/{id}/pause     - Stop dispatching new units
- POST /api/install-sessions/{id}/resume    - Continue from the queue cursor

Installs run on background tasks; clients poll the summary endpoint or
consume lifecycle events.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError

from onboarding.routers.shared import get_orchestrator, to_http_error, verify_api_key
from onboarding.services.exceptions import InvalidSessionState, OrchestratorError
from onboarding.services.models import (
    EnvironmentContext,
    Session,
    SessionProgressSummary,
    SessionStatus,
    UserGoals,
)
from onboarding.services.orchestrator import InstallOrchestrator

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic v2 Request / Response Models
# =============================================================================

class StartSessionRequest(BaseModel):
    """Request body for POST /api/install-sessions."""

    owner: str = Field(..., min_length=1, description="User identifier")
    environment: EnvironmentContext = Field(default_factory=EnvironmentContext)
    goals: UserGoals = Field(default_factory=UserGoals)
    config: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Partial SessionConfig merged over the defaults",
    )


class SessionListItem(BaseModel):
    """One row of GET /api/install-sessions."""

    session_id: str
    owner: str
    status: SessionStatus
    total_count: int
    completed_count: int
    failed_count: int


# =============================================================================
# Router
# =============================================================================

router = APIRouter(prefix="/api/install-sessions", tags=["install-sessions"])


@router.post("", response_model=SessionProgressSummary, status_code=202)
async def start_session(
    request: StartSessionRequest,
    _: bool = Depends(verify_api_key),
    orchestrator: InstallOrchestrator = Depends(get_orchestrator),
) -> SessionProgressSummary:
    """
    Start a zero-configuration install session.

    Returns 202 with the initial progress summary; installation continues
    in the background.
    """
    try:
        session = await orchestrator.start_session(
            owner=request.owner,
            environment=request.environment,
            goals=request.goals,
            config=request.config,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    except OrchestratorError as exc:
        raise to_http_error(exc)

    return orchestrator.get_progress(session.id)


@router.get("", response_model=List[SessionListItem])
async def list_sessions(
    owner: Optional[str] = None,
    _: bool = Depends(verify_api_key),
    orchestrator: InstallOrchestrator = Depends(get_orchestrator),
) -> List[SessionListItem]:
    return [
        SessionListItem(
            session_id=s.id,
            owner=s.owner,
            status=s.status,
            total_count=s.total_count,
            completed_count=s.completed_count,
            failed_count=s.failed_count,
        )
        for s in orchestrator.list_sessions(owner=owner)
    ]


@router.get("/{session_id}", response_model=SessionProgressSummary)
async def get_progress(
    session_id: str,
    _: bool = Depends(verify_api_key),
    orchestrator: InstallOrchestrator = Depends(get_orchestrator),
) -> SessionProgressSummary:
    try:
        return orchestrator.get_progress(session_id)
    except OrchestratorError as exc:
        raise to_http_error(exc)


@router.get("/{session_id}/session", response_model=Session)
async def get_session(
    session_id: str,
    _: bool = Depends(verify_api_key),
    orchestrator: InstallOrchestrator = Depends(get_orchestrator),
) -> Session:
    try:
        return orchestrator.get_session(session_id)
    except OrchestratorError as exc:
        raise to_http_error(exc)


@router.post("/{session_id}/pause", response_model=SessionProgressSummary)
async def pause_session(
    session_id: str,
    _: bool = Depends(verify_api_key),
    orchestrator: InstallOrchestrator = Depends(get_orchestrator),
) -> SessionProgressSummary:
    """Pause dispatch. Returns 409 for finished sessions."""
    try:
        session = orchestrator.get_session(session_id)
        if session.status not in (SessionStatus.INSTALLING, SessionStatus.PAUSED):
            raise InvalidSessionState(session_id, session.status.value, "pause")
        await orchestrator.pause_session(session_id)
        return orchestrator.get_progress(session_id)
    except OrchestratorError as exc:
        raise to_http_error(exc)


@router.post("/{session_id}/resume", response_model=SessionProgressSummary)
async def resume_session(
    session_id: str,
    _: bool = Depends(verify_api_key),
    orchestrator: InstallOrchestrator = Depends(get_orchestrator),
) -> SessionProgressSummary:
    """Resume dispatch from the queue cursor. Returns 409 for finished sessions."""
    try:
        session = orchestrator.get_session(session_id)
        if session.status not in (SessionStatus.PAUSED, SessionStatus.INSTALLING):
            raise InvalidSessionState(session_id, session.status.value, "resume")
        await orchestrator.resume_session(session_id)
        return orchestrator.get_progress(session_id)
    except OrchestratorError as exc:
        raise to_http_error(exc)
