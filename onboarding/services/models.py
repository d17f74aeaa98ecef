"""
Install Orchestrator Models
===========================

Pydantic v2 models for install sessions, per-unit progress and the
collaborator contracts (recommendations, install handles, health reports).

In-memory only; no database dependency.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return the current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class PriorityLabel(str, Enum):
    """Installation priority assigned by the recommendation source."""
    IMMEDIATE = "immediate"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK: Dict[PriorityLabel, int] = {
    PriorityLabel.IMMEDIATE: 4,
    PriorityLabel.HIGH: 3,
    PriorityLabel.MEDIUM: 2,
    PriorityLabel.LOW: 1,
}


class SessionStatus(str, Enum):
    """Lifecycle states for an install session."""
    INITIALIZING = "initializing"
    INSTALLING = "installing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class UnitStatus(str, Enum):
    """Lifecycle states for a single unit within a session."""
    PENDING = "pending"
    DOWNLOADING = "downloading"
    CONFIGURING = "configuring"
    TESTING = "testing"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (UnitStatus.COMPLETED, UnitStatus.FAILED)


class HealthVerdict(str, Enum):
    """Outcome of a post-install or self-healing health probe."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class InstallMethod(str, Enum):
    """How the unit installer should fetch and run a unit."""
    NPM = "npm"
    DOCKER = "docker"
    BINARY = "binary"
    MANUAL = "manual"


# =============================================================================
# Collaborator Contracts
# =============================================================================

class UnitSpec(BaseModel):
    """An installable unit (server) as described by the registry."""
    id: str = Field(..., description="Stable unit identifier")
    name: str = Field(default="", description="Human-readable name")
    tags: List[str] = Field(default_factory=list)
    npm_package: Optional[str] = None
    docker_image: Optional[str] = None
    binary_url: Optional[str] = None


class EnvironmentContext(BaseModel):
    """What the user's machine/project looks like."""
    project_type: str = Field(default="unknown", description="e.g. nodejs, python")
    tools: Dict[str, bool] = Field(
        default_factory=dict,
        description="Detected tooling, e.g. {'docker': True, 'aws_cli': False}",
    )
    platform: Optional[str] = None

    def has_tool(self, name: str) -> bool:
        return bool(self.tools.get(name))


class UserGoals(BaseModel):
    """What the user is trying to get done."""
    primary_objective: str = Field(default="development")
    use_cases: List[str] = Field(default_factory=list)


class Recommendation(BaseModel):
    """A candidate unit with ranking metadata from the recommendation source."""
    model_config = ConfigDict(frozen=True)

    unit: UnitSpec
    priority: PriorityLabel
    confidence_score: float = Field(..., description="Opaque comparable score")
    dependencies: Tuple[str, ...] = Field(default_factory=tuple)
    estimated_setup_time: float = Field(
        default=0.0, ge=0.0, description="Estimated setup time in minutes"
    )


class InstallRequest(BaseModel):
    """Everything the unit installer needs to install one unit."""
    unit: UnitSpec
    method: InstallMethod
    configuration: Dict[str, Any] = Field(default_factory=dict)
    env_vars: Dict[str, str] = Field(default_factory=dict)
    auto_start: bool = True


class InstallHandle(BaseModel):
    """Opaque reference to an installation returned by the unit installer."""
    handle_id: str
    unit_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InstallStatusReport(BaseModel):
    """Result of polling the unit installer for a handle."""
    status: str = Field(..., description="installing | installed | failed")
    detail: str = ""


class HealthReport(BaseModel):
    """Result of a health probe against an installed unit."""
    status: str = Field(..., description="connected | disconnected | error")
    response_time_ms: float = 0.0


# =============================================================================
# Session Config
# =============================================================================

class SessionConfig(BaseModel):
    """Per-session tuning. Partial caller configs are merged over defaults."""

    model_config = ConfigDict(extra="forbid")

    max_concurrent: int = Field(default=3, ge=1, description="Concurrency cap")
    retry_budget: int = Field(default=2, ge=0, description="Retries per unit")
    intelligent_ordering: bool = Field(default=True)
    self_healing: bool = Field(default=True)
    dependency_auto_resolution: bool = Field(default=True)
    progress_interval_seconds: float = Field(default=2.0, gt=0.0)
    health_check_interval_seconds: float = Field(default=30.0, gt=0.0)
    retry_delay_seconds: float = Field(default=5.0, ge=0.0)
    install_timeout_seconds: float = Field(default=120.0, gt=0.0)
    install_poll_seconds: float = Field(default=2.0, gt=0.0)
    health_probe_timeout_seconds: float = Field(default=10.0, gt=0.0)
    health_probe_retries: int = Field(default=3, ge=0)
    degraded_threshold_ms: float = Field(default=1000.0, gt=0.0)


# =============================================================================
# Session / Progress
# =============================================================================

class UnitProgress(BaseModel):
    """Progress record for one queued unit, keyed by unit id in its session."""
    unit_id: str
    unit_name: str = ""
    status: UnitStatus = UnitStatus.PENDING
    percent: float = Field(default=0.0, ge=0.0, le=100.0)
    step_details: str = "Queued for installation"
    retry_count: int = 0
    last_error: Optional[str] = None
    health_verdict: Optional[HealthVerdict] = None
    elapsed_time: float = Field(default=0.0, description="Seconds spent installing")
    estimated_remaining: float = Field(default=0.0, description="Minutes")
    install_handle: Optional[InstallHandle] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


def _new_session_id() -> str:
    return f"auto_install_{uuid4().hex}"


class Session(BaseModel):
    """
    One onboarding/installation run.

    Owned by the orchestrator; mutated only under the session's lock.
    """
    id: str = Field(default_factory=_new_session_id)
    owner: str
    environment: EnvironmentContext = Field(default_factory=EnvironmentContext)
    goals: UserGoals = Field(default_factory=UserGoals)
    config: SessionConfig = Field(default_factory=SessionConfig)
    queue: Tuple[Recommendation, ...] = Field(default_factory=tuple)
    dropped: Tuple[Recommendation, ...] = Field(
        default_factory=tuple,
        description="Recommendations filtered out of the auto-install flow",
    )
    units: Dict[str, UnitProgress] = Field(default_factory=dict)
    status: SessionStatus = SessionStatus.INITIALIZING
    cursor: int = Field(default=0, description="Index of the next unit to dispatch")
    active_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    last_update: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def total_count(self) -> int:
        return len(self.queue)

    @property
    def completed_count(self) -> int:
        return sum(1 for u in self.units.values() if u.status == UnitStatus.COMPLETED)

    @property
    def failed_count(self) -> int:
        return sum(1 for u in self.units.values() if u.status == UnitStatus.FAILED)

    @property
    def remaining_in_queue(self) -> int:
        return len(self.queue) - self.cursor


class SessionProgressSummary(BaseModel):
    """Derived view of a session. Recomputed from unit records on every read."""
    session_id: str
    owner: str
    status: SessionStatus
    total_count: int
    completed_count: int
    failed_count: int
    active_count: int
    pending_count: int
    overall_percent: int = Field(..., ge=0, le=100)
    estimated_time_remaining: float = Field(default=0.0, description="Minutes")
    current_units: List[str] = Field(default_factory=list)
    units: List[UnitProgress] = Field(default_factory=list)
    created_at: datetime
    last_update: datetime
    completed_at: Optional[datetime] = None


class LifecycleEvent(BaseModel):
    """Notification delivered to the event sink. Carries a unique id for de-duplication."""
    id: str = Field(default_factory=lambda: uuid4().hex)
    type: str
    session_id: str
    owner: str
    timestamp: datetime = Field(default_factory=utc_now)
    data: Dict[str, Any] = Field(default_factory=dict)
