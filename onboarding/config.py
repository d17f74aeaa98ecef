"""
Orchestrator Configuration
==========================

Environment-driven defaults for the install orchestrator.  Values are read
once at import time; ``run_server.py`` loads ``.env`` before importing.

Environment variables:
    MAX_CONCURRENT_INSTALLS       -- Workers per session (default: 3)
    AUTO_RETRY_COUNT              -- Retries per unit (default: 2)
    RETRY_DELAY_SECONDS           -- Fixed delay between retries (default: 5)
    INSTALL_TIMEOUT_SECONDS       -- Hard bound on install polling (default: 120)
    INSTALL_POLL_SECONDS          -- Installer poll interval (default: 2)
    HEALTH_PROBE_TIMEOUT_SECONDS  -- Post-install probe timeout (default: 10)
    HEALTH_PROBE_RETRIES          -- Retries passed to the prober (default: 3)
    DEGRADED_THRESHOLD_MS         -- Latency above which a unit is degraded (default: 1000)
    PROGRESS_INTERVAL_SECONDS     -- Progress heartbeat period (default: 2)
    HEALTH_CHECK_INTERVAL_SECONDS -- Self-healing sweep period (default: 30)
    SESSION_RETENTION_SECONDS     -- Keep finished sessions this long (default: 86400)
    CLEANUP_INTERVAL_SECONDS      -- Retention sweep period (default: 600)
    REMEDIATION_TIMEOUT_SECONDS   -- Bound on a single remediation call (default: 30)
    EVENT_WEBHOOK_URL             -- Optional URL that receives lifecycle events
    EVENT_WEBHOOK_ATTEMPTS        -- Delivery attempts per event (default: 3)
    AGENT_API_KEY                 -- Shared secret for the HTTP API
    INSTALLER_API_URL             -- Base URL of the registry/installer service
    INSTALLER_API_KEY             -- Bearer token for the registry/installer service
    INSTALLER_API_TIMEOUT_SECONDS -- Per-request timeout for that service (default: 30)
"""

import logging
import os
from typing import Any, Dict, Optional

from onboarding.services.exceptions import ConfigurationError
from onboarding.services.models import SessionConfig

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(
            message=f"{name} must be an integer, got {raw!r}",
            config_key=name,
        ) from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(
            message=f"{name} must be a number, got {raw!r}",
            config_key=name,
        ) from e


# =============================================================================
# Worker pool / retry
# =============================================================================

MAX_CONCURRENT_INSTALLS = _env_int("MAX_CONCURRENT_INSTALLS", 3)
AUTO_RETRY_COUNT = _env_int("AUTO_RETRY_COUNT", 2)
RETRY_DELAY_SECONDS = _env_float("RETRY_DELAY_SECONDS", 5.0)

# =============================================================================
# Installer polling / health probe
# =============================================================================

INSTALL_TIMEOUT_SECONDS = _env_float("INSTALL_TIMEOUT_SECONDS", 120.0)
INSTALL_POLL_SECONDS = _env_float("INSTALL_POLL_SECONDS", 2.0)
HEALTH_PROBE_TIMEOUT_SECONDS = _env_float("HEALTH_PROBE_TIMEOUT_SECONDS", 10.0)
HEALTH_PROBE_RETRIES = _env_int("HEALTH_PROBE_RETRIES", 3)
DEGRADED_THRESHOLD_MS = _env_float("DEGRADED_THRESHOLD_MS", 1000.0)

# =============================================================================
# Background jobs
# =============================================================================

PROGRESS_INTERVAL_SECONDS = _env_float("PROGRESS_INTERVAL_SECONDS", 2.0)
HEALTH_CHECK_INTERVAL_SECONDS = _env_float("HEALTH_CHECK_INTERVAL_SECONDS", 30.0)
SESSION_RETENTION_SECONDS = _env_float("SESSION_RETENTION_SECONDS", 86_400.0)
CLEANUP_INTERVAL_SECONDS = _env_float("CLEANUP_INTERVAL_SECONDS", 600.0)
REMEDIATION_TIMEOUT_SECONDS = _env_float("REMEDIATION_TIMEOUT_SECONDS", 30.0)

# =============================================================================
# Event delivery / API
# =============================================================================

EVENT_WEBHOOK_URL: Optional[str] = os.getenv("EVENT_WEBHOOK_URL") or None
EVENT_WEBHOOK_ATTEMPTS = _env_int("EVENT_WEBHOOK_ATTEMPTS", 3)
AGENT_API_KEY: Optional[str] = os.getenv("AGENT_API_KEY")

# =============================================================================
# Registry / installer service
# =============================================================================

INSTALLER_API_URL: Optional[str] = os.getenv("INSTALLER_API_URL") or None
INSTALLER_API_KEY: Optional[str] = os.getenv("INSTALLER_API_KEY") or None
INSTALLER_API_TIMEOUT_SECONDS = _env_float("INSTALLER_API_TIMEOUT_SECONDS", 30.0)


def default_session_config(overrides: Optional[Dict[str, Any]] = None) -> SessionConfig:
    """
    Build a SessionConfig from environment defaults, merged with overrides.

    Args:
        overrides: Partial config supplied by the caller. Keys must be
                   SessionConfig field names.

    Returns:
        Validated SessionConfig

    Raises:
        pydantic.ValidationError: Unknown keys or out-of-range values
    """
    base: Dict[str, Any] = {
        "max_concurrent": MAX_CONCURRENT_INSTALLS,
        "retry_budget": AUTO_RETRY_COUNT,
        "retry_delay_seconds": RETRY_DELAY_SECONDS,
        "install_timeout_seconds": INSTALL_TIMEOUT_SECONDS,
        "install_poll_seconds": INSTALL_POLL_SECONDS,
        "health_probe_timeout_seconds": HEALTH_PROBE_TIMEOUT_SECONDS,
        "health_probe_retries": HEALTH_PROBE_RETRIES,
        "degraded_threshold_ms": DEGRADED_THRESHOLD_MS,
        "progress_interval_seconds": PROGRESS_INTERVAL_SECONDS,
        "health_check_interval_seconds": HEALTH_CHECK_INTERVAL_SECONDS,
    }
    if overrides:
        base.update(overrides)
    return SessionConfig(**base)
