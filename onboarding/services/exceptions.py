"""
Custom Exception Classes for the Install Orchestrator
=====================================================

Hierarchy of exceptions that preserve context through the error chain.
All exceptions support:

1. Error chaining with `raise ... from e`
2. HTTP status code mapping for API responses
3. Error classification for monitoring/alerting
4. Original context preservation

Unit-level failures (``InstallFailure`` and its subclasses) are caught at
the worker boundary and recorded on the unit's progress record.  Only
``RecommendationFailure`` and ``SessionNotFound`` ever reach a caller.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categories for error classification and monitoring."""
    RECOMMENDATION = "recommendation"
    INSTALLATION = "installation"
    HEALTH_CHECK = "health_check"
    TIMEOUT = "timeout"
    SESSION = "session"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


# =============================================================================
# Base Exception
# =============================================================================

class OrchestratorError(Exception):
    """
    Base exception class for all orchestrator errors.

    Provides:
    - HTTP status code for API responses
    - Error category for monitoring
    - Context dictionary for debugging
    - Proper error chaining support

    Usage:
        try:
            await installer.install(...)
        except Exception as e:
            raise InstallFailure(
                unit_id="postgres",
                message="Installer rejected request",
            ) from e
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.category = category
        self.context = context or {}
        self.original_error = original_error

        full_message = message
        if context:
            context_str = ", ".join(f"{k}={v}" for k, v in context.items())
            full_message = f"{message} [{context_str}]"

        super().__init__(full_message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            "error": self.message,
            "category": self.category.value,
            "status_code": self.status_code,
        }
        if self.context:
            result["context"] = self.context
        if self.original_error:
            result["original_error"] = str(self.original_error)
        return result


# =============================================================================
# Session Creation Errors
# =============================================================================

class RecommendationFailure(OrchestratorError):
    """Raised when the recommendation source fails; aborts session creation."""

    def __init__(
        self,
        message: str = "Recommendation source failed",
        owner: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if owner:
            ctx["owner"] = owner

        super().__init__(
            message=message,
            status_code=502,  # Bad Gateway
            category=ErrorCategory.RECOMMENDATION,
            context=ctx,
            original_error=original_error,
        )


# =============================================================================
# Unit-Level Errors (retryable)
# =============================================================================

class InstallFailure(OrchestratorError):
    """Raised when a single unit fails to install. Retryable up to the budget."""

    def __init__(
        self,
        unit_id: str,
        message: str = "Installation failed",
        category: ErrorCategory = ErrorCategory.INSTALLATION,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        ctx["unit_id"] = unit_id
        self.unit_id = unit_id

        super().__init__(
            message=message,
            status_code=500,
            category=category,
            context=ctx,
            original_error=original_error,
        )


class TimeoutFailure(InstallFailure):
    """Raised when the install poll or a health probe exceeds its bound."""

    def __init__(
        self,
        unit_id: str,
        timeout_seconds: float,
        stage: str = "install",
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            unit_id=unit_id,
            message=f"{stage} timed out after {timeout_seconds:g}s",
            category=ErrorCategory.TIMEOUT,
            context={"timeout_seconds": timeout_seconds, "stage": stage},
            original_error=original_error,
        )
        self.timeout_seconds = timeout_seconds
        self.stage = stage


class HealthCheckFailure(InstallFailure):
    """Raised when an installed unit fails post-install verification."""

    def __init__(
        self,
        unit_id: str,
        message: str = "Server not responding properly",
        verdict: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx: Dict[str, Any] = {}
        if verdict:
            ctx["verdict"] = verdict

        super().__init__(
            unit_id=unit_id,
            message=f"Health check failed: {message}",
            category=ErrorCategory.HEALTH_CHECK,
            context=ctx,
            original_error=original_error,
        )


# =============================================================================
# Session Errors
# =============================================================================

class SessionNotFound(OrchestratorError):
    """Raised when an operation targets an unknown or expired session."""

    def __init__(
        self,
        session_id: str,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=f"Session not found: {session_id}",
            status_code=404,
            category=ErrorCategory.SESSION,
            context={"session_id": session_id},
            original_error=original_error,
        )
        self.session_id = session_id


class InvalidSessionState(OrchestratorError):
    """Raised when a session is not in a state that allows the operation."""

    def __init__(
        self,
        session_id: str,
        current: str,
        operation: str,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=f"Cannot {operation} session in state '{current}'",
            status_code=409,  # Conflict
            category=ErrorCategory.SESSION,
            context={"session_id": session_id, "state": current},
            original_error=original_error,
        )


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(OrchestratorError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str = "Configuration error",
        config_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if config_key:
            ctx["config_key"] = config_key

        super().__init__(
            message=message,
            status_code=500,
            category=ErrorCategory.CONFIGURATION,
            context=ctx,
            original_error=original_error,
        )
