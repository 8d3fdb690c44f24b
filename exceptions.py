"""
Custom Exceptions for SessionLens
=================================

This module defines the exception hierarchy used by the insight orchestrator.

1. **Categorize Errors**: Different exception types for different problems
2. **Carry Context**: Include relevant information for debugging
3. **Drive Retry Policy**: Pipeline errors know whether they are retryable
4. **Support APIs**: Map cleanly to HTTP status codes

Exception Hierarchy:
    SessionLensError (base)
    ├── PipelineError
    │   ├── PipelineValidationError
    │   ├── UpstreamError
    │   ├── PipelineTimeoutError
    │   └── PipelineCancelledError
    ├── PersistenceError
    ├── RegistryError
    │   ├── UnknownPipelineError
    │   └── NoPipelinesEnabledError
    ├── RunError
    │   ├── RunNotFoundError
    │   └── RunStateError
    ├── AnalysisClientError
    └── ConfigurationError

Pipeline errors never cross the run boundary as exceptions: the orchestrator
catches them inside each pipeline task and records them as state transitions.
"""

from typing import Optional


class SessionLensError(Exception):
    """
    Base exception for all SessionLens errors.

    All custom exceptions inherit from this, allowing code to catch
    all orchestrator-related errors with a single except clause:

        try:
            run = orchestrator.start(context)
        except SessionLensError as e:
            logger.error(f"SessionLens error: {e}")

    Attributes:
        message: Human-readable error description
        details: Additional context (dict for API responses)
    """

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None
    ):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """
        Convert to dictionary for API responses.

        Returns a structured error that can be easily serialized to JSON.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


# =============================================================================
# Pipeline Errors
# =============================================================================

class PipelineError(SessionLensError):
    """
    Failure of a single pipeline attempt.

    Attributes:
        kind: Pipeline kind that failed (e.g. "safety")
        code: Machine-readable error code (e.g. "API_ERROR", "TIMEOUT")
        retryable: Whether the retry policy may re-attempt this failure
    """

    default_code = "PIPELINE_ERROR"

    def __init__(
        self,
        message: str,
        kind: str,
        code: Optional[str] = None,
        retryable: bool = True,
        details: Optional[dict] = None
    ):
        self.kind = kind
        self.code = code or self.default_code
        self.retryable = retryable
        super().__init__(message=message, details=details)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "kind": self.kind,
            "code": self.code,
            "retryable": self.retryable,
        })
        return data


class PipelineValidationError(PipelineError):
    """Raised when a pipeline receives bad or missing input. Never retried."""

    default_code = "VALIDATION_ERROR"

    def __init__(self, kind: str, validation_errors: list[str]):
        super().__init__(
            message=f"Pipeline {kind} validation failed: {', '.join(validation_errors)}",
            kind=kind,
            retryable=False,
            details={"validation_errors": validation_errors}
        )


class UpstreamError(PipelineError):
    """
    Raised when the upstream analysis operation fails.

    Server-side failures (5xx-equivalent or no status at all) are retryable,
    client-side failures (4xx-equivalent) are not.
    """

    default_code = "API_ERROR"

    def __init__(
        self,
        kind: str,
        reason: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        retryable: Optional[bool] = None
    ):
        if retryable is None:
            retryable = status_code is None or status_code >= 500
        super().__init__(
            message=f"Upstream analysis failed for {kind}: {reason}",
            kind=kind,
            code=code,
            retryable=retryable,
            details={"reason": reason, "status_code": status_code}
        )
        self.status_code = status_code


class PipelineTimeoutError(PipelineError):
    """Raised when an invocation exceeds its deadline. Always retryable."""

    default_code = "TIMEOUT"

    def __init__(self, kind: str, timeout_seconds: float):
        super().__init__(
            message=f"Pipeline {kind} timed out after {timeout_seconds:g}s",
            kind=kind,
            retryable=True,
            details={"timeout_seconds": timeout_seconds}
        )


class PipelineCancelledError(PipelineError):
    """Produced by the orchestrator when a run is cancelled. Never retried."""

    default_code = "CANCELLED"

    def __init__(self, kind: str):
        super().__init__(
            message="cancelled",
            kind=kind,
            retryable=False
        )


# =============================================================================
# Persistence Errors
# =============================================================================

class PersistenceError(SessionLensError):
    """
    Raised when an audit record or alert write fails.

    Always swallowed at the executor level: losing an audit row must not
    erase a correct analysis result.
    """

    def __init__(self, operation: str, original_error: str):
        super().__init__(
            message=f"Persistence failed during {operation}: {original_error}",
            details={
                "operation": operation,
                "original_error": original_error
            }
        )


# =============================================================================
# Registry Errors
# =============================================================================

class RegistryError(SessionLensError):
    """Base class for pipeline registry errors."""
    pass


class UnknownPipelineError(RegistryError):
    """Raised when a configuration references a pipeline kind nobody registered."""

    def __init__(self, kind: str, known_kinds: list[str]):
        super().__init__(
            message=f"Unknown pipeline kind: {kind}. Known: {', '.join(known_kinds)}",
            details={
                "kind": kind,
                "known_kinds": known_kinds
            }
        )


class NoPipelinesEnabledError(RegistryError):
    """Raised when a run is started with every pipeline disabled."""

    def __init__(self, session_id: str):
        super().__init__(
            message=f"No pipelines enabled for session {session_id}",
            details={"session_id": session_id}
        )


# =============================================================================
# Run Errors
# =============================================================================

class RunError(SessionLensError):
    """Base class for run lifecycle errors."""
    pass


class RunNotFoundError(RunError):
    """Raised when no run is tracked for a session."""

    def __init__(self, session_id: str):
        super().__init__(
            message=f"No analysis run found for session {session_id}",
            details={"session_id": session_id}
        )


class RunStateError(RunError):
    """Raised when an operation is not valid in the run's current state."""

    def __init__(self, session_id: str, operation: str, reason: str):
        super().__init__(
            message=f"Cannot {operation} for session {session_id}: {reason}",
            details={
                "session_id": session_id,
                "operation": operation,
                "reason": reason
            }
        )


# =============================================================================
# Upstream Client Errors
# =============================================================================

class AnalysisClientError(SessionLensError):
    """Raised when the upstream analysis client cannot be set up."""

    def __init__(self, url: str, original_error: str):
        super().__init__(
            message=f"Cannot reach analysis backend at {url}: {original_error}",
            details={
                "url": url,
                "original_error": original_error,
                "hint": "Make sure Ollama is running: 'ollama serve'"
            }
        )


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(SessionLensError):
    """Raised when there's a configuration problem."""

    def __init__(self, setting_name: str, issue: str):
        super().__init__(
            message=f"Configuration error for '{setting_name}': {issue}",
            details={
                "setting_name": setting_name,
                "issue": issue
            }
        )
