"""
Dependency Injection Functions
==============================

FastAPI dependency injection for the orchestrator and the audit store.
"""

from fastapi import HTTPException, status

from core.audit_store import AuditStore
from core.orchestrator import AnalysisOrchestrator


def get_orchestrator() -> AnalysisOrchestrator:
    """
    Dependency to get the orchestrator instance from app state.

    The orchestrator is built once during application startup (lifespan)
    and owns every run for the lifetime of the process.

    Returns:
        AnalysisOrchestrator: The configured orchestrator instance

    Raises:
        HTTPException: If the orchestrator is not initialized
    """
    from api.main import app_state

    orchestrator = app_state.get("orchestrator")
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not initialized. Service is starting up."
        )
    return orchestrator


def get_audit_store() -> AuditStore:
    """
    Dependency to get the audit store instance.

    Creates an in-memory store if startup did not provide one.
    """
    from api.main import app_state

    if "audit_store" not in app_state:
        app_state["audit_store"] = AuditStore()
    return app_state["audit_store"]
