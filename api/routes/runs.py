"""
Analysis Run Endpoints
======================

API endpoints for starting, inspecting, retrying and cancelling analysis
runs. Each endpoint maps onto exactly one orchestrator call; errors raised
by the orchestrator are turned into HTTP responses by the error middleware.
"""

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_orchestrator
from api.middleware.rate_limiter import limiter, start_run_limit
from api.models.requests import StartRunRequest
from api.models.responses import ActionsResponse, RetryResponse, RunStatusResponse
from core.orchestrator import AnalysisOrchestrator
from models import PipelineKind

router = APIRouter()


@router.post("/runs", response_model=RunStatusResponse)
@limiter.limit(start_run_limit)
async def start_run(
    request: Request,
    body: StartRunRequest,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    """
    Start analysis of a session transcript.

    Every enabled pipeline is launched concurrently. If the session already
    has a running run, that run's status is returned instead.

    Args:
        request: Incoming request (used by the rate limiter)
        body: Session, transcript and optional per-pipeline configuration
        orchestrator: Orchestrator instance

    Returns:
        RunStatusResponse with the initial status table
    """
    run = orchestrator.start(body.to_context())
    return RunStatusResponse.from_table(orchestrator.get_status(run))


@router.get("/runs/{session_id}", response_model=RunStatusResponse)
async def get_run_status(
    session_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    """
    Get the current status table of a session's run.

    Args:
        session_id: Session identifier
        orchestrator: Orchestrator instance

    Returns:
        RunStatusResponse with per-pipeline status, results and errors

    Raises:
        RunNotFoundError: No run for this session (404)
    """
    run = orchestrator.get_run(session_id)
    return RunStatusResponse.from_table(orchestrator.get_status(run))


@router.get("/runs/{session_id}/actions", response_model=ActionsResponse)
async def get_run_actions(
    session_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    """
    Get the prioritized smart actions for a session's run.

    Actions are derived from whatever results are available right now, so
    this can be polled while the run is still in progress.
    """
    table = orchestrator.get_status(orchestrator.get_run(session_id))
    actions = orchestrator.get_actions(table)
    threshold = orchestrator.settings.action_urgency_threshold

    return ActionsResponse(
        run_id=table.run_id,
        session_id=table.session_id,
        total=len(actions),
        urgent_count=sum(1 for action in actions if action.priority >= threshold),
        actions=actions
    )


@router.post("/runs/{session_id}/retry", response_model=RetryResponse)
async def retry_failed_pipelines(
    session_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    """
    Retry every pipeline currently in error.

    Returns an empty ``retried`` list when nothing has failed.

    Raises:
        RunNotFoundError: No run for this session (404)
        RunStateError: The run was cancelled (409)
    """
    run = orchestrator.get_run(session_id)
    retried = orchestrator.retry_all(run)

    return RetryResponse(
        retried=retried,
        message=f"Retrying {len(retried)} pipeline(s)" if retried else "No failed pipelines to retry",
        status=RunStatusResponse.from_table(orchestrator.get_status(run))
    )


@router.post("/runs/{session_id}/retry/{kind}", response_model=RetryResponse)
async def retry_pipeline(
    session_id: str,
    kind: PipelineKind,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    """
    Retry one failed pipeline from its first attempt.

    Raises:
        RunNotFoundError: No run for this session (404)
        RunStateError: The pipeline is not in error or the run was cancelled (409)
    """
    run = orchestrator.get_run(session_id)
    orchestrator.retry_one(run, kind)

    return RetryResponse(
        retried=[kind],
        message=f"Retrying {kind.value}",
        status=RunStatusResponse.from_table(orchestrator.get_status(run))
    )


@router.post("/runs/{session_id}/cancel", response_model=RunStatusResponse)
async def cancel_run(
    session_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    """
    Cancel every in-flight pipeline of a session's run.

    Cancelling an already cancelled run is a no-op.

    Raises:
        RunNotFoundError: No run for this session (404)
        RunStateError: The run already completed (409)
    """
    run = orchestrator.get_run(session_id)
    orchestrator.cancel(run)
    return RunStatusResponse.from_table(orchestrator.get_status(run))
