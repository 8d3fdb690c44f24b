"""
WebSocket Endpoints
===================

Real-time run progress streaming via WebSocket.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from api.dependencies import get_orchestrator
from core.orchestrator import AnalysisOrchestrator
from exceptions import RunNotFoundError
from models import RunState, RunStatusTable


logger = logging.getLogger(__name__)

router = APIRouter()

FINISHED_STATES = (RunState.COMPLETED, RunState.CANCELLED)


def _snapshot_message(table: RunStatusTable) -> dict:
    return table.model_dump(mode="json")


@router.websocket("/runs/{session_id}/stream")
async def websocket_run_stream(
    websocket: WebSocket,
    session_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    """
    WebSocket endpoint for real-time run status updates.

    Sends the current status table on connect, then one snapshot per state
    transition, and closes once the run is completed or cancelled.

    Args:
        websocket: FastAPI WebSocket connection
        session_id: Session whose run to follow

    Usage:
        ```javascript
        const ws = new WebSocket('ws://localhost:8000/api/v1/runs/{session_id}/stream');

        ws.onmessage = (event) => {
            const table = JSON.parse(event.data);
            console.log(`Progress: ${table.overall_progress}% (${table.run_state})`);
        };
        ```
    """
    await websocket.accept()

    try:
        run = orchestrator.get_run(session_id)
    except RunNotFoundError as e:
        await websocket.send_json({
            "error": "Run not found",
            "session_id": session_id,
            "message": e.message
        })
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    updates: asyncio.Queue = asyncio.Queue()
    unsubscribe = orchestrator.subscribe(run, on_update=updates.put_nowait)
    poll_interval = orchestrator.settings.stream_poll_interval_seconds

    try:
        table = orchestrator.get_status(run)
        await websocket.send_json(_snapshot_message(table))

        while table.run_state not in FINISHED_STATES:
            try:
                table = await asyncio.wait_for(updates.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                # No transition pushed; re-read in case the run finished before we subscribed
                latest = orchestrator.get_status(run)
                if latest.last_updated == table.last_updated:
                    continue
                table = latest
            await websocket.send_json(_snapshot_message(table))

        await websocket.close(code=status.WS_1000_NORMAL_CLOSURE)

    except WebSocketDisconnect:
        logger.debug(f"[{run.run_id}] Stream client disconnected")

    finally:
        unsubscribe()
