"""
Test doubles and builders shared across the test modules.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List

from models import (
    AlertRecord,
    AnalysisContext,
    AnalysisResponse,
    ExecutionRecord,
    PipelineErrorInfo,
    PipelineKind,
    PipelineRunState,
    PipelineStatus,
    RunState,
    RunStatusTable,
)


TRANSCRIPT = (
    "Therapist: How have things been since our last session?\n"
    "Patient: Honestly worse. I lost my job and I'm barely sleeping.\n"
    "Therapist: That sounds really hard. Have you been using the breathing exercises?\n"
    "Patient: Sometimes. They help a bit at night."
)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeAuditStore:
    """In-memory audit store that can be told to fail every write."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.records: List[ExecutionRecord] = []
        self.alerts: List[AlertRecord] = []
        self.attempted_writes = 0

    async def persist_execution_record(self, record: ExecutionRecord) -> str:
        self.attempted_writes += 1
        if self.fail:
            raise ConnectionError("audit database unavailable")
        self.records.append(record)
        return f"record-{len(self.records)}"

    async def persist_alert(self, alert: AlertRecord) -> str:
        self.attempted_writes += 1
        if self.fail:
            raise ConnectionError("audit database unavailable")
        self.alerts.append(alert)
        return alert.alert_id


def failure(status_code: int, error: str = "upstream failure") -> AnalysisResponse:
    return AnalysisResponse(success=False, error=error, status_code=status_code)


def make_context(**overrides) -> AnalysisContext:
    values: Dict[str, Any] = {
        "session_id": "session-1",
        "patient_id": "patient-1",
        "transcript_text": TRANSCRIPT,
        "requester_id": "clinician-7",
    }
    values.update(overrides)
    return AnalysisContext(**values)


def make_table(**states) -> RunStatusTable:
    """
    Build a finished status table.

    Each keyword names a kind; the value is either an insight model (success)
    or an error message string (error).
    """
    pipelines = {kind: PipelineRunState() for kind in PipelineKind}
    for name, value in states.items():
        kind = PipelineKind(name)
        if isinstance(value, str):
            pipelines[kind] = PipelineRunState(
                status=PipelineStatus.ERROR,
                progress_percent=100,
                error=PipelineErrorInfo(message=value, kind=name, code="API_ERROR", retryable=True),
            )
        else:
            pipelines[kind] = PipelineRunState(
                status=PipelineStatus.SUCCESS,
                progress_percent=100,
                result=value,
            )
    return RunStatusTable(
        run_id="run-test",
        session_id="session-1",
        run_state=RunState.COMPLETED,
        pipelines=pipelines,
        enabled=[PipelineKind(name) for name in states],
        overall_progress=100,
        last_updated=datetime(2024, 1, 17, 10, 30),
    )


