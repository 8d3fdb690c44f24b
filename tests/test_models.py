"""
Tests for the audit record models.
"""

from datetime import datetime
from types import SimpleNamespace

from models import AlertRecord, ExecutionRecord, InsightSeverity, PipelineKind


def test_execution_record_reads_attributes():
    row = SimpleNamespace(
        record_id="record-1",
        execution_id="exec-1",
        kind=PipelineKind.BILLING,
        session_id="session-1",
        patient_id="patient-1",
        requester_id="clinician-7",
        organization_id="default-org",
        attempt=1,
        status="failed",
        input_summary={},
        output=None,
        error="upstream failure",
        started_at=datetime(2024, 1, 17, 10, 30),
        ended_at=datetime(2024, 1, 17, 10, 31),
        duration_ms=60000.0,
        token_usage=None,
        model_used="llama3.2",
        cache_hit=False,
    )

    record = ExecutionRecord.model_validate(row)

    assert ExecutionRecord.model_config["from_attributes"] is True
    assert record.kind == PipelineKind.BILLING
    assert record.attempt == 1


def test_alert_record_reads_attributes():
    row = SimpleNamespace(
        alert_id="alert-1",
        session_id="session-1",
        patient_id="patient-1",
        provider_id="clinician-7",
        execution_id="exec-1",
        severity="critical",
        category="suicide",
        description="Active suicidal ideation",
        suggested_actions=["Contact crisis team"],
        risk_score=85.0,
    )

    alert = AlertRecord.model_validate(row)

    assert AlertRecord.model_config["from_attributes"] is True
    assert alert.severity == InsightSeverity.CRITICAL
