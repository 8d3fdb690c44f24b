"""
Tests for single pipeline attempts: progress reports, failure mapping and
audit side effects.
"""

import asyncio

import pytest

from core.analysis_client import MockAnalysisClient
from core.executor import PipelineExecutor
from exceptions import PipelineTimeoutError, PipelineValidationError, UpstreamError
from models import (
    AnalysisResponse,
    BillingInsights,
    InsightSeverity,
    PipelineKind,
    SafetyInsights,
)
from tests.helpers import FakeAuditStore, failure, make_context


class RecordingReporter:

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.reports = []

    def __call__(self, progress, result=None, metadata=None):
        self.reports.append((progress, result, metadata))
        return self.accept

    @property
    def progress(self):
        return [progress for progress, _, _ in self.reports]


def run_attempt(executor, kind, context=None, attempt=0, reporter=None, timeout_seconds=5.0):
    reporter = reporter or RecordingReporter()
    result = asyncio.run(executor.run(
        kind,
        context or make_context(),
        attempt,
        reporter,
        timeout_seconds
    ))
    return result, reporter


class TestSuccessfulAttempt:

    def test_reports_checkpoints_and_returns_insight(self):
        executor = PipelineExecutor(client=MockAnalysisClient(delay_seconds=0))
        result, reporter = run_attempt(executor, PipelineKind.BILLING)

        assert isinstance(result, BillingInsights)
        assert reporter.progress == [10, 60, 90, 100]
        _, final_result, metadata = reporter.reports[-1]
        assert final_result is result
        assert metadata.model_used == "mock"
        assert metadata.retry_count == 0

    def test_passes_kind_variables_to_client(self):
        client = MockAnalysisClient(delay_seconds=0)
        executor = PipelineExecutor(client=client)
        run_attempt(executor, PipelineKind.BILLING, context=make_context(duration_minutes=45))

        kind, variables = client.calls[0]
        assert kind == PipelineKind.BILLING
        assert variables["duration"] == "45 minutes"

    def test_token_usage_passthrough(self):
        client = MockAnalysisClient(
            responses={PipelineKind.NOTE: AnalysisResponse(
                success=True,
                data={"sections": []},
                metadata={"model": "llama3.2", "token_usage": {"prompt_tokens": 120, "completion_tokens": 80}},
            )},
            delay_seconds=0
        )
        _, reporter = run_attempt(PipelineExecutor(client=client), PipelineKind.NOTE)
        metadata = reporter.reports[-1][2]
        assert metadata.model_used == "llama3.2"
        assert metadata.token_usage.total == 200


class TestFailedAttempt:

    def test_blank_transcript_is_a_validation_error(self):
        client = MockAnalysisClient(delay_seconds=0)
        executor = PipelineExecutor(client=client)
        with pytest.raises(PipelineValidationError) as exc_info:
            run_attempt(executor, PipelineKind.SAFETY, context=make_context(transcript_text="   "))

        assert exc_info.value.retryable is False
        assert exc_info.value.code == "VALIDATION_ERROR"
        assert client.call_count == 0

    def test_server_error_is_retryable(self):
        client = MockAnalysisClient(responses={PipelineKind.SAFETY: failure(503)}, delay_seconds=0)
        with pytest.raises(UpstreamError) as exc_info:
            run_attempt(PipelineExecutor(client=client), PipelineKind.SAFETY)
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503

    def test_missing_status_is_retryable(self):
        client = MockAnalysisClient(
            responses={PipelineKind.SAFETY: AnalysisResponse(success=False, error="lost")},
            delay_seconds=0
        )
        with pytest.raises(UpstreamError) as exc_info:
            run_attempt(PipelineExecutor(client=client), PipelineKind.SAFETY)
        assert exc_info.value.retryable is True

    def test_client_error_is_not_retryable(self):
        client = MockAnalysisClient(responses={PipelineKind.BILLING: failure(422)}, delay_seconds=0)
        with pytest.raises(UpstreamError) as exc_info:
            run_attempt(PipelineExecutor(client=client), PipelineKind.BILLING)
        assert exc_info.value.retryable is False

    def test_non_object_payload_is_malformed(self):
        client = MockAnalysisClient(
            responses={PipelineKind.NOTE: AnalysisResponse(success=True, data=["not", "an", "object"])},
            delay_seconds=0
        )
        with pytest.raises(UpstreamError) as exc_info:
            run_attempt(PipelineExecutor(client=client), PipelineKind.NOTE)
        assert exc_info.value.code == "MALFORMED_RESPONSE"
        assert exc_info.value.retryable is True

    def test_shape_mismatch_is_malformed(self):
        client = MockAnalysisClient(
            responses={PipelineKind.PROGRESS: {"goalProgress": [{"goalId": "g", "progressPercentage": 400}]}},
            delay_seconds=0
        )
        with pytest.raises(UpstreamError) as exc_info:
            run_attempt(PipelineExecutor(client=client), PipelineKind.PROGRESS)
        assert exc_info.value.code == "MALFORMED_RESPONSE"

    def test_timeout(self):
        async def slow(kind, variables):
            await asyncio.sleep(1)
            return {}

        client = MockAnalysisClient(responses={PipelineKind.NOTE: slow}, delay_seconds=0)
        with pytest.raises(PipelineTimeoutError) as exc_info:
            run_attempt(PipelineExecutor(client=client), PipelineKind.NOTE, timeout_seconds=0.05)
        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.retryable is True

    def test_unexpected_exception_becomes_unknown_error(self):
        client = MockAnalysisClient(
            responses={PipelineKind.SAFETY: RuntimeError("socket closed")},
            delay_seconds=0
        )
        with pytest.raises(UpstreamError) as exc_info:
            run_attempt(PipelineExecutor(client=client), PipelineKind.SAFETY)
        assert exc_info.value.code == "UNKNOWN_ERROR"
        assert exc_info.value.retryable is True


class TestAuditSideEffects:

    def test_records_each_attempt(self):
        store = FakeAuditStore()
        client = MockAnalysisClient(responses={PipelineKind.BILLING: [failure(500), {}]}, delay_seconds=0)
        executor = PipelineExecutor(client=client, audit_store=store)

        with pytest.raises(UpstreamError):
            run_attempt(executor, PipelineKind.BILLING, attempt=0)
        run_attempt(executor, PipelineKind.BILLING, attempt=1)

        assert [(r.attempt, r.status) for r in store.records] == [(0, "failed"), (1, "completed")]
        assert store.records[0].error is not None
        assert store.records[1].output is not None
        assert store.records[1].requester_id == "clinician-7"

    def test_persists_only_high_and_critical_alerts(self):
        store = FakeAuditStore()
        payload = {
            "riskAssessment": {"overallRisk": "high", "riskScore": 80},
            "alerts": [
                {"id": "a1", "severity": "critical", "category": "self-harm", "description": "Cutting"},
                {"id": "a2", "severity": "high", "category": "substance"},
                {"id": "a3", "severity": "medium"},
            ],
        }
        client = MockAnalysisClient(responses={PipelineKind.SAFETY: payload}, delay_seconds=0)
        run_attempt(PipelineExecutor(client=client, audit_store=store), PipelineKind.SAFETY)

        assert [a.alert_id for a in store.alerts] == ["a1", "a2"]
        assert store.alerts[0].severity == InsightSeverity.CRITICAL
        assert store.alerts[0].category == "self_harm"
        assert store.alerts[0].provider_id == "clinician-7"
        assert store.alerts[1].risk_score == 80

    def test_persistence_failure_does_not_change_outcome(self):
        store = FakeAuditStore(fail=True)
        payload = {"alerts": [{"id": "a1", "severity": "critical"}]}
        client = MockAnalysisClient(responses={PipelineKind.SAFETY: payload}, delay_seconds=0)

        result, reporter = run_attempt(PipelineExecutor(client=client, audit_store=store), PipelineKind.SAFETY)

        assert isinstance(result, SafetyInsights)
        assert reporter.progress[-1] == 100
        assert store.attempted_writes == 2

    def test_success_report_precedes_persistence(self):
        events = []

        class OrderedStore(FakeAuditStore):
            async def persist_execution_record(self, record):
                events.append("persist")
                return await super().persist_execution_record(record)

        def reporter(progress, result=None, metadata=None):
            if result is not None:
                events.append("success")
            return True

        client = MockAnalysisClient(delay_seconds=0)
        executor = PipelineExecutor(client=client, audit_store=OrderedStore())
        asyncio.run(executor.run(PipelineKind.NOTE, make_context(), 0, reporter, 5.0))

        assert events == ["success", "persist"]
