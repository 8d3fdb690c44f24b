"""
Pipeline Executor
=================

Runs ONE attempt of ONE pipeline kind:

    validate input -> call upstream (with deadline) -> normalize -> report
    success -> persist audit side effects

Progress is reported through a reporter callable bound by the orchestrator
to (run, kind, launch). Failures are raised as ``PipelineError`` subclasses;
the orchestrator catches them and applies the retry policy.

Persistence (one execution record per attempt, plus high/critical safety
alerts) happens AFTER the success report and can never change the outcome:
every persistence failure is wrapped in ``PersistenceError``, logged and
dropped.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from pydantic import ValidationError

from core.analysis_client import AnalysisClientProtocol
from core.registry import PipelineRegistry, create_default_registry
from exceptions import (
    PersistenceError,
    PipelineError,
    PipelineTimeoutError,
    PipelineValidationError,
    UpstreamError,
)
from models import (
    AlertRecord,
    AnalysisContext,
    ExecutionRecord,
    InsightSeverity,
    PipelineExecutionMetadata,
    PipelineKind,
    SafetyInsights,
    TokenUsage,
)


logger = logging.getLogger(__name__)


# Progress checkpoints reported by every attempt
PROGRESS_STARTED = 10
PROGRESS_RESPONSE_RECEIVED = 60
PROGRESS_NORMALIZED = 90
PROGRESS_DONE = 100

ALERT_SEVERITIES_TO_PERSIST = (InsightSeverity.HIGH, InsightSeverity.CRITICAL)


class AuditStoreProtocol(Protocol):
    """Durable storage of execution records and safety alerts."""

    async def persist_execution_record(self, record: ExecutionRecord) -> str:
        ...

    async def persist_alert(self, alert: AlertRecord) -> str:
        ...


class PipelineReporter(Protocol):
    """
    Progress sink bound to one launch of one kind.

    Returns False when the report was discarded (the launch was superseded
    or the run cancelled).
    """

    def __call__(
        self,
        progress: int,
        result: Optional[Any] = None,
        metadata: Optional[PipelineExecutionMetadata] = None
    ) -> bool:
        ...


def validate_context(kind: PipelineKind, context: AnalysisContext) -> None:
    """
    Check the fields every pipeline depends on.

    Raises:
        PipelineValidationError: Missing session id, patient id or transcript
    """
    errors = []
    if not context.session_id or not context.session_id.strip():
        errors.append("session_id is required")
    if not context.patient_id or not context.patient_id.strip():
        errors.append("patient_id is required")
    if not context.transcript_text or not context.transcript_text.strip():
        errors.append("transcript_text must not be blank")
    if errors:
        raise PipelineValidationError(kind=kind.value, validation_errors=errors)


def _token_usage(metadata: Mapping) -> Optional[TokenUsage]:
    usage = metadata.get("token_usage") or metadata.get("tokens")
    if not isinstance(usage, Mapping):
        return None
    prompt = int(usage.get("prompt", usage.get("prompt_tokens", 0)) or 0)
    completion = int(usage.get("completion", usage.get("completion_tokens", 0)) or 0)
    total = int(usage.get("total", usage.get("total_tokens", prompt + completion)) or 0)
    return TokenUsage(prompt=prompt, completion=completion, total=total)


class PipelineExecutor:
    """
    Executes single pipeline attempts against the upstream analysis client.

    Dependencies are injected so the same executor runs against Ollama in
    production and against fakes in tests.
    """

    def __init__(
        self,
        client: AnalysisClientProtocol,
        registry: Optional[PipelineRegistry] = None,
        audit_store: Optional[AuditStoreProtocol] = None
    ):
        self.client = client
        self.registry = registry or create_default_registry()
        self.audit_store = audit_store

    async def run(
        self,
        kind: PipelineKind,
        context: AnalysisContext,
        attempt: int,
        report: PipelineReporter,
        timeout_seconds: float
    ) -> Any:
        """
        Run one attempt and return the normalized insight.

        Raises:
            PipelineError: Any failure of the attempt (retryability attached)
        """
        execution_id = str(uuid.uuid4())
        started_at = datetime.now()
        started = time.perf_counter()
        log_prefix = f"[{context.session_id}:{kind.value}#{attempt}]"

        try:
            insight, metadata = await self._attempt(
                kind, context, attempt, report, timeout_seconds, execution_id, started
            )
        except PipelineError as e:
            logger.warning(f"{log_prefix} Attempt failed ({e.code}, retryable={e.retryable}): {e.message}")
            await self._record_execution(
                kind, context, attempt, execution_id, started_at, started, error=e
            )
            raise
        except asyncio.CancelledError:
            logger.info(f"{log_prefix} Attempt cancelled")
            raise
        except Exception as e:
            logger.exception(f"{log_prefix} Unexpected error")
            error = UpstreamError(
                kind=kind.value,
                reason=str(e) or e.__class__.__name__,
                code="UNKNOWN_ERROR",
                retryable=True
            )
            await self._record_execution(
                kind, context, attempt, execution_id, started_at, started, error=error
            )
            raise error from e

        logger.info(f"{log_prefix} Completed in {metadata.execution_time_ms:.0f}ms")

        await self._record_execution(
            kind, context, attempt, execution_id, started_at, started,
            insight=insight, metadata=metadata
        )
        if isinstance(insight, SafetyInsights):
            await self._record_alerts(context, execution_id, insight)

        return insight

    async def _attempt(
        self,
        kind: PipelineKind,
        context: AnalysisContext,
        attempt: int,
        report: PipelineReporter,
        timeout_seconds: float,
        execution_id: str,
        started: float
    ):
        definition = self.registry.get(kind)

        validate_context(kind, context)
        report(PROGRESS_STARTED)

        variables = definition.build_variables(context)
        try:
            response = await asyncio.wait_for(
                self.client.run_analysis(kind, variables),
                timeout=timeout_seconds
            )
        except asyncio.TimeoutError:
            raise PipelineTimeoutError(kind=kind.value, timeout_seconds=timeout_seconds)

        report(PROGRESS_RESPONSE_RECEIVED)

        if not response.success:
            raise UpstreamError(
                kind=kind.value,
                reason=response.error or "analysis failed",
                status_code=response.status_code
            )

        if not isinstance(response.data, Mapping):
            raise UpstreamError(
                kind=kind.value,
                reason=f"expected a JSON object, got {type(response.data).__name__}",
                status_code=response.status_code,
                code="MALFORMED_RESPONSE",
                retryable=True
            )

        try:
            insight = definition.normalize(response.data)
        except ValidationError as e:
            raise UpstreamError(
                kind=kind.value,
                reason=f"response does not match the {kind.value} shape: {e.error_count()} error(s)",
                status_code=response.status_code,
                code="MALFORMED_RESPONSE",
                retryable=True
            )

        report(PROGRESS_NORMALIZED)

        upstream_metadata = response.metadata or {}
        metadata = PipelineExecutionMetadata(
            execution_id=execution_id,
            model_used=str(upstream_metadata.get("model") or upstream_metadata.get("model_used") or "unknown"),
            token_usage=_token_usage(upstream_metadata),
            cache_hit=bool(upstream_metadata.get("cache_hit", False)),
            execution_time_ms=(time.perf_counter() - started) * 1000,
            retry_count=attempt
        )

        if not report(PROGRESS_DONE, result=insight, metadata=metadata):
            logger.debug(f"[{context.session_id}:{kind.value}#{attempt}] Result discarded by run")

        return insight, metadata

    # -------------------------------------------------------------------------
    # Persistence (never affects the outcome)
    # -------------------------------------------------------------------------

    async def _persist(self, operation: str, session_id: str, write: Callable[[], Awaitable[str]]) -> Optional[str]:
        if self.audit_store is None:
            return None
        try:
            return await write()
        except Exception as e:
            error = PersistenceError(operation=operation, original_error=str(e))
            logger.error(f"[{session_id}] {error.message}")
            return None

    async def _record_execution(
        self,
        kind: PipelineKind,
        context: AnalysisContext,
        attempt: int,
        execution_id: str,
        started_at: datetime,
        started: float,
        insight: Any = None,
        metadata: Optional[PipelineExecutionMetadata] = None,
        error: Optional[PipelineError] = None
    ) -> Optional[str]:
        if self.audit_store is None:
            return None

        record = ExecutionRecord(
            execution_id=execution_id,
            kind=kind,
            session_id=context.session_id,
            patient_id=context.patient_id,
            requester_id=context.requester_id,
            organization_id=context.organization_id,
            attempt=attempt,
            status="failed" if error else "completed",
            input_summary={
                "transcript_chars": len(context.transcript_text or ""),
                "session_type": context.session_type,
                "treatment_goals": len(context.treatment_goals),
            },
            output=insight.model_dump(mode="json") if insight is not None else None,
            error=error.message if error else None,
            started_at=started_at,
            ended_at=datetime.now(),
            duration_ms=(time.perf_counter() - started) * 1000,
            token_usage=metadata.token_usage if metadata else None,
            model_used=metadata.model_used if metadata else None,
            cache_hit=metadata.cache_hit if metadata else False,
        )
        return await self._persist(
            f"{kind.value} execution record",
            context.session_id,
            lambda: self.audit_store.persist_execution_record(record)
        )

    async def _record_alerts(
        self,
        context: AnalysisContext,
        execution_id: str,
        insight: SafetyInsights
    ) -> int:
        """Persist every high/critical alert independently. Returns how many were stored."""
        stored = 0
        for alert in insight.alerts:
            if alert.severity not in ALERT_SEVERITIES_TO_PERSIST:
                continue
            record = AlertRecord(
                alert_id=alert.id,
                session_id=context.session_id,
                patient_id=context.patient_id,
                provider_id=context.requester_id,
                execution_id=execution_id,
                severity=alert.severity,
                category=alert.category,
                description=alert.description,
                suggested_actions=alert.recommended_actions,
                risk_score=alert.risk_score if alert.risk_score is not None
                else insight.risk_assessment.risk_score,
            )
            alert_id = await self._persist(
                f"safety alert {alert.id}",
                context.session_id,
                lambda record=record: self.audit_store.persist_alert(record)
            )
            if alert_id is not None:
                stored += 1
        if stored:
            logger.info(f"[{context.session_id}] Persisted {stored} safety alert(s)")
        return stored
