"""
Domain Models for SessionLens
=============================

This module defines the core data structures used throughout the
orchestrator. We use Pydantic for several important reasons:

1. **Validation**: Automatically validates data types and constraints
2. **Serialization**: Easy conversion to/from JSON for the API and audit store
3. **Snapshots**: Deep copies give observers consistent, read-only views
4. **Documentation**: Self-documenting with type hints

Design Principle: These models are "pure" - they have no dependencies on
external services, databases, or frameworks. The orchestrator owns the
mutable state, everything here is plain data.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


logger = logging.getLogger(__name__)


class PipelineKind(str, Enum):
    """
    Kinds of analysis pipelines.

    The set is extensible: orchestration code iterates the registry and never
    depends on how many kinds exist.
    """
    SAFETY = "safety"
    BILLING = "billing"
    PROGRESS = "progress"
    NOTE = "note"


class PipelineStatus(str, Enum):
    """Lifecycle status of one pipeline within one run."""
    IDLE = "idle"
    LOADING = "loading"
    RETRYING = "retrying"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.SUCCESS, PipelineStatus.ERROR)

    @property
    def is_active(self) -> bool:
        return self in (PipelineStatus.LOADING, PipelineStatus.RETRYING)


class RunState(str, Enum):
    """State machine of an analysis run."""
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InsightSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# =============================================================================
# Configuration & Input
# =============================================================================

class PipelineConfig(BaseModel):
    """
    Per-kind execution settings.

    Attributes:
        enabled: Whether the kind runs at all
        priority: 1-10, higher launches first
        max_retries: Automatic retries after the first attempt
        timeout_seconds: Deadline for a single upstream invocation
    """
    enabled: bool = Field(default=True, description="Run this pipeline")
    priority: int = Field(default=5, ge=1, le=10, description="Launch priority (higher first)")
    max_retries: int = Field(default=2, ge=0, description="Automatic retries after attempt 0")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-invocation deadline")

    model_config = ConfigDict(frozen=True)


class AnalysisContext(BaseModel):
    """
    Input to one analysis run. Immutable for the lifetime of the run.

    The optional fields mirror what the individual pipelines can make use of
    (session type and duration for billing, treatment goals for progress).
    """
    session_id: str = Field(..., description="Session being analyzed")
    patient_id: str = Field(..., description="Patient the session belongs to")
    transcript_text: str = Field(..., description="Full session transcript")
    requester_id: str = Field(default="orchestrator", description="User requesting the analysis")
    organization_id: str = Field(default="default-org", description="Owning organization")
    config: Dict[PipelineKind, PipelineConfig] = Field(
        default_factory=dict,
        description=(
            "Per-kind configuration. When empty, the configured defaults apply to "
            "every registered kind. Otherwise kinds missing here are not run."
        )
    )

    session_type: Optional[str] = Field(default=None, description="e.g. psychotherapy, intake")
    duration_minutes: Optional[int] = Field(default=None, ge=0, description="Session length")
    treatment_goals: List[str] = Field(default_factory=list, description="Active treatment goals")
    patient_context: Dict[str, Any] = Field(default_factory=dict, description="Free-form clinical context")

    model_config = ConfigDict(frozen=True)


# =============================================================================
# Normalized Insights
# =============================================================================

class RiskAssessment(BaseModel):
    overall_risk: InsightSeverity = InsightSeverity.LOW
    risk_score: float = Field(default=0, ge=0, le=100, description="Composite risk score 0-100")
    risk_factors: List[str] = Field(default_factory=list)
    protective_factors: List[str] = Field(default_factory=list)


class SafetyAlert(BaseModel):
    """A single safety concern raised by the safety pipeline."""
    id: str
    title: str = ""
    description: str = ""
    severity: InsightSeverity = InsightSeverity.LOW
    category: str = "crisis_intervention"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    risk_score: Optional[float] = None
    urgent_response: bool = False
    escalation_required: bool = False
    recommended_actions: List[str] = Field(default_factory=list)
    contact_information: Dict[str, str] = Field(default_factory=dict)


class SafetyRecommendations(BaseModel):
    immediate: List[str] = Field(default_factory=list)
    short_term: List[str] = Field(default_factory=list)
    long_term: List[str] = Field(default_factory=list)


class SafetyInsights(BaseModel):
    """Canonical shape of the safety pipeline result."""
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)
    alerts: List[SafetyAlert] = Field(default_factory=list)
    recommendations: SafetyRecommendations = Field(default_factory=SafetyRecommendations)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    defaulted_fields: List[str] = Field(
        default_factory=list,
        description="Substructures the upstream omitted and were filled with defaults"
    )


class BillingCode(BaseModel):
    """
    A suggested CPT or ICD-10 code.

    Attributes:
        code: The actual code (e.g., "90837", "F41.1")
        description: Human-readable description of the code
        confidence: Confidence score for the suggestion (0.0-1.0)
        category: primary, secondary or suggested
    """
    code: str
    description: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    category: str = "suggested"
    modifiers: List[str] = Field(default_factory=list)
    documentation: Optional[str] = None
    compliance_notes: List[str] = Field(default_factory=list)


class DetectedSessionType(BaseModel):
    detected: str = "Unknown"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    duration: float = Field(default=0, ge=0, description="Minutes")


class BillingOptimization(BaseModel):
    suggested_adjustments: List[str] = Field(default_factory=list)
    compliance_issues: List[str] = Field(default_factory=list)
    revenue_opportunities: List[str] = Field(default_factory=list)


class BillingInsights(BaseModel):
    """Canonical shape of the billing pipeline result."""
    cpt_codes: List[BillingCode] = Field(default_factory=list)
    icd10_codes: List[BillingCode] = Field(default_factory=list)
    session_type: DetectedSessionType = Field(default_factory=DetectedSessionType)
    billing_optimization: BillingOptimization = Field(default_factory=BillingOptimization)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    defaulted_fields: List[str] = Field(default_factory=list)

    @property
    def all_codes(self) -> List[BillingCode]:
        return [*self.cpt_codes, *self.icd10_codes]


class GoalProgress(BaseModel):
    goal_id: str
    goal_description: str = ""
    current_status: str = "in_progress"
    progress_percentage: float = Field(default=0, ge=0, le=100)
    evidence: List[str] = Field(default_factory=list)
    barriers: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)


class TreatmentEffectiveness(BaseModel):
    rating: float = Field(default=5, ge=0, le=10)
    trends: str = "stable"
    key_indicators: List[str] = Field(default_factory=list)


class ProgressRecommendations(BaseModel):
    treatment_adjustments: List[str] = Field(default_factory=list)
    new_goals: List[str] = Field(default_factory=list)
    interventions: List[str] = Field(default_factory=list)


class SessionQuality(BaseModel):
    engagement: float = Field(default=5, ge=0, le=10)
    therapeutic_rapport: float = Field(default=5, ge=0, le=10)
    progress_toward_goals: float = Field(default=5, ge=0, le=10)


class ProgressInsights(BaseModel):
    """Canonical shape of the treatment progress pipeline result."""
    goal_progress: List[GoalProgress] = Field(default_factory=list)
    overall_treatment_effectiveness: TreatmentEffectiveness = Field(default_factory=TreatmentEffectiveness)
    recommendations: ProgressRecommendations = Field(default_factory=ProgressRecommendations)
    session_quality: SessionQuality = Field(default_factory=SessionQuality)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    defaulted_fields: List[str] = Field(default_factory=list)


class NoteSection(BaseModel):
    type: str
    title: str = ""
    content: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class NoteInsights(BaseModel):
    """Canonical shape of the clinical note pipeline result."""
    sections: List[NoteSection] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    defaulted_fields: List[str] = Field(default_factory=list)


# Union of all normalized shapes (kept as a plain tuple for isinstance checks)
NORMALIZED_INSIGHT_TYPES = (SafetyInsights, BillingInsights, ProgressInsights, NoteInsights)


# =============================================================================
# Run State
# =============================================================================

class TokenUsage(BaseModel):
    prompt: int = 0
    completion: int = 0
    total: int = 0


class PipelineExecutionMetadata(BaseModel):
    """Opaque passthrough from the executor: model, tokens, cache."""
    execution_id: str
    model_used: str = "unknown"
    token_usage: Optional[TokenUsage] = None
    cache_hit: bool = False
    execution_time_ms: float = 0.0
    retry_count: int = 0


class PipelineErrorInfo(BaseModel):
    """Serializable view of a PipelineError stored in the status table."""
    message: str
    kind: str
    code: str
    retryable: bool
    error_type: str = "PipelineError"


class PipelineRunState(BaseModel):
    """
    State of one pipeline kind within one run.

    Invariants maintained by the run:
    - ``result`` is set iff status is success
    - ``error`` is set iff status is error or retrying
    - ``ended_at`` is set once, on the final terminal transition
    """
    status: PipelineStatus = PipelineStatus.IDLE
    progress_percent: int = Field(default=0, ge=0, le=100)
    attempt: int = Field(default=0, ge=0)
    result: Optional[Any] = None
    error: Optional[PipelineErrorInfo] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    metadata: Optional[PipelineExecutionMetadata] = None

    @property
    def has_data(self) -> bool:
        return self.result is not None


class RunStatusTable(BaseModel):
    """
    Aggregate status of a run.

    Owned exclusively by the run; callers only ever see deep-copied snapshots.
    """
    run_id: str
    session_id: str
    run_state: RunState = RunState.NOT_STARTED
    pipelines: Dict[PipelineKind, PipelineRunState] = Field(default_factory=dict)
    enabled: List[PipelineKind] = Field(default_factory=list)
    overall_progress: int = Field(default=0, ge=0, le=100)
    last_updated: datetime = Field(default_factory=datetime.now)

    def recompute_progress(self) -> int:
        """Unweighted mean of the enabled kinds' progress."""
        if not self.enabled:
            self.overall_progress = 0
        else:
            total = sum(self.pipelines[kind].progress_percent for kind in self.enabled)
            self.overall_progress = round(total / len(self.enabled))
        return self.overall_progress

    def all_enabled_terminal(self) -> bool:
        return bool(self.enabled) and all(
            self.pipelines[kind].status.is_terminal for kind in self.enabled
        )

    def kinds_with_status(self, status: PipelineStatus) -> List[PipelineKind]:
        return [kind for kind in self.enabled if self.pipelines[kind].status == status]


# =============================================================================
# Upstream Contract
# =============================================================================

class AnalysisResponse(BaseModel):
    """
    Generic response of the upstream analysis operation.

    ``status_code`` is the HTTP-equivalent signal used to decide whether a
    failure is retryable (5xx or missing) or not (4xx).
    """
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status_code: Optional[int] = None


# =============================================================================
# Audit Records
# =============================================================================

class ExecutionRecord(BaseModel):
    """Audit row for one pipeline attempt."""
    record_id: Optional[str] = None
    execution_id: str
    kind: PipelineKind
    session_id: str
    patient_id: str
    requester_id: str
    organization_id: str
    attempt: int = 0
    status: str = Field(..., description="completed or failed")
    input_summary: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: datetime
    ended_at: datetime
    duration_ms: float = 0.0
    token_usage: Optional[TokenUsage] = None
    model_used: Optional[str] = None
    cache_hit: bool = False

    model_config = ConfigDict(from_attributes=True)


class AlertRecord(BaseModel):
    """Persisted high/critical safety alert."""
    alert_id: str
    session_id: str
    patient_id: str
    provider_id: str
    execution_id: str
    severity: InsightSeverity
    category: str
    description: str
    suggested_actions: List[str] = Field(default_factory=list)
    risk_score: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Smart Actions
# =============================================================================

class ActionType(str, Enum):
    """Action types mirror pipeline kinds plus the cross-cutting note."""
    SAFETY = "safety"
    BILLING = "billing"
    PROGRESS = "progress"
    NOTE = "note"


class ActionContext(BaseModel):
    insight_id: Optional[str] = None
    related_data: Dict[str, Any] = Field(default_factory=dict)


ActionOperation = Callable[["SmartAction"], Optional[Awaitable[Any]]]


class SmartAction(BaseModel):
    """
    A derived, prioritized recommendation.

    Actions are recomputed from the status table and never persisted. The
    bound operation is kept out of serialization.
    """
    id: str
    type: ActionType
    title: str
    description: str
    priority: int = Field(..., ge=1, le=10)
    requires_confirmation: bool = False
    estimated_time_minutes: int = Field(default=0, ge=0)
    context: ActionContext = Field(default_factory=ActionContext)

    _operation: Optional[ActionOperation] = PrivateAttr(default=None)

    def bind(self, operation: Optional[ActionOperation]) -> "SmartAction":
        self._operation = operation
        return self

    async def execute(self) -> Any:
        """Run the bound operation (sync or async)."""
        if self._operation is None:
            logger.info(f"No operation bound for action '{self.title}' ({self.id})")
            return None
        outcome = self._operation(self)
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        return outcome
