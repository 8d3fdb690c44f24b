"""
API Request Models
==================

Pydantic models for API request validation.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from models import AnalysisContext, PipelineConfig, PipelineKind


class StartRunRequest(BaseModel):
    """Request model for starting an analysis run over a session transcript."""

    session_id: str = Field(
        ...,
        description="Session to analyze. One run is tracked per session.",
        min_length=1
    )
    patient_id: str = Field(
        ...,
        description="Patient the session belongs to",
        min_length=1
    )
    transcript_text: str = Field(
        ...,
        description="Full session transcript"
    )
    requester_id: str = Field(
        default="orchestrator",
        description="User requesting the analysis"
    )
    organization_id: str = Field(
        default="default-org",
        description="Owning organization"
    )
    pipelines: Optional[Dict[PipelineKind, PipelineConfig]] = Field(
        default=None,
        description="Per-kind configuration. Omit to use the server defaults."
    )
    session_type: Optional[str] = Field(
        default=None,
        description="Session type used for billing (e.g. psychotherapy, intake)"
    )
    duration_minutes: Optional[int] = Field(
        default=None,
        ge=0,
        description="Session length in minutes"
    )
    treatment_goals: List[str] = Field(
        default_factory=list,
        description="Active treatment goals for progress analysis"
    )
    patient_context: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form clinical context"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "session_id": "session-2024-0117",
                "patient_id": "patient-42",
                "transcript_text": "Therapist: How have you been sleeping since last week?...",
                "pipelines": {
                    "safety": {"enabled": True, "priority": 10, "max_retries": 3, "timeout_seconds": 30},
                    "billing": {"enabled": False}
                },
                "session_type": "psychotherapy",
                "duration_minutes": 50,
                "treatment_goals": ["Reduce panic attacks to fewer than one per week"]
            }
        }

    def to_context(self) -> AnalysisContext:
        """Build the immutable run input."""
        return AnalysisContext(
            session_id=self.session_id,
            patient_id=self.patient_id,
            transcript_text=self.transcript_text,
            requester_id=self.requester_id,
            organization_id=self.organization_id,
            config=self.pipelines or {},
            session_type=self.session_type,
            duration_minutes=self.duration_minutes,
            treatment_goals=self.treatment_goals,
            patient_context=self.patient_context,
        )
