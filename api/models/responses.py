"""
API Response Models
===================

Pydantic models for API responses.
"""

from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing import Dict, List
from datetime import datetime

from models import (
    PipelineKind,
    PipelineRunState,
    RunState,
    RunStatusTable,
    SmartAction,
)


class RunStatusResponse(BaseModel):
    """Response model for run start, status and cancel endpoints."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "run_id": "3f2a9c1d",
                "session_id": "session-2024-0117",
                "run_state": "running",
                "overall_progress": 45,
                "enabled": ["safety", "billing", "progress", "note"],
                "pipelines": {
                    "safety": {"status": "success", "progress_percent": 100, "attempt": 0},
                    "billing": {"status": "loading", "progress_percent": 60, "attempt": 0},
                    "progress": {"status": "retrying", "progress_percent": 10, "attempt": 1},
                    "note": {"status": "loading", "progress_percent": 10, "attempt": 0}
                },
                "last_updated": "2024-01-17T10:31:30Z"
            }
        }
    )

    run_id: str = Field(..., description="Identifier of this run")
    session_id: str = Field(..., description="Session being analyzed")
    run_state: RunState = Field(..., description="Lifecycle state of the run")
    overall_progress: int = Field(..., ge=0, le=100, description="Mean progress of enabled pipelines")
    enabled: List[PipelineKind] = Field(..., description="Enabled pipelines in launch order")
    pipelines: Dict[PipelineKind, PipelineRunState] = Field(
        ...,
        description="Per-pipeline status, including results and errors"
    )
    last_updated: datetime = Field(..., description="Time of the last state change")

    @field_validator('last_updated', mode='before')
    @classmethod
    def parse_datetime(cls, v):
        """Parse datetime from ISO format string if needed."""
        if isinstance(v, str):
            return datetime.fromisoformat(v)
        return v

    @classmethod
    def from_table(cls, table: RunStatusTable) -> "RunStatusResponse":
        return cls(
            run_id=table.run_id,
            session_id=table.session_id,
            run_state=table.run_state,
            overall_progress=table.overall_progress,
            enabled=table.enabled,
            pipelines=table.pipelines,
            last_updated=table.last_updated,
        )


class ActionsResponse(BaseModel):
    """Response model for the smart actions endpoint."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "run_id": "3f2a9c1d",
                "session_id": "session-2024-0117",
                "total": 1,
                "urgent_count": 1,
                "actions": [
                    {
                        "id": "action-5b1e0c2f9a7d",
                        "type": "safety",
                        "title": "Escalate Safety Alert",
                        "description": "Passive suicidal ideation reported",
                        "priority": 10,
                        "requires_confirmation": True,
                        "estimated_time_minutes": 2,
                        "context": {"insight_id": "alert-1", "related_data": {}}
                    }
                ]
            }
        }
    )

    run_id: str = Field(..., description="Run the actions were derived from")
    session_id: str = Field(..., description="Session being analyzed")
    total: int = Field(..., ge=0, description="Number of actions")
    urgent_count: int = Field(..., ge=0, description="Actions at or above the urgency threshold")
    actions: List[SmartAction] = Field(..., description="Actions, highest priority first")


class RetryResponse(BaseModel):
    """Response model for retry endpoints."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "retried": ["billing"],
                "message": "Retrying 1 pipeline(s)",
                "status": {"run_id": "3f2a9c1d", "run_state": "running"}
            }
        }
    )

    retried: List[PipelineKind] = Field(..., description="Pipelines relaunched by this call")
    message: str = Field(..., description="Human-readable summary")
    status: RunStatusResponse = Field(..., description="Status right after the relaunch")
