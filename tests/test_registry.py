"""
Tests for the pipeline registry: lookup, config validation and launch order.
"""

import pytest

from core.normalizers import normalize_safety
from core.registry import (
    PipelineDefinition,
    PipelineRegistry,
    build_billing_variables,
    build_progress_variables,
    create_default_registry,
    default_pipeline_config,
)
from exceptions import UnknownPipelineError
from models import PipelineConfig, PipelineKind
from tests.helpers import make_context


class TestDefaultRegistry:

    def test_registers_four_kinds_in_workflow_order(self):
        registry = create_default_registry()
        assert registry.kinds == [
            PipelineKind.SAFETY,
            PipelineKind.BILLING,
            PipelineKind.PROGRESS,
            PipelineKind.NOTE,
        ]
        assert len(registry) == 4

    def test_purposes(self):
        registry = create_default_registry()
        assert registry.get(PipelineKind.SAFETY).purpose == "safety_check"
        assert registry.get(PipelineKind.BILLING).purpose == "billing_cpt"
        assert registry.get(PipelineKind.PROGRESS).purpose == "treatment_progress"
        assert registry.get(PipelineKind.NOTE).purpose == "clinical_note"

    def test_get_accepts_string_values(self):
        registry = create_default_registry()
        assert registry.get("billing").kind == PipelineKind.BILLING

    def test_get_unknown_kind_raises(self):
        registry = create_default_registry()
        with pytest.raises(UnknownPipelineError) as exc_info:
            registry.get("imaging")
        assert exc_info.value.details["known_kinds"] == ["safety", "billing", "progress", "note"]


class TestListEnabled:

    def test_orders_by_priority_descending(self, settings):
        registry = create_default_registry()
        enabled = registry.list_enabled(default_pipeline_config(settings))
        assert enabled == [
            PipelineKind.SAFETY,
            PipelineKind.BILLING,
            PipelineKind.PROGRESS,
            PipelineKind.NOTE,
        ]

    def test_priority_overrides_registration_order(self):
        registry = create_default_registry()
        config = {
            PipelineKind.SAFETY: PipelineConfig(priority=2),
            PipelineKind.NOTE: PipelineConfig(priority=9),
        }
        assert registry.list_enabled(config) == [PipelineKind.NOTE, PipelineKind.SAFETY]

    def test_ties_keep_registration_order(self):
        registry = create_default_registry()
        config = {
            PipelineKind.NOTE: PipelineConfig(priority=5),
            PipelineKind.PROGRESS: PipelineConfig(priority=5),
            PipelineKind.BILLING: PipelineConfig(priority=5),
        }
        assert registry.list_enabled(config) == [
            PipelineKind.BILLING,
            PipelineKind.PROGRESS,
            PipelineKind.NOTE,
        ]

    def test_disabled_and_missing_kinds_are_skipped(self):
        registry = create_default_registry()
        config = {
            PipelineKind.SAFETY: PipelineConfig(enabled=False),
            PipelineKind.PROGRESS: PipelineConfig(),
        }
        assert registry.list_enabled(config) == [PipelineKind.PROGRESS]

    def test_empty_when_everything_disabled(self):
        registry = create_default_registry()
        config = {kind: PipelineConfig(enabled=False) for kind in PipelineKind}
        assert registry.list_enabled(config) == []

    def test_unregistered_kind_in_config_raises(self):
        registry = PipelineRegistry([
            PipelineDefinition(
                kind=PipelineKind.SAFETY,
                purpose="safety_check",
                build_variables=lambda context: {},
                normalize=normalize_safety,
            )
        ])
        with pytest.raises(UnknownPipelineError):
            registry.list_enabled({PipelineKind.BILLING: PipelineConfig()})


class TestVariableBuilders:

    def test_billing_defaults_session_type_and_duration(self):
        variables = build_billing_variables(make_context())
        assert variables["session_type"] == "psychotherapy"
        assert variables["duration"] == "50 minutes"

    def test_billing_uses_context_values(self):
        variables = build_billing_variables(make_context(session_type="intake", duration_minutes=75))
        assert variables["session_type"] == "intake"
        assert variables["duration"] == "75 minutes"

    def test_progress_carries_treatment_goals(self):
        context = make_context(treatment_goals=["Sleep 7 hours"], patient_context={"age": 34})
        variables = build_progress_variables(context)
        assert variables["treatment_goals"] == ["Sleep 7 hours"]
        assert variables["patient_context"]["age"] == 34
        assert variables["patient_context"]["treatment_plan"] == {"goals": ["Sleep 7 hours"]}
