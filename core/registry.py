"""
Pipeline Registry
=================

Knows which pipeline kinds exist and, for a given configuration, which of
them run and in which order.

Each registered kind carries everything the executor needs to run it:
- the upstream purpose name (``safety_check``, ``billing_cpt``, ...)
- a variables builder (AnalysisContext -> upstream variables)
- a normalizer (raw payload -> canonical insight model)

Nothing else in the orchestrator knows how many kinds there are.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from config import Settings, get_settings
from core.normalizers import NORMALIZERS
from exceptions import UnknownPipelineError
from models import AnalysisContext, PipelineConfig, PipelineKind


logger = logging.getLogger(__name__)


VariablesBuilder = Callable[[AnalysisContext], Dict[str, Any]]


def _patient_context(context: AnalysisContext) -> Dict[str, Any]:
    patient_context = dict(context.patient_context)
    patient_context.setdefault("treatment_plan", {"goals": list(context.treatment_goals)})
    return patient_context


def build_safety_variables(context: AnalysisContext) -> Dict[str, Any]:
    return {
        "transcript": context.transcript_text,
        "patient_context": _patient_context(context),
    }


def build_billing_variables(context: AnalysisContext) -> Dict[str, Any]:
    duration = context.duration_minutes
    return {
        "transcript": context.transcript_text,
        "session_type": context.session_type or "psychotherapy",
        "duration": f"{duration} minutes" if duration is not None else "50 minutes",
        "patient_context": _patient_context(context),
    }


def build_progress_variables(context: AnalysisContext) -> Dict[str, Any]:
    return {
        "transcript": context.transcript_text,
        "treatment_goals": list(context.treatment_goals),
        "patient_context": _patient_context(context),
    }


def build_note_variables(context: AnalysisContext) -> Dict[str, Any]:
    return {
        "transcript": context.transcript_text,
        "session_type": context.session_type or "psychotherapy",
        "patient_context": _patient_context(context),
    }


class PipelineDefinition:
    """Everything needed to run one pipeline kind."""

    def __init__(
        self,
        kind: PipelineKind,
        purpose: str,
        build_variables: VariablesBuilder,
        normalize: Callable[[Mapping], Any],
        description: str = ""
    ):
        self.kind = kind
        self.purpose = purpose
        self.build_variables = build_variables
        self.normalize = normalize
        self.description = description

    def __repr__(self) -> str:
        return f"PipelineDefinition(kind={self.kind.value!r}, purpose={self.purpose!r})"


class PipelineRegistry:
    """
    Ordered collection of pipeline definitions.

    Registration order is the tie-breaker when two enabled kinds share a
    priority, so the default registry declares kinds in the order the
    clinical workflow reads them: safety, billing, progress, note.
    """

    def __init__(self, definitions: Optional[Iterable[PipelineDefinition]] = None):
        self._definitions: Dict[PipelineKind, PipelineDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: PipelineDefinition) -> None:
        if definition.kind in self._definitions:
            logger.warning(f"Replacing registered pipeline '{definition.kind.value}'")
        self._definitions[definition.kind] = definition

    @property
    def kinds(self) -> List[PipelineKind]:
        """All registered kinds, in registration order."""
        return list(self._definitions)

    def get(self, kind: PipelineKind) -> PipelineDefinition:
        try:
            return self._definitions[PipelineKind(kind)]
        except (KeyError, ValueError):
            raise UnknownPipelineError(
                kind=str(getattr(kind, "value", kind)),
                known_kinds=[k.value for k in self._definitions]
            )

    def __contains__(self, kind: object) -> bool:
        return kind in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def validate_config(self, config: Mapping[Any, PipelineConfig]) -> Dict[PipelineKind, PipelineConfig]:
        """
        Check that every configured kind is registered.

        Returns the configuration keyed by ``PipelineKind``.

        Raises:
            UnknownPipelineError: A key names a kind nobody registered
        """
        validated: Dict[PipelineKind, PipelineConfig] = {}
        for key, pipeline_config in config.items():
            kind = self.get(key).kind
            validated[kind] = pipeline_config
        return validated

    def list_enabled(self, config: Mapping[Any, PipelineConfig]) -> List[PipelineKind]:
        """
        Enabled kinds, highest priority first.

        Ties keep registration order. Kinds missing from ``config`` are
        treated as disabled. Pure: no state is touched.

        Raises:
            UnknownPipelineError: ``config`` names a kind nobody registered
        """
        validated = self.validate_config(config)
        order = {kind: index for index, kind in enumerate(self._definitions)}
        enabled = [kind for kind, cfg in validated.items() if cfg.enabled]
        return sorted(enabled, key=lambda kind: (-validated[kind].priority, order[kind]))


def default_pipeline_config(settings: Optional[Settings] = None) -> Dict[PipelineKind, PipelineConfig]:
    """Per-kind defaults from settings (used when a request brings no config)."""
    settings = settings or get_settings()
    return dict(settings.pipelines)


def create_default_registry() -> PipelineRegistry:
    """Registry with the four clinical analysis pipelines."""
    return PipelineRegistry([
        PipelineDefinition(
            kind=PipelineKind.SAFETY,
            purpose="safety_check",
            build_variables=build_safety_variables,
            normalize=NORMALIZERS[PipelineKind.SAFETY],
            description="Risk assessment and safety alerts"
        ),
        PipelineDefinition(
            kind=PipelineKind.BILLING,
            purpose="billing_cpt",
            build_variables=build_billing_variables,
            normalize=NORMALIZERS[PipelineKind.BILLING],
            description="CPT and ICD-10 code suggestions"
        ),
        PipelineDefinition(
            kind=PipelineKind.PROGRESS,
            purpose="treatment_progress",
            build_variables=build_progress_variables,
            normalize=NORMALIZERS[PipelineKind.PROGRESS],
            description="Treatment goal progress and session quality"
        ),
        PipelineDefinition(
            kind=PipelineKind.NOTE,
            purpose="clinical_note",
            build_variables=build_note_variables,
            normalize=NORMALIZERS[PipelineKind.NOTE],
            description="Structured clinical note sections"
        ),
    ])
