"""
Per-Kind Result Normalization
=============================

The upstream analysis service answers with loosely shaped JSON: keys may be
camelCase or snake_case, substructures may be missing, and some values come
in alternative forms (``confidence`` as a number or as ``{"score": ...}``).

Each pipeline kind has one explicit normalizer that turns such a payload into
its canonical insight model. Missing optional substructures are replaced by
documented defaults and the name of every defaulted substructure is recorded
in ``defaulted_fields`` so that callers can tell "the model said low risk"
apart from "the model said nothing".

Payload items that cannot be coerced raise ``pydantic.ValidationError``;
the executor treats that as a malformed (retryable) upstream response.
"""

import logging
import re
from typing import Any, Callable, Dict, List, Mapping

from models import (
    BillingCode,
    BillingInsights,
    BillingOptimization,
    DetectedSessionType,
    GoalProgress,
    InsightSeverity,
    NoteInsights,
    NoteSection,
    PipelineKind,
    ProgressInsights,
    ProgressRecommendations,
    RiskAssessment,
    SafetyAlert,
    SafetyInsights,
    SafetyRecommendations,
    SessionQuality,
    TreatmentEffectiveness,
)


logger = logging.getLogger(__name__)


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")

CATEGORY_ALIASES = {
    "suicide": "suicide_risk",
    "suicidal_ideation": "suicide_risk",
    "self-harm": "self_harm",
    "selfharm": "self_harm",
    "substance": "substance_abuse",
    "substance_use": "substance_abuse",
    "medication": "medication_concern",
}


def to_snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", key).lower()


def snake_keys(value: Any) -> Any:
    """Recursively convert mapping keys to snake_case."""
    if isinstance(value, Mapping):
        return {to_snake_case(str(k)): snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [snake_keys(item) for item in value]
    return value


def unwrap_payload(data: Mapping) -> Mapping:
    """Some upstream routes nest the result under ``analysis``."""
    inner = data.get("analysis")
    if isinstance(inner, Mapping):
        return inner
    return data


def _confidence(raw: Mapping) -> float:
    value = raw.get("confidence")
    if isinstance(value, Mapping):
        value = value.get("score")
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return 0.0
    return min(max(float(value), 0.0), 1.0)


def _severity(value: Any) -> InsightSeverity:
    try:
        return InsightSeverity(str(value).lower())
    except ValueError:
        return InsightSeverity.LOW


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _mapping(value: Any) -> Mapping:
    return value if isinstance(value, Mapping) else {}


# =============================================================================
# Safety
# =============================================================================

def _normalize_alert(raw: Any, index: int) -> SafetyAlert:
    raw = dict(_mapping(raw))
    category = str(raw.get("category") or raw.get("type") or "crisis_intervention").lower()
    raw["category"] = CATEGORY_ALIASES.get(category, category)
    raw["severity"] = _severity(raw.get("severity"))
    raw.setdefault("id", f"safety-alert-{index}")
    raw["id"] = str(raw["id"])
    raw.setdefault("title", raw.get("description", ""))
    raw["recommended_actions"] = _as_list(
        raw.get("recommended_actions") or raw.get("suggested_actions")
    )
    if "confidence" in raw:
        raw["confidence"] = _confidence(raw)
    return SafetyAlert.model_validate(
        {k: v for k, v in raw.items() if k in SafetyAlert.model_fields}
    )


def normalize_safety(payload: Mapping) -> SafetyInsights:
    raw = snake_keys(unwrap_payload(payload))
    defaulted: List[str] = []

    if isinstance(raw.get("risk_assessment"), Mapping):
        assessment = raw["risk_assessment"]
        risk = RiskAssessment(
            overall_risk=_severity(assessment.get("overall_risk")),
            risk_score=assessment.get("risk_score") or 0,
            risk_factors=_as_list(assessment.get("risk_factors")),
            protective_factors=_as_list(assessment.get("protective_factors")),
        )
    elif isinstance(raw.get("risk_indicators"), Mapping):
        indicators = raw["risk_indicators"]
        risk = RiskAssessment(
            overall_risk=_severity(indicators.get("severity")),
            risk_score=indicators.get("score") or 0,
            risk_factors=_as_list(indicators.get("factors")),
            protective_factors=_as_list(raw.get("protective_factors")),
        )
    else:
        defaulted.append("risk_assessment")
        risk = RiskAssessment(protective_factors=_as_list(raw.get("protective_factors")))

    recommendations = raw.get("recommendations")
    if isinstance(recommendations, Mapping):
        recs = SafetyRecommendations(
            immediate=_as_list(recommendations.get("immediate")),
            short_term=_as_list(recommendations.get("short_term")),
            long_term=_as_list(recommendations.get("long_term")),
        )
    else:
        defaulted.append("recommendations")
        recs = SafetyRecommendations()

    alerts = [_normalize_alert(item, i) for i, item in enumerate(_as_list(raw.get("alerts")))]

    if defaulted:
        logger.warning(
            f"Safety result missing {', '.join(defaulted)}; defaults applied "
            f"(overall risk reported as '{risk.overall_risk.value}')"
        )

    return SafetyInsights(
        risk_assessment=risk,
        alerts=alerts,
        recommendations=recs,
        confidence=_confidence(raw),
        defaulted_fields=defaulted,
    )


# =============================================================================
# Billing
# =============================================================================

def _normalize_code(raw: Any, category: str) -> BillingCode:
    if isinstance(raw, str):
        return BillingCode(code=raw, category=category)
    raw = dict(_mapping(raw))
    raw.setdefault("category", category)
    raw["confidence"] = _confidence(raw)
    raw["code"] = str(raw.get("code", ""))
    return BillingCode.model_validate(
        {k: v for k, v in raw.items() if k in BillingCode.model_fields}
    )


def normalize_billing(payload: Mapping) -> BillingInsights:
    raw = snake_keys(unwrap_payload(payload))
    defaulted: List[str] = []

    session_info = raw.get("session_info")
    if isinstance(session_info, Mapping):
        session_type = DetectedSessionType(
            detected=str(session_info.get("detected") or "Unknown"),
            confidence=_confidence(session_info),
            duration=session_info.get("duration") or 0,
        )
    else:
        defaulted.append("session_type")
        detected = raw.get("session_type")
        session_type = DetectedSessionType(
            detected=detected if isinstance(detected, str) and detected else "Unknown",
            confidence=_confidence(raw),
            duration=raw.get("duration") or 0,
        )

    optimization = _mapping(raw.get("billing_optimization"))
    compliance = _mapping(raw.get("compliance"))
    if not optimization and not any(
        key in raw for key in ("suggested_adjustments", "compliance", "revenue_opportunities")
    ):
        defaulted.append("billing_optimization")
    billing_optimization = BillingOptimization(
        suggested_adjustments=_as_list(
            optimization.get("suggested_adjustments", raw.get("suggested_adjustments"))
        ),
        compliance_issues=_as_list(
            optimization.get("compliance_issues", compliance.get("issues"))
        ),
        revenue_opportunities=_as_list(
            optimization.get("revenue_opportunities", raw.get("revenue_opportunities"))
        ),
    )

    return BillingInsights(
        cpt_codes=[_normalize_code(c, "primary") for c in _as_list(raw.get("cpt_codes"))],
        icd10_codes=[_normalize_code(c, "primary") for c in _as_list(raw.get("icd10_codes"))],
        session_type=session_type,
        billing_optimization=billing_optimization,
        confidence=_confidence(raw),
        defaulted_fields=defaulted,
    )


# =============================================================================
# Treatment Progress
# =============================================================================

def _normalize_goal(raw: Any, index: int) -> GoalProgress:
    raw = dict(_mapping(raw))
    raw["goal_id"] = str(raw.get("goal_id") or raw.get("id") or f"goal-{index}")
    return GoalProgress.model_validate(
        {k: v for k, v in raw.items() if k in GoalProgress.model_fields}
    )


def normalize_progress(payload: Mapping) -> ProgressInsights:
    raw = snake_keys(unwrap_payload(payload))
    defaulted: List[str] = []

    effectiveness = raw.get("effectiveness") or raw.get("overall_treatment_effectiveness")
    indicators = _mapping(raw.get("progress_indicators"))
    if isinstance(effectiveness, Mapping):
        treatment = TreatmentEffectiveness(
            rating=effectiveness.get("rating", effectiveness.get("overall_effectiveness", 5)),
            trends=effectiveness.get("trends") or indicators.get("trend") or "stable",
            key_indicators=_as_list(
                effectiveness.get("key_indicators", indicators.get("key_indicators"))
            ),
        )
    else:
        defaulted.append("overall_treatment_effectiveness")
        treatment = TreatmentEffectiveness(
            trends=indicators.get("trend") or "stable",
            key_indicators=_as_list(indicators.get("key_indicators")),
        )

    recommendations = _mapping(raw.get("recommendations"))
    if not recommendations and "treatment_adjustments" not in raw:
        defaulted.append("recommendations")
    recs = ProgressRecommendations(
        treatment_adjustments=_as_list(
            raw.get("treatment_adjustments") or recommendations.get("treatment_adjustments")
        ),
        new_goals=_as_list(recommendations.get("new_goals")),
        interventions=_as_list(recommendations.get("interventions")),
    )

    outcomes = raw.get("clinical_outcomes") or raw.get("session_quality")
    if isinstance(outcomes, Mapping):
        quality = SessionQuality(
            engagement=outcomes.get("engagement", outcomes.get("patient_engagement", 5)),
            therapeutic_rapport=outcomes.get(
                "therapeutic_rapport", outcomes.get("therapeutic_alliance", 5)
            ),
            progress_toward_goals=outcomes.get(
                "progress_toward_goals", outcomes.get("progress_made", 5)
            ),
        )
    else:
        defaulted.append("session_quality")
        quality = SessionQuality()

    return ProgressInsights(
        goal_progress=[_normalize_goal(g, i) for i, g in enumerate(_as_list(raw.get("goal_progress")))],
        overall_treatment_effectiveness=treatment,
        recommendations=recs,
        session_quality=quality,
        confidence=_confidence(raw),
        defaulted_fields=defaulted,
    )


# =============================================================================
# Clinical Note
# =============================================================================

def normalize_note(payload: Mapping) -> NoteInsights:
    raw = snake_keys(unwrap_payload(payload))
    defaulted: List[str] = []
    if "sections" not in raw:
        defaulted.append("sections")

    sections = []
    for item in _as_list(raw.get("sections")):
        item = dict(_mapping(item))
        item["type"] = str(item.get("type") or "general")
        if "confidence" in item:
            item["confidence"] = _confidence(item)
        sections.append(NoteSection.model_validate(
            {k: v for k, v in item.items() if k in NoteSection.model_fields}
        ))

    return NoteInsights(sections=sections, confidence=_confidence(raw), defaulted_fields=defaulted)


NORMALIZERS: Dict[PipelineKind, Callable[[Mapping], Any]] = {
    PipelineKind.SAFETY: normalize_safety,
    PipelineKind.BILLING: normalize_billing,
    PipelineKind.PROGRESS: normalize_progress,
    PipelineKind.NOTE: normalize_note,
}
