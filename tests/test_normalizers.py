"""
Tests for per-kind result normalization.
"""

import pytest
from pydantic import ValidationError

from core.normalizers import (
    normalize_billing,
    normalize_note,
    normalize_progress,
    normalize_safety,
    snake_keys,
)
from models import InsightSeverity


def test_snake_keys_is_recursive():
    data = {"riskAssessment": {"overallRisk": "high", "riskFactors": [{"factorName": "x"}]}}
    assert snake_keys(data) == {
        "risk_assessment": {"overall_risk": "high", "risk_factors": [{"factor_name": "x"}]}
    }


class TestSafety:

    def test_camel_case_payload(self):
        insights = normalize_safety({
            "riskAssessment": {"overallRisk": "HIGH", "riskScore": 72, "riskFactors": ["isolation"]},
            "alerts": [{
                "id": 7,
                "title": "Passive ideation",
                "severity": "critical",
                "category": "suicide",
                "urgentResponse": True,
                "escalationRequired": True,
                "suggestedActions": ["Safety plan"],
            }],
            "recommendations": {"immediate": ["Safety plan"], "shortTerm": [], "longTerm": []},
            "confidence": {"score": 0.9},
        })

        assert insights.risk_assessment.overall_risk == InsightSeverity.HIGH
        assert insights.risk_assessment.risk_score == 72
        alert = insights.alerts[0]
        assert alert.id == "7"
        assert alert.category == "suicide_risk"
        assert alert.severity == InsightSeverity.CRITICAL
        assert alert.urgent_response and alert.escalation_required
        assert alert.recommended_actions == ["Safety plan"]
        assert insights.confidence == 0.9
        assert insights.defaulted_fields == []

    def test_risk_indicators_shape(self):
        insights = normalize_safety({
            "riskIndicators": {"severity": "medium", "score": 40, "factors": ["insomnia"]},
            "protectiveFactors": ["family"],
            "recommendations": {},
        })
        assert insights.risk_assessment.overall_risk == InsightSeverity.MEDIUM
        assert insights.risk_assessment.risk_factors == ["insomnia"]
        assert insights.risk_assessment.protective_factors == ["family"]

    def test_missing_substructures_are_defaulted_and_recorded(self):
        insights = normalize_safety({"alerts": []})
        assert insights.risk_assessment.overall_risk == InsightSeverity.LOW
        assert insights.risk_assessment.risk_score == 0
        assert set(insights.defaulted_fields) == {"risk_assessment", "recommendations"}

    def test_nested_analysis_payload_is_unwrapped(self):
        insights = normalize_safety({"analysis": {"riskAssessment": {"overallRisk": "critical"}}})
        assert insights.risk_assessment.overall_risk == InsightSeverity.CRITICAL

    def test_unknown_severity_becomes_low(self):
        insights = normalize_safety({"alerts": [{"id": "a", "severity": "catastrophic"}]})
        assert insights.alerts[0].severity == InsightSeverity.LOW

    def test_confidence_is_clamped(self):
        insights = normalize_safety({"confidence": 1.7})
        assert insights.confidence == 1.0

    def test_invalid_alert_raises_validation_error(self):
        with pytest.raises(ValidationError):
            normalize_safety({"alerts": [{"id": "a", "riskScore": "very high"}]})


class TestBilling:

    def test_codes_and_session_info(self):
        insights = normalize_billing({
            "cptCodes": [{"code": "90837", "confidence": 0.92}],
            "icd10Codes": ["F41.1"],
            "sessionInfo": {"detected": "Individual psychotherapy", "confidence": 0.9, "duration": 55},
            "billingOptimization": {"complianceIssues": ["Missing start time"]},
        })
        assert [c.code for c in insights.all_codes] == ["90837", "F41.1"]
        assert insights.cpt_codes[0].confidence == 0.92
        assert insights.icd10_codes[0].confidence == 0.0
        assert insights.session_type.detected == "Individual psychotherapy"
        assert insights.session_type.duration == 55
        assert insights.billing_optimization.compliance_issues == ["Missing start time"]
        assert insights.defaulted_fields == []

    def test_compliance_block_shape(self):
        insights = normalize_billing({
            "cptCodes": [],
            "compliance": {"issues": ["Duration not documented"]},
            "sessionType": "Intake",
        })
        assert insights.billing_optimization.compliance_issues == ["Duration not documented"]
        assert insights.session_type.detected == "Intake"
        assert insights.defaulted_fields == ["session_type"]

    def test_empty_payload(self):
        insights = normalize_billing({})
        assert insights.all_codes == []
        assert set(insights.defaulted_fields) == {"session_type", "billing_optimization"}


class TestProgress:

    def test_effectiveness_and_clinical_outcomes(self):
        insights = normalize_progress({
            "goalProgress": [{"id": "g1", "goalDescription": "Sleep", "currentStatus": "achieved"}],
            "effectiveness": {"overallEffectiveness": 4, "trends": "declining"},
            "clinicalOutcomes": {"patientEngagement": 3, "therapeuticAlliance": 6, "progressMade": 2},
            "recommendations": {"interventions": ["Sleep hygiene"]},
        })
        assert insights.goal_progress[0].goal_id == "g1"
        assert insights.overall_treatment_effectiveness.rating == 4
        assert insights.overall_treatment_effectiveness.trends == "declining"
        assert insights.session_quality.engagement == 3
        assert insights.session_quality.therapeutic_rapport == 6
        assert insights.recommendations.interventions == ["Sleep hygiene"]
        assert insights.defaulted_fields == []

    def test_defaults(self):
        insights = normalize_progress({"goalProgress": []})
        assert insights.overall_treatment_effectiveness.rating == 5
        assert insights.session_quality.engagement == 5
        assert set(insights.defaulted_fields) == {
            "overall_treatment_effectiveness",
            "recommendations",
            "session_quality",
        }

    def test_out_of_range_progress_raises(self):
        with pytest.raises(ValidationError):
            normalize_progress({"goalProgress": [{"goalId": "g1", "progressPercentage": 150}]})


class TestNote:

    def test_sections(self):
        insights = normalize_note({
            "sections": [{"type": "subjective", "content": "Reports poor sleep", "confidence": 0.8}, {}],
            "confidence": 0.75,
        })
        assert [s.type for s in insights.sections] == ["subjective", "general"]
        assert insights.confidence == 0.75
        assert insights.defaulted_fields == []

    def test_missing_sections(self):
        insights = normalize_note({})
        assert insights.sections == []
        assert insights.defaulted_fields == ["sections"]
