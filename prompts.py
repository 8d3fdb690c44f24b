"""
Analysis Prompts for SessionLens
================================

One prompt per pipeline kind. Every prompt asks the model for a single JSON
object in the shape the matching normalizer understands; the normalizers are
lenient, so the prompts describe the preferred shape rather than a strict
contract.

Templates are LangChain ``ChatPromptTemplate`` strings: ``{transcript}``,
``{patient_context}`` and ``{session_details}`` are filled per request, and
literal JSON braces are doubled.
"""

import json
from typing import Any, Dict, Tuple

from models import PipelineKind


ANALYSIS_SYSTEM_PROMPT = """You are a clinical documentation assistant for behavioral health providers.

You analyze therapy session transcripts and answer with ONE JSON object and nothing else:
- no markdown fences
- no commentary before or after the JSON
- use only information present in the transcript and the patient context
- when something is not supported by the transcript, leave the list empty instead of guessing
- confidence values are numbers between 0.0 and 1.0
"""


SAFETY_PROMPT = """Assess this session for patient safety risks: suicide risk, self-harm, harm to others,
substance abuse and medication concerns.

<patient_context>
{patient_context}
</patient_context>

<session_details>
{session_details}
</session_details>

<session_transcript>
{transcript}
</session_transcript>

Answer with this JSON shape:
{{
  "riskAssessment": {{
    "overallRisk": "low | medium | high | critical",
    "riskScore": 0,
    "riskFactors": [],
    "protectiveFactors": []
  }},
  "alerts": [
    {{
      "id": "alert-1",
      "title": "",
      "description": "",
      "severity": "low | medium | high | critical",
      "category": "suicide_risk | self_harm | violence_risk | substance_abuse | medication_concern | crisis_intervention",
      "riskScore": 0,
      "urgentResponse": false,
      "escalationRequired": false,
      "recommendedActions": [],
      "contactInformation": {{"crisisHotline": "988"}}
    }}
  ],
  "recommendations": {{"immediate": [], "shortTerm": [], "longTerm": []}},
  "confidence": 0.0
}}

riskScore is 0-100. Only set escalationRequired or urgentResponse when the transcript shows imminent risk."""


BILLING_PROMPT = """Suggest billing codes for this session: CPT procedure codes and ICD-10 diagnosis codes.

<patient_context>
{patient_context}
</patient_context>

<session_details>
{session_details}
</session_details>

<session_transcript>
{transcript}
</session_transcript>

Answer with this JSON shape:
{{
  "cptCodes": [
    {{"code": "90837", "description": "", "confidence": 0.0, "category": "primary", "modifiers": [], "complianceNotes": []}}
  ],
  "icd10Codes": [
    {{"code": "F41.1", "description": "", "confidence": 0.0, "category": "primary"}}
  ],
  "sessionInfo": {{"detected": "Individual psychotherapy", "confidence": 0.0, "duration": 50}},
  "billingOptimization": {{
    "suggestedAdjustments": [],
    "complianceIssues": [],
    "revenueOpportunities": []
  }},
  "confidence": 0.0
}}

Pick time-based psychotherapy codes from the documented duration. Flag documentation gaps as compliance issues."""


PROGRESS_PROMPT = """Evaluate treatment progress in this session against the patient's treatment goals.

<patient_context>
{patient_context}
</patient_context>

<session_details>
{session_details}
</session_details>

<session_transcript>
{transcript}
</session_transcript>

Answer with this JSON shape:
{{
  "goalProgress": [
    {{
      "goalId": "goal-1",
      "goalDescription": "",
      "currentStatus": "not_started | in_progress | achieved | regressed",
      "progressPercentage": 0,
      "evidence": [],
      "barriers": [],
      "nextSteps": []
    }}
  ],
  "overallTreatmentEffectiveness": {{"rating": 5, "trends": "improving | stable | declining", "keyIndicators": []}},
  "recommendations": {{"treatmentAdjustments": [], "newGoals": [], "interventions": []}},
  "sessionQuality": {{"engagement": 5, "therapeuticRapport": 5, "progressTowardGoals": 5}},
  "confidence": 0.0
}}

Ratings and session quality scores are 1-10."""


NOTE_PROMPT = """Write a clinical SOAP note for this session.

<patient_context>
{patient_context}
</patient_context>

<session_details>
{session_details}
</session_details>

<session_transcript>
{transcript}
</session_transcript>

Answer with this JSON shape:
{{
  "sections": [
    {{"type": "subjective", "title": "Subjective", "content": "", "confidence": 0.0}},
    {{"type": "objective", "title": "Objective", "content": "", "confidence": 0.0}},
    {{"type": "assessment", "title": "Assessment", "content": "", "confidence": 0.0}},
    {{"type": "plan", "title": "Plan", "content": "", "confidence": 0.0}}
  ],
  "confidence": 0.0
}}

Use professional clinical language. Write "Not specified in transcript." for sections the transcript does not support."""


ANALYSIS_PROMPTS: Dict[PipelineKind, str] = {
    PipelineKind.SAFETY: SAFETY_PROMPT,
    PipelineKind.BILLING: BILLING_PROMPT,
    PipelineKind.PROGRESS: PROGRESS_PROMPT,
    PipelineKind.NOTE: NOTE_PROMPT,
}


def get_analysis_prompt(kind: PipelineKind) -> Tuple[str, str]:
    """
    Get the (system, human) template pair for a pipeline kind.

    Raises:
        KeyError: No prompt exists for ``kind``
    """
    return ANALYSIS_SYSTEM_PROMPT, ANALYSIS_PROMPTS[PipelineKind(kind)]


def get_prompt_variables(variables: Dict[str, Any]) -> Dict[str, str]:
    """
    Flatten executor variables into the three template slots.

    Everything except the transcript and the patient context ends up in
    ``session_details`` as pretty-printed JSON.
    """
    details = {
        key: value for key, value in variables.items()
        if key not in ("transcript", "patient_context")
    }
    return {
        "transcript": str(variables.get("transcript", "")),
        "patient_context": json.dumps(variables.get("patient_context") or {}, indent=2, default=str),
        "session_details": json.dumps(details, indent=2, default=str) if details else "None provided",
    }
