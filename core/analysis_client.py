"""
Upstream Analysis Client for SessionLens
========================================

Implements the one upstream operation the orchestrator consumes:

    run_analysis(kind, variables) -> AnalysisResponse

Architecture Pattern: Service with Strategy
-------------------------------------------
- OllamaAnalysisClient: local LLM via LangChain (production)
- MockAnalysisClient: canned or scripted payloads (tests, demos, CLI --mock)

The client never raises for upstream failures. It answers with
``success=False`` and an HTTP-equivalent ``status_code`` so the executor can
decide retryability: 5xx (or no status) is retryable, 4xx is not.
"""

import asyncio
import copy
import inspect
import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Union

from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import JsonOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_ollama import OllamaLLM

from config import Settings, get_settings
from exceptions import AnalysisClientError
from models import AnalysisResponse, PipelineKind
from prompts import get_analysis_prompt, get_prompt_variables


# Set up module logger
logger = logging.getLogger(__name__)


class AnalysisClientProtocol(Protocol):
    """
    Protocol for upstream analysis clients.

    This allows us to swap implementations:
    - OllamaAnalysisClient: Local LLM
    - MockAnalysisClient: Testing
    """

    async def run_analysis(self, kind: PipelineKind, variables: dict) -> AnalysisResponse:
        """
        Run one analysis for one pipeline kind.

        Args:
            kind: Pipeline kind being executed
            variables: Kind-specific inputs built by the registry

        Returns:
            AnalysisResponse (success flag, payload, error, status signal)
        """
        ...


def classify_failure(error: Exception) -> int:
    """Map an exception from the LLM stack to an HTTP-equivalent status."""
    if isinstance(error, (ConnectionError, AnalysisClientError)):
        return 503
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return 504
    message = str(error).lower()
    if "not found" in message or "pull" in message:
        return 404
    if "connect" in message or "refused" in message:
        return 503
    if "timeout" in message or "timed out" in message:
        return 504
    return 500


class OllamaAnalysisClient:
    """
    Analysis client using a local Ollama model.

    Key Design Decisions:
    ---------------------
    1. Lazy initialization: LLM connection only when needed
    2. JSON mode: the model is asked for one JSON object per call
    3. No exceptions for upstream failures: status codes instead
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        llm: Optional[OllamaLLM] = None
    ):
        """
        Args:
            settings: Application settings (uses defaults if not provided)
            llm: Pre-configured LLM instance (creates one if not provided)
        """
        self.settings = settings or get_settings()
        self._llm = llm

        logger.info(
            f"OllamaAnalysisClient initialized with model: {self.settings.ollama_model}"
        )

    @property
    def llm(self) -> OllamaLLM:
        """Lazy-load the LLM instance."""
        if self._llm is None:
            self._initialize_llm()
        return self._llm

    def _initialize_llm(self) -> None:
        try:
            logger.info(
                f"Initializing Ollama LLM: {self.settings.ollama_model} "
                f"at {self.settings.ollama_base_url}"
            )
            self._llm = OllamaLLM(
                model=self.settings.ollama_model,
                base_url=self.settings.ollama_base_url,
                temperature=self.settings.ollama_temperature,
                num_ctx=self.settings.ollama_context_window,
                format="json",
                client_kwargs={"timeout": self.settings.ollama_timeout},
            )
        except Exception as e:
            raise AnalysisClientError(
                url=self.settings.ollama_base_url,
                original_error=str(e)
            )

    async def run_analysis(self, kind: PipelineKind, variables: dict) -> AnalysisResponse:
        started = time.perf_counter()
        try:
            system_prompt, human_prompt = get_analysis_prompt(kind)
        except (KeyError, ValueError):
            return AnalysisResponse(
                success=False,
                error=f"No analysis prompt for pipeline '{kind}'",
                status_code=400
            )

        prompt = ChatPromptTemplate.from_messages([
            ("system", system_prompt),
            ("human", human_prompt)
        ])

        try:
            # Chain pattern: prompt -> llm -> output_parser
            chain = prompt | self.llm | JsonOutputParser()
            logger.debug(f"Sending {kind.value} analysis request to Ollama...")
            data = await chain.ainvoke(get_prompt_variables(variables))
        except OutputParserException as e:
            logger.warning(f"Ollama returned unparseable output for {kind.value}: {e}")
            return AnalysisResponse(
                success=False,
                error=f"Model output is not valid JSON: {e}",
                status_code=502
            )
        except Exception as e:
            status_code = classify_failure(e)
            logger.error(f"Ollama analysis failed for {kind.value} ({status_code}): {e}")
            return AnalysisResponse(success=False, error=str(e), status_code=status_code)

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug(f"Received {kind.value} analysis in {elapsed_ms:.0f}ms")
        return AnalysisResponse(
            success=True,
            data=data,
            metadata={
                "model": self.settings.ollama_model,
                "execution_time_ms": elapsed_ms,
                "cache_hit": False,
            },
            status_code=200
        )


# =============================================================================
# Mock Client
# =============================================================================

DEFAULT_MOCK_PAYLOADS: Dict[PipelineKind, Dict[str, Any]] = {
    PipelineKind.SAFETY: {
        "riskAssessment": {
            "overallRisk": "medium",
            "riskScore": 35,
            "riskFactors": ["Recent job loss", "Sleep disruption"],
            "protectiveFactors": ["Supportive partner", "Engaged in treatment"],
        },
        "alerts": [
            {
                "id": "alert-1",
                "title": "Elevated stress",
                "description": "Patient reports increased stress after job loss",
                "severity": "medium",
                "category": "crisis_intervention",
                "urgentResponse": False,
                "escalationRequired": False,
                "recommendedActions": ["Review coping plan next session"],
            }
        ],
        "recommendations": {
            "immediate": [],
            "shortTerm": ["Monitor sleep"],
            "longTerm": ["Build support network"],
        },
        "confidence": 0.82,
    },
    PipelineKind.BILLING: {
        "cptCodes": [
            {"code": "90837", "description": "Psychotherapy, 60 minutes", "confidence": 0.92},
        ],
        "icd10Codes": [
            {"code": "F41.1", "description": "Generalized anxiety disorder", "confidence": 0.88},
            {"code": "Z56.0", "description": "Unemployment, unspecified", "confidence": 0.66},
        ],
        "sessionInfo": {"detected": "Individual psychotherapy", "confidence": 0.9, "duration": 55},
        "billingOptimization": {
            "suggestedAdjustments": [],
            "complianceIssues": [],
            "revenueOpportunities": [],
        },
        "confidence": 0.87,
    },
    PipelineKind.PROGRESS: {
        "goalProgress": [
            {
                "goalId": "goal-1",
                "goalDescription": "Reduce anxiety symptoms",
                "currentStatus": "in_progress",
                "progressPercentage": 40,
                "evidence": ["Uses breathing exercises"],
                "barriers": ["Financial stress"],
                "nextSteps": ["Introduce cognitive restructuring"],
            },
            {
                "goalId": "goal-2",
                "goalDescription": "Improve sleep quality",
                "currentStatus": "achieved",
                "progressPercentage": 100,
                "evidence": ["Sleeping 7 hours most nights"],
                "barriers": [],
                "nextSteps": [],
            },
        ],
        "overallTreatmentEffectiveness": {"rating": 6, "trends": "improving", "keyIndicators": []},
        "recommendations": {"treatmentAdjustments": [], "newGoals": [], "interventions": []},
        "sessionQuality": {"engagement": 8, "therapeuticRapport": 8, "progressTowardGoals": 6},
        "confidence": 0.78,
    },
    PipelineKind.NOTE: {
        "sections": [
            {"type": "subjective", "title": "Subjective", "content": "Mock subjective content", "confidence": 0.8},
            {"type": "objective", "title": "Objective", "content": "Mock objective content", "confidence": 0.8},
            {"type": "assessment", "title": "Assessment", "content": "Mock assessment content", "confidence": 0.8},
            {"type": "plan", "title": "Plan", "content": "Mock plan content", "confidence": 0.8},
        ],
        "confidence": 0.8,
    },
}


ScriptedResponse = Union[AnalysisResponse, Dict[str, Any], BaseException, Any]


class MockAnalysisClient:
    """
    Mock client for testing and offline demos.

    Each kind can be scripted with a single item or a list of items. Lists
    are consumed in order and the last item repeats. An item may be:
    - an AnalysisResponse (returned as is)
    - a dict (returned as a successful payload)
    - an exception instance (raised)
    - a callable ``(kind, variables)``, sync or async, returning any of the above

    Kinds without a script answer with ``DEFAULT_MOCK_PAYLOADS``.
    """

    def __init__(
        self,
        responses: Optional[Dict[PipelineKind, Union[ScriptedResponse, List[ScriptedResponse]]]] = None,
        delay_seconds: float = 0.01
    ):
        self.responses = {
            PipelineKind(kind): list(value) if isinstance(value, list) else value
            for kind, value in (responses or {}).items()
        }
        self.delay_seconds = delay_seconds
        self.call_count = 0
        self.calls: List[tuple] = []

    def calls_for(self, kind: PipelineKind) -> int:
        return sum(1 for called_kind, _ in self.calls if called_kind == kind)

    async def run_analysis(self, kind: PipelineKind, variables: dict) -> AnalysisResponse:
        """Return the scripted (or default) response for ``kind``."""
        self.call_count += 1
        self.calls.append((kind, variables))

        # Simulate some async delay for realistic testing
        await asyncio.sleep(self.delay_seconds)

        item = self._next_item(kind)
        if callable(item) and not isinstance(item, (AnalysisResponse, BaseException)):
            item = item(kind, variables)
            if inspect.isawaitable(item):
                item = await item

        if isinstance(item, BaseException):
            raise item
        if isinstance(item, AnalysisResponse):
            return item
        return AnalysisResponse(
            success=True,
            data=item,
            metadata={"model": "mock", "cache_hit": False},
            status_code=200
        )

    def _next_item(self, kind: PipelineKind) -> ScriptedResponse:
        scripted = self.responses.get(kind)
        if scripted is None:
            return copy.deepcopy(DEFAULT_MOCK_PAYLOADS.get(kind, {}))
        if isinstance(scripted, list):
            if not scripted:
                return copy.deepcopy(DEFAULT_MOCK_PAYLOADS.get(kind, {}))
            return scripted.pop(0) if len(scripted) > 1 else scripted[0]
        return scripted


# =============================================================================
# Factory Function
# =============================================================================

def create_analysis_client(
    settings: Optional[Settings] = None,
    use_mock: bool = False,
    mock_responses: Optional[Dict[PipelineKind, Any]] = None
) -> AnalysisClientProtocol:
    """
    Factory function to create the appropriate analysis client.

    Args:
        settings: Application settings
        use_mock: If True, returns a mock client
        mock_responses: Scripted responses for the mock client

    Returns:
        An analysis client instance
    """
    if use_mock:
        logger.info("Creating mock analysis client")
        return MockAnalysisClient(responses=mock_responses)

    logger.info("Creating Ollama analysis client")
    return OllamaAnalysisClient(settings=settings)
