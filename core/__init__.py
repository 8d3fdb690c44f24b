"""
Core Orchestration Module
=========================

Contains the orchestration and analysis components for SessionLens:
- registry: Pipeline kinds, priorities and per-kind wiring
- normalizers: Raw upstream payloads -> canonical insights
- executor: One attempt of one pipeline
- retry: Exponential backoff policy
- orchestrator: Runs, status tables and subscriptions
- actions: Smart action derivation and ranking
- analysis_client: Upstream LLM client (Ollama / mock)
- audit_store: Execution records and safety alerts
"""

from core.actions import SmartActionsEngine, derive_actions
from core.analysis_client import MockAnalysisClient, OllamaAnalysisClient, create_analysis_client
from core.audit_store import AuditStore, create_audit_store
from core.executor import PipelineExecutor
from core.orchestrator import AnalysisOrchestrator, AnalysisRun, create_orchestrator
from core.registry import PipelineRegistry, create_default_registry, default_pipeline_config
from core.retry import RetryPolicy

__all__ = [
    'SmartActionsEngine',
    'derive_actions',
    'MockAnalysisClient',
    'OllamaAnalysisClient',
    'create_analysis_client',
    'AuditStore',
    'create_audit_store',
    'PipelineExecutor',
    'AnalysisOrchestrator',
    'AnalysisRun',
    'create_orchestrator',
    'PipelineRegistry',
    'create_default_registry',
    'default_pipeline_config',
    'RetryPolicy',
]
