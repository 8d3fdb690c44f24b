"""
Shared fixtures for the SessionLens test suite.

Async code is driven with ``asyncio.run`` inside each test; no event loop
plugin is needed.
"""

import pytest

from config import get_settings_for_testing
from core.analysis_client import MockAnalysisClient
from core.orchestrator import AnalysisOrchestrator
from core.retry import RetryPolicy
from tests.helpers import FakeAuditStore, RecordingSleep


@pytest.fixture
def settings():
    return get_settings_for_testing(audit_backend="memory")


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def audit_store():
    return FakeAuditStore()


@pytest.fixture
def make_orchestrator(settings, recording_sleep, audit_store):
    """Factory: orchestrator over a scripted mock client with instant backoff."""

    def factory(responses=None, store=audit_store, delay_seconds: float = 0.0):
        client = MockAnalysisClient(responses=responses, delay_seconds=delay_seconds)
        orchestrator = AnalysisOrchestrator(
            client=client,
            settings=settings,
            audit_store=store,
            retry_policy=RetryPolicy.from_settings(settings, sleep=recording_sleep),
        )
        return orchestrator, client

    return factory
