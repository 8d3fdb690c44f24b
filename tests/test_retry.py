"""
Tests for the exponential backoff policy.
"""

import asyncio

from core.retry import RetryPolicy
from exceptions import PipelineValidationError, UpstreamError
from tests.helpers import RecordingSleep


class TestShouldRetry:

    def test_retryable_error_with_retries_left(self):
        policy = RetryPolicy()
        error = UpstreamError(kind="safety", reason="server error", status_code=503)
        assert policy.should_retry(error, attempt=0, max_retries=2)
        assert policy.should_retry(error, attempt=1, max_retries=2)

    def test_no_retry_once_budget_is_spent(self):
        policy = RetryPolicy()
        error = UpstreamError(kind="safety", reason="server error", status_code=503)
        assert not policy.should_retry(error, attempt=2, max_retries=2)

    def test_zero_retries_means_single_attempt(self):
        policy = RetryPolicy()
        error = UpstreamError(kind="note", reason="no status")
        assert not policy.should_retry(error, attempt=0, max_retries=0)

    def test_client_errors_are_not_retried(self):
        policy = RetryPolicy()
        error = UpstreamError(kind="billing", reason="bad request", status_code=400)
        assert not error.retryable
        assert not policy.should_retry(error, attempt=0, max_retries=3)

    def test_validation_errors_are_not_retried(self):
        policy = RetryPolicy()
        error = PipelineValidationError(kind="progress", validation_errors=["transcript_text must not be blank"])
        assert not policy.should_retry(error, attempt=0, max_retries=3)


class TestDelays:

    def test_delays_double_from_one_second(self):
        policy = RetryPolicy()
        assert [policy.delay_for(attempt) for attempt in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_base_delay_is_configurable(self):
        policy = RetryPolicy(base_delay_seconds=0.5)
        assert policy.delay_for(0) == 0.5
        assert policy.delay_for(2) == 2.0

    def test_max_delay_caps_each_wait(self):
        policy = RetryPolicy(max_delay_seconds=3.0)
        assert policy.delay_for(1) == 2.0
        assert policy.delay_for(5) == 3.0

    def test_jitter_only_adds_time(self):
        policy = RetryPolicy(jitter=0.5)
        for _ in range(20):
            delay = policy.delay_for(1)
            assert 2.0 <= delay <= 3.0

    def test_from_settings(self, settings):
        policy = RetryPolicy.from_settings(settings)
        assert policy.base_delay_seconds == settings.retry_base_delay_seconds
        assert policy.max_delay_seconds == settings.retry_max_delay_seconds


class TestWait:

    def test_wait_uses_injected_sleep(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(sleep=sleep)

        async def scenario():
            await policy.wait(0)
            await policy.wait(1)

        asyncio.run(scenario())
        assert sleep.delays == [1.0, 2.0]
