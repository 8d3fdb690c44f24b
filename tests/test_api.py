"""
API tests for the run, health and streaming endpoints.

The app is driven through TestClient as a context manager so the lifespan
runs and background pipeline tasks keep executing on the client's event loop.
"""

import asyncio
import socket
import time

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.dependencies import get_orchestrator
from api.main import app
from api.routes import health
from config import get_settings_for_testing
from core.analysis_client import OllamaAnalysisClient
from core.audit_store import AuditStore
from core.orchestrator import AnalysisOrchestrator
from models import PipelineKind
from tests.helpers import TRANSCRIPT, failure


API = "/api/v1"


def start_payload(session_id="session-api", **overrides):
    payload = {
        "session_id": session_id,
        "patient_id": "patient-9",
        "transcript_text": TRANSCRIPT,
        "requester_id": "clinician-7",
        "duration_minutes": 55,
    }
    payload.update(overrides)
    return payload


def wait_for_state(client, session_id, states=("completed",), attempts=200):
    for _ in range(attempts):
        body = client.get(f"{API}/runs/{session_id}").json()
        if body["run_state"] in states:
            return body
        time.sleep(0.01)
    raise AssertionError(f"run {session_id} never reached {states}")


@pytest.fixture
def api(make_orchestrator):
    """TestClient over an orchestrator with scripted responses."""
    clients = []

    def factory(responses=None):
        orchestrator, analysis_client = make_orchestrator(responses=responses)
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client, analysis_client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)
    app.dependency_overrides.clear()


class TestRunEndpoints:

    def test_start_and_poll_until_completed(self, api):
        client, analysis_client = api()

        response = client.post(f"{API}/runs", json=start_payload())
        assert response.status_code == 200
        started = response.json()
        assert started["session_id"] == "session-api"
        assert started["enabled"] == ["safety", "billing", "progress", "note"]
        assert started["run_state"] in ("running", "completed")

        final = wait_for_state(client, "session-api")
        assert final["overall_progress"] == 100
        assert final["run_id"] == started["run_id"]
        assert {state["status"] for state in final["pipelines"].values()} == {"success"}
        assert final["pipelines"]["safety"]["result"]["risk_assessment"]["overall_risk"] == "medium"
        assert analysis_client.call_count == 4

    def test_start_with_pipeline_config(self, api):
        client, analysis_client = api()

        response = client.post(f"{API}/runs", json=start_payload(pipelines={
            "note": {"priority": 9},
            "billing": {"priority": 4},
        }))
        assert response.status_code == 200
        assert response.json()["enabled"] == ["note", "billing"]

        final = wait_for_state(client, "session-api")
        assert final["pipelines"]["safety"]["status"] == "idle"
        assert analysis_client.calls_for(PipelineKind.SAFETY) == 0

    def test_all_pipelines_disabled(self, api):
        client, _ = api()
        disabled = {kind.value: {"enabled": False} for kind in PipelineKind}

        response = client.post(f"{API}/runs", json=start_payload(pipelines=disabled))
        assert response.status_code == 400
        assert response.json()["error_type"] == "NoPipelinesEnabledError"

    def test_unknown_pipeline_kind_is_rejected(self, api):
        client, _ = api()
        response = client.post(f"{API}/runs", json=start_payload(pipelines={"astrology": {}}))
        assert response.status_code == 422

    def test_missing_session(self, api):
        client, _ = api()
        response = client.get(f"{API}/runs/nope")
        assert response.status_code == 404
        body = response.json()
        assert body["error_type"] == "RunNotFoundError"
        assert body["details"]["session_id"] == "nope"

    def test_actions(self, api):
        client, _ = api()
        client.post(f"{API}/runs", json=start_payload())
        wait_for_state(client, "session-api")

        response = client.get(f"{API}/runs/session-api/actions")
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 5
        assert body["urgent_count"] == 0
        assert body["actions"][0]["title"] == "Approve High-Confidence Billing Codes"
        assert body["actions"][0]["priority"] == 6
        assert body["actions"][-1]["title"] == "Generate Comprehensive Clinical Note"

    def test_retry_without_failures(self, api):
        client, _ = api()
        client.post(f"{API}/runs", json=start_payload())
        wait_for_state(client, "session-api")

        response = client.post(f"{API}/runs/session-api/retry")
        assert response.status_code == 200
        body = response.json()
        assert body["retried"] == []
        assert body["message"] == "No failed pipelines to retry"
        assert body["status"]["run_state"] == "completed"

    def test_retry_failed_pipeline(self, api):
        client, analysis_client = api(responses={PipelineKind.BILLING: [failure(400), {}]})
        client.post(f"{API}/runs", json=start_payload())
        before = wait_for_state(client, "session-api")
        assert before["pipelines"]["billing"]["status"] == "error"
        assert before["pipelines"]["billing"]["error"]["retryable"] is False

        response = client.post(f"{API}/runs/session-api/retry/billing")
        assert response.status_code == 200
        assert response.json()["retried"] == ["billing"]

        after = wait_for_state(client, "session-api")
        assert after["pipelines"]["billing"]["status"] == "success"
        assert analysis_client.calls_for(PipelineKind.BILLING) == 2

    def test_retry_of_successful_pipeline_conflicts(self, api):
        client, _ = api()
        client.post(f"{API}/runs", json=start_payload())
        wait_for_state(client, "session-api")

        response = client.post(f"{API}/runs/session-api/retry/safety")
        assert response.status_code == 409
        assert response.json()["error_type"] == "RunStateError"

    def test_retry_unknown_kind(self, api):
        client, _ = api()
        client.post(f"{API}/runs", json=start_payload())
        response = client.post(f"{API}/runs/session-api/retry/astrology")
        assert response.status_code == 422

    def test_cancel_completed_run_conflicts(self, api):
        client, _ = api()
        client.post(f"{API}/runs", json=start_payload())
        wait_for_state(client, "session-api")

        response = client.post(f"{API}/runs/session-api/cancel")
        assert response.status_code == 409

    def test_cancel_running_run(self, api):
        async def hang(kind, variables):
            await asyncio.Event().wait()

        client, _ = api(responses={kind: hang for kind in PipelineKind})
        client.post(f"{API}/runs", json=start_payload())

        response = client.post(f"{API}/runs/session-api/cancel")
        assert response.status_code == 200
        body = response.json()
        assert body["run_state"] == "cancelled"
        assert body["pipelines"]["note"]["error"]["code"] == "CANCELLED"

        again = client.post(f"{API}/runs/session-api/cancel")
        assert again.status_code == 200

        retry = client.post(f"{API}/runs/session-api/retry")
        assert retry.status_code == 409


class TestHealthEndpoints:

    def test_liveness(self, api):
        client, _ = api()
        response = client.get(f"{API}/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_health_reports_memory_audit_store_as_degraded(self, api):
        client, _ = api()
        client.post(f"{API}/runs", json=start_payload())
        wait_for_state(client, "session-api")

        response = client.get(f"{API}/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["components"]["ollama"]["status"] == "healthy"
        assert body["components"]["audit_store"]["status"] == "degraded"
        assert body["runs"]["completed"] == 1
        assert body["runs"]["running"] == 0
        assert [p["kind"] for p in body["pipelines"]] == ["safety", "billing", "progress", "note"]
        assert body["pipelines"][0]["purpose"] == "safety_check"

    def test_readiness_with_mock_client(self, api):
        client, _ = api()
        response = client.get(f"{API}/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestStream:

    def test_stream_of_finished_run(self, api):
        client, _ = api()
        client.post(f"{API}/runs", json=start_payload())
        wait_for_state(client, "session-api")

        with client.websocket_connect(f"{API}/runs/session-api/stream") as ws:
            snapshot = ws.receive_json()
            assert snapshot["run_state"] == "completed"
            assert snapshot["overall_progress"] == 100
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

    def test_stream_follows_run_to_completion(self, api):
        client, _ = api()
        client.post(f"{API}/runs", json=start_payload())

        with client.websocket_connect(f"{API}/runs/session-api/stream") as ws:
            messages = [ws.receive_json()]
            while messages[-1]["run_state"] != "completed":
                messages.append(ws.receive_json())

        progress = [message["overall_progress"] for message in messages]
        assert progress == sorted(progress)
        assert progress[-1] == 100

    def test_stream_of_unknown_session(self, api):
        client, _ = api()
        with client.websocket_connect(f"{API}/runs/ghost/stream") as ws:
            message = ws.receive_json()
            assert message["error"] == "Run not found"
            assert message["session_id"] == "ghost"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 1008


@pytest.fixture
def silent_upstream():
    """A local port that accepts connections and never answers."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(8)
    yield f"http://127.0.0.1:{server.getsockname()[1]}"
    server.close()


def worst_loop_stall(request):
    """Await ``request()`` while a 10ms ticker runs; return its result and the longest tick gap."""

    async def scenario():
        gaps = []
        stop = asyncio.Event()

        async def ticker():
            last = time.perf_counter()
            while not stop.is_set():
                await asyncio.sleep(0.01)
                now = time.perf_counter()
                gaps.append(now - last)
                last = now

        ticking = asyncio.create_task(ticker())
        try:
            outcome = await request()
        except HTTPException as e:
            outcome = e
        stop.set()
        await ticking
        return outcome, max(gaps)

    return asyncio.run(scenario())


class TestHealthKeepsEventLoopFree:

    @pytest.fixture
    def unreachable(self, silent_upstream, monkeypatch):
        monkeypatch.setattr(health, "UPSTREAM_TIMEOUT_SECONDS", 0.5)
        settings = get_settings_for_testing(ollama_base_url=silent_upstream, audit_backend="memory")
        orchestrator = AnalysisOrchestrator(client=OllamaAnalysisClient(settings=settings), settings=settings)
        return orchestrator, settings

    def test_health_report_while_upstream_hangs(self, unreachable):
        orchestrator, settings = unreachable

        report, stall = worst_loop_stall(
            lambda: health.health_check(orchestrator, AuditStore(settings=settings), settings)
        )

        assert report.status == health.ComponentState.UNHEALTHY
        assert report.components["ollama"].status == health.ComponentState.UNHEALTHY
        assert "No answer" in report.components["ollama"].message
        assert stall < 0.3

    def test_readiness_while_upstream_hangs(self, unreachable):
        orchestrator, settings = unreachable

        outcome, stall = worst_loop_stall(lambda: health.readiness_probe(orchestrator, settings))

        assert isinstance(outcome, HTTPException)
        assert outcome.status_code == 503
        assert stall < 0.3
