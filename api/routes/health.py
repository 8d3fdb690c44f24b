"""
Health Check Endpoints
======================

Liveness, readiness and a full health report for the orchestrator process.

The full report covers:
    - analysis upstream (Ollama, or the mock client)
    - audit store backend
    - registered pipelines and their default configuration
    - runs tracked by the orchestrator, by state
    - resource usage of this process and the host
"""

import asyncio
import logging
import os
import time
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

import psutil
import redis.asyncio as aioredis
import requests
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from config import Settings, get_settings
from api.dependencies import get_audit_store, get_orchestrator
from core.analysis_client import MockAnalysisClient
from core.audit_store import AuditStore
from core.orchestrator import AnalysisOrchestrator
from models import RunState


logger = logging.getLogger(__name__)

router = APIRouter()

# A failing check on one of these makes the whole service unhealthy
CRITICAL_COMPONENTS = ("api", "ollama")
UPSTREAM_TIMEOUT_SECONDS = 2


class ComponentState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentCheck(BaseModel):
    """Outcome of probing one dependency."""
    status: ComponentState = Field(description="Component state")
    message: Optional[str] = Field(None, description="What was found, or why the probe failed")
    latency_ms: Optional[float] = Field(None, description="Probe round trip in milliseconds")


class PipelineSummary(BaseModel):
    kind: str
    purpose: str
    enabled_by_default: bool
    priority: int
    max_retries: int
    timeout_seconds: float


class ResourceUsage(BaseModel):
    host_cpu_percent: float = Field(description="Host CPU usage percentage")
    host_memory_percent: float = Field(description="Host memory usage percentage")
    process_memory_mb: float = Field(description="Resident memory of this process in MB")
    process_threads: int = Field(description="Threads in this process")


class HealthReport(BaseModel):
    """Full health report."""
    status: ComponentState = Field(description="Worst relevant component state")
    timestamp: str = Field(description="ISO 8601 time of the report")
    components: Dict[str, ComponentCheck] = Field(description="Per-dependency checks")
    runs: Dict[str, int] = Field(description="Tracked runs per run state")
    pipelines: List[PipelineSummary] = Field(description="Registered pipelines in registry order")
    resources: ResourceUsage


class ProbeResponse(BaseModel):
    """Body of the liveness and readiness probes."""
    status: str
    message: Optional[str] = None
    timestamp: str


def _now() -> str:
    return datetime.utcnow().isoformat() + "Z"


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


async def check_audit_store(audit_store: AuditStore) -> ComponentCheck:
    """
    Probe the audit store.

    The in-memory backend counts as degraded: execution records and safety
    alerts do not survive a restart.
    """
    if audit_store.backend == "memory":
        return ComponentCheck(
            status=ComponentState.DEGRADED,
            message="Audit records kept in memory only (Redis not configured or unreachable)"
        )

    started = time.perf_counter()
    try:
        await audit_store.ping()
    except (aioredis.RedisError, OSError) as e:
        logger.warning(f"Audit store ping failed: {e}")
        return ComponentCheck(status=ComponentState.UNHEALTHY, message=f"Redis ping failed: {e}")

    return ComponentCheck(
        status=ComponentState.HEALTHY,
        message="Redis audit store reachable",
        latency_ms=_elapsed_ms(started)
    )


def check_ollama(orchestrator: AnalysisOrchestrator, settings: Settings) -> ComponentCheck:
    """
    Probe the analysis upstream.

    Lists the models Ollama has pulled (/api/tags) rather than running a
    prompt, and looks for the configured model among them.
    """
    if isinstance(orchestrator.executor.client, MockAnalysisClient):
        return ComponentCheck(status=ComponentState.HEALTHY, message="Mock analysis client, no upstream")

    url = f"{settings.ollama_base_url}/api/tags"
    started = time.perf_counter()
    try:
        response = requests.get(url, timeout=UPSTREAM_TIMEOUT_SECONDS)
    except requests.exceptions.Timeout:
        return ComponentCheck(
            status=ComponentState.UNHEALTHY,
            message=f"No answer from {url} within {UPSTREAM_TIMEOUT_SECONDS}s"
        )
    except requests.exceptions.RequestException as e:
        logger.warning(f"Ollama unreachable at {settings.ollama_base_url}: {e}")
        return ComponentCheck(status=ComponentState.UNHEALTHY, message=f"Ollama unreachable: {e}")

    if response.status_code != 200:
        return ComponentCheck(
            status=ComponentState.UNHEALTHY,
            message=f"{url} answered HTTP {response.status_code}"
        )

    wanted = settings.ollama_model.split(":")[0]
    pulled = [m.get("name", "").split(":")[0] for m in response.json().get("models", [])]
    if wanted not in pulled:
        return ComponentCheck(
            status=ComponentState.UNHEALTHY,
            message=f"Model '{settings.ollama_model}' is not pulled (ollama pull {settings.ollama_model})"
        )

    return ComponentCheck(
        status=ComponentState.HEALTHY,
        message=f"Model '{settings.ollama_model}' ready",
        latency_ms=_elapsed_ms(started)
    )


def summarize_pipelines(orchestrator: AnalysisOrchestrator) -> List[PipelineSummary]:
    summaries = []
    for kind in orchestrator.registry.kinds:
        definition = orchestrator.registry.get(kind)
        config = orchestrator.settings.pipelines.get(kind)
        summaries.append(PipelineSummary(
            kind=kind.value,
            purpose=definition.purpose,
            enabled_by_default=bool(config and config.enabled),
            priority=config.priority if config else 0,
            max_retries=config.max_retries if config else 0,
            timeout_seconds=config.timeout_seconds if config else 0.0,
        ))
    return summaries


def count_runs(orchestrator: AnalysisOrchestrator) -> Dict[str, int]:
    counts = {state.value: 0 for state in RunState}
    for run in orchestrator.runs:
        counts[run.state.value] += 1
    return counts


def measure_resources() -> ResourceUsage:
    try:
        process = psutil.Process(os.getpid())
        with process.oneshot():
            rss = process.memory_info().rss
            threads = process.num_threads()
        cpu = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory().percent
    except (psutil.Error, OSError) as e:
        logger.error(f"Could not read resource usage: {e}")
        return ResourceUsage(host_cpu_percent=0.0, host_memory_percent=0.0, process_memory_mb=0.0, process_threads=0)

    return ResourceUsage(
        host_cpu_percent=round(cpu, 2),
        host_memory_percent=round(memory, 2),
        process_memory_mb=round(rss / (1024 * 1024), 2),
        process_threads=threads
    )


def overall_state(components: Dict[str, ComponentCheck]) -> ComponentState:
    """Unhealthy if a critical component is down, degraded if anything else is off."""
    if any(
        components[name].status == ComponentState.UNHEALTHY
        for name in CRITICAL_COMPONENTS if name in components
    ):
        return ComponentState.UNHEALTHY
    if any(check.status != ComponentState.HEALTHY for check in components.values()):
        return ComponentState.DEGRADED
    return ComponentState.HEALTHY


@router.get(
    "/health",
    response_model=HealthReport,
    summary="Full health report",
    description="""
    Probes the analysis upstream and the audit store, and reports the
    registered pipelines, tracked runs and resource usage.

    Always answers HTTP 200; read the `status` field for the verdict.
    """
)
async def health_check(
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
    audit_store: AuditStore = Depends(get_audit_store),
    settings: Settings = Depends(get_settings)
) -> HealthReport:
    components = {
        "api": ComponentCheck(status=ComponentState.HEALTHY, message="Serving requests"),
        "ollama": await asyncio.to_thread(check_ollama, orchestrator, settings),
        "audit_store": await check_audit_store(audit_store),
    }
    # Pipelines share this event loop; blocking probes go to a worker thread
    resources = await asyncio.to_thread(measure_resources)
    verdict = overall_state(components)

    if verdict != ComponentState.HEALTHY:
        off = [name for name, check in components.items() if check.status != ComponentState.HEALTHY]
        logger.warning(f"Health {verdict.value}: {', '.join(off)}")
    else:
        logger.debug("Health check passed")

    return HealthReport(
        status=verdict,
        timestamp=_now(),
        components=components,
        runs=count_runs(orchestrator),
        pipelines=summarize_pipelines(orchestrator),
        resources=resources
    )


@router.get(
    "/health/ready",
    response_model=ProbeResponse,
    summary="Readiness probe",
    description="HTTP 200 once the orchestrator is built and the analysis upstream answers, 503 otherwise."
)
async def readiness_probe(
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings)
) -> ProbeResponse:
    """
    Raises:
        HTTPException: 503 while the analysis upstream is unusable
    """
    upstream = await asyncio.to_thread(check_ollama, orchestrator, settings)
    if upstream.status == ComponentState.UNHEALTHY:
        logger.warning(f"Not ready: {upstream.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Analysis upstream not ready: {upstream.message}"
        )

    return ProbeResponse(status="ready", message=upstream.message, timestamp=_now())


@router.get(
    "/health/live",
    response_model=ProbeResponse,
    summary="Liveness probe",
    description="HTTP 200 while the process answers. Dependencies are not probed."
)
async def liveness_probe() -> ProbeResponse:
    return ProbeResponse(status="alive", timestamp=_now())
