"""
FastAPI Main Application
========================

Main FastAPI application instance with middleware, routes, and lifespan management.
"""

from contextlib import asynccontextmanager
from typing import Dict, Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

from api.middleware.error_handler import error_handler_middleware
from api.middleware.rate_limiter import setup_rate_limiting
from api.routes import health, runs, websocket
from config import get_settings
from core.audit_store import create_audit_store
from core.orchestrator import create_orchestrator
from models import RunState


# Global application state - stores the orchestrator and other singletons
app_state: Dict[str, Any] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan event handler for startup and shutdown.

    Startup:
    - Connects the audit store (Redis, or in-memory fallback)
    - Builds the orchestrator once and stores it in app_state

    Shutdown:
    - Cancels runs still in progress
    - Closes the audit store and clears state
    """
    settings = get_settings()

    print("🚀 Starting SessionLens API...")
    print(f"   Ollama model: {settings.ollama_model}"
          f"{' (mock analysis client)' if settings.use_mock_analysis else ''}")

    audit_store = create_audit_store(settings)
    backend = await audit_store.connect()
    print(f"   Audit store: {backend}")

    orchestrator = create_orchestrator(
        settings=settings,
        audit_store=audit_store,
        use_mock=settings.use_mock_analysis
    )
    app_state["settings"] = settings
    app_state["audit_store"] = audit_store
    app_state["orchestrator"] = orchestrator

    print("✅ Orchestrator ready")
    print(f"📍 API running at http://{settings.api_host}:{settings.api_port}")
    print(f"📚 Docs available at http://{settings.api_host}:{settings.api_port}/api/docs")

    yield  # Application runs here

    print("\n🛑 Shutting down SessionLens API...")
    for run in orchestrator.runs:
        if run.state == RunState.RUNNING:
            run.cancel()
    await audit_store.close()
    app_state.clear()
    print("✅ Cleanup complete")


# Create FastAPI application
app = FastAPI(
    title="SessionLens API",
    description="""
    Clinical session insight orchestration - run safety, billing, progress and
    note analysis over a therapy session transcript.

    ## Features
    - Concurrent analysis pipelines with per-pipeline retries and timeouts
    - Live status table with partial results
    - Prioritized smart actions derived from the results
    - Real-time progress via WebSocket
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware Setup (order matters - first added = outermost)
# =============================================================================

settings = get_settings()

# CORS middleware - allow cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Trusted Host middleware - configure for production: ["api.example.com"]
app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["*"]
)

# Global error handling middleware
app.middleware("http")(error_handler_middleware)

# Rate limiting setup
setup_rate_limiting(app)


# =============================================================================
# Router Registration
# =============================================================================

# Health check endpoints
app.include_router(
    health.router,
    prefix="/api/v1",
    tags=["health"]
)

# Analysis run endpoints
app.include_router(
    runs.router,
    prefix="/api/v1",
    tags=["runs"]
)

# WebSocket endpoints for real-time updates
app.include_router(
    websocket.router,
    prefix="/api/v1",
    tags=["websocket"]
)


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """
    Root endpoint - API information and links.
    """
    return {
        "message": "SessionLens API",
        "description": "Clinical session insight orchestration",
        "version": "1.0.0",
        "docs": "/api/docs",
        "redoc": "/api/redoc",
        "health": "/api/v1/health"
    }
