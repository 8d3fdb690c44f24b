"""
Rate Limiting Middleware
========================

Rate limiting with slowapi. Starting a run fans out into one LLM call per
enabled pipeline, so POST /runs is limited per client address; reads are not.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from config import get_settings


limiter = Limiter(key_func=get_remote_address)


def start_run_limit() -> str:
    """Limit string for POST /runs, read per request so settings overrides apply."""
    return get_settings().rate_limit_start


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Answer 429 in the same body shape as every other API error."""
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error_type": "RateLimitExceeded",
            "message": "Too many analysis runs started, try again later",
            "details": {"limit": str(exc.detail), "client": get_remote_address(request)}
        }
    )


def setup_rate_limiting(app: FastAPI) -> None:
    """
    Attach the limiter to the app and register the 429 handler.

    Routes opt in with the decorator, which needs ``request: Request`` in
    the signature:

        @router.post("/runs")
        @limiter.limit(start_run_limit)
        async def start_run(request: Request, ...):
            ...
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
