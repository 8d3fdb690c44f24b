"""
Global Error Handler Middleware
================================

Maps custom exceptions to HTTP status codes and formats error responses.
"""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

from exceptions import (
    SessionLensError,
    PipelineValidationError,
    RegistryError,
    RunNotFoundError,
    RunStateError,
    AnalysisClientError,
    ConfigurationError,
    PersistenceError,
)
from config import get_settings


logger = logging.getLogger(__name__)

# Map exceptions to HTTP status codes (subclasses inherit their base's code)
EXCEPTION_STATUS_MAP = {
    PipelineValidationError: status.HTTP_400_BAD_REQUEST,
    RegistryError: status.HTTP_400_BAD_REQUEST,
    RunNotFoundError: status.HTTP_404_NOT_FOUND,
    RunStateError: status.HTTP_409_CONFLICT,
    AnalysisClientError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ConfigurationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    PersistenceError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for(error: SessionLensError) -> int:
    for cls in type(error).__mro__:
        if cls in EXCEPTION_STATUS_MAP:
            return EXCEPTION_STATUS_MAP[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def error_handler_middleware(request: Request, call_next):
    """
    Turn exceptions escaping a route into JSON error responses.

    SessionLens errors keep their own body (``to_dict``) and get the status
    from EXCEPTION_STATUS_MAP. Anything else is a 500 whose details are
    only shown with api_debug on.
    """
    try:
        response = await call_next(request)
        return response
    except SessionLensError as e:
        status_code = status_for(e)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {e.message}")
        return JSONResponse(
            status_code=status_code,
            content=e.to_dict()
        )
    except Exception as e:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        settings = get_settings()
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error_type": "InternalServerError",
                "message": "An unexpected error occurred",
                "details": {"error": str(e)} if settings.api_debug else {}
            }
        )
