"""Error handling middleware."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from cinesum.models.errors import (
    CineSumError,
    ConfigurationError,
    ErrorResponse,
    InvalidStateError,
    StageToolError,
)

logger = logging.getLogger(__name__)


async def cinesum_error_handler(request: Request, exc: CineSumError) -> JSONResponse:
    """Handle CineSumError exceptions."""
    response = ErrorResponse(
        error_type=type(exc).__name__,
        component=exc.component,
        message=exc.message,
        details=exc.details,
        actionable_guidance=_get_guidance(exc),
        retry_possible=_is_retryable(exc),
    )
    status_code = _get_status_code(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=response.model_dump())


def _get_status_code(exc: CineSumError) -> int:
    """Map error type to HTTP status code."""
    if isinstance(exc, InvalidStateError):
        return 409
    elif isinstance(exc, StageToolError):
        return 502
    elif isinstance(exc, ConfigurationError):
        return 500
    return 500


def _get_guidance(exc: CineSumError) -> str:
    """Generate actionable guidance based on error type."""
    if isinstance(exc, InvalidStateError):
        if exc.details.get("status") in ("completed", "failed"):
            return "Reset the pipeline before starting a new run."
        if exc.details.get("status") == "processing":
            return "Wait for the current run to finish or cancel it."
        return "Provide a media input to process."
    if isinstance(exc, ConfigurationError):
        return "Check the CINESUM_* settings."
    return "Please try again or contact support."


def _is_retryable(exc: CineSumError) -> bool:
    """Determine if the error is retryable."""
    return isinstance(exc, StageToolError) and exc.retriable
