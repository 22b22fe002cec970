"""
Error-handling middleware - maps engine errors to RFC 7807 responses.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from isx_spine.api.schemas.common import ErrorDetail, ProblemDetail
from isx_spine.core.errors import ErrorCategory, SpineError, ValidationError
from isx_spine.core.logging import get_logger

logger = get_logger(__name__)

# ── Error category → HTTP status mapping ─────────────────────────────────

CATEGORY_TO_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.CANCELLATION: 409,
    ErrorCategory.TIMEOUT: 504,
    ErrorCategory.EXECUTION: 500,
    ErrorCategory.INTERNAL: 500,
}


def status_for_error(exc: SpineError) -> int:
    """Resolve an engine error to an HTTP status, defaulting to 500."""
    return CATEGORY_TO_STATUS.get(exc.category, 500)


def problem_response(
    *,
    status: int,
    title: str,
    detail: str = "",
    instance: str = "",
    code: str = "",
    errors: list[dict[str, Any]] | None = None,
) -> JSONResponse:
    """Build a RFC 7807 JSON error response."""
    body = ProblemDetail(title=title, status=status, detail=detail, instance=instance, code=code)
    if errors:
        body.errors = [
            ErrorDetail(code=str(e.get("code") or "INVALID"), message=str(e.get("message", "")), field=e.get("field"))
            for e in errors
        ]
    return JSONResponse(
        status_code=status,
        content=body.model_dump(),
        media_type="application/problem+json",
    )


async def spine_error_handler(request: Request, exc: SpineError) -> JSONResponse:
    """Engine errors raised synchronously by the manager (validation, not found, conflict)."""
    status = status_for_error(exc)
    log = logger.warning if status >= 500 else logger.info
    log("api.error", path=request.url.path, status=status, error_code=exc.error_code, error=exc.message)
    return problem_response(
        status=status,
        title=exc.message,
        instance=str(request.url.path),
        code=exc.error_code,
        errors=exc.errors if isinstance(exc, ValidationError) else None,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request bodies rejected by FastAPI get the same 400 shape as engine validation errors."""
    errors = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body") or None,
            "message": err.get("msg", ""),
            "code": str(err.get("type", "invalid")).upper(),
        }
        for err in exc.errors()
    ]
    return problem_response(
        status=400,
        title="Invalid operation request",
        instance=str(request.url.path),
        code="VALIDATION_FAILED",
        errors=errors,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions; returns 500 with ProblemDetail."""
    logger.error("api.unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
    return problem_response(
        status=500,
        title="Internal Server Error",
        detail=str(exc) if request.app.state.settings.debug else "An unexpected error occurred.",
        instance=str(request.url.path),
        code="INTERNAL",
    )
