"""Response envelope: ``{success, data}`` or ``{success: false, error}``."""

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from execflow.config import Settings
from execflow.workflows.errors import EngineError

logger = logging.getLogger(__name__)

# Recovery error codes → HTTP status
RECOVERY_STATUS_CODES = {
    "EXECUTION_NOT_FOUND": 404,
    "CHECKPOINT_NOT_FOUND": 404,
    "NODE_NOT_FOUND": 404,
    "INVALID_STATE": 409,
    "CANNOT_RESUME": 409,
    "ROLLBACK_REQUIRES_FORCE": 409,
    "ROLLBACK_FAILED": 500,
}


def ok(data=None) -> dict:
    return {"success": True, "data": jsonable_encoder(data)}


def page_size_for(settings: Settings, requested: int | None) -> int:
    """Requested page size, or the configured default, capped at the configured maximum."""
    return min(requested or settings.default_page_size, settings.max_page_size)


def fail(code: str, message: str, details: dict | None = None, status_code: int = 400) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code, "message": message, "details": jsonable_encoder(details or {})},
        },
    )


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=True)
    else:
        logger.info("%s %s → %s: %s", request.method, request.url.path, exc.code, exc.message)
    return fail(exc.code, exc.message, exc.details, exc.status_code)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return fail("INVALID_REQUEST", "Request validation failed", {"errors": exc.errors()}, 422)
