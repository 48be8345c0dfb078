"""Gateway engine error hierarchy and FastAPI exception handlers.

All engine-specific errors extend GatewayEngineError. Probe and verification
failures are folded into result values and file patches; the errors below are
the ones that cross the engine boundary. The FastAPI handlers turn them (plus
Pydantic's RequestValidationError and unhandled exceptions) into the
{ success, data, error, meta } envelope.
"""

from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class GatewayEngineError(Exception):
    """Base error for the gateway engine."""

    status_code: int = 500
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, **kwargs: object) -> None:
        self.message = message or self.__class__.message
        self.details = kwargs
        super().__init__(self.message)


class NoAvailableGatewayError(GatewayEngineError):
    """Every gateway in a race or sweep failed."""

    status_code = 503
    message = "No available gateway"


class GatewayNotFoundError(GatewayEngineError):
    """URL is not in the catalogue."""

    status_code = 404
    message = "Gateway not found"


class InvalidGatewayUrlError(GatewayEngineError):
    """User-supplied gateway URL could not be normalised."""

    status_code = 422
    message = "Invalid gateway URL"


class FileRecordNotFoundError(GatewayEngineError):
    """File id is unknown to the file store."""

    status_code = 404
    message = "File record not found"


class CacheWriteError(GatewayEngineError):
    """Probe run could not be stored or failed read-back verification."""

    status_code = 500
    message = "Failed to write probe result cache"


class PermanentVerificationError(GatewayEngineError):
    """Downloaded content does not match the recorded hash."""

    status_code = 409
    message = "Content hash mismatch"


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------


def _envelope(
    status_code: int,
    error: str,
    meta: dict | None = None,
) -> JSONResponse:
    """Build a JSON envelope error response."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "error": error,
            "meta": meta,
        },
    )


async def _engine_error_handler(_request: Request, exc: GatewayEngineError) -> JSONResponse:
    meta = exc.details if exc.details else None
    return _envelope(exc.status_code, exc.message, meta=meta)


async def _validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle FastAPI / Pydantic RequestValidationError (422)."""
    field_errors = [
        {
            "field": " -> ".join(str(loc) for loc in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    return _envelope(
        status_code=422,
        error="Validation error",
        meta={"fields": field_errors},
    )


async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception: %s\n%s",
        exc,
        traceback.format_exc(),
    )
    return _envelope(status_code=500, error="Internal server error")


# ---------------------------------------------------------------------------
# Registration helper
# ---------------------------------------------------------------------------


def register_error_handlers(app: FastAPI) -> None:
    """Wire up all exception handlers on the FastAPI application."""
    app.add_exception_handler(GatewayEngineError, _engine_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)  # type: ignore[arg-type]
