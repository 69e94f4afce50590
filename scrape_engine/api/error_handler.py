"""Exception handlers for the submission API.

Every failure leaves the API as the standard envelope
``{ success: false, data: null, error, meta }``:

- OrchestratorError subclasses keep their status code; ``meta`` carries the
  error details plus the failure ``kind``
- request validation failures become 422 with per-field messages
- anything else is a generic 500 (the traceback only goes to the log)

Capacity and persistence errors are temporary, so their responses carry a
``Retry-After`` header.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from scrape_engine.errors import ErrorKind, OrchestratorError
from scrape_engine.models.responses import ApiResponse

logger = logging.getLogger(__name__)

_RETRY_AFTER_SECONDS = 5
_TEMPORARY_KINDS = (ErrorKind.CAPACITY_EXHAUSTION, ErrorKind.PERSISTENCE)


def _error_response(
    status_code: int,
    error: str,
    meta: dict | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ApiResponse[None](success=False, error=error, meta=meta)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


async def _orchestrator_error_handler(
    request: Request, exc: OrchestratorError
) -> JSONResponse:
    meta = dict(exc.details)
    if exc.kind is not None:
        meta["kind"] = exc.kind.value

    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "%s %s rejected: %s",
        request.method,
        request.url.path,
        exc.message,
        extra={"error_reason": exc.message},
    )

    headers = None
    if exc.kind in _TEMPORARY_KINDS:
        headers = {"Retry-After": str(_RETRY_AFTER_SECONDS)}
    return _error_response(exc.status_code, exc.message, meta=meta or None, headers=headers)


async def _validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = [
        {
            "field": " -> ".join(str(part) for part in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    return _error_response(422, "Validation error", meta={"fields": fields})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled error on %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return _error_response(500, "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Install the envelope handlers on *app*."""
    app.add_exception_handler(OrchestratorError, _orchestrator_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)  # type: ignore[arg-type]
