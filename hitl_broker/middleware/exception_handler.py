"""Exception handlers for the broker service.

Every error leaves the service as ``{"error", "detail", "request_id"}``.
Clients only rely on ``error``; stack traces stay in the server log.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hitl_broker.errors import HitlError, format_error_response
from hitl_broker.middleware import new_request_id

logger = logging.getLogger(__name__)


def _get_request_id(request: Request) -> str:
    """Request ID set by :class:`RequestIDMiddleware`, or a fresh one without it."""
    return getattr(request.state, "request_id", None) or new_request_id()


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all -- returns 500."""
    request_id = _get_request_id(request)
    logger.error(
        "Unhandled exception on %s %s [request_id=%s]",
        request.method,
        request.url.path,
        request_id,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=format_error_response(
            error="internal server error",
            request_id=request_id,
        ),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Starlette/FastAPI ``HTTPException`` (unknown routes, wrong methods)."""
    request_id = _get_request_id(request)
    logger.debug(
        "HTTP %s on %s %s [request_id=%s]: %s",
        exc.status_code,
        request.method,
        request.url.path,
        request_id,
        exc.detail,
    )
    message = str(exc.detail) if exc.detail else "error"
    return JSONResponse(
        status_code=exc.status_code,
        content=format_error_response(error=message.lower(), request_id=request_id),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    request_id = _get_request_id(request)
    errors = exc.errors()
    logger.warning(
        "Validation error on %s %s [request_id=%s]: %s",
        request.method,
        request.url.path,
        request_id,
        errors,
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=format_error_response(
            error="invalid request",
            detail=jsonable_errors(errors),
            request_id=request_id,
        ),
    )


def jsonable_errors(errors) -> list[dict]:
    """Keep only the JSON-safe fields of pydantic error entries."""
    return [
        {"loc": list(e.get("loc", ())), "msg": str(e.get("msg", "")), "type": str(e.get("type", ""))}
        for e in errors
    ]


async def hitl_error_handler(request: Request, exc: HitlError) -> JSONResponse:
    """Domain :class:`HitlError` subclasses -- mapped to their ``status_code``."""
    request_id = _get_request_id(request)
    if exc.status_code >= 500:
        logger.error("%s on %s %s [request_id=%s]", exc, request.method, request.url.path, request_id)
    return JSONResponse(
        status_code=exc.status_code,
        content=format_error_response(error=str(exc), request_id=request_id),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on *app*."""
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HitlError, hitl_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, global_exception_handler)  # type: ignore[arg-type]
