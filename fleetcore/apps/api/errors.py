from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fleetcore.apps.api.response import error_response, is_versioned_request
from fleetcore.core.errors import (
    FleetError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
    VersionMismatchError,
    error_message,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors map onto HTTP statuses; anything else retryable is a 503.
_FLEET_ERROR_STATUS: tuple[tuple[type[FleetError], int, str], ...] = (
    (NotFoundError, 404, "NOT_FOUND"),
    (ValidationError, 422, "VALIDATION_ERROR"),
    (VersionMismatchError, 409, "VERSION_MISMATCH"),
    (IllegalTransitionError, 409, "ILLEGAL_TRANSITION"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def fleet_error_status(exc: FleetError) -> tuple[int, str]:
    for error_cls, status_code, code in _FLEET_ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status_code, code
    return 503, "SERVICE_UNAVAILABLE"


async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
    status_code, code = fleet_error_status(exc)
    if status_code >= 500:
        logger.warning("api_fleet_error path=%s error=%s", request.url.path, error_message(exc))
    details = None
    if isinstance(exc, IllegalTransitionError):
        details = {"current": exc.current, "transition": exc.transition}
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": error_message(exc)}, status_code=status_code)
    payload = error_response(request=request, code=code, message=error_message(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Normalize HTTPExceptions into the shared error envelope for v1 routes.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for SDK parsing.
    errors = jsonable_encoder(exc.errors())
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("api_unhandled_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
