from __future__ import annotations

import logging
import math
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docpipe.apps.api.rate_limit import throttle_headers
from docpipe.apps.api.response import error_response
from docpipe.core.errors import (
    AdmissionDenied,
    AdmissionUnavailable,
    DocpipeError,
    IntegrityError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from docpipe.services.rate_limit import DualDecision


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


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


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


def _status_for(exc: DocpipeError) -> tuple[int, str]:
    if isinstance(exc, ValidationError):
        return 422, "VALIDATION_ERROR"
    if isinstance(exc, NotFoundError):
        return 404, "NOT_FOUND"
    if isinstance(exc, AdmissionDenied):
        return 429, "RATE_LIMITED"
    if isinstance(exc, AdmissionUnavailable):
        return 503, "RATE_LIMIT_UNAVAILABLE"
    if isinstance(exc, StoreUnavailableError):
        return 503, "SERVICE_UNAVAILABLE"
    if isinstance(exc, IntegrityError):
        return 401, "SIGNATURE_INVALID"
    return 500, "INTERNAL_ERROR"


async def docpipe_exception_handler(request: Request, exc: DocpipeError) -> JSONResponse:
    # Domain errors raised by services map to stable client-facing codes.
    status_code, code = _status_for(exc)
    details: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    if isinstance(exc, ValidationError) and exc.field:
        details = {"field": exc.field}
    if isinstance(exc, AdmissionDenied):
        details = {"retry_after_ms": exc.retry_after_ms}
        if isinstance(exc.decision, DualDecision):
            details["most_restrictive"] = exc.decision.most_restrictive
            headers = throttle_headers(exc.decision)
        else:
            headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after_ms / 1000.0)))}
    message = str(exc) if status_code < 500 else "Internal server error"
    if status_code == 503:
        message = str(exc) or "Service unavailable"
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
