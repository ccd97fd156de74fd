from __future__ import annotations

import logging
import re
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from contentengine.apps.api.response import error_response
from contentengine.core.errors import (
    AIOutputError,
    ConflictError,
    ContentEngineError,
    HydrationDisabledError,
    InfraError,
    JobTimeoutError,
    NotFoundError,
    UnsupportedTargetError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
    504: "TIMEOUT",
}

# Most specific first; the first isinstance match wins.
_STATUS_BY_ERROR: tuple[tuple[type[ContentEngineError], int], ...] = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (ValidationError, 422),
    (UnsupportedTargetError, 422),
    (AIOutputError, 422),
    (HydrationDisabledError, 503),
    (InfraError, 503),
    (JobTimeoutError, 504),
)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def status_for_error(exc: ContentEngineError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def code_for_error(exc: ContentEngineError) -> str:
    # CandidateAlreadyApprovedError -> CANDIDATE_ALREADY_APPROVED
    explicit = getattr(exc, "code", None)
    if explicit:
        return str(explicit)
    name = type(exc).__name__
    if name.endswith("Error"):
        name = name[: -len("Error")]
    return _CAMEL_BOUNDARY.sub("_", name).upper()


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def content_engine_exception_handler(request: Request, exc: ContentEngineError) -> JSONResponse:
    status_code = status_for_error(exc)
    details = getattr(exc, "details", None) or None
    if status_code >= 500:
        logger.warning("api_domain_error path=%s error=%s", request.url.path, type(exc).__name__, exc_info=exc)
    payload = error_response(request=request, code=code_for_error(exc), message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code)


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


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # No stack traces on the wire; the log keeps them.
    logger.exception("api_unhandled_error path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
