from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from planguard.apps.api.response import error_response, get_request_id, is_versioned_request
from planguard.core.errors import (
    AuthError,
    ConfigurationError,
    DatabaseError,
    ExternalProviderError,
    FeatureNotAvailableError,
    NotFoundError,
    PlanguardError,
    QuotaExceededError,
    SignatureInvalidError,
    UseExternalCheckoutError,
    ValidationError,
)
from planguard.services.quota import CODE_API_RATE_LIMIT_EXCEEDED, CODE_RATE_LIMITED


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "QUOTA_EXCEEDED",
    403: "FEATURE_NOT_AVAILABLE",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "EXTERNAL_PROVIDER_ERROR",
}

# Most specific class first; UnknownTierError resolves through ValidationError.
_STATUS_BY_ERROR: tuple[tuple[type[PlanguardError], int], ...] = (
    (SignatureInvalidError, 400),
    (ValidationError, 400),
    (AuthError, 401),
    (QuotaExceededError, 402),
    (FeatureNotAvailableError, 403),
    (NotFoundError, 404),
    (UseExternalCheckoutError, 409),
    (ExternalProviderError, 502),
    (DatabaseError, 500),
    (ConfigurationError, 500),
)


def status_for_error(exc: PlanguardError) -> int:
    if isinstance(exc, QuotaExceededError) and exc.code in {CODE_RATE_LIMITED, CODE_API_RATE_LIMIT_EXCEEDED}:
        return 429
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    default_code = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        code = str(detail.get("code") or default_code)
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return default_code, detail, None
    return default_code, "Request failed", None


def _http_error(request: Request, status_code: int, detail: Any, headers: dict[str, str] | None) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": detail}, status_code=status_code, headers=headers)
    code, message, details = _split_detail(detail, status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _http_error(request, exc.status_code, exc.detail, exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _http_error(request, exc.status_code, exc.detail, getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface request validation errors with structured details for SDK parsing.
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


async def planguard_exception_handler(request: Request, exc: PlanguardError) -> JSONResponse:
    # Translate domain errors into the error envelope with their stable codes.
    status_code = status_for_error(exc)
    headers: dict[str, str] | None = None
    if isinstance(exc, QuotaExceededError) and exc.retry_after_s is not None:
        headers = {"Retry-After": str(exc.retry_after_s)}
    if status_code >= 500:
        logger.error(
            "request_failed request_id=%s path=%s code=%s",
            get_request_id(request),
            request.url.path,
            exc.code,
            exc_info=exc,
        )
    else:
        logger.info(
            "request_rejected request_id=%s path=%s status=%s code=%s",
            get_request_id(request),
            request.url.path,
            status_code,
            exc.code,
        )
    details = jsonable_encoder(exc.details) if exc.details else None
    if not is_versioned_request(request):
        return JSONResponse(
            content={"detail": {"code": exc.code, "message": exc.message, **(details or {})}},
            status_code=status_code,
            headers=headers,
        )
    payload = error_response(request=request, code=exc.code, message=exc.message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces; the request id lets operators find the logged failure.
    request_id = get_request_id(request)
    logger.error("request_unhandled_error request_id=%s path=%s", request_id, request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
        details={"correlation_id": request_id},
    )
    return JSONResponse(content=payload, status_code=500)
