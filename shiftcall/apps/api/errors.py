from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shiftcall.apps.api.response import error_response, is_versioned_request
from shiftcall.core.errors import (
    CampaignCancelledError,
    CampaignNotFoundError,
    ChannelError,
    CreditTransactionNotFoundError,
    DeliveryValidationError,
    IllegalTransitionError,
    InsufficientCreditsError,
    LedgerInvariantViolation,
    RecipientAlreadyConfirmed,
    RecipientOptedOut,
    ShiftcallError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    402: "INSUFFICIENT_CREDITS",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "CHANNEL_UNAVAILABLE",
}

# Most specific class first; the first isinstance match wins.
_DOMAIN_STATUS: list[tuple[type[ShiftcallError], int]] = [
    (CampaignNotFoundError, 404),
    (CreditTransactionNotFoundError, 404),
    (CampaignCancelledError, 409),
    (RecipientAlreadyConfirmed, 409),
    (RecipientOptedOut, 422),
    (DeliveryValidationError, 422),
    (InsufficientCreditsError, 402),
    (IllegalTransitionError, 409),
    (LedgerInvariantViolation, 500),
    (ChannelError, 502),
]


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def domain_status_code(exc: ShiftcallError) -> int:
    for error_type, status_code in _DOMAIN_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _domain_details(exc: ShiftcallError) -> dict[str, Any] | None:
    details: dict[str, Any] = {}
    if isinstance(exc, RecipientAlreadyConfirmed) and exc.contact_ids:
        details["contact_ids"] = exc.contact_ids
    elif isinstance(exc, DeliveryValidationError) and exc.contact_id:
        details["contact_id"] = exc.contact_id
    if isinstance(exc, InsufficientCreditsError):
        details.update({"available": exc.available, "required": exc.required})
    return details or None


async def shiftcall_exception_handler(request: Request, exc: ShiftcallError) -> JSONResponse:
    # Clients see the display reason; the full message stays in server logs.
    status_code = domain_status_code(exc)
    level = logger.error if status_code >= 500 else logger.info
    level("request_failed path=%s code=%s detail=%s", request.url.path, exc.code, exc)
    payload = error_response(
        request=request,
        code=exc.code,
        message=exc.display_reason,
        details=_domain_details(exc),
    )
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Starlette raises its own class for unknown routes and methods.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
