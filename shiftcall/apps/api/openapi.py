from __future__ import annotations

from typing import Any

from shiftcall.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    402: _response("Insufficient credits", "InsufficientCredits", "insufficient SMS credits"),
    404: _response("Not found", "CAMPAIGN_NOT_FOUND", "campaign not found"),
    409: _response("Conflict", "CAMPAIGN_CANCELLED", "campaign was cancelled"),
    422: _response("Validation error", "RECIPIENT_OPTED_OUT", "recipient has opted out of messages"),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
}
