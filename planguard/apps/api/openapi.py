from __future__ import annotations

from typing import Any

from planguard.apps.api.response import ErrorEnvelope


def _error_response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    example: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        example["error"]["details"] = details
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response("Bad request", code="VALIDATION_ERROR", message="Invalid request"),
    401: _error_response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Tenant identity is required"),
    404: _error_response("Not found", code="NOT_FOUND", message="Tenant not found"),
    500: _error_response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

QUOTA_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    402: _error_response(
        "Quota exceeded",
        code="QUOTA_EXCEEDED",
        message="Client spaces limit reached for the Starter plan (5/5). Upgrade to Professional to raise this limit.",
        details={"resource": "client_spaces", "usage": 5, "limit": 5, "suggested_tier": "Professional"},
    ),
    403: _error_response(
        "Feature not available",
        code="FEATURE_NOT_AVAILABLE",
        message="Feature audit_export requires the Professional plan. Upgrade to Professional to enable it.",
        details={"feature": "audit_export", "required_tier": "Professional", "contact_sales": False},
    ),
    429: _error_response(
        "Rate limited",
        code="RATE_LIMIT_EXCEEDED",
        message="Rate limit of 300 requests per minute exceeded. Please try again later.",
        details={"current_tier": "Starter", "limit": 300, "retry_after_s": 12, "suggested_tier": "Professional"},
    ),
}

BILLING_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    409: _error_response(
        "Managed by the payment provider",
        code="USE_CHECKOUT",
        message="Please use the checkout process to change your plan.",
    ),
    502: _error_response(
        "Payment provider failure",
        code="EXTERNAL_PROVIDER_ERROR",
        message="Payment provider request failed",
    ),
}
