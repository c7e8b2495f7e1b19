from __future__ import annotations

from typing import Any


class PlanguardError(Exception):
    """Base error for planguard.

    Every domain error carries a stable ``code`` plus optional structured
    ``details`` so the API boundary can render ``{code, message, details}``
    without inspecting the concrete type.
    """

    code = "PLANGUARD_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationError(PlanguardError):
    """Bad input from a caller or a provider payload."""

    code = "VALIDATION_ERROR"


class UnknownTierError(ValidationError):
    """Tier name is not registered in the plan catalog."""

    code = "INVALID_PLAN"


class AuthError(PlanguardError):
    """Missing tenant or identity context."""

    code = "AUTH_UNAUTHORIZED"


class NotFoundError(PlanguardError):
    """Tenant or subscription absent."""

    code = "NOT_FOUND"


class QuotaExceededError(PlanguardError):
    """Ceiling, rate or budget breach."""

    code = "QUOTA_EXCEEDED"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        limit: int | str | None = None,
        usage: int | None = None,
        suggested_tier: str | None = None,
        contact_sales: bool = False,
        retry_after_s: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.limit = limit
        self.usage = usage
        self.suggested_tier = suggested_tier
        self.contact_sales = contact_sales
        self.retry_after_s = retry_after_s


class FeatureNotAvailableError(PlanguardError):
    """Current plan lacks the requested capability."""

    code = "FEATURE_NOT_AVAILABLE"

    def __init__(
        self,
        message: str,
        *,
        feature: str,
        required_tier: str | None,
        contact_sales: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.feature = feature
        self.required_tier = required_tier
        self.contact_sales = contact_sales


class SignatureInvalidError(PlanguardError):
    """Webhook signature missing or mismatched."""

    code = "SIGNATURE_INVALID"


class ExternalProviderError(PlanguardError):
    """Payment provider call failed."""

    code = "EXTERNAL_PROVIDER_ERROR"


class UseExternalCheckoutError(PlanguardError):
    """Local mutation attempted on a provider-managed subscription."""

    code = "USE_CHECKOUT"


class DatabaseError(PlanguardError):
    """Database layer failure."""

    code = "DATABASE_ERROR"


class ConfigurationError(PlanguardError):
    """Required server-side setting is missing or invalid."""

    code = "CONFIGURATION_ERROR"
