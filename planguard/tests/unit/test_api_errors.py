from __future__ import annotations

import pytest

from planguard.apps.api.errors import status_for_error
from planguard.core.errors import (
    AuthError,
    DatabaseError,
    ExternalProviderError,
    FeatureNotAvailableError,
    NotFoundError,
    PlanguardError,
    QuotaExceededError,
    SignatureInvalidError,
    UnknownTierError,
    UseExternalCheckoutError,
    ValidationError,
)
from planguard.services.quota import CODE_RATE_LIMITED


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (SignatureInvalidError("bad"), 400),
        (ValidationError("bad"), 400),
        (UnknownTierError("bad"), 400),
        (AuthError("who"), 401),
        (QuotaExceededError("full"), 402),
        (QuotaExceededError("slow down", code=CODE_RATE_LIMITED, retry_after_s=30), 429),
        (FeatureNotAvailableError("nope", feature="sso_integration", required_tier="Business"), 403),
        (NotFoundError("gone"), 404),
        (UseExternalCheckoutError("checkout"), 409),
        (ExternalProviderError("down"), 502),
        (DatabaseError("db"), 500),
        (PlanguardError("other"), 500),
    ],
)
def test_status_for_error(error: PlanguardError, status_code: int) -> None:
    assert status_for_error(error) == status_code


def test_error_codes_are_stable() -> None:
    assert UnknownTierError("x").code == "INVALID_PLAN"
    assert UseExternalCheckoutError("x").code == "USE_CHECKOUT"
    assert ValidationError("x", code="ALREADY_ON_PLAN").code == "ALREADY_ON_PLAN"
