from __future__ import annotations

from planguard.core.config import get_settings
from planguard.core.errors import ExternalProviderError
from planguard.providers.billing.base import BillingProvider
from planguard.providers.billing.fake import FakeBillingProvider
from planguard.providers.billing.stripe_checkout import StripeBillingProvider


def get_billing_provider() -> BillingProvider:
    settings = get_settings()
    provider = (settings.billing_provider or "stripe").lower()

    if provider == "fake":
        return FakeBillingProvider()
    if not settings.stripe_api_key:
        raise ExternalProviderError("Payment provider is not configured")
    return StripeBillingProvider(api_key=settings.stripe_api_key, price_ids=settings.stripe_price_ids)
