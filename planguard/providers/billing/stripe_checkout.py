from __future__ import annotations

import asyncio
import logging
from typing import Any

import stripe

from planguard.core.errors import ExternalProviderError
from planguard.providers.billing.base import CheckoutRequest, CheckoutSession


logger = logging.getLogger(__name__)


class StripeBillingProvider:
    def __init__(self, *, api_key: str, price_ids: dict[str, dict[str, str]]) -> None:
        self._api_key = api_key
        self._price_ids = price_ids

    def price_id_for(self, request: CheckoutRequest) -> str:
        price_id = (self._price_ids.get(request.tier.value) or {}).get(request.billing_interval)
        if not price_id:
            logger.error(
                "stripe_price_missing tier=%s interval=%s",
                request.tier.value,
                request.billing_interval,
            )
            raise ExternalProviderError(
                f"No price configured for {request.tier.value} ({request.billing_interval})",
                details={"tier": request.tier.value, "billing_interval": request.billing_interval},
            )
        return price_id

    def session_params(self, request: CheckoutRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": self.price_id_for(request), "quantity": 1}],
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "client_reference_id": request.external_tenant_id,
            "metadata": dict(request.metadata),
            "subscription_data": {"metadata": dict(request.metadata)},
        }
        if request.customer_email:
            params["customer_email"] = request.customer_email
        return params

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        params = self.session_params(request)
        # The SDK is synchronous; keep the event loop free while it talks to the API.
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=self._api_key,
            idempotency_key=request.idempotency_key,
            **params,
        )
        return CheckoutSession(session_id=session.id, checkout_url=session.url)
