from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol
from uuid import uuid4

from planguard.domain.plans import PlanTier


BILLING_INTERVAL_MONTHLY = "monthly"
BILLING_INTERVAL_ANNUAL = "annual"
BILLING_INTERVALS = (BILLING_INTERVAL_MONTHLY, BILLING_INTERVAL_ANNUAL)


@dataclass(frozen=True)
class CheckoutRequest:
    external_tenant_id: str
    tier: PlanTier
    billing_interval: str
    success_url: str
    cancel_url: str
    customer_email: str | None = None
    # Echoed back on checkout and subscription events so webhooks can find the tenant.
    metadata: dict[str, str] = field(default_factory=dict)
    # Reused across retries so the provider never opens two sessions for one request.
    idempotency_key: str = field(default_factory=lambda: f"checkout-{uuid4().hex}")


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    checkout_url: str


class BillingProvider(Protocol):
    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        ...
