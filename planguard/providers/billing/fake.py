from __future__ import annotations

from planguard.providers.billing.base import CheckoutRequest, CheckoutSession


class FakeBillingProvider:
    def __init__(self, base_url: str = "https://checkout.example.test") -> None:
        # Deterministic sessions keep tests stable without external calls.
        self._base_url = base_url.rstrip("/")
        self.requests: list[CheckoutRequest] = []

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        self.requests.append(request)
        session_id = f"cs_fake_{len(self.requests)}_{request.external_tenant_id}"
        return CheckoutSession(session_id=session_id, checkout_url=f"{self._base_url}/{session_id}")
