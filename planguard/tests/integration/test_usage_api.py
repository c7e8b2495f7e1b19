from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Depends
from httpx import ASGITransport, AsyncClient

from planguard.apps.api.deps import require_ceiling, require_feature
from planguard.apps.api.main import create_app
from planguard.core.errors import QuotaExceededError
from planguard.domain.plans import FEATURE_SSO_INTEGRATION, ResourceKind
from planguard.services.audit import record_event
from planguard.services.quota import CODE_RATE_LIMITED
from planguard.tests.utils.billing import create_subscription, create_tenant


def _headers(external_tenant_id: str) -> dict[str, str]:
    return {"X-Tenant-Id": external_tenant_id, "X-User-Id": "u-ops"}


@pytest.mark.asyncio
async def test_usage_summary_and_assistant_settings() -> None:
    tenant = await create_tenant()
    await create_subscription(tenant.id, tier="Professional", status="Active")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        updated = await client.put(
            "/v1/usage/assistant-settings",
            headers=_headers(tenant.external_tenant_id),
            json={"max_requests_per_hour": 20, "monthly_token_budget": 5000},
        )
        invalid = await client.put(
            "/v1/usage/assistant-settings",
            headers=_headers(tenant.external_tenant_id),
            json={"max_requests_per_hour": 0},
        )
        summary = await client.get("/v1/usage", headers=_headers(tenant.external_tenant_id))

    assert updated.status_code == 200
    assert updated.json()["data"]["max_requests_per_hour"] == 20
    assert updated.json()["data"]["monthly_token_budget"] == 5000

    assert invalid.status_code == 422
    assert invalid.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

    data = summary.json()["data"]
    assert data["tier"] == "Professional"
    assert data["resources"]["client_spaces"] == {"used": 0, "limit": 20}
    assert data["assistant"]["max_requests_per_hour"] == 20
    assert data["assistant"]["monthly_token_budget"] == 5000


@pytest.mark.asyncio
async def test_resource_and_feature_checks() -> None:
    tenant = await create_tenant()

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        at_limit = await client.get(
            "/v1/usage/check/client_spaces",
            headers=_headers(tenant.external_tenant_id),
            params={"current_count": 5},
        )
        tokens = await client.get("/v1/usage/check/ai_tokens", headers=_headers(tenant.external_tenant_id))
        sso = await client.get("/v1/usage/features/sso_integration", headers=_headers(tenant.external_tenant_id))
        unknown = await client.get("/v1/usage/features/time_travel", headers=_headers(tenant.external_tenant_id))
        bad_resource = await client.get("/v1/usage/check/widgets", headers=_headers(tenant.external_tenant_id))

    decision = at_limit.json()["data"]
    assert decision["allowed"] is False
    assert decision["suggested_tier"] == "Professional"
    assert tokens.json()["data"]["allowed"] is True
    assert tokens.json()["data"]["limit"] == "unlimited"
    assert sso.json()["data"]["allowed"] is False
    assert sso.json()["data"]["suggested_tier"] == "Business"
    assert unknown.status_code == 400
    assert unknown.json()["error"]["code"] == "UNKNOWN_FEATURE"
    assert bad_resource.status_code == 422


@pytest.mark.asyncio
async def test_audit_events_are_bounded_by_plan_retention() -> None:
    tenant = await create_tenant()
    now = datetime.now(timezone.utc)
    for days_ago, event_type in ((1, "subscription.plan_changed"), (45, "subscription.cancelled")):
        await record_event(
            occurred_at=now - timedelta(days=days_ago),
            tenant_id=tenant.id,
            actor_type="user",
            actor_id="u-ops",
            event_type=event_type,
            outcome="success",
            metadata={"api_key": "sk_live_secret"},
        )

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/audit/events", headers=_headers(tenant.external_tenant_id))

    assert response.status_code == 200
    page = response.json()["data"]
    assert page["retention_days"] == 30
    assert [item["event_type"] for item in page["items"]] == ["subscription.plan_changed"]
    assert page["items"][0]["metadata"] == {"api_key": "[REDACTED]"}
    assert page["next_offset"] is None


@pytest.mark.asyncio
async def test_feature_and_ceiling_dependencies_reject_with_envelope() -> None:
    tenant = await create_tenant()
    await create_subscription(tenant.id, tier="Starter", status="Active")

    app = create_app()

    @app.get("/v1/test/sso", dependencies=[Depends(require_feature(FEATURE_SSO_INTEGRATION))])
    async def _sso_only() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/v1/test/spaces", dependencies=[Depends(require_ceiling(ResourceKind.CLIENT_SPACES))])
    async def _create_space() -> dict[str, bool]:
        return {"ok": True}

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        sso = await client.get("/v1/test/sso", headers=_headers(tenant.external_tenant_id))
        spaces = await client.get("/v1/test/spaces", headers=_headers(tenant.external_tenant_id))

    assert sso.status_code == 403
    error = sso.json()["error"]
    assert error["code"] == "FEATURE_NOT_AVAILABLE"
    assert error["details"]["suggested_tier"] == "Business"
    assert spaces.status_code == 200


@pytest.mark.asyncio
async def test_rate_limit_denial_sets_retry_after() -> None:
    app = create_app()

    @app.get("/v1/test/limited")
    async def _limited() -> None:
        raise QuotaExceededError(
            "Rate limit exceeded",
            code=CODE_RATE_LIMITED,
            limit=100,
            usage=100,
            retry_after_s=120,
            details={"retry_after_s": 120},
        )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/test/limited")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "120"
    assert response.json()["error"]["code"] == "RATE_LIMITED"


@pytest.mark.asyncio
async def test_unhandled_errors_return_correlation_id() -> None:
    app = create_app()

    @app.get("/v1/test/boom")
    async def _boom() -> None:
        raise RuntimeError("unexpected")

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/test/boom", headers={"X-Request-Id": "req-boom"})
        health = await client.get("/v1/health")

    assert response.status_code == 500
    body = response.json()
    assert body["error"]["code"] == "INTERNAL_ERROR"
    assert body["error"]["details"]["correlation_id"] == "req-boom"
    assert "unexpected" not in response.text
    assert health.json()["data"] == {"status": "ok", "database": "ok"}
