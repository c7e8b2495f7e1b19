from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.core.config import get_settings
from planguard.core.errors import AuthError, NotFoundError
from planguard.domain.models import Tenant
from planguard.domain.plans import CEILING_KINDS, ResourceKind
from planguard.persistence.db import get_session
from planguard.persistence.repos import tenants as tenants_repo
from planguard.services.billing_events import BillingEventProcessor, get_billing_event_processor
from planguard.services.quota import QuotaDecision, QuotaGovernor, get_quota_governor
from planguard.services.subscriptions import SubscriptionLifecycle, get_subscription_lifecycle


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity stamped by the upstream gateway; tenant_id is the external tenant id.
    tenant_id: str
    user_id: str | None = None
    auth_method: str = "gateway_headers"


@dataclass(frozen=True)
class TenantContext:
    principal: Principal
    tenant: Tenant | None

    @property
    def tenant_pk(self) -> str | None:
        return self.tenant.id if self.tenant is not None else None


def get_principal(request: Request) -> Principal:
    settings = get_settings()
    tenant_id = (request.headers.get(settings.auth_tenant_header) or "").strip()
    user_id = (request.headers.get(settings.auth_user_header) or "").strip() or None
    if tenant_id:
        return Principal(tenant_id=tenant_id, user_id=user_id)
    if settings.auth_dev_bypass:
        # Local runs without a gateway act as a fixed dev tenant.
        return Principal(tenant_id=settings.auth_dev_tenant_id, user_id=user_id, auth_method="dev_bypass")
    raise AuthError(
        f"{settings.auth_tenant_header} header is required",
        details={"header": settings.auth_tenant_header},
    )


async def get_tenant_context(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> TenantContext:
    # Unknown tenants are allowed here; status queries fall back to Starter.
    tenant = await tenants_repo.get_tenant_by_external_id(db, principal.tenant_id)
    return TenantContext(principal=principal, tenant=tenant)


async def require_tenant(context: TenantContext = Depends(get_tenant_context)) -> TenantContext:
    if context.tenant is None:
        raise NotFoundError("Tenant not found", details={"tenant_id": context.principal.tenant_id})
    return context


def get_governor() -> QuotaGovernor:
    return get_quota_governor()


def get_lifecycle() -> SubscriptionLifecycle:
    return get_subscription_lifecycle()


def get_processor() -> BillingEventProcessor:
    return get_billing_event_processor()


def require_feature(flag: str) -> Callable[..., Awaitable[QuotaDecision]]:
    """Dependency factory gating a route on a plan feature flag."""

    async def _dependency(
        context: TenantContext = Depends(require_tenant),
        db: AsyncSession = Depends(get_db),
        governor: QuotaGovernor = Depends(get_governor),
    ) -> QuotaDecision:
        decision = await governor.check_feature_access(db, context.tenant.id, flag)
        decision.raise_for_denial()
        return decision

    return _dependency


def require_ceiling(resource_kind: ResourceKind) -> Callable[..., Awaitable[QuotaDecision]]:
    """Dependency factory that rejects creates once the plan ceiling is reached.

    The route still records usage after its insert succeeds, in the same
    transaction, via ``QuotaGovernor.record_usage``.
    """
    if resource_kind not in CEILING_KINDS:
        raise ValueError(f"{resource_kind.value} is not a ceiling resource")

    async def _dependency(
        context: TenantContext = Depends(require_tenant),
        db: AsyncSession = Depends(get_db),
        governor: QuotaGovernor = Depends(get_governor),
    ) -> QuotaDecision:
        decision = await governor.check_ceiling(db, context.tenant.id, resource_kind)
        decision.raise_for_denial()
        return decision

    return _dependency
