from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.apps.api.deps import TenantContext, get_db, get_lifecycle, get_tenant_context, require_tenant
from planguard.apps.api.openapi import BILLING_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES
from planguard.apps.api.response import SuccessEnvelope, success_response
from planguard.core.errors import PlanguardError
from planguard.persistence.repos import tenants as tenants_repo
from planguard.services.audit import record_event, request_origin
from planguard.services.subscriptions import SubscriptionLifecycle


router = APIRouter(
    prefix="/subscription",
    tags=["subscription"],
    responses={**DEFAULT_ERROR_RESPONSES, **BILLING_ERROR_RESPONSES},
)


class SubscriptionStatusResponse(BaseModel):
    tenant_id: str
    tier: str
    status: str
    subscription_id: str | None
    limits: dict[str, Any]
    features: list[str]
    trial_expiry: str | None
    trial_days_remaining: int | None
    grace_period_end: str | None
    in_grace_period: bool
    is_entitled: bool
    managed_externally: bool


_STATUS_MODEL = SuccessEnvelope[SubscriptionStatusResponse] | SubscriptionStatusResponse


class ChangePlanRequest(BaseModel):
    target_tier: str = Field(min_length=1, max_length=32)


class TrialRequest(BaseModel):
    tier: str | None = Field(default=None, max_length=32)


async def _audit(
    *,
    db: AsyncSession,
    request: Request,
    context: TenantContext,
    event_type: str,
    outcome: str,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> None:
    await record_event(
        session=db,
        tenant_id=context.tenant_pk,
        actor_type="user",
        actor_id=context.principal.user_id,
        event_type=event_type,
        outcome=outcome,
        resource_type="subscription",
        resource_id=resource_id,
        origin=request_origin(request),
        metadata=metadata,
        error_code=error_code,
        commit=True,
    )


async def _status(
    request: Request,
    db: AsyncSession,
    lifecycle: SubscriptionLifecycle,
    context: TenantContext,
) -> dict[str, Any]:
    status = await lifecycle.get_status(db, context.tenant_pk)
    data = SubscriptionStatusResponse(tenant_id=context.principal.tenant_id, **status)
    return success_response(request=request, data=data)


@router.get("/me", response_model=_STATUS_MODEL)
async def get_my_subscription(
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    return await _status(request, db, lifecycle, context)


@router.post("/change-plan", response_model=_STATUS_MODEL)
async def change_plan(
    request: Request,
    payload: ChangePlanRequest,
    context: TenantContext = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    try:
        subscription = await lifecycle.change_plan(db, context.tenant.id, payload.target_tier)
    except PlanguardError as exc:
        await _audit(
            db=db,
            request=request,
            context=context,
            event_type="subscription.plan_changed",
            outcome="failure",
            metadata={"target_tier": payload.target_tier},
            error_code=exc.code,
        )
        raise
    await _audit(
        db=db,
        request=request,
        context=context,
        event_type="subscription.plan_changed",
        outcome="success",
        resource_id=subscription.id,
        metadata={"tier": subscription.tier},
    )
    return await _status(request, db, lifecycle, context)


@router.post("/cancel", response_model=_STATUS_MODEL)
async def cancel_subscription(
    request: Request,
    context: TenantContext = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    subscription = await lifecycle.cancel(db, context.tenant.id)
    await _audit(
        db=db,
        request=request,
        context=context,
        event_type="subscription.cancelled",
        outcome="success",
        resource_id=subscription.id,
    )
    return await _status(request, db, lifecycle, context)


@router.post("/trial", response_model=_STATUS_MODEL)
async def start_trial(
    request: Request,
    payload: TrialRequest | None = None,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    tenant = context.tenant
    if tenant is None:
        # Trials may start before onboarding finishes; the tenant row is provisioned as pending.
        tenant = await tenants_repo.ensure_tenant(db, context.principal.tenant_id, now=lifecycle.now())
        context = TenantContext(principal=context.principal, tenant=tenant)
    subscription = await lifecycle.start_trial(db, tenant.id, payload.tier if payload else None)
    await _audit(
        db=db,
        request=request,
        context=context,
        event_type="subscription.trial_started",
        outcome="success",
        resource_id=subscription.id,
        metadata={"tier": subscription.tier},
    )
    return await _status(request, db, lifecycle, context)
