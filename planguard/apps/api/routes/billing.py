from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.apps.api.deps import (
    TenantContext,
    get_db,
    get_lifecycle,
    get_processor,
    get_tenant_context,
)
from planguard.apps.api.rate_limit import enforce_api_rate_limit
from planguard.apps.api.openapi import BILLING_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES
from planguard.apps.api.response import SuccessEnvelope, success_response
from planguard.core.config import get_settings
from planguard.domain.plans import get_plan_catalog
from planguard.persistence.repos.subscriptions import SubscriptionStateStore
from planguard.services.audit import record_event, request_origin
from planguard.services.billing_events import BillingEventProcessor
from planguard.services.subscriptions import SubscriptionLifecycle


router = APIRouter(
    prefix="/billing",
    tags=["billing"],
    responses={**DEFAULT_ERROR_RESPONSES, **BILLING_ERROR_RESPONSES},
)


class WebhookAck(BaseModel):
    received: bool
    outcome: str


class CheckoutSessionRequest(BaseModel):
    target_tier: str = Field(min_length=1, max_length=32)
    billing_interval: Literal["monthly", "annual"] = "monthly"
    success_url: str = Field(min_length=1, max_length=2048)
    cancel_url: str = Field(min_length=1, max_length=2048)
    customer_email: str | None = Field(default=None, max_length=320)


class CheckoutSessionResponse(BaseModel):
    session_id: str
    checkout_url: str


class PlanListResponse(BaseModel):
    plans: list[dict[str, Any]]


@router.post("/webhook", response_model=SuccessEnvelope[WebhookAck] | WebhookAck)
async def billing_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    processor: BillingEventProcessor = Depends(get_processor),
):
    # Verify against the raw bytes; re-serialized JSON would not match the signature.
    raw_payload = await request.body()
    signature = request.headers.get(get_settings().billing_signature_header)
    event = processor.verify(raw_payload, signature)
    store = SubscriptionStateStore(db)
    result = await processor.process(event, store)

    if result.action:
        await record_event(
            session=db,
            tenant_id=result.tenant_id,
            actor_type="billing_provider",
            event_type=result.action,
            resource_type="subscription",
            resource_id=result.subscription_id,
            origin=request_origin(request),
            metadata={"event_id": result.event_id, "event_type": result.event_type, **result.metadata},
            commit=True,
        )
    return success_response(request=request, data=WebhookAck(received=True, outcome=result.outcome))


@router.post(
    "/checkout-session",
    response_model=SuccessEnvelope[CheckoutSessionResponse] | CheckoutSessionResponse,
    dependencies=[Depends(enforce_api_rate_limit)],
)
async def create_checkout_session(
    request: Request,
    payload: CheckoutSessionRequest,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    # The tenant comes from the caller's identity, never from the body.
    session = await lifecycle.create_checkout(
        external_tenant_id=context.principal.tenant_id,
        target_tier=payload.target_tier,
        billing_interval=payload.billing_interval,
        success_url=payload.success_url,
        cancel_url=payload.cancel_url,
        customer_email=payload.customer_email,
    )
    await record_event(
        session=db,
        tenant_id=context.tenant_pk,
        actor_type="user",
        actor_id=context.principal.user_id,
        event_type="billing.checkout_started",
        outcome="success",
        resource_type="checkout_session",
        resource_id=session.session_id,
        origin=request_origin(request),
        metadata={"target_tier": payload.target_tier, "billing_interval": payload.billing_interval},
        commit=True,
    )
    data = CheckoutSessionResponse(session_id=session.session_id, checkout_url=session.checkout_url)
    return success_response(request=request, data=data)


@router.get("/plans", response_model=SuccessEnvelope[PlanListResponse] | PlanListResponse)
async def list_plans(request: Request, include_enterprise: bool = Query(default=False)):
    catalog = get_plan_catalog()
    data = PlanListResponse(plans=[plan.to_dict() for plan in catalog.list_available(include_enterprise)])
    return success_response(request=request, data=data)
