from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.apps.api.deps import TenantContext, get_db, get_governor, require_tenant
from planguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES, QUOTA_ERROR_RESPONSES
from planguard.apps.api.response import SuccessEnvelope, success_response
from planguard.core.errors import ValidationError
from planguard.domain.plans import FEATURE_KEYS, ResourceKind
from planguard.services.audit import record_event, request_origin
from planguard.services.quota import QuotaGovernor


router = APIRouter(
    prefix="/usage",
    tags=["usage"],
    responses={**DEFAULT_ERROR_RESPONSES, **QUOTA_ERROR_RESPONSES},
)


class UsageSummaryResponse(BaseModel):
    tier: str
    status: str
    resources: dict[str, dict[str, Any]]
    assistant: dict[str, Any]


class AssistantSettingsRequest(BaseModel):
    max_requests_per_hour: int | None = Field(default=None, ge=1, le=100_000)
    max_tokens_per_request: int | None = Field(default=None, ge=1, le=1_000_000)
    # Zero disables the monthly budget.
    monthly_token_budget: int | None = Field(default=None, ge=0)


class AssistantSettingsResponse(BaseModel):
    max_requests_per_hour: int
    max_tokens_per_request: int
    monthly_token_budget: int
    tokens_used_this_month: int


class QuotaDecisionResponse(BaseModel):
    allowed: bool
    kind: str
    resource: str
    current_tier: str
    usage: int | None = None
    limit: int | str | None = None
    reason: str | None = None
    code: str | None = None
    suggested_tier: str | None = None
    contact_sales: bool = False
    retry_after_s: int | None = None


_DECISION_MODEL = SuccessEnvelope[QuotaDecisionResponse] | QuotaDecisionResponse


@router.get("", response_model=SuccessEnvelope[UsageSummaryResponse] | UsageSummaryResponse)
async def get_usage(
    request: Request,
    context: TenantContext = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    governor: QuotaGovernor = Depends(get_governor),
):
    summary = await governor.usage_summary(db, context.tenant.id)
    return success_response(request=request, data=UsageSummaryResponse(**summary))


@router.put(
    "/assistant-settings",
    response_model=SuccessEnvelope[AssistantSettingsResponse] | AssistantSettingsResponse,
)
async def update_assistant_settings(
    request: Request,
    payload: AssistantSettingsRequest,
    context: TenantContext = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    governor: QuotaGovernor = Depends(get_governor),
):
    changes = payload.model_dump(exclude_none=True)
    ledger = await governor.update_assistant_settings(db, context.tenant.id, **changes)
    await record_event(
        session=db,
        tenant_id=context.tenant.id,
        actor_type="user",
        actor_id=context.principal.user_id,
        event_type="usage.assistant_settings_updated",
        outcome="success",
        resource_type="ai_usage_ledger",
        resource_id=context.tenant.id,
        origin=request_origin(request),
        metadata=changes,
        commit=True,
    )
    data = AssistantSettingsResponse(
        max_requests_per_hour=ledger.max_requests_per_hour,
        max_tokens_per_request=ledger.max_tokens_per_request,
        monthly_token_budget=ledger.monthly_token_budget,
        tokens_used_this_month=ledger.tokens_used_this_month,
    )
    return success_response(request=request, data=data)


@router.get("/check/{resource}", response_model=_DECISION_MODEL)
async def check_resource(
    request: Request,
    resource: ResourceKind,
    current_count: int | None = Query(default=None, ge=0),
    context: TenantContext = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    governor: QuotaGovernor = Depends(get_governor),
):
    # Report the decision without enforcing it so callers can pre-check before prompting users.
    if resource == ResourceKind.AI_TOKENS:
        decision = await governor.check_token_budget(db, context.tenant.id)
    else:
        decision = await governor.check_ceiling(db, context.tenant.id, resource, current_count)
    return success_response(request=request, data=QuotaDecisionResponse(**decision.to_dict()))


@router.get("/features/{flag}", response_model=_DECISION_MODEL)
async def check_feature(
    request: Request,
    flag: str,
    context: TenantContext = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    governor: QuotaGovernor = Depends(get_governor),
):
    if flag not in FEATURE_KEYS:
        raise ValidationError("Unknown feature flag", code="UNKNOWN_FEATURE", details={"feature": flag})
    decision = await governor.check_feature_access(db, context.tenant.id, flag)
    return success_response(request=request, data=QuotaDecisionResponse(**decision.to_dict()))
