from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.apps.api.deps import TenantContext, get_db, get_governor, require_feature, require_tenant
from planguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES, QUOTA_ERROR_RESPONSES
from planguard.apps.api.response import SuccessEnvelope, success_response
from planguard.core.timeutils import ensure_utc
from planguard.domain.plans import FEATURE_BASIC_AUDIT_LOGS, LIMIT_AUDIT_RETENTION_DAYS, is_unlimited
from planguard.persistence.repos import audit as audit_repo
from planguard.services.quota import QuotaGovernor


router = APIRouter(
    prefix="/audit",
    tags=["audit"],
    responses={**DEFAULT_ERROR_RESPONSES, **QUOTA_ERROR_RESPONSES},
)


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    actor_type: str
    actor_id: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    request_id: str | None
    metadata: dict[str, Any] | None
    error_code: str | None


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    retention_days: int | str
    next_offset: int | None


@router.get(
    "/events",
    response_model=SuccessEnvelope[AuditEventsPage] | AuditEventsPage,
    dependencies=[Depends(require_feature(FEATURE_BASIC_AUDIT_LOGS))],
)
async def list_audit_events(
    request: Request,
    event_type: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    context: TenantContext = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    governor: QuotaGovernor = Depends(get_governor),
):
    # History visible to a tenant is bounded by its plan's audit retention.
    _entitlement, definition = await governor.resolve(db, context.tenant.id)
    retention = definition.limit_for(LIMIT_AUDIT_RETENTION_DAYS)
    since = ensure_utc(occurred_from)
    if not is_unlimited(retention):
        horizon = governor.now() - timedelta(days=int(retention))
        since = horizon if since is None else max(since, horizon)

    events = await audit_repo.list_events(
        db,
        tenant_id=context.tenant.id,
        event_type=event_type,
        occurred_from=since,
        offset=offset,
        limit=limit + 1,
    )
    items = [
        AuditEventResponse(
            id=event.id,
            occurred_at=ensure_utc(event.occurred_at).isoformat(),
            actor_type=event.actor_type,
            actor_id=event.actor_id,
            event_type=event.event_type,
            outcome=event.outcome,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            request_id=event.request_id,
            metadata=event.metadata_json,
            error_code=event.error_code,
        )
        for event in events[:limit]
    ]
    page = AuditEventsPage(
        items=items,
        retention_days="unlimited" if is_unlimited(retention) else int(retention),
        next_offset=offset + limit if len(events) > limit else None,
    )
    return success_response(request=request, data=page)
