from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.apps.api.deps import TenantContext, get_db, get_governor, get_tenant_context
from planguard.core.config import get_settings
from planguard.services.audit import record_event, request_origin
from planguard.services.quota import ApiCallAdmission, QuotaGovernor


logger = logging.getLogger(__name__)


def _limit_headers(admission: ApiCallAdmission) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(admission.limit),
        "X-RateLimit-Remaining": str(admission.remaining),
        "X-RateLimit-Reset": str(int(admission.reset_at.timestamp())),
    }


def _throttle_exception(admission: ApiCallAdmission) -> HTTPException:
    # Stable 429 with retry hints in both headers and the error details.
    retry_after_s = admission.rate.retry_after_s or 1
    headers = {**_limit_headers(admission), "Retry-After": str(retry_after_s)}
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": admission.rate.code,
            "message": (
                f"Rate limit of {admission.limit} requests per minute exceeded. Please try again later."
            ),
            "current_tier": admission.rate.current_tier,
            "limit": admission.limit,
            "retry_after_s": retry_after_s,
            "suggested_tier": admission.rate.suggested_tier,
        },
        headers=headers,
    )


async def enforce_api_rate_limit(
    request: Request,
    response: Response,
    context: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
    governor: QuotaGovernor = Depends(get_governor),
) -> None:
    """Apply the tenant's tier-based API rate limit and count the call.

    Tenants without a local record are not limited; they only ever see
    default-plan reads.
    """
    if not get_settings().api_rate_limit_enabled or context.tenant is None:
        return
    tenant_id = context.tenant.id
    try:
        admission = await governor.admit_api_call(db, tenant_id)
    except SQLAlchemyError:
        # Fail open; a limiter outage must not take the API down with it.
        await db.rollback()
        logger.warning("api_rate_limit_degraded tenant_id=%s path=%s", tenant_id, request.url.path, exc_info=True)
        response.headers["X-RateLimit-Status"] = "degraded"
        return

    if not admission.rate.allowed:
        await record_event(
            session=db,
            tenant_id=tenant_id,
            actor_type="user",
            actor_id=context.principal.user_id,
            event_type="security.rate_limited",
            outcome="failure",
            resource_type="rate_limit",
            origin=request_origin(request),
            metadata={
                "path": request.url.path,
                "limit": admission.limit,
                "retry_after_s": admission.rate.retry_after_s,
            },
            error_code=admission.rate.code,
            commit=True,
        )
        raise _throttle_exception(admission)

    if admission.monthly is not None:
        admission.monthly.raise_for_denial()
    response.headers.update(_limit_headers(admission))
