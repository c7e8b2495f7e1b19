from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.core.errors import DatabaseError
from planguard.domain.models import Tenant
from planguard.domain.state import TENANT_STATUS_PENDING


logger = logging.getLogger(__name__)


async def get_tenant_by_external_id(session: AsyncSession, external_tenant_id: str) -> Tenant | None:
    result = await session.execute(
        select(Tenant).where(Tenant.external_tenant_id == external_tenant_id)
    )
    return result.scalar_one_or_none()


async def provision_placeholder_tenant(
    session: AsyncSession,
    external_tenant_id: str,
    *,
    now: datetime,
) -> Tenant:
    # Race-safe insert: a concurrent delivery may create the same tenant first.
    tenant = Tenant(
        external_tenant_id=external_tenant_id,
        organization_name=f"Pending organization {external_tenant_id}",
        status=TENANT_STATUS_PENDING,
        onboarded_at=now,
    )
    try:
        async with session.begin_nested():
            session.add(tenant)
    except IntegrityError:
        existing = await get_tenant_by_external_id(session, external_tenant_id)
        if existing is None:
            raise DatabaseError("Placeholder tenant insert conflicted but no row was found")
        return existing
    logger.warning(
        "billing_placeholder_tenant_created external_tenant_id=%s tenant_id=%s",
        external_tenant_id,
        tenant.id,
    )
    return tenant


async def ensure_tenant(session: AsyncSession, external_tenant_id: str, *, now: datetime) -> Tenant:
    tenant = await get_tenant_by_external_id(session, external_tenant_id)
    if tenant is not None:
        return tenant
    return await provision_placeholder_tenant(session, external_tenant_id, now=now)
