from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.domain.models import AuditEvent


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str | None = None,
    occurred_from: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    stmt = select(AuditEvent).where(AuditEvent.tenant_id == tenant_id)
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
