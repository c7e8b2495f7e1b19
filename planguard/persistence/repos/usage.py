from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.core.config import get_settings
from planguard.domain.models import AiUsageLedger, UsageCounter, UsageEvent


PERIOD_MONTH = "month"
PERIOD_LIFETIME = "lifetime"

# Fixed period_start for lifetime counters so the composite key stays stable.
LIFETIME_START = datetime(1970, 1, 1, tzinfo=timezone.utc)


async def get_counter_value(
    session: AsyncSession,
    tenant_id: str,
    resource_kind: str,
    period_type: str,
    period_start: datetime,
) -> int:
    result = await session.execute(
        select(UsageCounter.count).where(
            UsageCounter.tenant_id == tenant_id,
            UsageCounter.resource_kind == resource_kind,
            UsageCounter.period_type == period_type,
            UsageCounter.period_start == period_start,
        )
    )
    value = result.scalar_one_or_none()
    return int(value or 0)


async def get_or_create_counter(
    session: AsyncSession,
    tenant_id: str,
    resource_kind: str,
    period_type: str,
    period_start: datetime,
) -> UsageCounter:
    # Lock usage counters to ensure atomic increments.
    stmt = (
        select(UsageCounter)
        .where(
            UsageCounter.tenant_id == tenant_id,
            UsageCounter.resource_kind == resource_kind,
            UsageCounter.period_type == period_type,
            UsageCounter.period_start == period_start,
        )
        .with_for_update()
    )
    result = await session.execute(stmt)
    counter = result.scalar_one_or_none()
    if counter is None:
        counter = UsageCounter(
            tenant_id=tenant_id,
            resource_kind=resource_kind,
            period_type=period_type,
            period_start=period_start,
            count=0,
        )
        session.add(counter)
    return counter


def add_usage_event(
    session: AsyncSession,
    tenant_id: str,
    resource_kind: str,
    *,
    amount: int,
    occurred_at: datetime,
) -> UsageEvent:
    event = UsageEvent(
        tenant_id=tenant_id,
        resource_kind=resource_kind,
        amount=amount,
        occurred_at=occurred_at,
    )
    session.add(event)
    return event


async def window_stats(
    session: AsyncSession,
    tenant_id: str,
    resource_kind: str,
    *,
    since: datetime,
) -> tuple[int, datetime | None]:
    # Count events strictly inside the trailing window plus the oldest timestamp.
    result = await session.execute(
        select(func.count(UsageEvent.id), func.min(UsageEvent.occurred_at)).where(
            UsageEvent.tenant_id == tenant_id,
            UsageEvent.resource_kind == resource_kind,
            UsageEvent.occurred_at > since,
        )
    )
    count, oldest = result.one()
    return int(count or 0), oldest


async def get_ai_ledger(session: AsyncSession, tenant_id: str, *, for_update: bool = False) -> AiUsageLedger | None:
    stmt = select(AiUsageLedger).where(AiUsageLedger.tenant_id == tenant_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_or_create_ai_ledger(session: AsyncSession, tenant_id: str, *, now: datetime) -> AiUsageLedger:
    ledger = await get_ai_ledger(session, tenant_id, for_update=True)
    if ledger is None:
        ledger = new_ai_ledger(tenant_id, now=now)
        session.add(ledger)
    return ledger


def new_ai_ledger(tenant_id: str, *, now: datetime) -> AiUsageLedger:
    settings = get_settings()
    return AiUsageLedger(
        tenant_id=tenant_id,
        max_requests_per_hour=settings.default_max_requests_per_hour,
        max_tokens_per_request=settings.default_max_tokens_per_request,
        monthly_token_budget=settings.default_monthly_token_budget,
        tokens_used_this_month=0,
        last_monthly_reset=now,
    )
