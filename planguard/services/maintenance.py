from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Literal

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.core.config import get_settings
from planguard.core.timeutils import month_start, utc_now
from planguard.domain.models import AuditEvent, UsageCounter, UsageEvent
from planguard.domain.plans import MONTHLY_KINDS
from planguard.persistence.repos.usage import PERIOD_MONTH


logger = logging.getLogger(__name__)


MaintenanceTask = Literal[
    "prune_usage_events",
    "prune_audit",
    "reconcile_usage",
]


@dataclass(frozen=True)
class CounterDrift:
    tenant_id: str
    resource_kind: str
    period_start: datetime
    counter_value: int
    event_total: int

    @property
    def delta(self) -> int:
        return self.counter_value - self.event_total


async def prune_usage_events(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Raw usage events only need to outlive the rate window and the reconciliation period.
    settings = get_settings()
    cutoff = (now or utc_now()) - timedelta(hours=settings.usage_event_retention_hours)
    result = await session.execute(delete(UsageEvent).where(UsageEvent.occurred_at < cutoff))
    return result.rowcount or 0


async def prune_audit_events(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Remove audit events beyond the retention window.
    settings = get_settings()
    cutoff = (now or utc_now()) - timedelta(days=settings.audit_retention_days)
    result = await session.execute(delete(AuditEvent).where(AuditEvent.occurred_at < cutoff))
    return result.rowcount or 0


async def reconcile_usage_counters(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    repair: bool = False,
) -> list[CounterDrift]:
    """Compare this month's maintained counters with the raw usage log.

    Counters are authoritative for enforcement; the log exists to detect
    drift. With ``repair`` the counters are overwritten with the log totals,
    which the caller commits.
    """
    period_start = month_start(now or utc_now())
    kinds = sorted(kind.value for kind in MONTHLY_KINDS)

    counters = (
        await session.execute(
            select(UsageCounter).where(
                UsageCounter.period_type == PERIOD_MONTH,
                UsageCounter.period_start == period_start,
                UsageCounter.resource_kind.in_(kinds),
            )
        )
    ).scalars().all()
    totals_rows = (
        await session.execute(
            select(UsageEvent.tenant_id, UsageEvent.resource_kind, func.sum(UsageEvent.amount))
            .where(
                UsageEvent.resource_kind.in_(kinds),
                UsageEvent.occurred_at >= period_start,
            )
            .group_by(UsageEvent.tenant_id, UsageEvent.resource_kind)
        )
    ).all()
    totals = {(tenant_id, kind): int(total or 0) for tenant_id, kind, total in totals_rows}
    by_key = {(counter.tenant_id, counter.resource_kind): counter for counter in counters}

    drifts: list[CounterDrift] = []
    for key in sorted(set(by_key) | set(totals)):
        counter = by_key.get(key)
        counter_value = int(counter.count or 0) if counter is not None else 0
        event_total = totals.get(key, 0)
        if counter_value == event_total:
            continue
        drift = CounterDrift(
            tenant_id=key[0],
            resource_kind=key[1],
            period_start=period_start,
            counter_value=counter_value,
            event_total=event_total,
        )
        drifts.append(drift)
        logger.warning(
            "usage_counter_drift tenant_id=%s resource=%s counter=%s events=%s",
            drift.tenant_id,
            drift.resource_kind,
            drift.counter_value,
            drift.event_total,
        )
        if repair:
            if counter is None:
                counter = UsageCounter(
                    tenant_id=drift.tenant_id,
                    resource_kind=drift.resource_kind,
                    period_type=PERIOD_MONTH,
                    period_start=period_start,
                    count=0,
                )
                session.add(counter)
            counter.count = event_total
    if repair and drifts:
        await session.flush()
    return drifts


async def run_maintenance_task(session: AsyncSession, task: MaintenanceTask) -> int:
    # Dispatch a named task and return the number of rows it affected.
    if task == "prune_usage_events":
        return await prune_usage_events(session)
    if task == "prune_audit":
        return await prune_audit_events(session)
    if task == "reconcile_usage":
        return len(await reconcile_usage_counters(session))
    raise ValueError(f"Unknown maintenance task: {task}")
