from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import AsyncContextManager, AsyncIterator, Callable, Protocol

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.core.config import get_settings
from planguard.core.errors import DatabaseError, NotFoundError, UseExternalCheckoutError
from planguard.core.timeutils import ensure_utc, utc_now
from planguard.domain.models import BillingEvent, Subscription, Tenant
from planguard.domain.plans import DEFAULT_TIER, PlanTier, parse_tier
from planguard.domain.state import ENTITLED_STATUSES, SubscriptionStatus, is_entitled
from planguard.persistence.repos import tenants as tenants_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantEntitlement:
    # Resolved commercial state used by quota decisions and status queries.
    tenant_id: str | None
    tier: PlanTier
    status: SubscriptionStatus
    subscription_id: str | None
    trial_expiry: datetime | None
    grace_period_end: datetime | None
    in_grace_period: bool
    has_external_subscription: bool

    @property
    def entitled(self) -> bool:
        return is_entitled(self.status) or self.in_grace_period


def default_entitlement(tenant_id: str | None) -> TenantEntitlement:
    return TenantEntitlement(
        tenant_id=tenant_id,
        tier=DEFAULT_TIER,
        status=SubscriptionStatus.NONE,
        subscription_id=None,
        trial_expiry=None,
        grace_period_end=None,
        in_grace_period=False,
        has_external_subscription=False,
    )


class SubscriptionRepository(Protocol):
    """Narrow write interface the billing event processor depends on."""

    def atomic(self) -> AsyncContextManager[None]:
        ...

    async def is_event_processed(self, external_event_id: str) -> bool:
        ...

    async def record_event_processed(self, external_event_id: str, event_type: str, outcome: str) -> None:
        ...

    async def ensure_tenant(self, external_tenant_id: str) -> Tenant:
        ...

    async def get_by_external_id(self, external_subscription_id: str) -> Subscription | None:
        ...

    async def upsert_from_external(
        self,
        tenant_id: str,
        external_subscription_id: str,
        tier: PlanTier | None,
        status: SubscriptionStatus | None,
        *,
        external_customer_id: str | None = None,
    ) -> Subscription:
        ...

    async def apply_cancellation(self, subscription_id: str) -> Subscription:
        ...

    async def apply_payment_failure(self, subscription_id: str) -> Subscription:
        ...

    async def apply_invoice_paid(self, subscription_id: str) -> Subscription:
        ...


class SubscriptionStateStore:
    def __init__(
        self,
        session: AsyncSession,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # Allow time injection for deterministic grace and trial tests.
        self._session = session
        self._time_provider = time_provider or utc_now

    @property
    def session(self) -> AsyncSession:
        return self._session

    def now(self) -> datetime:
        return self._time_provider()

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        # Use a nested transaction when prior reads have already opened one.
        in_transaction = self._session.in_transaction()
        tx_context = self._session.begin_nested() if in_transaction else self._session.begin()
        async with tx_context:
            yield
        if in_transaction:
            await self._session.commit()

    async def resolve_current(self, tenant_id: str) -> Subscription | None:
        # Greatest start_date among Active/Trial rows wins; expired trials never qualify.
        now = self.now()
        result = await self._session.execute(
            select(Subscription)
            .where(
                Subscription.tenant_id == tenant_id,
                Subscription.status.in_([status.value for status in ENTITLED_STATUSES]),
            )
            .order_by(Subscription.start_date.desc(), Subscription.created_at.desc())
        )
        for row in result.scalars():
            if not _trial_expired(row, now):
                return row
        return None

    async def resolve_entitlement(self, tenant_id: str | None) -> TenantEntitlement:
        if tenant_id is None:
            return default_entitlement(None)
        now = self.now()
        # Fetch current and in-grace candidates in one round trip.
        result = await self._session.execute(
            select(Subscription).where(
                Subscription.tenant_id == tenant_id,
                or_(
                    Subscription.status.in_([status.value for status in ENTITLED_STATUSES]),
                    and_(
                        Subscription.status == SubscriptionStatus.CANCELLED.value,
                        Subscription.grace_period_end > now,
                    ),
                ),
            )
        )
        rows = list(result.scalars().all())
        current = _pick_latest(
            [
                row
                for row in rows
                if row.status in {status.value for status in ENTITLED_STATUSES} and not _trial_expired(row, now)
            ],
            key=lambda row: ensure_utc(row.start_date),
        )
        if current is not None:
            return _entitlement_from_row(tenant_id, current, in_grace=False)
        # An expired trial only keeps its tier while an explicit grace window is open.
        in_grace = _pick_latest(
            [
                row
                for row in rows
                if row.status in {SubscriptionStatus.CANCELLED.value, SubscriptionStatus.TRIAL.value}
                and row.grace_period_end is not None
            ],
            key=lambda row: ensure_utc(row.grace_period_end),
        )
        # SQLite compares naive strings; re-check the grace boundary in Python.
        if in_grace is not None and ensure_utc(in_grace.grace_period_end) > now:
            return _entitlement_from_row(tenant_id, in_grace, in_grace=True)
        return default_entitlement(tenant_id)

    async def has_used_trial(self, tenant_id: str) -> bool:
        result = await self._session.execute(
            select(Subscription.id).where(
                Subscription.tenant_id == tenant_id,
                Subscription.trial_expiry.is_not(None),
            )
        )
        return result.first() is not None

    async def get(self, subscription_id: str, *, for_update: bool = False) -> Subscription | None:
        stmt = select(Subscription).where(Subscription.id == subscription_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_subscription_id: str) -> Subscription | None:
        result = await self._session.execute(
            select(Subscription)
            .where(Subscription.external_subscription_id == external_subscription_id)
            .with_for_update()
        )
        return result.scalars().first()

    async def list_for_tenant(self, tenant_id: str) -> list[Subscription]:
        result = await self._session.execute(
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .order_by(Subscription.start_date.desc())
        )
        return list(result.scalars().all())

    async def ensure_tenant(self, external_tenant_id: str) -> Tenant:
        return await tenants_repo.ensure_tenant(self._session, external_tenant_id, now=self.now())

    async def upsert_from_external(
        self,
        tenant_id: str,
        external_subscription_id: str,
        tier: PlanTier | None,
        status: SubscriptionStatus | None,
        *,
        external_customer_id: str | None = None,
    ) -> Subscription:
        # Find-or-create by (tenant, provider subscription); re-running is a no-op.
        row = await self._load_external_for_update(tenant_id, external_subscription_id)
        if row is None:
            row = await self._insert_external(
                tenant_id,
                external_subscription_id,
                tier=tier or DEFAULT_TIER,
                status=status or SubscriptionStatus.NONE,
                external_customer_id=external_customer_id,
            )
            if row is not None:
                return row
            # Lost an insert race; the winner's row is now visible.
            row = await self._load_external_for_update(tenant_id, external_subscription_id)
            if row is None:
                raise DatabaseError("Subscription insert conflicted but no row was found")

        if tier is not None and row.tier != tier.value:
            logger.info(
                "subscription_tier_changed subscription_id=%s from=%s to=%s",
                row.id,
                row.tier,
                tier.value,
            )
            row.tier = tier.value
        if status is not None:
            self._set_status(row, status)
        if external_customer_id and row.external_customer_id != external_customer_id:
            row.external_customer_id = external_customer_id
        await self._session.flush()
        return row

    async def apply_cancellation(self, subscription_id: str) -> Subscription:
        row = await self._require_for_update(subscription_id)
        self._set_status(row, SubscriptionStatus.CANCELLED)
        await self._session.flush()
        return row

    async def apply_payment_failure(self, subscription_id: str) -> Subscription:
        row = await self._require_for_update(subscription_id)
        if row.status == SubscriptionStatus.CANCELLED.value:
            logger.warning("subscription_payment_failure_ignored subscription_id=%s status=%s", row.id, row.status)
            return row
        self._set_status(row, SubscriptionStatus.SUSPENDED)
        await self._session.flush()
        return row

    async def apply_invoice_paid(self, subscription_id: str) -> Subscription:
        row = await self._require_for_update(subscription_id)
        if row.status == SubscriptionStatus.CANCELLED.value:
            # Only the provider's own subscription status may revive a cancelled row.
            logger.warning("subscription_invoice_paid_ignored subscription_id=%s status=%s", row.id, row.status)
            return row
        self._set_status(row, SubscriptionStatus.ACTIVE)
        await self._session.flush()
        return row

    async def change_tier_locally(self, subscription_id: str, new_tier: PlanTier) -> Subscription:
        row = await self._require_for_update(subscription_id)
        if row.external_subscription_id:
            raise UseExternalCheckoutError(
                "Please use the checkout process to change your plan. "
                "Plan changes for paid subscriptions are managed by the payment provider.",
                details={"subscription_id": row.id},
            )
        row.tier = new_tier.value
        await self._session.flush()
        return row

    async def cancel_locally(self, subscription_id: str) -> Subscription:
        row = await self._require_for_update(subscription_id)
        if row.external_subscription_id:
            raise UseExternalCheckoutError(
                "Please use the billing portal to cancel a paid subscription.",
                details={"subscription_id": row.id},
            )
        return await self.apply_cancellation(subscription_id)

    async def start_trial(self, tenant_id: str, tier: PlanTier = DEFAULT_TIER) -> Subscription:
        now = self.now()
        row = Subscription(
            tenant_id=tenant_id,
            tier=tier.value,
            status=SubscriptionStatus.TRIAL.value,
            start_date=now,
            trial_expiry=now + timedelta(days=get_settings().trial_period_days),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def is_event_processed(self, external_event_id: str) -> bool:
        result = await self._session.execute(
            select(BillingEvent.id).where(BillingEvent.external_event_id == external_event_id)
        )
        return result.first() is not None

    async def record_event_processed(self, external_event_id: str, event_type: str, outcome: str) -> None:
        # Flush now so a concurrent duplicate surfaces as IntegrityError inside the transaction.
        self._session.add(
            BillingEvent(
                external_event_id=external_event_id,
                event_type=event_type,
                outcome=outcome,
                processed_at=self.now(),
            )
        )
        await self._session.flush()

    def _set_status(self, row: Subscription, status: SubscriptionStatus) -> None:
        previous = row.status
        if previous == status.value:
            return
        now = self.now()
        row.status = status.value
        if status == SubscriptionStatus.CANCELLED:
            row.end_date = now
            row.grace_period_end = now + timedelta(days=get_settings().grace_period_days)
        elif previous == SubscriptionStatus.CANCELLED.value:
            # Provider reactivated the subscription; prior cancellation no longer applies.
            row.end_date = None
            row.grace_period_end = None
        logger.info(
            "subscription_status_changed subscription_id=%s from=%s to=%s",
            row.id,
            previous,
            status.value,
        )

    async def _require_for_update(self, subscription_id: str) -> Subscription:
        row = await self.get(subscription_id, for_update=True)
        if row is None:
            raise NotFoundError("Subscription not found", details={"subscription_id": subscription_id})
        return row

    async def _load_external_for_update(self, tenant_id: str, external_subscription_id: str) -> Subscription | None:
        result = await self._session.execute(
            select(Subscription)
            .where(
                Subscription.tenant_id == tenant_id,
                Subscription.external_subscription_id == external_subscription_id,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _insert_external(
        self,
        tenant_id: str,
        external_subscription_id: str,
        *,
        tier: PlanTier,
        status: SubscriptionStatus,
        external_customer_id: str | None,
    ) -> Subscription | None:
        now = self.now()
        row = Subscription(
            tenant_id=tenant_id,
            tier=tier.value,
            status=status.value,
            start_date=now,
            external_subscription_id=external_subscription_id,
            external_customer_id=external_customer_id,
        )
        if status == SubscriptionStatus.CANCELLED:
            row.end_date = now
            row.grace_period_end = now + timedelta(days=get_settings().grace_period_days)
        try:
            async with self._session.begin_nested():
                self._session.add(row)
        except IntegrityError:
            return None
        logger.info(
            "subscription_created subscription_id=%s tenant_id=%s tier=%s status=%s",
            row.id,
            tenant_id,
            row.tier,
            row.status,
        )
        return row


def _pick_latest(rows: list[Subscription], *, key: Callable[[Subscription], datetime | None]) -> Subscription | None:
    best: Subscription | None = None
    best_key: datetime | None = None
    for row in rows:
        value = key(row)
        if value is None:
            continue
        if best_key is None or value > best_key:
            best, best_key = row, value
    return best


def _entitlement_from_row(tenant_id: str, row: Subscription, *, in_grace: bool) -> TenantEntitlement:
    return TenantEntitlement(
        tenant_id=tenant_id,
        tier=parse_tier(row.tier),
        status=SubscriptionStatus(row.status),
        subscription_id=row.id,
        trial_expiry=ensure_utc(row.trial_expiry),
        grace_period_end=ensure_utc(row.grace_period_end),
        in_grace_period=in_grace,
        has_external_subscription=bool(row.external_subscription_id),
    )


def _trial_expired(row: Subscription, now: datetime) -> bool:
    if row.status != SubscriptionStatus.TRIAL.value or row.trial_expiry is None:
        return False
    return ensure_utc(row.trial_expiry) <= now
