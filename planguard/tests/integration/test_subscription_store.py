from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from planguard.core.errors import NotFoundError, UseExternalCheckoutError, ValidationError
from planguard.domain.plans import PlanTier
from planguard.domain.state import SubscriptionStatus
from planguard.persistence.db import SessionLocal
from planguard.persistence.repos.subscriptions import SubscriptionStateStore
from planguard.services.subscriptions import SubscriptionLifecycle
from planguard.tests.utils.billing import MutableClock, create_subscription, create_tenant


@pytest.mark.asyncio
async def test_tenant_without_subscription_resolves_to_default() -> None:
    tenant = await create_tenant()

    async with SessionLocal() as session:
        entitlement = await SubscriptionStateStore(session).resolve_entitlement(tenant.id)

    assert entitlement.tier is PlanTier.STARTER
    assert entitlement.status is SubscriptionStatus.NONE
    assert entitlement.subscription_id is None
    assert entitlement.entitled is False


@pytest.mark.asyncio
async def test_latest_entitled_subscription_wins() -> None:
    tenant = await create_tenant()
    now = datetime.now(timezone.utc)
    await create_subscription(tenant.id, tier="Starter", status="Active", start_date=now - timedelta(days=60))
    newer = await create_subscription(
        tenant.id, tier="Business", status="Trial", start_date=now - timedelta(days=1)
    )
    await create_subscription(tenant.id, tier="Enterprise", status="Suspended", start_date=now)

    async with SessionLocal() as session:
        store = SubscriptionStateStore(session)
        current = await store.resolve_current(tenant.id)
        entitlement = await store.resolve_entitlement(tenant.id)

    assert current is not None and current.id == newer.id
    assert entitlement.tier is PlanTier.BUSINESS
    assert entitlement.status is SubscriptionStatus.TRIAL
    assert entitlement.entitled is True


@pytest.mark.asyncio
async def test_suspended_subscription_falls_back_to_default() -> None:
    tenant = await create_tenant()
    await create_subscription(tenant.id, tier="Professional", status="Suspended")

    async with SessionLocal() as session:
        entitlement = await SubscriptionStateStore(session).resolve_entitlement(tenant.id)

    assert entitlement.tier is PlanTier.STARTER
    assert entitlement.entitled is False


@pytest.mark.asyncio
async def test_cancellation_keeps_tier_through_grace_period() -> None:
    tenant = await create_tenant()
    clock = MutableClock()
    subscription = await create_subscription(tenant.id, tier="Business", status="Active", start_date=clock.now)

    async with SessionLocal() as session:
        store = SubscriptionStateStore(session, time_provider=clock)
        async with store.atomic():
            cancelled = await store.cancel_locally(subscription.id)
        assert cancelled.status == SubscriptionStatus.CANCELLED.value

    clock.advance(days=6)
    async with SessionLocal() as session:
        entitlement = await SubscriptionStateStore(session, time_provider=clock).resolve_entitlement(tenant.id)
    assert entitlement.tier is PlanTier.BUSINESS
    assert entitlement.in_grace_period is True
    assert entitlement.entitled is True

    clock.advance(days=2)
    async with SessionLocal() as session:
        entitlement = await SubscriptionStateStore(session, time_provider=clock).resolve_entitlement(tenant.id)
    assert entitlement.tier is PlanTier.STARTER
    assert entitlement.in_grace_period is False


@pytest.mark.asyncio
async def test_recancelling_does_not_extend_grace() -> None:
    tenant = await create_tenant()
    clock = MutableClock()
    subscription = await create_subscription(tenant.id, status="Active", start_date=clock.now)

    async with SessionLocal() as session:
        store = SubscriptionStateStore(session, time_provider=clock)
        async with store.atomic():
            first = await store.apply_cancellation(subscription.id)
        first_grace = first.grace_period_end

        clock.advance(days=3)
        async with store.atomic():
            second = await store.apply_cancellation(subscription.id)

    assert second.grace_period_end == first_grace


@pytest.mark.asyncio
async def test_local_mutations_refuse_provider_managed_rows() -> None:
    tenant = await create_tenant()
    subscription = await create_subscription(
        tenant.id, tier="Professional", status="Active", external_subscription_id="sub_managed"
    )

    async with SessionLocal() as session:
        store = SubscriptionStateStore(session)
        with pytest.raises(UseExternalCheckoutError):
            async with store.atomic():
                await store.change_tier_locally(subscription.id, PlanTier.BUSINESS)
        with pytest.raises(UseExternalCheckoutError):
            async with store.atomic():
                await store.cancel_locally(subscription.id)


@pytest.mark.asyncio
async def test_local_tier_change_on_unmanaged_row() -> None:
    tenant = await create_tenant()
    subscription = await create_subscription(tenant.id, tier="Starter", status="Trial")

    async with SessionLocal() as session:
        store = SubscriptionStateStore(session)
        async with store.atomic():
            changed = await store.change_tier_locally(subscription.id, PlanTier.PROFESSIONAL)

    assert changed.tier == "Professional"
    assert changed.status == "Trial"


@pytest.mark.asyncio
async def test_missing_subscription_is_not_found() -> None:
    async with SessionLocal() as session:
        store = SubscriptionStateStore(session)
        with pytest.raises(NotFoundError):
            async with store.atomic():
                await store.apply_payment_failure("does-not-exist")


@pytest.mark.asyncio
async def test_upsert_from_external_is_idempotent() -> None:
    tenant = await create_tenant()

    async with SessionLocal() as session:
        store = SubscriptionStateStore(session)
        async with store.atomic():
            first = await store.upsert_from_external(
                tenant.id, "sub_idem", PlanTier.PROFESSIONAL, SubscriptionStatus.ACTIVE
            )
        async with store.atomic():
            second = await store.upsert_from_external(tenant.id, "sub_idem", None, None)
        rows = await store.list_for_tenant(tenant.id)

    assert first.id == second.id
    assert second.tier == "Professional"
    assert second.status == "Active"
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_start_trial_sets_expiry() -> None:
    tenant = await create_tenant()
    clock = MutableClock()

    async with SessionLocal() as session:
        store = SubscriptionStateStore(session, time_provider=clock)
        async with store.atomic():
            trial = await store.start_trial(tenant.id, PlanTier.PROFESSIONAL)
        entitlement = await store.resolve_entitlement(tenant.id)

    assert trial.status == "Trial"
    assert entitlement.tier is PlanTier.PROFESSIONAL
    assert entitlement.trial_expiry == clock.now + timedelta(days=30)


@pytest.mark.asyncio
async def test_trial_stops_counting_once_expired() -> None:
    tenant = await create_tenant()
    clock = MutableClock()

    async with SessionLocal() as session:
        store = SubscriptionStateStore(session, time_provider=clock)
        async with store.atomic():
            await store.start_trial(tenant.id, PlanTier.BUSINESS)

    clock.advance(days=29, hours=23)
    async with SessionLocal() as session:
        store = SubscriptionStateStore(session, time_provider=clock)
        assert await store.resolve_current(tenant.id) is not None
        assert (await store.resolve_entitlement(tenant.id)).tier is PlanTier.BUSINESS

    clock.advance(hours=1)
    async with SessionLocal() as session:
        store = SubscriptionStateStore(session, time_provider=clock)
        current = await store.resolve_current(tenant.id)
        entitlement = await store.resolve_entitlement(tenant.id)

    assert current is None
    assert entitlement.tier is PlanTier.STARTER
    assert entitlement.status is SubscriptionStatus.NONE
    assert entitlement.entitled is False


@pytest.mark.asyncio
async def test_expired_trial_does_not_shadow_older_active_row() -> None:
    tenant = await create_tenant()
    clock = MutableClock()
    active = await create_subscription(
        tenant.id, tier="Professional", status="Active", start_date=clock.now - timedelta(days=90)
    )
    async with SessionLocal() as session:
        store = SubscriptionStateStore(session, time_provider=clock)
        async with store.atomic():
            await store.start_trial(tenant.id, PlanTier.BUSINESS)

    clock.advance(days=31)
    async with SessionLocal() as session:
        store = SubscriptionStateStore(session, time_provider=clock)
        current = await store.resolve_current(tenant.id)
        entitlement = await store.resolve_entitlement(tenant.id)

    assert current is not None and current.id == active.id
    assert entitlement.tier is PlanTier.PROFESSIONAL


@pytest.mark.asyncio
async def test_second_trial_is_rejected_after_expiry() -> None:
    tenant = await create_tenant()
    clock = MutableClock()
    lifecycle = SubscriptionLifecycle(time_provider=clock)

    async with SessionLocal() as session:
        await lifecycle.start_trial(session, tenant.id, "Professional")

    clock.advance(days=45)
    async with SessionLocal() as session:
        with pytest.raises(ValidationError) as excinfo:
            await lifecycle.start_trial(session, tenant.id, "Business")

    assert excinfo.value.code == "TRIAL_ALREADY_USED"
