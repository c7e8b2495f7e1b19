from __future__ import annotations

from datetime import datetime
import logging
import math
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from planguard.core.errors import ExternalProviderError, PlanguardError, ValidationError
from planguard.core.timeutils import utc_now
from planguard.domain.models import Subscription
from planguard.domain.plans import DEFAULT_TIER, PlanCatalog, PlanTier, get_plan_catalog, parse_tier
from planguard.persistence.repos.subscriptions import SubscriptionStateStore, TenantEntitlement
from planguard.providers.billing.base import (
    BILLING_INTERVALS,
    BillingProvider,
    CheckoutRequest,
    CheckoutSession,
)
from planguard.providers.billing.factory import get_billing_provider
from planguard.services.resilience import retry_async


logger = logging.getLogger(__name__)

CODE_ENTERPRISE_REQUIRES_SALES = "ENTERPRISE_REQUIRES_SALES"
CODE_NO_ACTIVE_SUBSCRIPTION = "NO_ACTIVE_SUBSCRIPTION"
CODE_ALREADY_ON_PLAN = "ALREADY_ON_PLAN"
CODE_SUBSCRIPTION_EXISTS = "SUBSCRIPTION_EXISTS"
CODE_TRIAL_ALREADY_USED = "TRIAL_ALREADY_USED"
CODE_INVALID_BILLING_INTERVAL = "INVALID_BILLING_INTERVAL"

_ENTERPRISE_MESSAGE = "Enterprise plans require custom pricing. Please contact sales."


def _self_serve_tier(catalog: PlanCatalog, value: PlanTier | str) -> PlanTier:
    # Reject tiers that can only be sold through the sales team.
    tier = parse_tier(value)
    if not catalog.get_definition(tier).self_serve:
        raise ValidationError(_ENTERPRISE_MESSAGE, code=CODE_ENTERPRISE_REQUIRES_SALES, details={"tier": tier.value})
    return tier


def trial_days_remaining(entitlement: TenantEntitlement, now: datetime) -> int | None:
    if entitlement.trial_expiry is None:
        return None
    seconds = (entitlement.trial_expiry - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def describe_entitlement(
    catalog: PlanCatalog,
    entitlement: TenantEntitlement,
    *,
    now: datetime,
) -> dict[str, Any]:
    definition = catalog.get_definition(entitlement.tier)
    plan = definition.to_dict()
    return {
        "tier": entitlement.tier.value,
        "status": entitlement.status.value,
        "subscription_id": entitlement.subscription_id,
        "limits": plan["limits"],
        "features": plan["features"],
        "trial_expiry": entitlement.trial_expiry.isoformat() if entitlement.trial_expiry else None,
        "trial_days_remaining": trial_days_remaining(entitlement, now),
        "grace_period_end": entitlement.grace_period_end.isoformat() if entitlement.grace_period_end else None,
        "in_grace_period": entitlement.in_grace_period,
        "is_entitled": entitlement.entitled,
        "managed_externally": entitlement.has_external_subscription,
    }


class SubscriptionLifecycle:
    """User-initiated subscription operations.

    Provider-managed rows are only touched by webhooks; anything that would
    change billing goes through checkout instead.
    """

    def __init__(
        self,
        *,
        catalog: PlanCatalog | None = None,
        provider: BillingProvider | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._catalog = catalog or get_plan_catalog()
        self._provider = provider
        self._time_provider = time_provider or utc_now

    def now(self) -> datetime:
        return self._time_provider()

    def _store(self, session: AsyncSession) -> SubscriptionStateStore:
        return SubscriptionStateStore(session, time_provider=self._time_provider)

    async def get_status(self, session: AsyncSession, tenant_id: str | None) -> dict[str, Any]:
        entitlement = await self._store(session).resolve_entitlement(tenant_id)
        return describe_entitlement(self._catalog, entitlement, now=self.now())

    async def change_plan(self, session: AsyncSession, tenant_id: str, target_tier: PlanTier | str) -> Subscription:
        tier = _self_serve_tier(self._catalog, target_tier)
        store = self._store(session)
        async with store.atomic():
            current = await store.resolve_current(tenant_id)
            if current is None:
                raise ValidationError("No active subscription to change", code=CODE_NO_ACTIVE_SUBSCRIPTION)
            if current.tier == tier.value:
                raise ValidationError(
                    f"Subscription is already on the {tier.value} plan",
                    code=CODE_ALREADY_ON_PLAN,
                    details={"tier": tier.value},
                )
            previous = current.tier
            subscription = await store.change_tier_locally(current.id, tier)
        logger.info(
            "subscription_plan_changed tenant_id=%s subscription_id=%s from=%s to=%s",
            tenant_id,
            subscription.id,
            previous,
            tier.value,
        )
        return subscription

    async def cancel(self, session: AsyncSession, tenant_id: str) -> Subscription:
        store = self._store(session)
        async with store.atomic():
            current = await store.resolve_current(tenant_id)
            if current is None:
                raise ValidationError("No active subscription to cancel", code=CODE_NO_ACTIVE_SUBSCRIPTION)
            subscription = await store.cancel_locally(current.id)
        logger.info("subscription_cancelled_locally tenant_id=%s subscription_id=%s", tenant_id, subscription.id)
        return subscription

    async def start_trial(
        self,
        session: AsyncSession,
        tenant_id: str,
        tier: PlanTier | str | None = None,
    ) -> Subscription:
        resolved = _self_serve_tier(self._catalog, tier) if tier is not None else None
        store = self._store(session)
        async with store.atomic():
            if await store.resolve_current(tenant_id) is not None:
                raise ValidationError(
                    "Tenant already has an active subscription",
                    code=CODE_SUBSCRIPTION_EXISTS,
                )
            if await store.has_used_trial(tenant_id):
                raise ValidationError("Tenant has already used its trial", code=CODE_TRIAL_ALREADY_USED)
            subscription = await store.start_trial(tenant_id, resolved or DEFAULT_TIER)
        logger.info(
            "subscription_trial_started tenant_id=%s subscription_id=%s tier=%s",
            tenant_id,
            subscription.id,
            subscription.tier,
        )
        return subscription

    async def create_checkout(
        self,
        *,
        external_tenant_id: str,
        target_tier: PlanTier | str,
        billing_interval: str,
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
    ) -> CheckoutSession:
        tier = _self_serve_tier(self._catalog, target_tier)
        if billing_interval not in BILLING_INTERVALS:
            raise ValidationError(
                "billing_interval must be monthly or annual",
                code=CODE_INVALID_BILLING_INTERVAL,
                details={"billing_interval": billing_interval},
            )
        request = CheckoutRequest(
            external_tenant_id=external_tenant_id,
            tier=tier,
            billing_interval=billing_interval,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_email=customer_email,
            metadata={"tenant_id": external_tenant_id, "plan_tier": tier.value},
        )
        provider = self._provider or get_billing_provider()
        try:
            session = await retry_async(lambda: provider.create_checkout_session(request))
        except PlanguardError:
            raise
        except Exception as exc:  # noqa: BLE001 - provider SDK errors are not a stable type
            logger.warning(
                "checkout_session_failed tenant_id=%s tier=%s error=%s",
                external_tenant_id,
                tier.value,
                type(exc).__name__,
            )
            raise ExternalProviderError("Payment provider request failed") from exc
        logger.info(
            "checkout_session_created tenant_id=%s tier=%s interval=%s session_id=%s",
            external_tenant_id,
            tier.value,
            billing_interval,
            session.session_id,
        )
        return session


_lifecycle: SubscriptionLifecycle | None = None


def get_subscription_lifecycle() -> SubscriptionLifecycle:
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = SubscriptionLifecycle()
    return _lifecycle


def reset_subscription_lifecycle() -> None:
    global _lifecycle
    _lifecycle = None
