from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
import logging
import math
from typing import Any, AsyncIterator, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from planguard.core.config import get_settings
from planguard.core.errors import FeatureNotAvailableError, QuotaExceededError, ValidationError
from planguard.core.timeutils import ensure_utc, month_start, same_month, utc_now
from planguard.domain.models import AiUsageLedger
from planguard.domain.plans import (
    CEILING_KINDS,
    LIMIT_API_REQUESTS_PER_MINUTE,
    MONTHLY_KINDS,
    Limit,
    PlanCatalog,
    PlanDefinition,
    ResourceKind,
    get_plan_catalog,
    is_unlimited,
    render_limit,
)
from planguard.persistence.repos import usage as usage_repo
from planguard.persistence.repos.subscriptions import SubscriptionStateStore, TenantEntitlement


logger = logging.getLogger(__name__)

KIND_CEILING = "ceiling"
KIND_RATE_LIMIT = "rate_limit"
KIND_TOKEN_BUDGET = "token_budget"
KIND_FEATURE = "feature"

CODE_RATE_LIMITED = "RATE_LIMITED"
CODE_API_RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
CODE_TOKEN_BUDGET_EXCEEDED = "TOKEN_BUDGET_EXCEEDED"
CODE_TOKENS_PER_REQUEST_EXCEEDED = "TOKENS_PER_REQUEST_EXCEEDED"

_LABELS = {
    ResourceKind.CLIENT_SPACES: "Client spaces",
    ResourceKind.EXTERNAL_USERS: "External users",
    ResourceKind.LIBRARIES: "Libraries",
    ResourceKind.ADMINS: "Administrators",
    ResourceKind.API_CALLS: "Monthly API calls",
    ResourceKind.AI_MESSAGES: "Monthly assistant messages",
    ResourceKind.AI_TOKENS: "Monthly assistant tokens",
}


@dataclass(frozen=True)
class QuotaDecision:
    # Allow/deny outcome with everything a client needs to explain a denial.
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

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def raise_for_denial(self) -> None:
        if self.allowed:
            return
        details = {
            "resource": self.resource,
            "current_tier": self.current_tier,
            "usage": self.usage,
            "limit": self.limit,
            "suggested_tier": self.suggested_tier,
            "contact_sales": self.contact_sales,
        }
        if self.kind == KIND_FEATURE:
            raise FeatureNotAvailableError(
                self.reason or "Feature not available on the current plan",
                feature=self.resource,
                required_tier=self.suggested_tier,
                contact_sales=self.contact_sales,
                details=details,
            )
        if self.retry_after_s is not None:
            details["retry_after_s"] = self.retry_after_s
        raise QuotaExceededError(
            self.reason or "Quota exceeded",
            code=self.code,
            limit=self.limit,
            usage=self.usage,
            suggested_tier=self.suggested_tier,
            contact_sales=self.contact_sales,
            retry_after_s=self.retry_after_s,
            details=details,
        )


@dataclass(frozen=True)
class ApiCallAdmission:
    # Outcome of admitting one API request: sliding-window rate plus the monthly call ceiling.
    rate: QuotaDecision
    monthly: QuotaDecision | None
    limit: int | str
    remaining: int
    reset_at: datetime

    @property
    def allowed(self) -> bool:
        return self.rate.allowed and (self.monthly is None or self.monthly.allowed)


def _upgrade_hint(catalog: PlanCatalog, definition: PlanDefinition) -> tuple[str | None, bool, str]:
    # Next tier strictly above; non self-serve tiers turn into "contact sales".
    target, contact_sales = catalog.upgrade_target(catalog.next_tier(definition.tier))
    if target is not None:
        return target.value, False, f"Upgrade to {target.value} to raise this limit."
    if contact_sales:
        return None, True, "Please contact sales to upgrade."
    return None, False, "You are on the highest plan."


def evaluate_ceiling(
    catalog: PlanCatalog,
    definition: PlanDefinition,
    resource_kind: ResourceKind,
    current_count: int,
) -> QuotaDecision:
    limit: Limit = definition.limit_for(resource_kind)
    rendered = render_limit(limit)
    if is_unlimited(limit) or current_count < int(limit):
        return QuotaDecision(
            allowed=True,
            kind=KIND_CEILING,
            resource=resource_kind.value,
            current_tier=definition.tier.value,
            usage=current_count,
            limit=rendered,
        )
    suggested, contact_sales, hint = _upgrade_hint(catalog, definition)
    label = _LABELS.get(resource_kind, resource_kind.value)
    return QuotaDecision(
        allowed=False,
        kind=KIND_CEILING,
        resource=resource_kind.value,
        current_tier=definition.tier.value,
        usage=current_count,
        limit=rendered,
        reason=f"{label} limit reached for the {definition.tier.value} plan ({current_count}/{rendered}). {hint}",
        code="QUOTA_EXCEEDED",
        suggested_tier=suggested,
        contact_sales=contact_sales,
    )


def _describe_window(window: timedelta) -> str:
    seconds = int(window.total_seconds())
    if seconds == 60:
        return "minute"
    if seconds % 60 == 0:
        return f"{seconds // 60} minutes"
    return f"{seconds} seconds"


def evaluate_rate_limit(
    catalog: PlanCatalog,
    definition: PlanDefinition,
    *,
    count: int,
    limit: int,
    oldest: datetime | None,
    now: datetime,
    window: timedelta,
    resource: ResourceKind = ResourceKind.AI_MESSAGES,
    code: str = CODE_RATE_LIMITED,
) -> QuotaDecision:
    if count < limit:
        return QuotaDecision(
            allowed=True,
            kind=KIND_RATE_LIMIT,
            resource=resource.value,
            current_tier=definition.tier.value,
            usage=count,
            limit=limit,
        )
    retry_after_s = 1
    if oldest is not None:
        # The window frees a slot once its oldest event ages out.
        remaining = (ensure_utc(oldest) + window - now).total_seconds()
        retry_after_s = max(1, math.ceil(remaining))
    suggested, contact_sales, _hint = _upgrade_hint(catalog, definition)
    return QuotaDecision(
        allowed=False,
        kind=KIND_RATE_LIMIT,
        resource=resource.value,
        current_tier=definition.tier.value,
        usage=count,
        limit=limit,
        reason=f"Rate limit exceeded: {count}/{limit} requests in the last {_describe_window(window)}.",
        code=code,
        suggested_tier=suggested,
        contact_sales=contact_sales,
        retry_after_s=retry_after_s,
    )


def evaluate_token_budget(
    catalog: PlanCatalog,
    definition: PlanDefinition,
    *,
    used: int,
    budget: int,
    requested: int,
    max_per_request: int,
) -> QuotaDecision:
    suggested, contact_sales, _hint = _upgrade_hint(catalog, definition)
    if max_per_request > 0 and requested > max_per_request:
        return QuotaDecision(
            allowed=False,
            kind=KIND_TOKEN_BUDGET,
            resource=ResourceKind.AI_TOKENS.value,
            current_tier=definition.tier.value,
            usage=requested,
            limit=max_per_request,
            reason=f"Requested {requested} tokens exceeds the per-request maximum of {max_per_request}.",
            code=CODE_TOKENS_PER_REQUEST_EXCEEDED,
            suggested_tier=suggested,
            contact_sales=contact_sales,
        )
    # Zero budget means the monthly budget is disabled.
    if budget <= 0 or used < budget:
        return QuotaDecision(
            allowed=True,
            kind=KIND_TOKEN_BUDGET,
            resource=ResourceKind.AI_TOKENS.value,
            current_tier=definition.tier.value,
            usage=used,
            limit=budget if budget > 0 else "unlimited",
        )
    return QuotaDecision(
        allowed=False,
        kind=KIND_TOKEN_BUDGET,
        resource=ResourceKind.AI_TOKENS.value,
        current_tier=definition.tier.value,
        usage=used,
        limit=budget,
        reason=f"Monthly token budget exhausted ({used}/{budget}).",
        code=CODE_TOKEN_BUDGET_EXCEEDED,
        suggested_tier=suggested,
        contact_sales=contact_sales,
    )


def evaluate_feature(catalog: PlanCatalog, definition: PlanDefinition, flag: str) -> QuotaDecision:
    if definition.has_feature(flag):
        return QuotaDecision(
            allowed=True,
            kind=KIND_FEATURE,
            resource=flag,
            current_tier=definition.tier.value,
        )
    minimum = catalog.minimum_tier_for(flag)
    if minimum is None:
        return QuotaDecision(
            allowed=False,
            kind=KIND_FEATURE,
            resource=flag,
            current_tier=definition.tier.value,
            reason=f"Feature {flag} is not offered on any plan.",
            code="FEATURE_NOT_AVAILABLE",
        )
    suggested, contact_sales = catalog.upgrade_target(minimum)
    hint = "Please contact sales to enable it." if contact_sales else f"Upgrade to {minimum.value} to enable it."
    return QuotaDecision(
        allowed=False,
        kind=KIND_FEATURE,
        resource=flag,
        current_tier=definition.tier.value,
        reason=f"Feature {flag} requires the {minimum.value} plan. {hint}",
        code="FEATURE_NOT_AVAILABLE",
        suggested_tier=suggested.value if suggested is not None else None,
        contact_sales=contact_sales,
    )


def apply_monthly_reset(ledger: AiUsageLedger, now: datetime) -> bool:
    # Lazy rollover: no scheduler is needed for the counter to be correct.
    last_reset = ensure_utc(ledger.last_monthly_reset)
    if last_reset is not None and same_month(last_reset, now):
        return False
    ledger.tokens_used_this_month = 0
    ledger.last_monthly_reset = now
    return True


class QuotaGovernor:
    def __init__(
        self,
        *,
        catalog: PlanCatalog | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # Allow time injection for deterministic window and rollover tests.
        self._catalog = catalog or get_plan_catalog()
        self._time_provider = time_provider or utc_now

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog

    def now(self) -> datetime:
        return self._time_provider()

    async def resolve(self, session: AsyncSession, tenant_id: str) -> tuple[TenantEntitlement, PlanDefinition]:
        store = SubscriptionStateStore(session, time_provider=self._time_provider)
        entitlement = await store.resolve_entitlement(tenant_id)
        return entitlement, self._catalog.get_definition(entitlement.tier)

    async def check_ceiling(
        self,
        session: AsyncSession,
        tenant_id: str,
        resource_kind: ResourceKind,
        current_count: int | None = None,
    ) -> QuotaDecision:
        _entitlement, definition = await self.resolve(session, tenant_id)
        if current_count is None:
            current_count = await self._maintained_count(session, tenant_id, resource_kind)
        return evaluate_ceiling(self._catalog, definition, resource_kind, current_count)

    async def verify_ceiling_after_insert(
        self,
        session: AsyncSession,
        tenant_id: str,
        resource_kind: ResourceKind,
        count_after_insert: int,
    ) -> None:
        """Raise when an insert pushed the tenant over its ceiling.

        Call inside the transaction that created the artifact; the raised
        error rolls that transaction back, so two concurrent creates cannot
        both land past the limit.
        """
        decision = await self.check_ceiling(session, tenant_id, resource_kind, count_after_insert - 1)
        if not decision.allowed:
            logger.info(
                "quota_ceiling_overflow_rolled_back tenant_id=%s resource=%s count=%s",
                tenant_id,
                resource_kind.value,
                count_after_insert,
            )
        decision.raise_for_denial()

    async def check_rate_limit(self, session: AsyncSession, tenant_id: str) -> QuotaDecision:
        now = self.now()
        window = timedelta(minutes=get_settings().rate_limit_window_minutes)
        _entitlement, definition = await self.resolve(session, tenant_id)
        ledger = await usage_repo.get_ai_ledger(session, tenant_id)
        limit = ledger.max_requests_per_hour if ledger else get_settings().default_max_requests_per_hour
        count, oldest = await usage_repo.window_stats(
            session, tenant_id, ResourceKind.AI_MESSAGES.value, since=now - window
        )
        return evaluate_rate_limit(
            self._catalog,
            definition,
            count=count,
            limit=limit,
            oldest=oldest,
            now=now,
            window=window,
        )

    async def admit_api_call(self, session: AsyncSession, tenant_id: str) -> ApiCallAdmission:
        """Check the tier's per-minute API rate and monthly call ceiling, then count the call.

        The monthly counter row is locked first so concurrent requests for the
        same tenant are admitted one at a time. Nothing is recorded on denial.
        """
        now = self.now()
        window = timedelta(seconds=get_settings().api_rate_limit_window_seconds)
        _entitlement, definition = await self.resolve(session, tenant_id)
        limit = definition.limit_for(LIMIT_API_REQUESTS_PER_MINUTE)
        async with _transaction(session):
            counter = await usage_repo.get_or_create_counter(
                session,
                tenant_id,
                ResourceKind.API_CALLS.value,
                usage_repo.PERIOD_MONTH,
                month_start(now),
            )
            count, oldest = await usage_repo.window_stats(
                session, tenant_id, ResourceKind.API_CALLS.value, since=now - window
            )
            if is_unlimited(limit):
                rate = QuotaDecision(
                    allowed=True,
                    kind=KIND_RATE_LIMIT,
                    resource=ResourceKind.API_CALLS.value,
                    current_tier=definition.tier.value,
                    usage=count,
                    limit=render_limit(limit),
                )
            else:
                rate = evaluate_rate_limit(
                    self._catalog,
                    definition,
                    count=count,
                    limit=int(limit),
                    oldest=oldest,
                    now=now,
                    window=window,
                    resource=ResourceKind.API_CALLS,
                    code=CODE_API_RATE_LIMIT_EXCEEDED,
                )
            monthly = None
            recorded = False
            if rate.allowed:
                monthly = evaluate_ceiling(self._catalog, definition, ResourceKind.API_CALLS, int(counter.count or 0))
                if monthly.allowed:
                    counter.count = int(counter.count or 0) + 1
                    usage_repo.add_usage_event(
                        session, tenant_id, ResourceKind.API_CALLS.value, amount=1, occurred_at=now
                    )
                    recorded = True
            await session.flush()
        if is_unlimited(limit):
            remaining = 0
        else:
            remaining = max(0, int(limit) - count - (1 if recorded else 0))
        reset_at = (ensure_utc(oldest) if oldest is not None else now) + window
        if not rate.allowed:
            logger.info(
                "api_rate_limited tenant_id=%s tier=%s count=%s limit=%s retry_after_s=%s",
                tenant_id,
                definition.tier.value,
                count,
                rate.limit,
                rate.retry_after_s,
            )
        return ApiCallAdmission(
            rate=rate,
            monthly=monthly,
            limit=render_limit(limit),
            remaining=remaining,
            reset_at=reset_at,
        )

    async def check_token_budget(
        self,
        session: AsyncSession,
        tenant_id: str,
        requested_amount: int = 0,
    ) -> QuotaDecision:
        now = self.now()
        _entitlement, definition = await self.resolve(session, tenant_id)
        async with _transaction(session):
            ledger = await usage_repo.get_or_create_ai_ledger(session, tenant_id, now=now)
            if apply_monthly_reset(ledger, now):
                logger.info("quota_token_budget_reset tenant_id=%s month=%s", tenant_id, now.strftime("%Y-%m"))
            decision = evaluate_token_budget(
                self._catalog,
                definition,
                used=int(ledger.tokens_used_this_month or 0),
                budget=int(ledger.monthly_token_budget or 0),
                requested=requested_amount,
                max_per_request=int(ledger.max_tokens_per_request or 0),
            )
        return decision

    async def check_feature_access(self, session: AsyncSession, tenant_id: str, flag: str) -> QuotaDecision:
        _entitlement, definition = await self.resolve(session, tenant_id)
        return evaluate_feature(self._catalog, definition, flag)

    async def record_usage(
        self,
        session: AsyncSession,
        tenant_id: str,
        resource_kind: ResourceKind,
        amount: int = 1,
        *,
        commit: bool = False,
    ) -> None:
        # Joins the caller's transaction so usage commits with the artifact it accounts for.
        if amount == 0 or (amount < 0 and resource_kind not in CEILING_KINDS):
            raise ValidationError(
                "Usage amount must be positive",
                details={"resource": resource_kind.value, "amount": amount},
            )
        now = self.now()
        if resource_kind in CEILING_KINDS:
            counter = await usage_repo.get_or_create_counter(
                session,
                tenant_id,
                resource_kind.value,
                usage_repo.PERIOD_LIFETIME,
                usage_repo.LIFETIME_START,
            )
            counter.count = max(int(counter.count or 0) + amount, 0)
        elif resource_kind in MONTHLY_KINDS:
            counter = await usage_repo.get_or_create_counter(
                session,
                tenant_id,
                resource_kind.value,
                usage_repo.PERIOD_MONTH,
                month_start(now),
            )
            counter.count = int(counter.count or 0) + amount
            usage_repo.add_usage_event(session, tenant_id, resource_kind.value, amount=amount, occurred_at=now)
        elif resource_kind == ResourceKind.AI_TOKENS:
            ledger = await usage_repo.get_or_create_ai_ledger(session, tenant_id, now=now)
            apply_monthly_reset(ledger, now)
            ledger.tokens_used_this_month = int(ledger.tokens_used_this_month or 0) + amount
            usage_repo.add_usage_event(session, tenant_id, resource_kind.value, amount=amount, occurred_at=now)
        await session.flush()
        if commit:
            await session.commit()

    async def authorize_assistant_request(
        self,
        session: AsyncSession,
        tenant_id: str,
        requested_tokens: int = 0,
    ) -> list[QuotaDecision]:
        # Order matters: rate limit, then token budget, then the monthly message ceiling.
        decisions = [await self.check_rate_limit(session, tenant_id)]
        decisions[-1].raise_for_denial()
        decisions.append(await self.check_token_budget(session, tenant_id, requested_tokens))
        decisions[-1].raise_for_denial()
        decisions.append(await self.check_ceiling(session, tenant_id, ResourceKind.AI_MESSAGES))
        decisions[-1].raise_for_denial()
        return decisions

    async def record_assistant_usage(
        self,
        session: AsyncSession,
        tenant_id: str,
        tokens_used: int,
        *,
        commit: bool = False,
    ) -> None:
        await self.record_usage(session, tenant_id, ResourceKind.AI_MESSAGES, 1)
        if tokens_used > 0:
            await self.record_usage(session, tenant_id, ResourceKind.AI_TOKENS, tokens_used)
        if commit:
            await session.commit()

    async def update_assistant_settings(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        max_requests_per_hour: int | None = None,
        max_tokens_per_request: int | None = None,
        monthly_token_budget: int | None = None,
    ) -> AiUsageLedger:
        now = self.now()
        async with _transaction(session):
            ledger = await usage_repo.get_or_create_ai_ledger(session, tenant_id, now=now)
            if max_requests_per_hour is not None:
                ledger.max_requests_per_hour = max_requests_per_hour
            if max_tokens_per_request is not None:
                ledger.max_tokens_per_request = max_tokens_per_request
            if monthly_token_budget is not None:
                ledger.monthly_token_budget = monthly_token_budget
        return ledger

    async def usage_summary(self, session: AsyncSession, tenant_id: str) -> dict[str, Any]:
        now = self.now()
        entitlement, definition = await self.resolve(session, tenant_id)
        window = timedelta(minutes=get_settings().rate_limit_window_minutes)
        resources: dict[str, dict[str, Any]] = {}
        for kind in (*sorted(CEILING_KINDS, key=lambda k: k.value), *sorted(MONTHLY_KINDS, key=lambda k: k.value)):
            resources[kind.value] = {
                "used": await self._maintained_count(session, tenant_id, kind),
                "limit": render_limit(definition.limit_for(kind)),
            }
        ledger = await usage_repo.get_ai_ledger(session, tenant_id)
        tokens_used = 0
        if ledger is not None:
            last_reset = ensure_utc(ledger.last_monthly_reset)
            if last_reset is not None and same_month(last_reset, now):
                tokens_used = int(ledger.tokens_used_this_month or 0)
        budget = int(ledger.monthly_token_budget) if ledger else get_settings().default_monthly_token_budget
        window_count, _oldest = await usage_repo.window_stats(
            session, tenant_id, ResourceKind.AI_MESSAGES.value, since=now - window
        )
        return {
            "tier": definition.tier.value,
            "status": entitlement.status.value,
            "resources": resources,
            "assistant": {
                "requests_in_window": window_count,
                "max_requests_per_hour": (
                    ledger.max_requests_per_hour if ledger else get_settings().default_max_requests_per_hour
                ),
                "tokens_used_this_month": tokens_used,
                "monthly_token_budget": budget if budget > 0 else "unlimited",
            },
        }

    async def _maintained_count(self, session: AsyncSession, tenant_id: str, resource_kind: ResourceKind) -> int:
        if resource_kind in CEILING_KINDS:
            return await usage_repo.get_counter_value(
                session,
                tenant_id,
                resource_kind.value,
                usage_repo.PERIOD_LIFETIME,
                usage_repo.LIFETIME_START,
            )
        if resource_kind in MONTHLY_KINDS:
            return await usage_repo.get_counter_value(
                session,
                tenant_id,
                resource_kind.value,
                usage_repo.PERIOD_MONTH,
                month_start(self.now()),
            )
        raise ValidationError(
            "Resource has no maintained counter",
            details={"resource": resource_kind.value},
        )


@asynccontextmanager
async def _transaction(session: AsyncSession) -> AsyncIterator[None]:
    # Use a nested transaction when prior reads have already opened one.
    in_transaction = session.in_transaction()
    tx_context = session.begin_nested() if in_transaction else session.begin()
    async with tx_context:
        yield
    if in_transaction:
        # Commit lazily reset counters when we piggyback on an existing transaction.
        await session.commit()


_quota_governor: QuotaGovernor | None = None


def get_quota_governor() -> QuotaGovernor:
    # Cache the governor for reuse across requests.
    global _quota_governor
    if _quota_governor is None:
        _quota_governor = QuotaGovernor()
    return _quota_governor


def reset_quota_governor() -> None:
    # Reset cached services for deterministic tests.
    global _quota_governor
    _quota_governor = None
