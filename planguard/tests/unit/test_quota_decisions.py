from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from hypothesis import given, strategies as st
import pytest

from planguard.core.errors import FeatureNotAvailableError, QuotaExceededError
from planguard.domain.plans import (
    FEATURE_AUDIT_EXPORT,
    FEATURE_CUSTOM_BRANDING,
    FEATURE_BASIC_AUDIT_LOGS,
    LIMIT_API_REQUESTS_PER_MINUTE,
    PlanCatalog,
    PlanTier,
    ResourceKind,
)
from planguard.services.quota import (
    CODE_API_RATE_LIMIT_EXCEEDED,
    CODE_RATE_LIMITED,
    CODE_TOKEN_BUDGET_EXCEEDED,
    CODE_TOKENS_PER_REQUEST_EXCEEDED,
    apply_monthly_reset,
    evaluate_ceiling,
    evaluate_feature,
    evaluate_rate_limit,
    evaluate_token_budget,
)


CATALOG = PlanCatalog()


def _plan(tier: PlanTier):
    return CATALOG.get_definition(tier)


def test_starter_sixth_client_space_is_denied_with_upgrade_hint() -> None:
    decision = evaluate_ceiling(CATALOG, _plan(PlanTier.STARTER), ResourceKind.CLIENT_SPACES, 5)

    assert not decision.allowed
    assert decision.usage == 5
    assert decision.limit == 5
    assert decision.current_tier == "Starter"
    assert decision.suggested_tier == "Professional"
    assert not decision.contact_sales
    assert "Professional" in decision.reason


def test_business_denial_points_to_sales() -> None:
    decision = evaluate_ceiling(CATALOG, _plan(PlanTier.BUSINESS), ResourceKind.CLIENT_SPACES, 100)

    assert not decision.allowed
    assert decision.suggested_tier is None
    assert decision.contact_sales


@given(st.integers(min_value=1, max_value=10_000))
def test_ceiling_boundary(current_count: int) -> None:
    plan = _plan(PlanTier.PROFESSIONAL)
    limit = int(plan.limit_for(ResourceKind.EXTERNAL_USERS))

    decision = evaluate_ceiling(CATALOG, plan, ResourceKind.EXTERNAL_USERS, current_count)
    assert decision.allowed == (current_count < limit)


@given(st.integers(min_value=0, max_value=10**9))
def test_unlimited_ceiling_always_allows(count: int) -> None:
    decision = evaluate_ceiling(CATALOG, _plan(PlanTier.ENTERPRISE), ResourceKind.LIBRARIES, count)
    assert decision.allowed
    assert decision.limit == "unlimited"


def test_enterprise_admin_ceiling_is_finite() -> None:
    plan = _plan(PlanTier.ENTERPRISE)
    assert evaluate_ceiling(CATALOG, plan, ResourceKind.ADMINS, 998).allowed
    denied = evaluate_ceiling(CATALOG, plan, ResourceKind.ADMINS, 999)
    assert not denied.allowed
    assert denied.suggested_tier is None
    assert not denied.contact_sales


def test_rate_limit_retry_after_tracks_oldest_event() -> None:
    now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
    window = timedelta(minutes=60)
    oldest = now - timedelta(minutes=58)

    decision = evaluate_rate_limit(
        CATALOG,
        _plan(PlanTier.STARTER),
        count=100,
        limit=100,
        oldest=oldest,
        now=now,
        window=window,
    )

    assert not decision.allowed
    assert decision.code == CODE_RATE_LIMITED
    assert decision.retry_after_s == 120

    allowed = evaluate_rate_limit(
        CATALOG, _plan(PlanTier.STARTER), count=99, limit=100, oldest=oldest, now=now, window=window
    )
    assert allowed.allowed


def test_api_rate_limit_denial_is_per_minute_with_its_own_code() -> None:
    now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
    professional = _plan(PlanTier.PROFESSIONAL)
    limit = professional.limit_for(LIMIT_API_REQUESTS_PER_MINUTE)

    decision = evaluate_rate_limit(
        CATALOG,
        professional,
        count=limit,
        limit=limit,
        oldest=now - timedelta(seconds=45),
        now=now,
        window=timedelta(seconds=60),
        resource=ResourceKind.API_CALLS,
        code=CODE_API_RATE_LIMIT_EXCEEDED,
    )

    assert not decision.allowed
    assert decision.resource == "api_calls"
    assert decision.code == CODE_API_RATE_LIMIT_EXCEEDED
    assert decision.retry_after_s == 15
    assert decision.suggested_tier == "Business"
    assert decision.reason.endswith("in the last minute.")


def test_api_request_rates_grow_with_the_tier() -> None:
    rates = [_plan(tier).limit_for(LIMIT_API_REQUESTS_PER_MINUTE) for tier in PlanTier]
    assert rates == [300, 1000, 2000, 5000]


def test_rate_limit_denial_raises_with_retry_after() -> None:
    now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
    decision = evaluate_rate_limit(
        CATALOG,
        _plan(PlanTier.STARTER),
        count=3,
        limit=3,
        oldest=now - timedelta(minutes=30),
        now=now,
        window=timedelta(minutes=60),
    )

    with pytest.raises(QuotaExceededError) as excinfo:
        decision.raise_for_denial()
    assert excinfo.value.code == CODE_RATE_LIMITED
    assert excinfo.value.retry_after_s == 1800


def test_token_budget_zero_is_disabled() -> None:
    decision = evaluate_token_budget(
        CATALOG, _plan(PlanTier.STARTER), used=10**9, budget=0, requested=10, max_per_request=1000
    )
    assert decision.allowed
    assert decision.limit == "unlimited"


def test_token_budget_exhausted_and_per_request_cap() -> None:
    plan = _plan(PlanTier.PROFESSIONAL)

    exhausted = evaluate_token_budget(CATALOG, plan, used=5000, budget=5000, requested=1, max_per_request=1000)
    assert not exhausted.allowed
    assert exhausted.code == CODE_TOKEN_BUDGET_EXCEEDED

    too_big = evaluate_token_budget(CATALOG, plan, used=0, budget=5000, requested=1001, max_per_request=1000)
    assert not too_big.allowed
    assert too_big.code == CODE_TOKENS_PER_REQUEST_EXCEEDED

    assert evaluate_token_budget(CATALOG, plan, used=4999, budget=5000, requested=1000, max_per_request=1000).allowed


def test_feature_denial_names_minimum_tier() -> None:
    decision = evaluate_feature(CATALOG, _plan(PlanTier.STARTER), FEATURE_AUDIT_EXPORT)

    assert not decision.allowed
    assert decision.suggested_tier == "Professional"
    with pytest.raises(FeatureNotAvailableError) as excinfo:
        decision.raise_for_denial()
    assert excinfo.value.required_tier == "Professional"
    assert excinfo.value.feature == FEATURE_AUDIT_EXPORT


def test_enterprise_only_feature_says_contact_sales() -> None:
    decision = evaluate_feature(CATALOG, _plan(PlanTier.BUSINESS), FEATURE_CUSTOM_BRANDING)

    assert not decision.allowed
    assert decision.contact_sales
    assert decision.suggested_tier is None
    assert "contact sales" in decision.reason


def test_included_feature_is_allowed() -> None:
    assert evaluate_feature(CATALOG, _plan(PlanTier.STARTER), FEATURE_BASIC_AUDIT_LOGS).allowed


def test_monthly_reset_on_rollover_only() -> None:
    ledger = SimpleNamespace(
        tokens_used_this_month=700,
        last_monthly_reset=datetime(2026, 3, 2, tzinfo=timezone.utc),
    )

    assert not apply_monthly_reset(ledger, datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc))
    assert ledger.tokens_used_this_month == 700

    april = datetime(2026, 4, 1, 0, 1, tzinfo=timezone.utc)
    assert apply_monthly_reset(ledger, april)
    assert ledger.tokens_used_this_month == 0
    assert ledger.last_monthly_reset == april


def test_monthly_reset_on_year_rollover() -> None:
    # Same month number in a different year still resets.
    ledger = SimpleNamespace(
        tokens_used_this_month=5,
        last_monthly_reset=datetime(2025, 4, 10, tzinfo=timezone.utc),
    )
    assert apply_monthly_reset(ledger, datetime(2026, 4, 10, tzinfo=timezone.utc))
    assert ledger.tokens_used_this_month == 0
