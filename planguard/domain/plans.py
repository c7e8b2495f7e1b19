from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Union

from planguard.core.errors import UnknownTierError


class PlanTier(str, Enum):
    # Declaration order is the commercial order; never sort by value.
    STARTER = "Starter"
    PROFESSIONAL = "Professional"
    BUSINESS = "Business"
    ENTERPRISE = "Enterprise"


TIER_ORDER: tuple[PlanTier, ...] = tuple(PlanTier)
DEFAULT_TIER = PlanTier.STARTER


class _Unlimited:
    # Singleton sentinel so "no limit" can never compare equal to 0.
    _instance: "_Unlimited | None" = None

    def __new__(cls) -> "_Unlimited":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNLIMITED"


UNLIMITED = _Unlimited()
Limit = Union[int, _Unlimited]


class ResourceKind(str, Enum):
    CLIENT_SPACES = "client_spaces"
    EXTERNAL_USERS = "external_users"
    LIBRARIES = "libraries"
    ADMINS = "admins"
    API_CALLS = "api_calls"
    AI_MESSAGES = "ai_messages"
    AI_TOKENS = "ai_tokens"


# Standing counts of live artifacts; deletions record negative usage.
CEILING_KINDS = frozenset(
    {
        ResourceKind.CLIENT_SPACES,
        ResourceKind.EXTERNAL_USERS,
        ResourceKind.LIBRARIES,
        ResourceKind.ADMINS,
    }
)
# Counted per calendar month.
MONTHLY_KINDS = frozenset({ResourceKind.API_CALLS, ResourceKind.AI_MESSAGES})

LIMIT_AUDIT_RETENTION_DAYS = "audit_retention_days"
# Per-tenant API request rate, enforced over a sliding one-minute window.
LIMIT_API_REQUESTS_PER_MINUTE = "api_requests_per_minute"

FEATURE_BASIC_USER_MANAGEMENT = "basic_user_management"
FEATURE_LIBRARY_ACCESS_CONTROL = "library_access_control"
FEATURE_BASIC_AUDIT_LOGS = "basic_audit_logs"
FEATURE_EMAIL_NOTIFICATIONS = "email_notifications"
FEATURE_AUDIT_EXPORT = "audit_export"
FEATURE_BULK_OPERATIONS = "bulk_operations"
FEATURE_CUSTOM_POLICIES = "custom_policies"
FEATURE_API_ACCESS = "api_access"
FEATURE_ADVANCED_PERMISSIONS = "advanced_permissions"
FEATURE_GLOBAL_SEARCH = "global_search"
FEATURE_ADVANCED_REPORTING = "advanced_reporting"
FEATURE_SCHEDULED_REVIEWS = "scheduled_reviews"
FEATURE_SSO_INTEGRATION = "sso_integration"
FEATURE_PRIORITY_SUPPORT = "priority_support"
FEATURE_ENHANCED_AUDIT = "enhanced_audit"
FEATURE_CUSTOM_BRANDING = "custom_branding"
FEATURE_DEDICATED_SUPPORT = "dedicated_support"
FEATURE_SLA_GUARANTEES = "sla_guarantees"
FEATURE_ADVANCED_SECURITY = "advanced_security"

_STARTER_FEATURES = frozenset(
    {
        FEATURE_BASIC_USER_MANAGEMENT,
        FEATURE_LIBRARY_ACCESS_CONTROL,
        FEATURE_BASIC_AUDIT_LOGS,
        FEATURE_EMAIL_NOTIFICATIONS,
    }
)
_PROFESSIONAL_FEATURES = _STARTER_FEATURES | {
    FEATURE_AUDIT_EXPORT,
    FEATURE_BULK_OPERATIONS,
    FEATURE_CUSTOM_POLICIES,
    FEATURE_API_ACCESS,
    FEATURE_ADVANCED_PERMISSIONS,
    FEATURE_GLOBAL_SEARCH,
}
_BUSINESS_FEATURES = _PROFESSIONAL_FEATURES | {
    FEATURE_ADVANCED_REPORTING,
    FEATURE_SCHEDULED_REVIEWS,
    FEATURE_SSO_INTEGRATION,
    FEATURE_PRIORITY_SUPPORT,
    FEATURE_ENHANCED_AUDIT,
}
_ENTERPRISE_FEATURES = _BUSINESS_FEATURES | {
    FEATURE_CUSTOM_BRANDING,
    FEATURE_DEDICATED_SUPPORT,
    FEATURE_SLA_GUARANTEES,
    FEATURE_ADVANCED_SECURITY,
}

FEATURE_KEYS = tuple(sorted(_ENTERPRISE_FEATURES))


@dataclass(frozen=True)
class PlanDefinition:
    tier: PlanTier
    description: str
    # None means custom pricing negotiated with sales.
    monthly_price: int | None
    annual_price: int | None
    limits: Mapping[str, Limit]
    features: frozenset[str]
    support_level: str
    self_serve: bool = True

    @property
    def position(self) -> int:
        return tier_rank(self.tier)

    def limit_for(self, key: ResourceKind | str) -> Limit:
        name = key.value if isinstance(key, ResourceKind) else key
        try:
            return self.limits[name]
        except KeyError:
            raise KeyError(f"plan {self.tier.value} has no limit named {name}") from None

    def has_feature(self, flag: str) -> bool:
        return flag in self.features

    def to_dict(self) -> dict[str, Any]:
        # Render limits with the "unlimited" token used across API payloads.
        return {
            "tier": self.tier.value,
            "description": self.description,
            "monthly_price": self.monthly_price,
            "annual_price": self.annual_price,
            "limits": {key: render_limit(value) for key, value in self.limits.items()},
            "features": sorted(self.features),
            "support_level": self.support_level,
            "self_serve": self.self_serve,
        }


def is_unlimited(value: Any) -> bool:
    return value is UNLIMITED


def render_limit(value: Limit) -> int | str:
    return "unlimited" if is_unlimited(value) else int(value)


def tier_rank(tier: PlanTier) -> int:
    return TIER_ORDER.index(tier)


def compare_tiers(left: PlanTier, right: PlanTier) -> int:
    """Return -1, 0 or 1 as ``left`` sorts below, equal to or above ``right``."""
    left_rank, right_rank = tier_rank(left), tier_rank(right)
    return (left_rank > right_rank) - (left_rank < right_rank)


def tier_at_least(tier: PlanTier, minimum: PlanTier) -> bool:
    return compare_tiers(tier, minimum) >= 0


def parse_tier(value: PlanTier | str) -> PlanTier:
    # Accept enum members or case-insensitive names from payloads and metadata.
    if isinstance(value, PlanTier):
        return value
    normalized = str(value or "").strip().lower()
    for tier in TIER_ORDER:
        if tier.value.lower() == normalized:
            return tier
    raise UnknownTierError(f"Unknown plan tier: {value!r}", details={"tier": value})


def _limits(**values: Limit) -> Mapping[str, Limit]:
    return MappingProxyType(dict(values))


_DEFAULT_DEFINITIONS = (
    PlanDefinition(
        tier=PlanTier.STARTER,
        description="Essential external sharing for small teams",
        monthly_price=29,
        annual_price=290,
        limits=_limits(
            client_spaces=5,
            external_users=50,
            libraries=25,
            admins=2,
            api_calls=10000,
            ai_messages=100,
            audit_retention_days=30,
            api_requests_per_minute=300,
        ),
        features=_STARTER_FEATURES,
        support_level="Community",
    ),
    PlanDefinition(
        tier=PlanTier.PROFESSIONAL,
        description="Policy controls and automation for growing firms",
        monthly_price=99,
        annual_price=990,
        limits=_limits(
            client_spaces=20,
            external_users=250,
            libraries=100,
            admins=5,
            api_calls=50000,
            ai_messages=1000,
            audit_retention_days=90,
            api_requests_per_minute=1000,
        ),
        features=frozenset(_PROFESSIONAL_FEATURES),
        support_level="Email",
    ),
    PlanDefinition(
        tier=PlanTier.BUSINESS,
        description="Reporting, reviews and SSO for larger organizations",
        monthly_price=299,
        annual_price=2990,
        limits=_limits(
            client_spaces=100,
            external_users=1000,
            libraries=500,
            admins=15,
            api_calls=250000,
            ai_messages=5000,
            audit_retention_days=365,
            api_requests_per_minute=2000,
        ),
        features=frozenset(_BUSINESS_FEATURES),
        support_level="Priority",
    ),
    PlanDefinition(
        tier=PlanTier.ENTERPRISE,
        description="Custom terms, dedicated support and SLAs",
        monthly_price=None,
        annual_price=None,
        limits=_limits(
            client_spaces=UNLIMITED,
            external_users=UNLIMITED,
            libraries=UNLIMITED,
            admins=999,
            api_calls=UNLIMITED,
            ai_messages=UNLIMITED,
            audit_retention_days=UNLIMITED,
            api_requests_per_minute=5000,
        ),
        features=frozenset(_ENTERPRISE_FEATURES),
        support_level="Dedicated",
        self_serve=False,
    ),
)


class PlanCatalog:
    """Read-only registry of plan definitions keyed by tier."""

    def __init__(self, definitions: Iterable[PlanDefinition] | None = None) -> None:
        items = tuple(definitions) if definitions is not None else _DEFAULT_DEFINITIONS
        self._definitions: Mapping[PlanTier, PlanDefinition] = MappingProxyType(
            {definition.tier: definition for definition in items}
        )

    def get_definition(self, tier: PlanTier | str) -> PlanDefinition:
        resolved = parse_tier(tier)
        definition = self._definitions.get(resolved)
        if definition is None:
            raise UnknownTierError(f"Plan tier is not registered: {resolved.value}", details={"tier": resolved.value})
        return definition

    def list_available(self, include_enterprise: bool = False) -> list[PlanDefinition]:
        return [
            self._definitions[tier]
            for tier in TIER_ORDER
            if tier in self._definitions and (include_enterprise or tier != PlanTier.ENTERPRISE)
        ]

    def next_tier(self, tier: PlanTier) -> PlanTier | None:
        # Strictly-above neighbour among registered tiers, or None at the top.
        for candidate in TIER_ORDER[tier_rank(tier) + 1 :]:
            if candidate in self._definitions:
                return candidate
        return None

    def minimum_tier_for(self, flag: str) -> PlanTier | None:
        for tier in TIER_ORDER:
            definition = self._definitions.get(tier)
            if definition is not None and definition.has_feature(flag):
                return tier
        return None

    def upgrade_target(self, tier: PlanTier | None) -> tuple[PlanTier | None, bool]:
        """Return ``(self_serve_tier, contact_sales)`` for an upgrade towards ``tier``.

        Non self-serve tiers are never offered; callers are told to contact sales.
        """
        if tier is None:
            return None, False
        definition = self._definitions.get(tier)
        if definition is not None and not definition.self_serve:
            return None, True
        return tier, False


_catalog: PlanCatalog | None = None


def get_plan_catalog() -> PlanCatalog:
    global _catalog
    if _catalog is None:
        _catalog = PlanCatalog()
    return _catalog
