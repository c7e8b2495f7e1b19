from __future__ import annotations

from enum import Enum


class SubscriptionStatus(str, Enum):
    NONE = "None"
    TRIAL = "Trial"
    ACTIVE = "Active"
    SUSPENDED = "Suspended"
    CANCELLED = "Cancelled"


# Statuses that make a row eligible to be the tenant's current subscription.
ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL})

# Provider status strings; anything else must leave the stored status untouched.
_EXTERNAL_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIAL,
    "canceled": SubscriptionStatus.CANCELLED,
    "past_due": SubscriptionStatus.SUSPENDED,
    "unpaid": SubscriptionStatus.SUSPENDED,
}

TENANT_STATUS_ACTIVE = "Active"
TENANT_STATUS_PENDING = "Pending"


def is_entitled(status: SubscriptionStatus | str | None) -> bool:
    # Trial is entitled like Active; the state store drops trials past their expiry.
    if status is None:
        return False
    try:
        return SubscriptionStatus(status) in ENTITLED_STATUSES
    except ValueError:
        return False


def map_external_status(external_status: str | None) -> SubscriptionStatus | None:
    if not external_status:
        return None
    return _EXTERNAL_STATUS_MAP.get(external_status.strip().lower())


def resolve_status_update(
    current: SubscriptionStatus | None,
    external_status: str | None,
) -> SubscriptionStatus | None:
    # Unrecognized provider statuses keep whatever is stored.
    mapped = map_external_status(external_status)
    return mapped if mapped is not None else current
