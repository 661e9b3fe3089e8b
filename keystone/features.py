"""
Subscription feature gating + capacity helpers for Keystone.

Decides, for a tenant's subscription joined with its plan:
- whether a named feature is unlocked by the plan tier
- whether a metered resource (properties/users/offices) has room for one more

No I/O here: the caller loads the subscription and counts usage, and passes
both in. Plan ceilings of -1 mean "unlimited" and are carried as `Limit`
values so callers never do arithmetic on the sentinel.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


# ---- Tiers, features, statuses ------------------------------------------


class PlanTier(str, Enum):
    STARTER = "starter"
    GROWTH = "growth"
    ENTERPRISE = "enterprise"


class FeatureKey(str, Enum):
    CUSTOM_DOMAIN = "customDomain"
    ADVANCED_BRANDING = "advancedBranding"
    MAINTENANCE_TRACKING = "maintenanceTracking"
    ADVANCED_REPORTING = "advancedReporting"
    MULTI_OFFICE = "multiOffice"
    AUDIT_LOGS = "auditLogs"
    WHITE_LABEL = "whiteLabel"
    API_ACCESS = "apiAccess"
    PRIORITY_SUPPORT = "prioritySupport"
    DEDICATED_ACCOUNT = "dedicatedAccount"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class Dimension(str, Enum):
    """Metered resources with per-plan ceilings."""
    PROPERTIES = "properties"
    USERS = "users"
    OFFICES = "offices"


ACTIVE_STATUSES: FrozenSet[str] = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})

TIER_FEATURES: Mapping[str, FrozenSet[FeatureKey]] = MappingProxyType({
    PlanTier.STARTER.value: frozenset(),
    PlanTier.GROWTH.value: frozenset({
        FeatureKey.CUSTOM_DOMAIN,
        FeatureKey.ADVANCED_BRANDING,
        FeatureKey.MAINTENANCE_TRACKING,
        FeatureKey.ADVANCED_REPORTING,
        FeatureKey.MULTI_OFFICE,
        FeatureKey.PRIORITY_SUPPORT,
    }),
    PlanTier.ENTERPRISE.value: frozenset(FeatureKey),
})


# ---- Limit value ----------------------------------------------------------


UNLIMITED_SENTINEL = -1


@dataclass(frozen=True)
class Limit:
    """A capacity ceiling: either a non-negative bound or unlimited (ceiling=None)."""
    ceiling: Optional[int] = None

    @classmethod
    def of(cls, raw: int) -> "Limit":
        """Build from a stored integer where -1 means unlimited."""
        raw = int(raw)
        if raw == UNLIMITED_SENTINEL:
            return UNLIMITED
        if raw < 0:
            raise ValueError(f"Invalid limit value: {raw}")
        return cls(raw)

    @property
    def is_unlimited(self) -> bool:
        return self.ceiling is None

    def has_room_for_one_more(self, current_count: int) -> bool:
        if self.ceiling is None:
            return True
        return current_count < self.ceiling

    def to_raw(self) -> int:
        return UNLIMITED_SENTINEL if self.ceiling is None else self.ceiling

    def __str__(self) -> str:
        return "unlimited" if self.ceiling is None else str(self.ceiling)


UNLIMITED = Limit()


# ---- Subscription data (supplied by the data layer) ----------------------


@dataclass(frozen=True)
class SubscriptionPlan:
    """Immutable plan reference data shared by every tenant on a tier."""
    tier: str
    name: str
    price: float
    max_properties: int
    max_users: int
    max_offices: int
    currency: str = "USD"
    description: str = ""
    display_order: int = 0
    marketing_features: Tuple[str, ...] = ()
    id: Optional[int] = None


@dataclass(frozen=True)
class Subscription:
    """A tenant's subscription joined with its plan."""
    tenant_id: int
    status: str
    plan: SubscriptionPlan
    current_period_end: datetime
    current_period_start: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    max_properties_override: Optional[int] = None
    max_users_override: Optional[int] = None
    max_offices_override: Optional[int] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class SubscriptionLimits:
    max_properties: Limit
    max_users: Limit
    max_offices: Limit

    def for_dimension(self, dimension: str) -> Limit:
        dimension = Dimension(dimension)
        return getattr(self, f"max_{dimension.value}")

    def to_dict(self) -> Dict[str, int]:
        return {
            "max_properties": self.max_properties.to_raw(),
            "max_users": self.max_users.to_raw(),
            "max_offices": self.max_offices.to_raw(),
        }


@dataclass(frozen=True)
class SubscriptionUsage:
    properties: int = 0
    users: int = 0
    offices: int = 0

    def for_dimension(self, dimension: str) -> int:
        return getattr(self, Dimension(dimension).value)


@dataclass(frozen=True)
class DimensionUsage:
    used: int
    limit: Limit
    percentage: float
    can_add: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit.to_raw(),
            "percentage": self.percentage,
            "can_add": self.can_add,
        }


@dataclass(frozen=True)
class UsageStatus:
    properties: DimensionUsage
    users: DimensionUsage
    offices: DimensionUsage

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {d.value: getattr(self, d.value).to_dict() for d in Dimension}


# ---- Plan catalogue (seeded into subscription_plans) ---------------------


PLAN_CATALOG: Tuple[SubscriptionPlan, ...] = (
    SubscriptionPlan(
        tier=PlanTier.STARTER.value,
        name="Starter",
        description="Perfect for small property management companies",
        price=49.00,
        max_properties=10,
        max_users=3,
        max_offices=1,
        display_order=1,
        marketing_features=(
            "Basic property management",
            "Tenant portal",
            "Payment tracking",
            "Email notifications",
            "Mobile responsive",
        ),
    ),
    SubscriptionPlan(
        tier=PlanTier.GROWTH.value,
        name="Growth",
        description="For growing property management businesses",
        price=149.00,
        max_properties=50,
        max_users=10,
        max_offices=5,
        display_order=2,
        marketing_features=(
            "All Starter features",
            "Custom branding",
            "Custom domain",
            "Maintenance tracking",
            "Advanced reporting",
            "Priority support",
            "Multi-office management",
        ),
    ),
    SubscriptionPlan(
        tier=PlanTier.ENTERPRISE.value,
        name="Enterprise",
        description="For large-scale property management operations",
        price=399.00,
        max_properties=UNLIMITED_SENTINEL,
        max_users=UNLIMITED_SENTINEL,
        max_offices=UNLIMITED_SENTINEL,
        display_order=3,
        marketing_features=(
            "All Growth features",
            "White-label",
            "API access",
            "Audit logs",
            "Dedicated account manager",
            "Unlimited properties",
            "Unlimited users",
            "Unlimited offices",
            "Custom integrations",
        ),
    ),
)


# ---- Feature gating -----------------------------------------------------


def tier_features(tier: Optional[str]) -> FrozenSet[FeatureKey]:
    """Features unlocked by a tier. Unknown or missing tiers get the starter set."""
    return TIER_FEATURES.get(tier or PlanTier.STARTER.value, TIER_FEATURES[PlanTier.STARTER.value])


def has_feature(subscription: Subscription, feature: str) -> bool:
    feature = FeatureKey(feature)
    tier = subscription.plan.tier if subscription.plan else None
    return feature in tier_features(tier)


def feature_map(subscription: Subscription) -> Dict[str, bool]:
    """All feature keys with their on/off state, for the account UI."""
    return {f.value: has_feature(subscription, f) for f in FeatureKey}


# ---- Limits / capacity --------------------------------------------------


def _coalesce(override: Optional[int], plan_value: int) -> int:
    return override if override is not None else plan_value


def get_limits(subscription: Subscription) -> SubscriptionLimits:
    """Effective ceilings: per-tenant override when set, else the plan's."""
    plan = subscription.plan
    return SubscriptionLimits(
        max_properties=Limit.of(_coalesce(subscription.max_properties_override, plan.max_properties)),
        max_users=Limit.of(_coalesce(subscription.max_users_override, plan.max_users)),
        max_offices=Limit.of(_coalesce(subscription.max_offices_override, plan.max_offices)),
    )


def can_add(subscription: Subscription, dimension: str, current_count: int) -> bool:
    return get_limits(subscription).for_dimension(dimension).has_room_for_one_more(current_count)


def can_add_property(subscription: Subscription, current_count: int) -> bool:
    return can_add(subscription, Dimension.PROPERTIES, current_count)


def can_add_user(subscription: Subscription, current_count: int) -> bool:
    return can_add(subscription, Dimension.USERS, current_count)


def can_add_office(subscription: Subscription, current_count: int) -> bool:
    return can_add(subscription, Dimension.OFFICES, current_count)


def _dimension_usage(used: int, limit: Limit) -> DimensionUsage:
    if limit.is_unlimited:
        return DimensionUsage(used=used, limit=limit, percentage=0.0, can_add=True)
    if limit.ceiling == 0:
        # Zero capacity is always full
        return DimensionUsage(used=used, limit=limit, percentage=100.0, can_add=False)
    return DimensionUsage(
        used=used,
        limit=limit,
        percentage=used / limit.ceiling * 100,
        can_add=used < limit.ceiling,
    )


def get_usage_status(limits: SubscriptionLimits, usage: SubscriptionUsage) -> UsageStatus:
    """
    Per-dimension usage report. Over-limit usage on a positive ceiling is
    reported as-is (percentage above 100), never clamped.

    A zero ceiling has no meaningful ratio: it always reports 100% and
    can_add=False, whatever the usage. Callers that need to tell "full" from
    "over" on such a dimension compare `used` with the limit directly.
    """
    return UsageStatus(
        properties=_dimension_usage(usage.properties, limits.max_properties),
        users=_dimension_usage(usage.users, limits.max_users),
        offices=_dimension_usage(usage.offices, limits.max_offices),
    )


# ---- Subscription lifecycle ---------------------------------------------


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now(now: Optional[datetime]) -> datetime:
    return _as_utc(now) if now is not None else datetime.now(timezone.utc)


def is_subscription_active(subscription: Subscription) -> bool:
    return subscription.status in ACTIVE_STATUSES


def is_subscription_expired(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    """
    True once the wall clock is past current_period_end.

    Independent of status: an `active` row can already be past its period
    end if renewal has not been processed yet. Callers deciding whether a
    subscription is usable should check both this and is_subscription_active.
    """
    return _now(now) > _as_utc(subscription.current_period_end)


def get_days_until_expiry(subscription: Subscription, now: Optional[datetime] = None) -> int:
    """Whole days (rounded up) until period end. Negative once expired."""
    diff = _as_utc(subscription.current_period_end) - _now(now)
    return math.ceil(diff.total_seconds() / 86400)


# ---- Enforcement helpers ------------------------------------------------


class UsageLimitError(Exception):
    """Raised when a tenant has no remaining capacity for a metered resource."""

    def __init__(self, dimension: str, current_count: int, limit: Limit):
        self.dimension = Dimension(dimension).value
        self.current_count = current_count
        self.limit = limit
        super().__init__(f"Limit reached for {self.dimension}: {current_count}/{limit}")


class FeatureNotAllowedError(Exception):
    """Raised when a tenant's plan tier does not include a feature."""

    def __init__(self, feature: str, tier: Optional[str]):
        self.feature = FeatureKey(feature).value
        self.tier = tier
        super().__init__(f"Feature '{self.feature}' not available on {tier or 'starter'} plan")


def ensure_feature(subscription: Subscription, feature: str) -> None:
    if not has_feature(subscription, feature):
        raise FeatureNotAllowedError(feature, subscription.plan.tier if subscription.plan else None)


def ensure_capacity(subscription: Subscription, dimension: str, current_count: int) -> None:
    limit = get_limits(subscription).for_dimension(dimension)
    if not limit.has_room_for_one_more(current_count):
        raise UsageLimitError(dimension, current_count, limit)
