"""
keystone/test_features.py

Tests for the subscription gate (pure logic, fixed clock):
1. Tier feature sets and the starter fallback
2. Effective limits: override over plan, -1 as unlimited
3. can_add_* strictness at the ceiling
4. Usage status percentages, including zero and unlimited ceilings
5. Active / expired / days-until-expiry as independent checks
"""

from datetime import datetime, timedelta, timezone

import pytest

from keystone.features import (
    PLAN_CATALOG,
    UNLIMITED,
    Dimension,
    FeatureKey,
    FeatureNotAllowedError,
    Limit,
    PlanTier,
    Subscription,
    SubscriptionUsage,
    UsageLimitError,
    can_add,
    can_add_office,
    can_add_property,
    can_add_user,
    ensure_capacity,
    ensure_feature,
    feature_map,
    get_days_until_expiry,
    get_limits,
    get_usage_status,
    has_feature,
    is_subscription_active,
    is_subscription_expired,
    tier_features,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
PLANS = {p.tier: p for p in PLAN_CATALOG}


def make_subscription(tier="starter", status="active", period_end=None, **overrides):
    return Subscription(
        tenant_id=1,
        status=status,
        plan=PLANS[tier],
        current_period_end=period_end or NOW + timedelta(days=30),
        **overrides,
    )


# ============================================================================
# Features
# ============================================================================

class TestFeatures:
    def test_starter_has_no_gated_features(self):
        sub = make_subscription("starter")
        assert not any(has_feature(sub, f) for f in FeatureKey)

    def test_growth_features(self):
        sub = make_subscription("growth")
        assert has_feature(sub, "maintenanceTracking")
        assert has_feature(sub, "multiOffice")
        assert has_feature(sub, FeatureKey.ADVANCED_REPORTING)
        assert not has_feature(sub, "whiteLabel")
        assert not has_feature(sub, "apiAccess")
        assert not has_feature(sub, "auditLogs")
        assert not has_feature(sub, "dedicatedAccount")

    def test_growth_unlocks_exactly_six(self):
        sub = make_subscription("growth")
        assert {f for f in FeatureKey if has_feature(sub, f)} == {
            FeatureKey.CUSTOM_DOMAIN,
            FeatureKey.ADVANCED_BRANDING,
            FeatureKey.MAINTENANCE_TRACKING,
            FeatureKey.ADVANCED_REPORTING,
            FeatureKey.MULTI_OFFICE,
            FeatureKey.PRIORITY_SUPPORT,
        }
        assert has_feature(sub, "advancedBranding")
        assert has_feature(sub, "prioritySupport")

    def test_enterprise_has_every_feature(self):
        sub = make_subscription("enterprise")
        assert all(has_feature(sub, f) for f in FeatureKey)

    def test_unknown_tier_falls_back_to_starter(self):
        assert tier_features("platinum") == tier_features(PlanTier.STARTER)
        assert tier_features(None) == frozenset()

    def test_unknown_feature_raises(self):
        with pytest.raises(ValueError):
            has_feature(make_subscription("enterprise"), "teleportation")

    def test_feature_map_lists_all_ten_keys(self):
        fm = feature_map(make_subscription("growth"))
        assert len(fm) == 10
        assert fm["customDomain"] is True
        assert fm["whiteLabel"] is False

    def test_ensure_feature_raises_with_context(self):
        with pytest.raises(FeatureNotAllowedError) as exc:
            ensure_feature(make_subscription("starter"), "multiOffice")
        assert exc.value.feature == "multiOffice"
        assert exc.value.tier == "starter"


# ============================================================================
# Limits
# ============================================================================

class TestLimits:
    def test_plan_limits(self):
        limits = get_limits(make_subscription("growth"))
        assert limits.max_properties == Limit(50)
        assert limits.max_users == Limit(10)
        assert limits.max_offices == Limit(5)

    def test_enterprise_is_unlimited(self):
        limits = get_limits(make_subscription("enterprise"))
        assert limits.max_properties is UNLIMITED
        assert limits.to_dict() == {"max_properties": -1, "max_users": -1, "max_offices": -1}

    def test_override_wins_over_plan(self):
        sub = make_subscription("starter", max_properties_override=25)
        assert get_limits(sub).max_properties == Limit(25)
        assert get_limits(sub).max_users == Limit(3)

    def test_zero_override_is_not_ignored(self):
        sub = make_subscription("enterprise", max_users_override=0)
        assert get_limits(sub).max_users == Limit(0)
        assert not can_add_user(sub, 0)

    def test_unlimited_override_on_capped_plan(self):
        sub = make_subscription("starter", max_offices_override=-1)
        assert get_limits(sub).max_offices.is_unlimited
        assert can_add_office(sub, 10_000)

    def test_invalid_raw_limit(self):
        with pytest.raises(ValueError):
            Limit.of(-5)

    def test_limit_str(self):
        assert str(UNLIMITED) == "unlimited"
        assert str(Limit(3)) == "3"


class TestCanAdd:
    def test_below_limit(self):
        assert can_add_property(make_subscription("starter"), 9)

    def test_at_limit_is_full(self):
        assert not can_add_property(make_subscription("starter"), 10)

    def test_over_limit_is_full(self):
        assert not can_add_user(make_subscription("starter"), 7)

    def test_by_dimension_name(self):
        sub = make_subscription("growth")
        assert can_add(sub, "offices", 4)
        assert not can_add(sub, Dimension.OFFICES, 5)

    def test_unknown_dimension_raises(self):
        with pytest.raises(ValueError):
            can_add(make_subscription(), "parking_spots", 0)

    def test_ensure_capacity_raises_with_context(self):
        with pytest.raises(UsageLimitError) as exc:
            ensure_capacity(make_subscription("starter"), "users", 3)
        assert exc.value.dimension == "users"
        assert exc.value.current_count == 3
        assert exc.value.limit == Limit(3)


class TestUsageStatus:
    def test_percentages(self):
        limits = get_limits(make_subscription("starter"))
        status = get_usage_status(limits, SubscriptionUsage(properties=5, users=3, offices=0))
        assert status.properties.percentage == 50
        assert status.properties.can_add is True
        assert status.users.percentage == 100
        assert status.users.can_add is False
        assert status.offices.percentage == 0

    def test_unlimited_reports_zero_percent(self):
        limits = get_limits(make_subscription("enterprise"))
        status = get_usage_status(limits, SubscriptionUsage(properties=1_000_000))
        assert status.properties.percentage == 0
        assert status.properties.can_add is True
        assert status.to_dict()["properties"]["limit"] == -1

    def test_zero_ceiling_reports_full(self):
        limits = get_limits(make_subscription("starter", max_offices_override=0))
        status = get_usage_status(limits, SubscriptionUsage(offices=0))
        assert status.offices.percentage == 100
        assert status.offices.can_add is False

    def test_zero_ceiling_with_usage_stays_at_full(self):
        limits = get_limits(make_subscription("starter", max_offices_override=0))
        status = get_usage_status(limits, SubscriptionUsage(offices=3))
        assert status.offices.percentage == 100
        assert status.offices.used == 3
        assert status.offices.can_add is False

    def test_over_limit_is_not_clamped(self):
        limits = get_limits(make_subscription("starter"))
        status = get_usage_status(limits, SubscriptionUsage(properties=15))
        assert status.properties.percentage == 150
        assert status.properties.can_add is False


# ============================================================================
# Lifecycle
# ============================================================================

class TestLifecycle:
    @pytest.mark.parametrize("status,active", [
        ("active", True),
        ("trialing", True),
        ("past_due", False),
        ("canceled", False),
        ("expired", False),
    ])
    def test_active_statuses(self, status, active):
        assert is_subscription_active(make_subscription(status=status)) is active

    def test_expired_is_independent_of_status(self):
        sub = make_subscription(status="active", period_end=NOW - timedelta(hours=1))
        assert is_subscription_active(sub)
        assert is_subscription_expired(sub, NOW)

    def test_not_expired_at_exact_period_end(self):
        sub = make_subscription(period_end=NOW)
        assert not is_subscription_expired(sub, NOW)

    def test_canceled_but_in_period_is_not_expired(self):
        sub = make_subscription(status="canceled")
        assert not is_subscription_expired(sub, NOW)
        assert not is_subscription_active(sub)

    def test_days_until_expiry_rounds_up(self):
        sub = make_subscription(period_end=NOW + timedelta(days=2, hours=1))
        assert get_days_until_expiry(sub, NOW) == 3

    def test_days_until_expiry_negative_after_end(self):
        sub = make_subscription(period_end=NOW - timedelta(days=2))
        assert get_days_until_expiry(sub, NOW) == -2

    def test_naive_datetimes_are_utc(self):
        sub = make_subscription(period_end=datetime(2025, 3, 2, 12, 0))
        assert get_days_until_expiry(sub, NOW.replace(tzinfo=None)) == 1
        assert not is_subscription_expired(sub, NOW)
